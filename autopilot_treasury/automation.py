"""High-level automation flows: build under the lease, submit, confirm."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from .builder import BuiltOperation, OperationBuilder
from .config import AutomationConfig
from .constants import USDC_ADDRESS
from .encoding import bytes_to_hex, to_checksum
from .relay import BundlerClient, EntryPointReader, OperationStatus
from .signing import AutomationIdentity, OwnerIdentity
from .submission import OperationLeases, SubmissionRelay, await_confirmation, submit

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutomationResult:
    action: str
    wallet: str
    operation_id: str
    operation_hash: bytes
    status: OperationStatus

    @property
    def success(self) -> bool:
        return self.status.success

    def as_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "wallet": self.wallet,
            "operation_id": self.operation_id,
            "operation_hash": bytes_to_hex(self.operation_hash),
            **{k: v for k, v in self.status.as_dict().items() if k != "operation_id"},
        }


class AutomationService:
    def __init__(
        self,
        builder: OperationBuilder,
        relay: SubmissionRelay,
        identity: AutomationIdentity,
        *,
        leases: Optional[OperationLeases] = None,
        confirmation_timeout: float = 60.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.builder = builder
        self.relay = relay
        self.identity = identity
        self.leases = leases or OperationLeases()
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: AutomationConfig, **kwargs: Any) -> "AutomationService":
        relay = BundlerClient(config.bundler_url, entry_point=config.entry_point, chain_id=config.chain_id)
        builder = OperationBuilder(
            relay,
            EntryPointReader(config.rpc_url, config.entry_point),
            entry_point=config.entry_point,
            chain_id=config.chain_id,
            codec=config.codec,
            module_address=config.module_address,
        )
        identity = AutomationIdentity.from_private_key(config.automation_private_key or "", config.validator_address)
        kwargs.setdefault("confirmation_timeout", config.confirmation_timeout)
        kwargs.setdefault("poll_interval", config.poll_interval)
        return cls(builder, relay, identity, **kwargs)

    def _confirm(self, action: str, wallet: str, built: BuiltOperation, operation_id: str) -> AutomationResult:
        status = await_confirmation(
            self.relay,
            operation_id,
            timeout=self.confirmation_timeout,
            poll_interval=self.poll_interval,
            sleep=self._sleep,
        )
        result = AutomationResult(action, wallet, operation_id, built.operation_hash, status)
        _LOGGER.info("%s for %s finished (success=%s, tx=%s)", action, wallet, status.success, status.transaction_hash)
        return result

    def _run(self, action: str, wallet: str, build: Callable[[], BuiltOperation]) -> AutomationResult:
        wallet = to_checksum(wallet)
        _LOGGER.info("Starting %s for %s", action, wallet)
        with self.leases.hold(wallet, self.identity):
            built = build()
            operation_id = submit(self.relay, built.operation)
        return self._confirm(action, wallet, built, operation_id)

    def submit_rebalance(self, wallet: str, asset: str = USDC_ADDRESS) -> AutomationResult:
        return self._run("rebalance", wallet, lambda: self.builder.build_rebalance(self.identity, wallet, asset))

    def submit_migrate_strategy(self, wallet: str, asset: str, new_strategy: str) -> AutomationResult:
        return self._run(
            "migrate",
            wallet,
            lambda: self.builder.build_migrate_strategy(self.identity, wallet, asset, new_strategy),
        )

    def submit_sweep_dust(
        self, wallet: str, router: str, consolidation_asset: str, dust_assets: Sequence[str]
    ) -> AutomationResult:
        return self._run(
            "sweep",
            wallet,
            lambda: self.builder.build_sweep_dust(self.identity, wallet, router, consolidation_asset, dust_assets),
        )

    def submit_signed_owner_operation(
        self, owner: OwnerIdentity, prepared: BuiltOperation, signature: bytes
    ) -> AutomationResult:
        """Attach the wallet's signature to a prepared send and submit it."""

        wallet = to_checksum(prepared.operation.sender)
        with self.leases.hold(wallet, owner):
            signed = self.builder.attach_owner_signature(owner, prepared, signature)
            operation_id = submit(self.relay, signed.operation)
        return self._confirm("send", wallet, signed, operation_id)


__all__ = ["AutomationResult", "AutomationService"]
