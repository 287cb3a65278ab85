"""Operation builder: nonce, fees, gas, sponsorship and signatures.

Automation operations go through the full pipeline::

    identity -> nonce(identity key) -> fees -> stub envelope -> hash -> sign
             -> sponsor stub -> estimate gas -> sponsor data -> rebuild
             -> re-hash -> final signature

Owner sends stop before signing: :meth:`OperationBuilder.prepare_owner_send`
returns the unsigned envelope and its hash for the owner's wallet, and
:meth:`OperationBuilder.attach_owner_signature` completes it. The hash is
recomputed after every field revision and never reused across revisions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Protocol, Sequence

from .constants import AUTOMATION_STUB_GAS_LIMITS, EXEC_MODE_DEFAULT, OWNER_SEND_GAS_LIMITS
from .encoding import (
    build_module_call_data,
    bytes_to_hex,
    encode_execute_with_auto_yield,
    encode_migrate_strategy,
    encode_rebalance,
    encode_sweep_dust,
    encode_transfer,
    to_checksum,
)
from .nonce import NonceKeyCodec, split_nonce
from .relay import FeeQuote, GasEstimate, SponsorData
from .signing import AutomationIdentity, OwnerIdentity, SigningIdentity, signed_by
from .user_operation import AnyUserOperation, UserOperation, serialize_user_operation, user_operation_hash

_LOGGER = logging.getLogger(__name__)


class NonceSource(Protocol):
    def get_nonce(self, sender: str, key: int) -> int: ...


class OperationRelay(Protocol):
    def get_fee_price(self) -> FeeQuote: ...

    def estimate_gas(self, operation: AnyUserOperation) -> GasEstimate: ...

    def get_sponsor_stub(self, operation: AnyUserOperation) -> SponsorData: ...

    def get_sponsor_data(self, operation: AnyUserOperation) -> SponsorData: ...


@dataclass(frozen=True)
class BuiltOperation:
    operation: UserOperation
    operation_hash: bytes
    role: str

    @property
    def is_signed(self) -> bool:
        return bool(self.operation.signature)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "userOpHash": bytes_to_hex(self.operation_hash),
            "userOp": serialize_user_operation(self.operation),
        }


def apply_sponsor(operation: UserOperation, sponsor: SponsorData) -> UserOperation:
    return replace(
        operation,
        paymaster=sponsor.paymaster,
        paymaster_verification_gas_limit=sponsor.verification_gas_limit,
        paymaster_post_op_gas_limit=sponsor.post_op_gas_limit,
        paymaster_data=sponsor.paymaster_data,
    )


def apply_gas_estimate(operation: UserOperation, estimate: GasEstimate) -> UserOperation:
    revised = replace(
        operation,
        call_gas_limit=estimate.call_gas_limit,
        verification_gas_limit=estimate.verification_gas_limit,
        pre_verification_gas=estimate.pre_verification_gas,
    )
    if revised.paymaster is None:
        return revised
    if estimate.paymaster_verification_gas_limit is not None:
        revised = replace(revised, paymaster_verification_gas_limit=estimate.paymaster_verification_gas_limit)
    if estimate.paymaster_post_op_gas_limit is not None:
        revised = replace(revised, paymaster_post_op_gas_limit=estimate.paymaster_post_op_gas_limit)
    return revised


class OperationBuilder:
    def __init__(
        self,
        relay: OperationRelay,
        nonces: NonceSource,
        *,
        entry_point: str,
        chain_id: int,
        codec: NonceKeyCodec,
        module_address: str,
        sponsored: bool = True,
        mode: bytes = EXEC_MODE_DEFAULT,
    ) -> None:
        self.relay = relay
        self.nonces = nonces
        self.entry_point = to_checksum(entry_point)
        self.chain_id = chain_id
        self.codec = codec
        self.module_address = to_checksum(module_address)
        self.sponsored = sponsored
        self.mode = mode

    def operation_hash(self, operation: AnyUserOperation) -> bytes:
        return user_operation_hash(operation, self.entry_point, self.chain_id)

    def fetch_nonce(self, identity: SigningIdentity, account: str) -> int:
        """Read the next nonce on ``identity``'s own sequence for ``account``."""

        key = identity.nonce_key(self.codec)
        nonce = self.nonces.get_nonce(to_checksum(account), key)
        returned_key, _sequence = split_nonce(nonce)
        if returned_key != key:
            raise ValueError(f"Nonce source returned key {returned_key:#x}, expected {key:#x}")
        return nonce

    def _sign(self, identity: SigningIdentity, operation: UserOperation) -> BuiltOperation:
        unsigned = operation.with_signature(b"")
        operation_hash = self.operation_hash(unsigned)
        signature = identity.sign_operation_hash(operation_hash)
        return BuiltOperation(unsigned.with_signature(signature), operation_hash, identity.role)

    def module_call_data(self, module_call: bytes) -> bytes:
        return build_module_call_data(self.module_address, module_call, self.mode)

    # -- automation ---------------------------------------------------------------

    def build_automation_operation(
        self, identity: AutomationIdentity, account: str, module_call: bytes
    ) -> BuiltOperation:
        if not isinstance(identity, AutomationIdentity):
            raise TypeError(f"Automation operations must be signed by an AutomationIdentity, not {type(identity).__name__}")
        account = to_checksum(account)
        nonce = self.fetch_nonce(identity, account)
        fees = self.relay.get_fee_price()
        stub = UserOperation(
            sender=account,
            nonce=nonce,
            call_data=self.module_call_data(module_call),
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            **AUTOMATION_STUB_GAS_LIMITS,
        )
        built = self._sign(identity, stub)
        _LOGGER.debug("Stub operation for %s signed (nonce=%#x)", account, nonce)

        if self.sponsored:
            built = self._sign(identity, apply_sponsor(built.operation, self.relay.get_sponsor_stub(built.operation)))

        estimate = self.relay.estimate_gas(built.operation)
        revised = apply_gas_estimate(built.operation, estimate)
        if self.sponsored:
            revised = apply_sponsor(revised, self.relay.get_sponsor_data(revised))
        final = self._sign(identity, revised)
        _LOGGER.info(
            "Built automation operation 0x%s for %s (call gas %s, sponsored=%s)",
            final.operation_hash.hex(),
            account,
            final.operation.call_gas_limit,
            final.operation.paymaster is not None,
        )
        return final

    def build_rebalance(self, identity: AutomationIdentity, account: str, asset: str) -> BuiltOperation:
        return self.build_automation_operation(identity, account, encode_rebalance(asset))

    def build_migrate_strategy(
        self, identity: AutomationIdentity, account: str, asset: str, new_strategy: str
    ) -> BuiltOperation:
        return self.build_automation_operation(identity, account, encode_migrate_strategy(asset, new_strategy))

    def build_sweep_dust(
        self,
        identity: AutomationIdentity,
        account: str,
        router: str,
        consolidation_asset: str,
        dust_assets: Sequence[str],
    ) -> BuiltOperation:
        return self.build_automation_operation(
            identity, account, encode_sweep_dust(router, consolidation_asset, dust_assets)
        )

    # -- owner sends ----------------------------------------------------------------

    def prepare_owner_send(
        self,
        identity: OwnerIdentity,
        account: str,
        asset: str,
        recipient: str,
        amount: int,
    ) -> BuiltOperation:
        """Unsigned spend-with-top-up envelope and its hash, for the owner's wallet to sign."""

        if not isinstance(identity, OwnerIdentity):
            raise TypeError(f"Owner sends must use an OwnerIdentity, not {type(identity).__name__}")
        if amount <= 0:
            raise ValueError("Send amount must be positive")
        account = to_checksum(account)
        inner = encode_transfer(recipient, amount)
        module_call = encode_execute_with_auto_yield(asset, asset, 0, inner)
        nonce = self.fetch_nonce(identity, account)
        fees = self.relay.get_fee_price()
        operation = UserOperation(
            sender=account,
            nonce=nonce,
            call_data=self.module_call_data(module_call),
            call_gas_limit=OWNER_SEND_GAS_LIMITS["call_gas_limit"],
            verification_gas_limit=OWNER_SEND_GAS_LIMITS["verification_gas_limit"],
            pre_verification_gas=OWNER_SEND_GAS_LIMITS["pre_verification_gas"],
            max_fee_per_gas=fees.max_fee_per_gas,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
        )
        if self.sponsored:
            # Sponsorship needs no signature, so the wallet signs exactly once.
            operation = apply_sponsor(operation, self.relay.get_sponsor_data(operation))
        operation_hash = self.operation_hash(operation)
        _LOGGER.info("Prepared owner send 0x%s: %s of %s to %s", operation_hash.hex(), amount, asset, recipient)
        return BuiltOperation(operation, operation_hash, identity.role)

    def attach_owner_signature(
        self, identity: OwnerIdentity, prepared: BuiltOperation, signature: bytes
    ) -> BuiltOperation:
        operation_hash = self.operation_hash(prepared.operation.with_signature(b""))
        if operation_hash != prepared.operation_hash:
            raise ValueError("Prepared operation hash does not match its fields")
        if not signed_by(identity.address, operation_hash, bytes(signature)):
            raise ValueError(f"Signature was not produced by the owner {identity.address}")
        return BuiltOperation(prepared.operation.with_signature(bytes(signature)), operation_hash, identity.role)

    def sign_owner_send(self, identity: OwnerIdentity, prepared: BuiltOperation) -> BuiltOperation:
        """Sign a prepared send with a locally held owner key."""

        return self.attach_owner_signature(identity, prepared, identity.sign_operation_hash(prepared.operation_hash))


__all__ = [
    "BuiltOperation",
    "NonceSource",
    "OperationBuilder",
    "OperationRelay",
    "apply_gas_estimate",
    "apply_sponsor",
]
