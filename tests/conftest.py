"""Shared fixtures: deterministic keys and an in-memory deployment."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account

from autopilot_treasury.account import EntryPoint, SmartAccount
from autopilot_treasury.chain import ChainState
from autopilot_treasury.constants import (
    AUTOMATION_VALIDATOR_ADDRESS,
    CHAIN_ID,
    ENTRY_POINT_ADDRESS,
    OWNER_VALIDATOR_ADDRESS,
    TREASURY_MODULE_ADDRESS,
    USDC_ADDRESS,
)
from autopilot_treasury.encoding import (
    MIGRATE_STRATEGY_SELECTOR,
    REBALANCE_SELECTOR,
    SWEEP_DUST_SELECTOR,
    bytes_to_hex,
    encode_account_execute,
    to_checksum,
)
from autopilot_treasury.exceptions import ExecutionReverted, RelayError
from autopilot_treasury.nonce import KernelNonceKeyV3, NonceKeyCodec
from autopilot_treasury.relay import FeeQuote, GasEstimate, OperationStatus, SponsorData
from autopilot_treasury.router import SwapRouter
from autopilot_treasury.signing import AutomationIdentity, OwnerIdentity
from autopilot_treasury.strategies import YieldStrategy
from autopilot_treasury.treasury import TreasuryModule
from autopilot_treasury.validator import OwnerValidator, PermissionValidator

OWNER_KEY = "0x" + "11" * 32
AUTOMATION_KEY = "0x" + "22" * 32
STRANGER_KEY = "0x" + "33" * 32

ACCOUNT_ADDRESS = to_checksum("0x" + "a1" * 20)
RECIPIENT_ADDRESS = to_checksum("0x" + "b2" * 20)
STRATEGY_A = to_checksum("0x" + "5a" * 20)
STRATEGY_B = to_checksum("0x" + "5b" * 20)
ROUTER_ADDRESS = to_checksum("0x" + "7e" * 20)
PAYMASTER_ADDRESS = to_checksum("0x" + "9a" * 20)
DAI_ADDRESS = to_checksum("0x" + "da" * 20)
WETH_ADDRESS = to_checksum("0x" + "e7" * 20)

USDC = 10**6
DAI = 10**18


@dataclass
class Deployment:
    chain: ChainState
    entry_point: EntryPoint
    account: SmartAccount
    module: TreasuryModule
    validator: PermissionValidator
    owner_validator: OwnerValidator
    strategy_a: YieldStrategy
    strategy_b: YieldStrategy
    router: SwapRouter
    owner: Any
    automation: Any

    @property
    def usdc(self) -> str:
        return to_checksum(USDC_ADDRESS)

    def fund(self, amount: int, token: str = USDC_ADDRESS, holder: str = ACCOUNT_ADDRESS) -> None:
        self.chain.mint(token, holder, amount)

    def liquid(self, token: str = USDC_ADDRESS) -> int:
        return self.chain.balance_of(token, ACCOUNT_ADDRESS)

    def automation_identity(self) -> AutomationIdentity:
        return AutomationIdentity(self.validator.address, account=self.automation)

    def owner_identity(self) -> OwnerIdentity:
        return OwnerIdentity(self.owner_validator.address, account=self.owner)


def relocated_execute_call_data(decoy_execution: bytes, hidden_execution: bytes) -> bytes:
    """``execute`` call data whose offset word skips the decoy and points at a second payload.

    The decoy still sits where a fixed-offset reader looks for it.
    """

    canonical = encode_account_execute(decoy_execution)
    hidden = abi_encode(["bytes"], [hidden_execution])[32:]
    offset = (len(canonical) - 4).to_bytes(32, "big")
    return canonical[:36] + offset + canonical[68:] + hidden


def deploy(*, threshold: int = 100 * USDC, codec: Optional[NonceKeyCodec] = None) -> Deployment:
    chain = ChainState()
    chain.register_token(USDC_ADDRESS, "USDC", 6)
    chain.register_token(DAI_ADDRESS, "DAI", 18)
    chain.register_token(WETH_ADDRESS, "WETH", 18)

    owner = Account.from_key(OWNER_KEY)
    automation = Account.from_key(AUTOMATION_KEY)

    entry_point = EntryPoint(chain, ENTRY_POINT_ADDRESS, chain_id=CHAIN_ID, codec=codec or KernelNonceKeyV3())
    module = TreasuryModule(chain, TREASURY_MODULE_ADDRESS)
    validator = PermissionValidator(chain, AUTOMATION_VALIDATOR_ADDRESS)
    owner_validator = OwnerValidator(chain, OWNER_VALIDATOR_ADDRESS)
    strategy_a = YieldStrategy(chain, STRATEGY_A, USDC_ADDRESS, name="lending")
    strategy_b = YieldStrategy(chain, STRATEGY_B, USDC_ADDRESS, name="vault")

    router = SwapRouter(chain, ROUTER_ADDRESS, fee_bps=30)
    router.set_price(USDC_ADDRESS, 1)
    router.set_price(DAI_ADDRESS, 1)
    router.set_price(WETH_ADDRESS, 2000)
    chain.mint(USDC_ADDRESS, ROUTER_ADDRESS, 1_000_000 * USDC)

    account = SmartAccount(chain, ACCOUNT_ADDRESS, ENTRY_POINT_ADDRESS)
    account.install_validator(owner_validator, OwnerIdentity.identity_type)
    account.install_validator(validator, AutomationIdentity.identity_type)
    owner_validator.install(ACCOUNT_ADDRESS, owner.address)
    validator.install(
        ACCOUNT_ADDRESS,
        automation.address,
        TREASURY_MODULE_ADDRESS,
        [REBALANCE_SELECTOR, MIGRATE_STRATEGY_SELECTOR, SWEEP_DUST_SELECTOR],
    )
    module.initialize(ACCOUNT_ADDRESS, ACCOUNT_ADDRESS, USDC_ADDRESS, STRATEGY_A, automation.address, threshold)

    return Deployment(
        chain=chain,
        entry_point=entry_point,
        account=account,
        module=module,
        validator=validator,
        owner_validator=owner_validator,
        strategy_a=strategy_a,
        strategy_b=strategy_b,
        router=router,
        owner=owner,
        automation=automation,
    )


@dataclass
class LocalRelay:
    """Relay double that sponsors everything and settles against the in-memory entry point."""

    entry_point: Optional[EntryPoint] = None
    fees: FeeQuote = FeeQuote(max_fee_per_gas=2_000_000_000, max_priority_fee_per_gas=1_000_000_000)
    estimate: GasEstimate = GasEstimate(call_gas_limit=210_000, verification_gas_limit=160_000, pre_verification_gas=55_000)
    calls: List[Tuple[str, Any]] = field(default_factory=list)
    receipts: Dict[str, OperationStatus] = field(default_factory=dict)

    def get_fee_price(self) -> FeeQuote:
        self.calls.append(("fees", None))
        return self.fees

    def estimate_gas(self, operation):
        self.calls.append(("estimate", operation))
        return self.estimate

    def get_sponsor_stub(self, operation):
        self.calls.append(("sponsor_stub", operation))
        return SponsorData(PAYMASTER_ADDRESS, 100_000, 100_000, b"stub")

    def get_sponsor_data(self, operation):
        self.calls.append(("sponsor_data", operation))
        return SponsorData(PAYMASTER_ADDRESS, 70_000, 35_000, b"final-approval")

    def submit(self, operation) -> str:
        self.calls.append(("submit", operation))
        if self.entry_point is None:
            return "0x" + "ab" * 32
        try:
            receipt = self.entry_point.handle_op(operation)
        except ExecutionReverted as exc:
            raise RelayError("eth_sendUserOperation", str(exc)) from exc
        operation_id = bytes_to_hex(receipt.operation_hash)
        self.receipts[operation_id] = OperationStatus(
            operation_id=operation_id,
            success=receipt.success,
            transaction_hash="0x" + "cd" * 32,
            block_number=1,
            reason=receipt.revert_reason,
        )
        return operation_id

    def get_receipt(self, operation_id: str) -> Optional[OperationStatus]:
        self.calls.append(("receipt", operation_id))
        return self.receipts.get(operation_id)

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def deployment() -> Deployment:
    return deploy()


@pytest.fixture
def deployment_factory() -> Callable[..., Deployment]:
    return deploy


@pytest.fixture
def local_relay(deployment: Deployment) -> LocalRelay:
    return LocalRelay(entry_point=deployment.entry_point)


@pytest.fixture
def owner_account():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def automation_account():
    return Account.from_key(AUTOMATION_KEY)


@pytest.fixture
def stranger_account():
    return Account.from_key(STRANGER_KEY)
