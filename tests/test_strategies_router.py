from __future__ import annotations

from decimal import Decimal

import pytest

from autopilot_treasury.chain import ChainState, Contract
from autopilot_treasury.constants import USDC_ADDRESS
from autopilot_treasury.encoding import encode_transfer, to_checksum
from autopilot_treasury.exceptions import (
    ExecutionReverted,
    InsufficientBalance,
    SlippageExceeded,
    StrategyQueryError,
)
from autopilot_treasury.router import SwapRouter
from autopilot_treasury.strategies import StrategyValue, StrategyValueStatus, YieldStrategy

from conftest import DAI, DAI_ADDRESS, USDC, WETH_ADDRESS

HOLDER = to_checksum("0x" + "a1" * 20)
OTHER = to_checksum("0x" + "a2" * 20)


@pytest.fixture
def chain() -> ChainState:
    state = ChainState()
    state.register_token(USDC_ADDRESS, "USDC", 6)
    state.register_token(DAI_ADDRESS, "DAI", 18)
    state.register_token(WETH_ADDRESS, "WETH", 18)
    return state


@pytest.fixture
def vault(chain) -> YieldStrategy:
    return YieldStrategy(chain, "0x" + "5a" * 20, USDC_ADDRESS, name="vault")


def test_atomic_restores_state_on_failure(chain):
    chain.mint(USDC_ADDRESS, HOLDER, 10)

    with pytest.raises(InsufficientBalance):
        with chain.atomic():
            chain.transfer(USDC_ADDRESS, HOLDER, OTHER, 4)
            chain.transfer(USDC_ADDRESS, HOLDER, OTHER, 7)

    assert chain.balance_of(USDC_ADDRESS, HOLDER) == 10
    assert chain.balance_of(USDC_ADDRESS, OTHER) == 0


def test_token_calls_go_through_the_ledger(chain):
    chain.mint(USDC_ADDRESS, HOLDER, 10)

    assert chain.call(HOLDER, USDC_ADDRESS, 0, encode_transfer(OTHER, 3)) is True
    assert chain.balance_of(USDC_ADDRESS, OTHER) == 3
    with pytest.raises(ExecutionReverted):
        chain.call(HOLDER, USDC_ADDRESS, 1, encode_transfer(OTHER, 1))
    with pytest.raises(ExecutionReverted):
        chain.call(HOLDER, OTHER, 0, b"\x00\x00\x00\x00")


def test_plain_contracts_refuse_calls(chain):
    contract = Contract(chain, "0x" + "c7" * 20)

    with pytest.raises(ExecutionReverted):
        chain.call(HOLDER, contract.address, 0, b"\x00\x00\x00\x00")


def test_empty_vault_prices_shares_one_to_one(chain, vault):
    chain.mint(USDC_ADDRESS, HOLDER, 500 * USDC)

    shares = vault.deposit(HOLDER, 500 * USDC)

    assert shares == 500 * USDC
    assert vault.position_value(HOLDER) == 500 * USDC
    assert vault.share_price() == Decimal(1)


def test_yield_accrues_pro_rata(chain, vault):
    chain.mint(USDC_ADDRESS, HOLDER, 300 * USDC)
    chain.mint(USDC_ADDRESS, OTHER, 100 * USDC)
    vault.deposit(HOLDER, 300 * USDC)
    vault.deposit(OTHER, 100 * USDC)

    vault.accrue(40 * USDC)

    assert vault.position_value(HOLDER) == pytest.approx(330 * USDC, abs=1)
    assert vault.position_value(OTHER) == pytest.approx(110 * USDC, abs=1)


def test_withdraw_pays_exact_assets(chain, vault):
    chain.mint(USDC_ADDRESS, HOLDER, 100 * USDC)
    vault.deposit(HOLDER, 100 * USDC)
    vault.accrue(7 * USDC)

    vault.withdraw(HOLDER, 50 * USDC)

    assert chain.balance_of(USDC_ADDRESS, HOLDER) == 50 * USDC
    assert vault.position_value(HOLDER) == pytest.approx(57 * USDC, abs=2)
    with pytest.raises(InsufficientBalance):
        vault.withdraw(HOLDER, 100 * USDC)
    with pytest.raises(ValueError):
        vault.withdraw(HOLDER, 0)


def test_redeem_all_empties_the_position(chain, vault):
    chain.mint(USDC_ADDRESS, HOLDER, 100 * USDC)
    vault.deposit(HOLDER, 100 * USDC)

    assert vault.redeem_all(HOLDER) == 100 * USDC
    assert vault.shares_of(HOLDER) == 0
    assert vault.redeem_all(HOLDER) == 0


def test_deposit_rejects_non_positive_amounts(chain, vault):
    with pytest.raises(ValueError):
        vault.deposit(HOLDER, 0)


def test_strategy_value_require():
    assert StrategyValue.no_strategy().require() == 0
    assert StrategyValue.of(5).require() == 5
    assert StrategyValue.of(0).is_known
    failed = StrategyValue.failed(RuntimeError("boom"))
    assert failed.status is StrategyValueStatus.QUERY_FAILED
    assert not failed.is_known
    with pytest.raises(StrategyQueryError, match="boom"):
        failed.require()


def test_router_quote_applies_prices_decimals_and_fee(chain):
    router = SwapRouter(chain, "0x" + "7e" * 20, fee_bps=30)
    router.set_price(USDC_ADDRESS, 1)
    router.set_price(DAI_ADDRESS, "0.999")
    router.set_price(WETH_ADDRESS, 2000)

    assert router.quote(DAI_ADDRESS, USDC_ADDRESS, 10 * DAI) == 9_960_030
    assert router.quote(WETH_ADDRESS, USDC_ADDRESS, DAI // 1000) == 1_994_000
    with pytest.raises(ValueError):
        router.set_price(USDC_ADDRESS, 0)


def test_router_swap_pulls_input_and_enforces_minimum(chain):
    router = SwapRouter(chain, "0x" + "7e" * 20, fee_bps=0)
    router.set_price(USDC_ADDRESS, 1)
    router.set_price(DAI_ADDRESS, 1)
    chain.mint(USDC_ADDRESS, router.address, 100 * USDC)
    chain.mint(DAI_ADDRESS, HOLDER, 2 * DAI)

    with pytest.raises(InsufficientBalance):
        router.swap_exact_in(HOLDER, DAI_ADDRESS, USDC_ADDRESS, 2 * DAI, 0, HOLDER)

    chain.approve(DAI_ADDRESS, HOLDER, router.address, 2 * DAI)
    with pytest.raises(SlippageExceeded):
        router.swap_exact_in(HOLDER, DAI_ADDRESS, USDC_ADDRESS, 2 * DAI, 2 * USDC + 1, HOLDER)

    assert router.swap_exact_in(HOLDER, DAI_ADDRESS, USDC_ADDRESS, 2 * DAI, 2 * USDC, HOLDER) == 2 * USDC
    assert chain.balance_of(DAI_ADDRESS, HOLDER) == 0
    assert chain.balance_of(USDC_ADDRESS, HOLDER) == 2 * USDC


def test_router_requires_prices_and_distinct_tokens(chain):
    router = SwapRouter(chain, "0x" + "7e" * 20)

    with pytest.raises(ExecutionReverted):
        router.quote(DAI_ADDRESS, USDC_ADDRESS, 1)
    with pytest.raises(ExecutionReverted):
        router.swap_exact_in(HOLDER, USDC_ADDRESS, USDC_ADDRESS, 1, 0, HOLDER)
    with pytest.raises(ValueError):
        SwapRouter(chain, "0x" + "7f" * 20, fee_bps=10_000)
