"""Treasury state machine: liquidity floor, yield strategy and dust consolidation.

Each account keeps an :class:`AssetConfig` per asset. Liquid ("checking")
balance above the configured threshold belongs in the current yield
strategy; spends top the liquid balance back up from the strategy first.

Every public transition runs inside :meth:`ChainState.atomic`, so the
withdraw -> execute -> deposit and swap -> deposit sequences either persist
completely or not at all. Balances are always read live from the token
ledger and the strategy, never from cached counters.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode

from .chain import ChainState, Contract
from .encoding import (
    EXECUTE_WITH_AUTO_YIELD_SELECTOR,
    MIGRATE_STRATEGY_SELECTOR,
    REBALANCE_SELECTOR,
    SWEEP_DUST_SELECTOR,
    decode_transfer_amount,
    selector,
    to_checksum,
)
from .exceptions import (
    AlreadyInitialized,
    ExecutionReverted,
    InvalidStrategy,
    NotInitialized,
    StrategyQueryError,
    Unauthorized,
)
from .router import BPS, SwapRouter
from .strategies import StrategyValue, YieldStrategy

_LOGGER = logging.getLogger(__name__)

INITIALIZE_SELECTOR = selector("initialize(address,address,address,uint256)")
SET_THRESHOLD_SELECTOR = selector("setThreshold(address,uint256)")
SET_AUTOMATION_KEY_SELECTOR = selector("setAutomationKey(address)")

DEFAULT_MAX_SLIPPAGE_BPS = 200


@dataclass(frozen=True)
class AssetConfig:
    threshold: int
    current_strategy: Optional[str]
    allowed_strategies: Tuple[str, ...] = ()

    def with_allowed(self, strategy: str) -> "AssetConfig":
        if strategy in self.allowed_strategies:
            return self
        return replace(self, allowed_strategies=self.allowed_strategies + (strategy,))


class TreasuryModule(Contract):
    """Per-account, per-asset yield allocation driven by the owner or the automation key."""

    def __init__(
        self,
        chain: ChainState,
        address: str,
        *,
        max_slippage_bps: int = DEFAULT_MAX_SLIPPAGE_BPS,
    ) -> None:
        super().__init__(chain, address)
        if not 0 <= max_slippage_bps < BPS:
            raise ValueError("max_slippage_bps must be within [0, 10000)")
        self.max_slippage_bps = max_slippage_bps
        self.storage.setdefault("configs", {})
        self.storage.setdefault("automation_keys", {})

    # -- storage helpers ----------------------------------------------------------

    @property
    def _configs(self) -> Dict[Tuple[str, str], AssetConfig]:
        return self.storage["configs"]

    def config(self, account: str, asset: str) -> Optional[AssetConfig]:
        return self._configs.get((to_checksum(account), to_checksum(asset)))

    def _require_config(self, account: str, asset: str) -> AssetConfig:
        config = self.config(account, asset)
        if config is None:
            raise NotInitialized(f"{asset} is not configured for {account}")
        return config

    def _store(self, account: str, asset: str, config: AssetConfig) -> None:
        self._configs[(to_checksum(account), to_checksum(asset))] = config

    def is_initialized(self, account: str, asset: str) -> bool:
        return self.config(account, asset) is not None

    def automation_key(self, account: str) -> Optional[str]:
        return self.storage["automation_keys"].get(to_checksum(account))

    def _strategy(self, strategy: str, asset: str) -> YieldStrategy:
        contract = self.chain.contract(strategy)
        if not isinstance(contract, YieldStrategy):
            raise InvalidStrategy(f"{strategy} is not a yield strategy")
        if contract.asset != to_checksum(asset):
            raise InvalidStrategy(f"{strategy} holds {contract.asset}, not {asset}")
        return contract

    # -- authorisation ------------------------------------------------------------

    def _authorize_owner(self, caller: str, account: str) -> None:
        if to_checksum(caller) != to_checksum(account):
            raise Unauthorized(f"{caller} may not manage {account}")

    def _authorize_automation(self, caller: str, account: str) -> None:
        caller = to_checksum(caller)
        if caller == to_checksum(account):
            return
        if caller == self.automation_key(account):
            return
        raise Unauthorized(f"{caller} is neither {account} nor its automation key")

    # -- lifecycle ----------------------------------------------------------------

    def initialize(
        self,
        caller: str,
        account: str,
        asset: str,
        default_strategy: Optional[str],
        automation_key: Optional[str],
        initial_threshold: int,
    ) -> AssetConfig:
        self._authorize_owner(caller, account)
        if self.is_initialized(account, asset):
            raise AlreadyInitialized(f"{asset} already configured for {account}")
        if not default_strategy or int(to_checksum(default_strategy), 16) == 0:
            raise InvalidStrategy("A default strategy is required")
        if initial_threshold < 0:
            raise ValueError("Threshold must be non-negative")
        strategy = self._strategy(default_strategy, asset).address
        config = AssetConfig(
            threshold=initial_threshold,
            current_strategy=strategy,
            allowed_strategies=(strategy,),
        )
        self._store(account, asset, config)
        if automation_key and int(to_checksum(automation_key), 16):
            self.storage["automation_keys"][to_checksum(account)] = to_checksum(automation_key)
        _LOGGER.info(
            "Initialised %s for %s: threshold=%s strategy=%s", to_checksum(asset), to_checksum(account), initial_threshold, strategy
        )
        return config

    def on_install(self, account: str, asset: str, payload: bytes) -> AssetConfig:
        """Initialise from the ABI payload ``(address strategy, address key, uint256 threshold)``."""

        strategy, automation_key, threshold = abi_decode(["address", "address", "uint256"], bytes(payload))
        return self.initialize(account, account, asset, strategy, automation_key, int(threshold))

    def set_threshold(self, caller: str, account: str, asset: str, threshold: int) -> None:
        self._authorize_owner(caller, account)
        if threshold < 0:
            raise ValueError("Threshold must be non-negative")
        config = self._require_config(account, asset)
        self._store(account, asset, replace(config, threshold=threshold))

    def set_automation_key(self, caller: str, account: str, automation_key: str) -> None:
        self._authorize_owner(caller, account)
        self.storage["automation_keys"][to_checksum(account)] = to_checksum(automation_key)

    # -- views --------------------------------------------------------------------

    def checking_balance(self, account: str, asset: str) -> int:
        return self.chain.balance_of(asset, account)

    def checking_threshold(self, account: str, asset: str) -> int:
        config = self.config(account, asset)
        return config.threshold if config else 0

    def current_strategy(self, account: str, asset: str) -> Optional[str]:
        config = self.config(account, asset)
        return config.current_strategy if config else None

    def strategy_value(self, account: str, asset: str) -> StrategyValue:
        strategy = self.current_strategy(account, asset)
        if strategy is None:
            return StrategyValue.no_strategy()
        try:
            return StrategyValue.of(self._strategy(strategy, asset).position_value(account))
        except (StrategyQueryError, ExecutionReverted) as exc:
            _LOGGER.warning("Strategy %s failed to report for %s: %s", strategy, account, exc)
            return StrategyValue.failed(exc)

    def yield_balance(self, account: str, asset: str) -> int:
        return self.strategy_value(account, asset).require()

    def total_balance(self, account: str, asset: str) -> int:
        return self.checking_balance(account, asset) + self.yield_balance(account, asset)

    # -- transitions --------------------------------------------------------------

    def _deposit_surplus(self, account: str, asset: str, config: AssetConfig) -> int:
        if config.current_strategy is None:
            return 0
        liquid = self.checking_balance(account, asset)
        if liquid <= config.threshold:
            return 0
        surplus = liquid - config.threshold
        strategy = self._strategy(config.current_strategy, asset)
        if strategy.convert_to_shares(surplus) == 0:
            # Too small to mint a share at the current price; stays liquid.
            _LOGGER.debug("Surplus %s of %s for %s rounds to zero shares", surplus, asset, account)
            return 0
        strategy.deposit(account, surplus)
        return surplus

    def rebalance(self, caller: str, account: str, asset: str) -> int:
        """Move liquid funds above the threshold into the strategy; returns the amount moved."""

        config = self._require_config(account, asset)
        self._authorize_automation(caller, account)
        with self.chain.atomic():
            moved = self._deposit_surplus(account, asset, config)
        if moved:
            _LOGGER.info("Rebalanced %s of %s for %s into %s", moved, asset, account, config.current_strategy)
        return moved

    def execute_with_auto_yield(
        self,
        caller: str,
        account: str,
        asset: str,
        target: str,
        value: int,
        inner_data: bytes,
    ) -> Any:
        """Run ``inner_data`` against ``target``, topping up liquidity from the strategy first."""

        self._authorize_owner(caller, account)
        config = self._require_config(account, asset)
        transfer_amount = 0
        if to_checksum(target) == to_checksum(asset):
            transfer_amount = decode_transfer_amount(inner_data) or 0
        required = transfer_amount + config.threshold

        with self.chain.atomic():
            liquid = self.checking_balance(account, asset)
            if liquid < required and config.current_strategy is not None:
                strategy = self._strategy(config.current_strategy, asset)
                # Capped at what the strategy holds rather than failing outright.
                withdrawal = min(required - liquid, strategy.max_withdraw(account))
                if withdrawal > 0:
                    strategy.withdraw(account, withdrawal)
                    _LOGGER.info("Topped up %s with %s of %s from %s", account, withdrawal, asset, strategy.address)
            result = self.chain.call(account, target, value, inner_data)
            self._deposit_surplus(account, asset, config)
        return result

    def migrate_strategy(self, caller: str, account: str, asset: str, new_strategy: str) -> None:
        config = self._require_config(account, asset)
        self._authorize_automation(caller, account)
        new_address = to_checksum(new_strategy)
        if new_address == config.current_strategy:
            return
        self._strategy(new_address, asset)

        with self.chain.atomic():
            redeemed = 0
            if config.current_strategy is not None:
                old = self._strategy(config.current_strategy, asset)
                if old.shares_of(account) > 0:
                    redeemed = old.redeem_all(account)
            updated = replace(config.with_allowed(new_address), current_strategy=new_address)
            self._store(account, asset, updated)
            self._deposit_surplus(account, asset, updated)
        _LOGGER.info(
            "Migrated %s for %s from %s to %s (%s redeemed)", asset, account, config.current_strategy, new_address, redeemed
        )

    def sweep_dust_and_compound(
        self,
        caller: str,
        account: str,
        router: str,
        consolidation_asset: str,
        dust_assets: Sequence[str],
    ) -> int:
        """Swap every nonzero dust balance into ``consolidation_asset``; returns the amount received."""

        self._authorize_automation(caller, account)
        swap_router = self.chain.contract(router)
        if not isinstance(swap_router, SwapRouter):
            raise ExecutionReverted(f"{router} is not a swap router")
        consolidation = to_checksum(consolidation_asset)

        received = 0
        with self.chain.atomic():
            for dust in dust_assets:
                dust = to_checksum(dust)
                if dust == consolidation:
                    continue
                balance = self.chain.balance_of(dust, account)
                if balance == 0:
                    continue
                expected = swap_router.quote(dust, consolidation, balance)
                min_out = expected * (BPS - self.max_slippage_bps) // BPS
                self.chain.approve(dust, account, swap_router.address, balance)
                received += swap_router.swap_exact_in(account, dust, consolidation, balance, min_out, account)
            config = self.config(account, consolidation)
            compounded = self._deposit_surplus(account, consolidation, config) if config else 0
        _LOGGER.info(
            "Swept %d dust asset(s) for %s into %s of %s; compounded %s",
            len(dust_assets),
            account,
            received,
            consolidation,
            compounded,
        )
        return received

    # -- ABI entry points -----------------------------------------------------------

    def handle_call(self, caller: str, value: int, data: bytes) -> Any:
        head, args = data[:4], data[4:]
        if head == REBALANCE_SELECTOR:
            (asset,) = abi_decode(["address"], args)
            return self.rebalance(caller, caller, asset)
        if head == MIGRATE_STRATEGY_SELECTOR:
            asset, new_strategy = abi_decode(["address", "address"], args)
            return self.migrate_strategy(caller, caller, asset, new_strategy)
        if head == SWEEP_DUST_SELECTOR:
            router, consolidation, dust = abi_decode(["address", "address", "address[]"], args)
            return self.sweep_dust_and_compound(caller, caller, router, consolidation, list(dust))
        if head == EXECUTE_WITH_AUTO_YIELD_SELECTOR:
            asset, target, amount, inner = abi_decode(["address", "address", "uint256", "bytes"], args)
            return self.execute_with_auto_yield(caller, caller, asset, target, int(amount), bytes(inner))
        if head == INITIALIZE_SELECTOR:
            asset, strategy, automation_key, threshold = abi_decode(["address", "address", "address", "uint256"], args)
            return self.initialize(caller, caller, asset, strategy, automation_key, int(threshold))
        if head == SET_THRESHOLD_SELECTOR:
            asset, threshold = abi_decode(["address", "uint256"], args)
            return self.set_threshold(caller, caller, asset, int(threshold))
        if head == SET_AUTOMATION_KEY_SELECTOR:
            (automation_key,) = abi_decode(["address"], args)
            return self.set_automation_key(caller, caller, automation_key)
        raise ExecutionReverted(f"TreasuryModule does not support selector 0x{head.hex()}")


__all__ = ["AssetConfig", "DEFAULT_MAX_SLIPPAGE_BPS", "TreasuryModule"]
