"""Share-based yield strategies and the three-way strategy value result."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .chain import ChainState, Contract
from .encoding import to_checksum
from .exceptions import InsufficientBalance, StrategyQueryError

_LOGGER = logging.getLogger(__name__)


class StrategyValueStatus(Enum):
    NO_STRATEGY = "no_strategy"
    QUERY_FAILED = "query_failed"
    VALUE = "value"


@dataclass(frozen=True)
class StrategyValue:
    """Result of reading a position without collapsing failures into zero."""

    status: StrategyValueStatus
    amount: int = 0
    error: Optional[str] = None

    @classmethod
    def no_strategy(cls) -> "StrategyValue":
        return cls(StrategyValueStatus.NO_STRATEGY)

    @classmethod
    def failed(cls, error: object) -> "StrategyValue":
        return cls(StrategyValueStatus.QUERY_FAILED, error=str(error))

    @classmethod
    def of(cls, amount: int) -> "StrategyValue":
        return cls(StrategyValueStatus.VALUE, amount=amount)

    @property
    def is_known(self) -> bool:
        return self.status is StrategyValueStatus.VALUE

    def require(self) -> int:
        """Return the amount, treating "no strategy" as zero and failures as errors."""

        if self.status is StrategyValueStatus.QUERY_FAILED:
            raise StrategyQueryError(self.error or "strategy query failed")
        return self.amount


class YieldStrategy(Contract):
    """ERC-4626 style vault over a single asset.

    Deposits mint shares, and a position is worth ``shares * sharePrice``.
    Yield accrues implicitly whenever the vault's asset balance grows, so no
    per-holder bookkeeping is needed. Conversions use a virtual share and a
    virtual asset so that an empty vault prices shares 1:1.
    """

    def __init__(self, chain: ChainState, address: str, asset: str, *, name: str = "") -> None:
        super().__init__(chain, address)
        self.asset = chain.token(asset).address
        self.name = name or f"strategy-{self.address[:10]}"
        self.storage.setdefault("shares", {})
        self.storage.setdefault("total_shares", 0)

    @property
    def _shares(self) -> Dict[str, int]:
        return self.storage["shares"]

    def total_assets(self) -> int:
        return self.chain.balance_of(self.asset, self.address)

    def total_shares(self) -> int:
        return self.storage["total_shares"]

    def shares_of(self, holder: str) -> int:
        return self._shares.get(to_checksum(holder), 0)

    def share_price(self) -> Decimal:
        return Decimal(self.total_assets() + 1) / Decimal(self.total_shares() + 1)

    def convert_to_shares(self, assets: int, *, round_up: bool = False) -> int:
        numerator = assets * (self.total_shares() + 1)
        denominator = self.total_assets() + 1
        if round_up:
            return -(-numerator // denominator)
        return numerator // denominator

    def convert_to_assets(self, shares: int) -> int:
        return shares * (self.total_assets() + 1) // (self.total_shares() + 1)

    def preview_redeem(self, shares: int) -> int:
        return self.convert_to_assets(shares)

    def position_value(self, holder: str) -> int:
        return self.preview_redeem(self.shares_of(holder))

    def max_withdraw(self, holder: str) -> int:
        return self.position_value(holder)

    def _mint_shares(self, holder: str, shares: int) -> None:
        holder = to_checksum(holder)
        self._shares[holder] = self._shares.get(holder, 0) + shares
        self.storage["total_shares"] += shares

    def _burn_shares(self, holder: str, shares: int) -> None:
        holder = to_checksum(holder)
        owned = self._shares.get(holder, 0)
        if shares > owned:
            raise InsufficientBalance(f"{holder} owns {owned} shares, cannot burn {shares}")
        self._shares[holder] = owned - shares
        self.storage["total_shares"] -= shares

    def deposit(self, owner: str, assets: int) -> int:
        if assets <= 0:
            raise ValueError("Deposit amount must be positive")
        shares = self.convert_to_shares(assets)
        if shares == 0:
            raise InsufficientBalance(f"Deposit of {assets} rounds to zero shares")
        self.chain.transfer(self.asset, owner, self.address, assets)
        self._mint_shares(owner, shares)
        _LOGGER.debug("%s: deposit %s assets for %s shares from %s", self.name, assets, shares, owner)
        return shares

    def withdraw(self, owner: str, assets: int) -> int:
        """Withdraw exactly ``assets`` to ``owner``; returns the shares burned."""

        if assets <= 0:
            raise ValueError("Withdrawal amount must be positive")
        if assets > self.max_withdraw(owner):
            raise InsufficientBalance(f"{owner} can withdraw at most {self.max_withdraw(owner)}")
        shares = min(self.convert_to_shares(assets, round_up=True), self.shares_of(owner))
        self._burn_shares(owner, shares)
        self.chain.transfer(self.asset, self.address, owner, assets)
        _LOGGER.debug("%s: withdraw %s assets for %s shares to %s", self.name, assets, shares, owner)
        return shares

    def redeem_all(self, owner: str) -> int:
        """Burn every share ``owner`` holds; returns the assets paid out."""

        shares = self.shares_of(owner)
        if shares == 0:
            return 0
        assets = self.convert_to_assets(shares)
        self._burn_shares(owner, shares)
        if assets:
            self.chain.transfer(self.asset, self.address, owner, assets)
        return assets

    def accrue(self, amount: int) -> None:
        """Credit yield to the vault, raising the share price for every holder."""

        self.chain.mint(self.asset, self.address, amount)


__all__ = ["StrategyValue", "StrategyValueStatus", "YieldStrategy"]
