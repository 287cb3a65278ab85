"""Read-side helpers used by the scheduler: wallet checks and strategy ranking."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .constants import USDC_ADDRESS, USDC_DECIMALS
from .encoding import to_checksum
from .strategies import StrategyValue, StrategyValueStatus

_LOGGER = logging.getLogger(__name__)

RISK_ORDER: Dict[str, int] = {"low": 1, "med": 2, "high": 3}
RISK_PENALTY_PER_LEVEL = 2


class TreasuryReader(Protocol):
    def checking_balance(self, account: str, asset: str) -> int: ...

    def checking_threshold(self, account: str, asset: str) -> int: ...

    def current_strategy(self, account: str, asset: str) -> Optional[str]: ...

    def strategy_value(self, account: str, asset: str) -> StrategyValue: ...


@dataclass(frozen=True)
class WalletCheck:
    wallet: str
    asset: str
    checking_balance: int
    threshold: int
    strategy: Optional[str]
    strategy_value: StrategyValue

    @property
    def surplus(self) -> int:
        return max(self.checking_balance - self.threshold, 0)

    @property
    def has_strategy(self) -> bool:
        return self.strategy is not None

    @property
    def needs_rebalance(self) -> bool:
        return self.surplus > 0 and self.has_strategy

    def as_dict(self) -> Dict[str, Any]:
        value = self.strategy_value
        return {
            "wallet": self.wallet,
            "asset": self.asset,
            "checking_balance": self.checking_balance,
            "threshold": self.threshold,
            "strategy": self.strategy,
            "yield_balance": value.amount if value.is_known else None,
            "yield_status": value.status.value,
            "surplus": self.surplus,
            "needs_rebalance": self.needs_rebalance,
        }


def check_wallet(reader: TreasuryReader, wallet: str, asset: str = USDC_ADDRESS) -> WalletCheck:
    wallet = to_checksum(wallet)
    value = reader.strategy_value(wallet, asset)
    if value.status is StrategyValueStatus.QUERY_FAILED:
        _LOGGER.warning("Strategy value unavailable for %s: %s", wallet, value.error)
    return WalletCheck(
        wallet=wallet,
        asset=to_checksum(asset),
        checking_balance=reader.checking_balance(wallet, asset),
        threshold=reader.checking_threshold(wallet, asset),
        strategy=reader.current_strategy(wallet, asset),
        strategy_value=value,
    )


def check_wallets(reader: TreasuryReader, wallets: Iterable[str], asset: str = USDC_ADDRESS) -> List[WalletCheck]:
    return [check_wallet(reader, wallet, asset) for wallet in wallets]


@dataclass(frozen=True)
class StrategyCandidate:
    name: str
    address: str
    apy: Decimal
    risk: str = "high"

    def __post_init__(self) -> None:
        if self.risk not in RISK_ORDER:
            raise ValueError(f"Unknown risk tier {self.risk!r}")


def score_strategy(candidate: StrategyCandidate) -> Decimal:
    """APY in percent minus a fixed penalty per risk level; higher is better.

    A 15% high-risk strategy scores 15 - 3 * 2 = 9, a 7.8% low-risk one 5.8.
    """

    return Decimal(candidate.apy) * 100 - RISK_ORDER[candidate.risk] * RISK_PENALTY_PER_LEVEL


def recommend_strategy(
    candidates: Sequence[StrategyCandidate],
    risk_tolerance: str = "med",
    min_apy: Decimal | int = 0,
) -> Optional[StrategyCandidate]:
    if risk_tolerance not in RISK_ORDER:
        raise ValueError(f"Unknown risk tier {risk_tolerance!r}")
    ceiling = RISK_ORDER[risk_tolerance]
    eligible = [c for c in candidates if RISK_ORDER[c.risk] <= ceiling and Decimal(c.apy) >= Decimal(min_apy)]
    if not eligible:
        return None
    return max(eligible, key=score_strategy)


def format_units(amount: int, decimals: int = USDC_DECIMALS, places: int = 2) -> str:
    """Render a base-unit amount with ``places`` decimals, truncating the rest."""

    value = Decimal(amount) / (Decimal(10) ** decimals)
    return str(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN))


__all__ = [
    "RISK_ORDER",
    "StrategyCandidate",
    "TreasuryReader",
    "WalletCheck",
    "check_wallet",
    "check_wallets",
    "format_units",
    "recommend_strategy",
    "score_strategy",
]
