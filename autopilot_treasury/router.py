"""Single-hop swap router used to consolidate dust balances.

Prices come from an external, trusted source and are pushed in with
:meth:`SwapRouter.set_price`; there is no on-chain oracle and no routing
across intermediate tokens.
"""
from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Dict

from .chain import ChainState, Contract
from .encoding import to_checksum
from .exceptions import ExecutionReverted, SlippageExceeded

_LOGGER = logging.getLogger(__name__)

BPS = 10_000


class SwapRouter(Contract):
    def __init__(self, chain: ChainState, address: str, *, fee_bps: int = 30) -> None:
        super().__init__(chain, address)
        if not 0 <= fee_bps < BPS:
            raise ValueError("fee_bps must be within [0, 10000)")
        self.fee_bps = fee_bps
        self.storage.setdefault("prices", {})

    @property
    def _prices(self) -> Dict[str, str]:
        return self.storage["prices"]

    def set_price(self, token: str, price: Decimal | str | int) -> None:
        """Record the value of one whole ``token`` in a common quote unit."""

        value = Decimal(str(price))
        if value <= 0:
            raise ValueError("Prices must be positive")
        self._prices[self.chain.token(token).address] = str(value)

    def price_of(self, token: str) -> Decimal:
        try:
            return Decimal(self._prices[to_checksum(token)])
        except KeyError:
            raise ExecutionReverted(f"No price configured for {token}") from None

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        info_in = self.chain.token(token_in)
        info_out = self.chain.token(token_out)
        value = Decimal(amount_in) * self.price_of(info_in.address) / Decimal(info_in.unit)
        gross = value / self.price_of(info_out.address) * Decimal(info_out.unit)
        net = gross * Decimal(BPS - self.fee_bps) / Decimal(BPS)
        return int(net.to_integral_value(rounding=ROUND_DOWN))

    def swap_exact_in(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> int:
        if to_checksum(token_in) == to_checksum(token_out):
            raise ExecutionReverted("Swap requires two different tokens")
        amount_out = self.quote(token_in, token_out, amount_in)
        if amount_out < min_amount_out:
            raise SlippageExceeded(f"Swap output {amount_out} below minimum {min_amount_out}")
        self.chain.transfer_from(token_in, self.address, caller, self.address, amount_in)
        self.chain.transfer(token_out, self.address, recipient, amount_out)
        _LOGGER.debug("Swapped %s of %s into %s of %s for %s", amount_in, token_in, amount_out, token_out, recipient)
        return amount_out


__all__ = ["SwapRouter"]
