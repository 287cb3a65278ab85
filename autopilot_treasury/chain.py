"""Deterministic in-memory execution environment for the contract models.

``ChainState`` keeps every piece of persistent state (token balances,
allowances and per-contract storage) in one place so that a transition can
be made atomic by snapshotting and restoring it.
"""
from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, MutableMapping, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from .encoding import TRANSFER_SELECTOR, selector, to_checksum
from .exceptions import ExecutionReverted, InsufficientBalance

_LOGGER = logging.getLogger(__name__)

APPROVE_SELECTOR = selector("approve(address,uint256)")


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int

    @property
    def unit(self) -> int:
        return 10**self.decimals


class Contract:
    """Base class for contract models that receive calls through the chain."""

    def __init__(self, chain: "ChainState", address: str) -> None:
        self.chain = chain
        self.address = to_checksum(address)
        chain.register_contract(self)

    @property
    def storage(self) -> MutableMapping[str, Any]:
        return self.chain.storage(self.address)

    def handle_call(self, caller: str, value: int, data: bytes) -> Any:
        raise ExecutionReverted(f"{type(self).__name__} at {self.address} does not accept calls")


class ChainState:
    def __init__(self) -> None:
        self._tokens: Dict[str, TokenInfo] = {}
        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._storage: Dict[str, Dict[str, Any]] = {}
        self._contracts: Dict[str, Contract] = {}

    # -- registry -----------------------------------------------------------------

    def register_token(self, address: str, symbol: str, decimals: int) -> TokenInfo:
        info = TokenInfo(to_checksum(address), symbol, decimals)
        self._tokens[info.address] = info
        return info

    def token(self, address: str) -> TokenInfo:
        try:
            return self._tokens[to_checksum(address)]
        except KeyError:
            raise ExecutionReverted(f"Unknown token {address}") from None

    def is_token(self, address: str) -> bool:
        return to_checksum(address) in self._tokens

    def register_contract(self, contract: Contract) -> None:
        self._contracts[contract.address] = contract

    def contract(self, address: str) -> Optional[Contract]:
        return self._contracts.get(to_checksum(address))

    def storage(self, address: str) -> Dict[str, Any]:
        return self._storage.setdefault(to_checksum(address), {})

    # -- ERC-20 semantics ---------------------------------------------------------

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances.get((self.token(token).address, to_checksum(holder)), 0)

    def mint(self, token: str, to: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")
        key = (self.token(token).address, to_checksum(to))
        self._balances[key] = self._balances.get(key, 0) + amount

    def burn(self, token: str, holder: str, amount: int) -> None:
        key = (self.token(token).address, to_checksum(holder))
        balance = self._balances.get(key, 0)
        if amount > balance:
            raise InsufficientBalance(f"{holder} holds {balance} of {token}, cannot burn {amount}")
        self._balances[key] = balance - amount

    def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Cannot transfer a negative amount")
        self.burn(token, sender, amount)
        self.mint(token, recipient, amount)

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        self._allowances[(self.token(token).address, to_checksum(owner), to_checksum(spender))] = amount

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get((self.token(token).address, to_checksum(owner), to_checksum(spender)), 0)

    def transfer_from(self, token: str, spender: str, owner: str, recipient: str, amount: int) -> None:
        allowed = self.allowance(token, owner, spender)
        if amount > allowed:
            raise InsufficientBalance(f"Allowance {allowed} of {spender} over {owner} is below {amount}")
        self.approve(token, owner, spender, allowed - amount)
        self.transfer(token, owner, recipient, amount)

    # -- calls --------------------------------------------------------------------

    def call(self, caller: str, target: str, value: int, data: bytes) -> Any:
        """Dispatch ``data`` to ``target`` with ``caller`` as the message sender.

        Arguments that fail to ABI-decode revert the call like any other
        failure inside the target.
        """

        target = to_checksum(target)
        if value:
            raise ExecutionReverted("Native value transfers are not supported")
        try:
            if target in self._tokens:
                return self._call_token(caller, target, bytes(data))
            contract = self._contracts.get(target)
            if contract is None:
                raise ExecutionReverted(f"No contract deployed at {target}")
            return contract.handle_call(to_checksum(caller), value, bytes(data))
        except DecodingError as exc:
            raise ExecutionReverted(f"Malformed call data for {target}: {exc}", reason=exc) from exc

    def _call_token(self, caller: str, token: str, data: bytes) -> bool:
        head, args = data[:4], data[4:]
        if head == TRANSFER_SELECTOR:
            recipient, amount = abi_decode(["address", "uint256"], args)
            self.transfer(token, caller, recipient, int(amount))
            return True
        if head == APPROVE_SELECTOR:
            spender, amount = abi_decode(["address", "uint256"], args)
            self.approve(token, caller, spender, int(amount))
            return True
        raise ExecutionReverted(f"Token {token} does not support selector 0x{head.hex()}")

    # -- atomicity ----------------------------------------------------------------

    def snapshot(self) -> Tuple[Any, ...]:
        return copy.deepcopy((self._balances, self._allowances, self._storage))

    def restore(self, snapshot: Tuple[Any, ...]) -> None:
        balances, allowances, storage = copy.deepcopy(snapshot)
        self._balances = balances
        self._allowances = allowances
        self._storage = storage

    @contextmanager
    def atomic(self) -> Iterator["ChainState"]:
        """Persist every effect of the block or none of them."""

        saved = self.snapshot()
        try:
            yield self
        except BaseException:
            _LOGGER.debug("Reverting transition after failure")
            self.restore(saved)
            raise


__all__ = ["APPROVE_SELECTOR", "ChainState", "Contract", "TokenInfo"]
