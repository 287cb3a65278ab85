"""Permission validator restricting what the automation key may authorise.

The validator inspects the call an operation will make, not just its
signature. Account call data is the ABI encoding of
``execute(bytes32 mode, bytes executionCalldata)`` where the execution
calldata is ``target(20) || value(32) || innerData``. Read at fixed
offsets that gives::

    [0:4]      envelope selector
    [4:36]     mode
    [36:68]    offset of executionCalldata
    [68:100]   length of executionCalldata
    [100:120]  target
    [120:152]  value
    [152:156]  inner selector

Anything shorter than 156 bytes cannot be parsed and is rejected, as is an
offset word other than ``0x40`` or a length running past the call data.
Rejections are returned as :class:`ValidationStatus` values and never raised.
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Dict, Iterable, List, MutableMapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode

from .chain import ChainState, Contract
from .constants import ERC1271_INVALID, ERC1271_MAGIC_VALUE, SIG_VALIDATION_FAILED, SIG_VALIDATION_SUCCESS
from .encoding import EXECUTE_SELECTOR, selector, to_checksum
from .exceptions import AlreadyInitialized, ExecutionReverted, NotInitialized, Unauthorized
from .signing import signed_by
from .user_operation import AnyUserOperation

_LOGGER = logging.getLogger(__name__)

ENVELOPE_SELECTOR_END = 4
OFFSET_WORD = 36
LENGTH_WORD = 68
CANONICAL_EXECUTION_OFFSET = 0x40
TARGET_OFFSET = 100
VALUE_OFFSET = 120
INNER_SELECTOR_OFFSET = 152
MIN_CALL_DATA_LENGTH = INNER_SELECTOR_OFFSET + 4

SET_CAPABILITY_SELECTOR = selector("setCapability(address,bytes4,bool)")
SET_AUTOMATION_KEY_SELECTOR = selector("setAutomationKey(address)")
UNINSTALL_SELECTOR = selector("uninstall()")


class ValidationStatus(IntEnum):
    SUCCESS = SIG_VALIDATION_SUCCESS
    FAILURE = SIG_VALIDATION_FAILED


def parse_call_target(call_data: bytes) -> Optional[Tuple[bytes, str, bytes]]:
    """Return ``(envelope_selector, target, inner_selector)``, or ``None`` when unparseable.

    The execution payload must sit where the canonical encoding puts it: the
    offset word is ``0x40`` and the declared length covers the inner selector
    while fitting inside the call data. Anything else could make the account
    execute bytes other than the ones read here.
    """

    data = bytes(call_data)
    if len(data) < MIN_CALL_DATA_LENGTH:
        return None
    if int.from_bytes(data[OFFSET_WORD:LENGTH_WORD], "big") != CANONICAL_EXECUTION_OFFSET:
        return None
    length = int.from_bytes(data[LENGTH_WORD:TARGET_OFFSET], "big")
    if length < MIN_CALL_DATA_LENGTH - TARGET_OFFSET or TARGET_OFFSET + length > len(data):
        return None
    return (
        data[:ENVELOPE_SELECTOR_END],
        to_checksum(data[TARGET_OFFSET:VALUE_OFFSET]),
        data[INNER_SELECTOR_OFFSET:MIN_CALL_DATA_LENGTH],
    )


def _selector_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        raw = bytes.fromhex(text)
    else:
        raw = bytes(value)
    if len(raw) != 4:
        raise ValueError(f"Selectors are 4 bytes, received {len(raw)}")
    return raw


class CapabilityRegistry:
    """Per-account allowlist of ``(target, selector)`` pairs."""

    def __init__(self, storage: MutableMapping[str, Any]) -> None:
        self._storage = storage
        self._storage.setdefault("capabilities", {})

    @property
    def _entries(self) -> Dict[Tuple[str, str, bytes], bool]:
        return self._storage["capabilities"]

    def set(self, account: str, target: str, fn_selector: bytes, allowed: bool) -> None:
        key = (to_checksum(account), to_checksum(target), _selector_bytes(fn_selector))
        if allowed:
            self._entries[key] = True
        else:
            self._entries.pop(key, None)

    def is_allowed(self, account: str, target: str, fn_selector: bytes) -> bool:
        return self._entries.get((to_checksum(account), to_checksum(target), bytes(fn_selector)), False)

    def entries(self, account: str) -> List[Tuple[str, bytes]]:
        owner = to_checksum(account)
        return sorted((target, sel) for (acct, target, sel) in self._entries if acct == owner)

    def clear(self, account: str) -> None:
        owner = to_checksum(account)
        for key in [key for key in self._entries if key[0] == owner]:
            del self._entries[key]


class PermissionValidator(Contract):
    """Validates operations signed by an account's automation key."""

    def __init__(self, chain: ChainState, address: str) -> None:
        super().__init__(chain, address)
        self.storage.setdefault("automation_keys", {})

    @property
    def capabilities(self) -> CapabilityRegistry:
        return CapabilityRegistry(self.storage)

    @property
    def _keys(self) -> Dict[str, str]:
        return self.storage["automation_keys"]

    def is_initialized(self, account: str) -> bool:
        return to_checksum(account) in self._keys

    def automation_key(self, account: str) -> Optional[str]:
        return self._keys.get(to_checksum(account))

    # -- lifecycle (caller is always the account itself) ------------------------

    def install(self, account: str, automation_key: str, treasury_target: str, selectors: Sequence[Any]) -> None:
        account = to_checksum(account)
        if self.is_initialized(account):
            raise AlreadyInitialized(f"Permission validator already installed for {account}")
        self._guard_target(treasury_target)
        registry = self.capabilities
        self._keys[account] = to_checksum(automation_key)
        for fn_selector in selectors:
            registry.set(account, treasury_target, _selector_bytes(fn_selector), True)
        _LOGGER.info(
            "Installed automation key %s for %s with %d selector(s) on %s",
            self._keys[account],
            account,
            len(selectors),
            to_checksum(treasury_target),
        )

    def on_install(self, account: str, payload: bytes) -> None:
        """Install from the ABI payload ``(address key, address target, bytes4[] selectors)``."""

        automation_key, target, selectors = abi_decode(["address", "address", "bytes4[]"], bytes(payload))
        self.install(account, automation_key, target, list(selectors))

    def uninstall(self, account: str) -> None:
        account = to_checksum(account)
        self._require_initialized(account)
        del self._keys[account]
        self.capabilities.clear(account)
        _LOGGER.info("Uninstalled permission validator for %s", account)

    def set_automation_key(self, account: str, automation_key: str) -> None:
        account = to_checksum(account)
        self._require_initialized(account)
        self._keys[account] = to_checksum(automation_key)

    def set_capability(self, account: str, target: str, fn_selector: Any, allowed: bool) -> None:
        account = to_checksum(account)
        self._require_initialized(account)
        self._guard_target(target)
        self.capabilities.set(account, target, _selector_bytes(fn_selector), allowed)

    def _require_initialized(self, account: str) -> None:
        if not self.is_initialized(account):
            raise NotInitialized(f"Permission validator not installed for {account}")

    def _guard_target(self, target: str) -> None:
        # The allowlist must never let the automation key reach the validator itself.
        if to_checksum(target) == self.address:
            raise Unauthorized("The validator cannot whitelist calls to itself")

    def handle_call(self, caller: str, value: int, data: bytes) -> Any:
        head, args = data[:4], data[4:]
        if head == SET_CAPABILITY_SELECTOR:
            target, fn_selector, allowed = abi_decode(["address", "bytes4", "bool"], args)
            return self.set_capability(caller, target, fn_selector, allowed)
        if head == SET_AUTOMATION_KEY_SELECTOR:
            (automation_key,) = abi_decode(["address"], args)
            return self.set_automation_key(caller, automation_key)
        if head == UNINSTALL_SELECTOR:
            return self.uninstall(caller)
        raise ExecutionReverted(f"PermissionValidator does not support selector 0x{head.hex()}")

    # -- validation (pure) ------------------------------------------------------

    def validate(self, operation: AnyUserOperation, operation_hash: bytes) -> ValidationStatus:
        try:
            account = to_checksum(operation.sender)
        except ValueError:
            return ValidationStatus.FAILURE
        automation_key = self.automation_key(account)
        if automation_key is None:
            _LOGGER.debug("Rejecting operation for %s: validator not installed", account)
            return ValidationStatus.FAILURE

        parsed = parse_call_target(operation.call_data)
        if parsed is None:
            _LOGGER.debug("Rejecting operation for %s: call data not parseable", account)
            return ValidationStatus.FAILURE
        envelope_selector, target, inner_selector = parsed
        if envelope_selector != EXECUTE_SELECTOR:
            _LOGGER.debug("Rejecting operation for %s: unexpected envelope 0x%s", account, envelope_selector.hex())
            return ValidationStatus.FAILURE
        if not self.capabilities.is_allowed(account, target, inner_selector):
            _LOGGER.debug("Rejecting operation for %s: 0x%s on %s not allowed", account, inner_selector.hex(), target)
            return ValidationStatus.FAILURE

        if not signed_by(automation_key, bytes(operation_hash), bytes(operation.signature)):
            _LOGGER.debug("Rejecting operation for %s: signer is not the automation key", account)
            return ValidationStatus.FAILURE
        return ValidationStatus.SUCCESS

    def is_valid_signature(self, account: str, message_hash: bytes, signature: bytes) -> bytes:
        try:
            automation_key = self.automation_key(account)
        except ValueError:
            return ERC1271_INVALID
        if automation_key is None:
            return ERC1271_INVALID
        if signed_by(automation_key, bytes(message_hash), bytes(signature)):
            return ERC1271_MAGIC_VALUE
        return ERC1271_INVALID


class OwnerValidator(Contract):
    """The owner's ECDSA validator: any call, as long as the owner signed it."""

    def __init__(self, chain: ChainState, address: str) -> None:
        super().__init__(chain, address)
        self.storage.setdefault("owners", {})

    def install(self, account: str, owner: str) -> None:
        account = to_checksum(account)
        if account in self.storage["owners"]:
            raise AlreadyInitialized(f"Owner validator already installed for {account}")
        self.storage["owners"][account] = to_checksum(owner)

    def owner_of(self, account: str) -> Optional[str]:
        return self.storage["owners"].get(to_checksum(account))

    def validate(self, operation: AnyUserOperation, operation_hash: bytes) -> ValidationStatus:
        try:
            owner = self.owner_of(operation.sender)
        except ValueError:
            return ValidationStatus.FAILURE
        if owner is None or not signed_by(owner, bytes(operation_hash), bytes(operation.signature)):
            return ValidationStatus.FAILURE
        return ValidationStatus.SUCCESS

    def is_valid_signature(self, account: str, message_hash: bytes, signature: bytes) -> bytes:
        try:
            owner = self.owner_of(account)
        except ValueError:
            return ERC1271_INVALID
        if owner is not None and signed_by(owner, bytes(message_hash), bytes(signature)):
            return ERC1271_MAGIC_VALUE
        return ERC1271_INVALID


def selectors_for(signatures: Iterable[str]) -> List[bytes]:
    return [selector(signature) for signature in signatures]


__all__ = [
    "CapabilityRegistry",
    "MIN_CALL_DATA_LENGTH",
    "OwnerValidator",
    "PermissionValidator",
    "ValidationStatus",
    "parse_call_target",
    "selectors_for",
]
