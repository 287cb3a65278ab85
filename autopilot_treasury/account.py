"""Smart account and entry point models that execute user operations.

The entry point mirrors the v0.7 validation flow closely enough for the
builder's envelopes to be checked end to end: nonce sequence check, canonical
hash, validator selection from the nonce key, then execution through the
account's ``execute`` envelope. Gas accounting and paymaster settlement are
not modelled.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .chain import ChainState, Contract
from .encoding import decode_account_execute, decode_single_execution, to_checksum
from .exceptions import ExecutionReverted, TreasuryError, Unauthorized
from .nonce import NonceKeyCodec, compose_nonce, split_nonce
from .user_operation import AnyUserOperation, as_packed, user_operation_hash
from .validator import ValidationStatus

_LOGGER = logging.getLogger(__name__)


class SmartAccount(Contract):
    """Modular account with validators keyed by the address in the nonce key."""

    def __init__(self, chain: ChainState, address: str, entry_point: str) -> None:
        super().__init__(chain, address)
        self.entry_point = to_checksum(entry_point)
        self.storage.setdefault("validators", {})

    def install_validator(self, validator: Contract, identity_type: int) -> None:
        self.storage["validators"][validator.address] = identity_type

    def uninstall_validator(self, validator_address: str) -> None:
        self.storage["validators"].pop(to_checksum(validator_address), None)

    def validator_for(self, validator_address: str, identity_type: int) -> Optional[Contract]:
        address = to_checksum(validator_address)
        if self.storage["validators"].get(address) != identity_type:
            return None
        return self.chain.contract(address)

    def execute(self, caller: str, mode: bytes, execution: bytes) -> Any:
        if to_checksum(caller) not in (self.entry_point, self.address):
            raise Unauthorized(f"{caller} may not execute through {self.address}")
        target, value, data = decode_single_execution(execution)
        if value:
            raise ExecutionReverted("Executions carrying native value are rejected")
        return self.chain.call(self.address, target, value, data)

    def handle_call(self, caller: str, value: int, data: bytes) -> Any:
        try:
            mode, execution = decode_account_execute(data)
        except ValueError as exc:
            raise ExecutionReverted(str(exc), reason=exc) from exc
        return self.execute(caller, mode, execution)


@dataclass(frozen=True)
class OperationReceipt:
    operation_hash: bytes
    sender: str
    nonce: int
    success: bool
    result: Any = None
    revert_reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "userOpHash": "0x" + self.operation_hash.hex(),
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "success": self.success,
            "reason": self.revert_reason,
        }


class EntryPoint(Contract):
    def __init__(self, chain: ChainState, address: str, *, chain_id: int, codec: NonceKeyCodec) -> None:
        super().__init__(chain, address)
        self.chain_id = chain_id
        self.codec = codec
        self.storage.setdefault("sequences", {})
        self.storage.setdefault("receipts", {})

    def get_nonce(self, sender: str, key: int) -> int:
        sequence = self.storage["sequences"].get((to_checksum(sender), key), 0)
        return compose_nonce(key, sequence)

    def get_receipt(self, operation_hash: bytes) -> Optional[OperationReceipt]:
        return self.storage["receipts"].get(bytes(operation_hash))

    def operation_hash(self, operation: AnyUserOperation) -> bytes:
        return user_operation_hash(operation, self.address, self.chain_id)

    def _validate(self, operation: AnyUserOperation, operation_hash: bytes) -> SmartAccount:
        sender = to_checksum(operation.sender)
        account = self.chain.contract(sender)
        if not isinstance(account, SmartAccount):
            raise ExecutionReverted(f"AA20 account not deployed: {sender}")

        key, sequence = split_nonce(operation.nonce)
        expected = self.storage["sequences"].get((sender, key), 0)
        if sequence != expected:
            raise ExecutionReverted(f"AA25 invalid account nonce: expected {expected}, received {sequence}")

        try:
            decoded = self.codec.decode(key)
        except ValueError as exc:
            raise ExecutionReverted(f"AA24 undecodable nonce key: {exc}", reason=exc) from exc
        validator = account.validator_for(decoded.identity_address, decoded.identity_type)
        if validator is None:
            raise ExecutionReverted(f"AA24 no validator {decoded.identity_address} for identity type {decoded.identity_type}")
        status = validator.validate(operation, operation_hash)  # type: ignore[attr-defined]
        if status != ValidationStatus.SUCCESS:
            raise ExecutionReverted("AA24 signature error")
        return account

    def handle_op(self, operation: AnyUserOperation) -> OperationReceipt:
        """Validate, consume the nonce, then execute; execution failures are recorded, not raised."""

        packed = as_packed(operation)
        operation_hash = self.operation_hash(packed)
        account = self._validate(packed, operation_hash)

        key, sequence = split_nonce(packed.nonce)
        self.storage["sequences"][(account.address, key)] = sequence + 1

        try:
            with self.chain.atomic():
                result = self.chain.call(self.address, account.address, 0, packed.call_data)
        except (TreasuryError, ValueError) as exc:
            _LOGGER.warning("Operation 0x%s reverted: %s", operation_hash.hex(), exc)
            receipt = OperationReceipt(operation_hash, account.address, packed.nonce, False, revert_reason=str(exc))
        else:
            receipt = OperationReceipt(operation_hash, account.address, packed.nonce, True, result=result)
        self.storage["receipts"][operation_hash] = receipt
        _LOGGER.info("Handled operation 0x%s for %s (success=%s)", operation_hash.hex(), account.address, receipt.success)
        return receipt


__all__ = ["EntryPoint", "OperationReceipt", "SmartAccount"]
