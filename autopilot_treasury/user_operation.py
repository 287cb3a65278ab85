"""User operation envelopes, their two wire shapes and the canonical hash.

The entry point (v0.7) hashes the *packed* shape, where the two gas limits
and the two fee-per-gas values each share a single 32-byte word. Bundler
JSON-RPC speaks the *unpacked* shape with one field per value. Both are
modelled as frozen dataclasses carrying a ``shape`` tag, and conversion
between them is always explicit::

    packed = pack_user_operation(op)
    assert unpack_user_operation(packed) == op

The canonical hash is recomputed from the fields on every call and is never
cached on the envelope.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from eth_abi import encode as abi_encode
from eth_utils import keccak

from .encoding import (
    ADDRESS_LENGTH,
    bytes_to_hex,
    hex_to_bytes,
    pack_uint128,
    parse_quantity,
    to_checksum,
    to_rpc_hex,
    trim_hex,
    unpack_uint128,
)

EMPTY_WORD = b"\x00" * 32
PAYMASTER_FIELDS_LENGTH = ADDRESS_LENGTH + 16 + 16


@dataclass(frozen=True)
class PackedUserOperation:
    """Entry point v0.7 ``PackedUserOperation``."""

    shape: ClassVar[str] = "packed"

    sender: str
    nonce: int
    init_code: bytes = b""
    call_data: bytes = b""
    account_gas_limits: bytes = EMPTY_WORD
    pre_verification_gas: int = 0
    gas_fees: bytes = EMPTY_WORD
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @property
    def verification_gas_limit(self) -> int:
        return unpack_uint128(self.account_gas_limits)[0]

    @property
    def call_gas_limit(self) -> int:
        return unpack_uint128(self.account_gas_limits)[1]

    @property
    def max_priority_fee_per_gas(self) -> int:
        return unpack_uint128(self.gas_fees)[0]

    @property
    def max_fee_per_gas(self) -> int:
        return unpack_uint128(self.gas_fees)[1]

    def with_signature(self, signature: bytes) -> "PackedUserOperation":
        return replace(self, signature=bytes(signature))


@dataclass(frozen=True)
class UserOperation:
    """Unpacked (JSON-RPC) user operation with one field per gas value."""

    shape: ClassVar[str] = "unpacked"

    sender: str
    nonce: int
    call_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    factory: Optional[str] = None
    factory_data: bytes = b""
    paymaster: Optional[str] = None
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0
    paymaster_data: bytes = b""
    signature: bytes = b""

    @property
    def init_code(self) -> bytes:
        if self.factory is None:
            return b""
        return hex_to_bytes(to_checksum(self.factory)) + bytes(self.factory_data)

    @property
    def paymaster_and_data(self) -> bytes:
        if self.paymaster is None:
            return b""
        return build_paymaster_and_data(
            self.paymaster,
            self.paymaster_verification_gas_limit,
            self.paymaster_post_op_gas_limit,
            self.paymaster_data,
        )

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=bytes(signature))


AnyUserOperation = Union[PackedUserOperation, UserOperation]


def build_paymaster_and_data(
    paymaster: str,
    verification_gas_limit: int,
    post_op_gas_limit: int,
    paymaster_data: bytes,
) -> bytes:
    """``paymaster(20) || verificationGasLimit(16) || postOpGasLimit(16) || data``."""

    gas_word = pack_uint128(verification_gas_limit, post_op_gas_limit)
    return hex_to_bytes(to_checksum(paymaster)) + gas_word + bytes(paymaster_data)


def split_paymaster_and_data(paymaster_and_data: bytes) -> Tuple[Optional[str], int, int, bytes]:
    raw = bytes(paymaster_and_data)
    if not raw:
        return None, 0, 0, b""
    if len(raw) < PAYMASTER_FIELDS_LENGTH:
        raise ValueError(
            f"paymasterAndData must be at least {PAYMASTER_FIELDS_LENGTH} bytes, received {len(raw)}"
        )
    verification, post_op = unpack_uint128(raw[ADDRESS_LENGTH:PAYMASTER_FIELDS_LENGTH])
    return to_checksum(raw[:ADDRESS_LENGTH]), verification, post_op, raw[PAYMASTER_FIELDS_LENGTH:]


def split_init_code(init_code: bytes) -> Tuple[Optional[str], bytes]:
    raw = bytes(init_code)
    if not raw:
        return None, b""
    if len(raw) < ADDRESS_LENGTH:
        raise ValueError("initCode is shorter than a factory address")
    return to_checksum(raw[:ADDRESS_LENGTH]), raw[ADDRESS_LENGTH:]


def pack_user_operation(op: UserOperation) -> PackedUserOperation:
    if not isinstance(op, UserOperation):
        raise TypeError(f"Expected an unpacked UserOperation, received {type(op).__name__}")
    return PackedUserOperation(
        sender=to_checksum(op.sender),
        nonce=op.nonce,
        init_code=op.init_code,
        call_data=bytes(op.call_data),
        account_gas_limits=pack_uint128(op.verification_gas_limit, op.call_gas_limit),
        pre_verification_gas=op.pre_verification_gas,
        gas_fees=pack_uint128(op.max_priority_fee_per_gas, op.max_fee_per_gas),
        paymaster_and_data=op.paymaster_and_data,
        signature=bytes(op.signature),
    )


def unpack_user_operation(packed: PackedUserOperation) -> UserOperation:
    if not isinstance(packed, PackedUserOperation):
        raise TypeError(f"Expected a PackedUserOperation, received {type(packed).__name__}")
    verification_gas_limit, call_gas_limit = unpack_uint128(packed.account_gas_limits)
    max_priority_fee_per_gas, max_fee_per_gas = unpack_uint128(packed.gas_fees)
    factory, factory_data = split_init_code(packed.init_code)
    paymaster, pm_verification, pm_post_op, paymaster_data = split_paymaster_and_data(packed.paymaster_and_data)
    return UserOperation(
        sender=to_checksum(packed.sender),
        nonce=packed.nonce,
        call_data=bytes(packed.call_data),
        call_gas_limit=call_gas_limit,
        verification_gas_limit=verification_gas_limit,
        pre_verification_gas=packed.pre_verification_gas,
        max_fee_per_gas=max_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
        factory=factory,
        factory_data=factory_data,
        paymaster=paymaster,
        paymaster_verification_gas_limit=pm_verification,
        paymaster_post_op_gas_limit=pm_post_op,
        paymaster_data=paymaster_data,
        signature=bytes(packed.signature),
    )


def as_packed(op: AnyUserOperation) -> PackedUserOperation:
    if op.shape == PackedUserOperation.shape:
        return op  # type: ignore[return-value]
    if op.shape == UserOperation.shape:
        return pack_user_operation(op)  # type: ignore[arg-type]
    raise TypeError(f"Unknown user operation shape {op.shape!r}")


def user_operation_hash(op: AnyUserOperation, entry_point: str, chain_id: int) -> bytes:
    """Return the 32-byte hash the entry point hands to the account's validator."""

    packed = as_packed(op)
    inner = keccak(
        abi_encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                to_checksum(packed.sender),
                packed.nonce,
                keccak(packed.init_code),
                keccak(packed.call_data),
                packed.account_gas_limits,
                packed.pre_verification_gas,
                packed.gas_fees,
                keccak(packed.paymaster_and_data),
            ],
        )
    )
    return keccak(abi_encode(["bytes32", "address", "uint256"], [inner, to_checksum(entry_point), chain_id]))


def serialize_user_operation(op: AnyUserOperation) -> Dict[str, str]:
    """Serialise to the v0.7 JSON-RPC shape expected by bundlers."""

    unpacked = unpack_user_operation(op) if op.shape == PackedUserOperation.shape else op
    result: Dict[str, str] = {
        "sender": to_checksum(unpacked.sender),
        "nonce": to_rpc_hex(unpacked.nonce),
        "callData": bytes_to_hex(unpacked.call_data),
        "callGasLimit": to_rpc_hex(unpacked.call_gas_limit),
        "verificationGasLimit": to_rpc_hex(unpacked.verification_gas_limit),
        "preVerificationGas": to_rpc_hex(unpacked.pre_verification_gas),
        "maxFeePerGas": to_rpc_hex(unpacked.max_fee_per_gas),
        "maxPriorityFeePerGas": to_rpc_hex(unpacked.max_priority_fee_per_gas),
        "signature": bytes_to_hex(unpacked.signature),
    }
    if unpacked.factory is not None:
        result["factory"] = to_checksum(unpacked.factory)
        result["factoryData"] = bytes_to_hex(unpacked.factory_data)
    if unpacked.paymaster is not None:
        result["paymaster"] = to_checksum(unpacked.paymaster)
        result["paymasterVerificationGasLimit"] = to_rpc_hex(unpacked.paymaster_verification_gas_limit)
        result["paymasterPostOpGasLimit"] = to_rpc_hex(unpacked.paymaster_post_op_gas_limit)
        result["paymasterData"] = bytes_to_hex(unpacked.paymaster_data)
    return result


def serialize_packed_user_operation(op: AnyUserOperation) -> Dict[str, str]:
    """Serialise to the packed shape used by sponsor endpoints."""

    packed = as_packed(op)
    return {
        "sender": to_checksum(packed.sender),
        "nonce": to_rpc_hex(packed.nonce),
        "initCode": bytes_to_hex(packed.init_code),
        "callData": bytes_to_hex(packed.call_data),
        "accountGasLimits": bytes_to_hex(packed.account_gas_limits),
        "preVerificationGas": to_rpc_hex(packed.pre_verification_gas),
        "gasFees": bytes_to_hex(packed.gas_fees),
        "paymasterAndData": bytes_to_hex(packed.paymaster_and_data),
        "signature": bytes_to_hex(packed.signature),
    }


def _optional_address(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value in (None, "", "0x"):
        return None
    return to_checksum(value)


def deserialize_user_operation(payload: Mapping[str, Any]) -> UserOperation:
    """Parse the v0.7 JSON-RPC shape; trimmed quantities are re-widened on packing."""

    return UserOperation(
        sender=to_checksum(payload["sender"]),
        nonce=parse_quantity(payload["nonce"]),
        call_data=hex_to_bytes(payload.get("callData")),
        call_gas_limit=parse_quantity(payload.get("callGasLimit", 0)),
        verification_gas_limit=parse_quantity(payload.get("verificationGasLimit", 0)),
        pre_verification_gas=parse_quantity(payload.get("preVerificationGas", 0)),
        max_fee_per_gas=parse_quantity(payload.get("maxFeePerGas", 0)),
        max_priority_fee_per_gas=parse_quantity(payload.get("maxPriorityFeePerGas", 0)),
        factory=_optional_address(payload, "factory"),
        factory_data=hex_to_bytes(payload.get("factoryData")),
        paymaster=_optional_address(payload, "paymaster"),
        paymaster_verification_gas_limit=parse_quantity(payload.get("paymasterVerificationGasLimit") or 0),
        paymaster_post_op_gas_limit=parse_quantity(payload.get("paymasterPostOpGasLimit") or 0),
        paymaster_data=hex_to_bytes(payload.get("paymasterData")),
        signature=hex_to_bytes(payload.get("signature")),
    )


def deserialize_packed_user_operation(payload: Mapping[str, Any]) -> PackedUserOperation:
    return PackedUserOperation(
        sender=to_checksum(payload["sender"]),
        nonce=parse_quantity(payload["nonce"]),
        init_code=hex_to_bytes(payload.get("initCode")),
        call_data=hex_to_bytes(payload.get("callData")),
        account_gas_limits=hex_to_bytes(payload.get("accountGasLimits") or bytes_to_hex(EMPTY_WORD)),
        pre_verification_gas=parse_quantity(payload.get("preVerificationGas", 0)),
        gas_fees=hex_to_bytes(payload.get("gasFees") or bytes_to_hex(EMPTY_WORD)),
        paymaster_and_data=hex_to_bytes(payload.get("paymasterAndData")),
        signature=hex_to_bytes(payload.get("signature")),
    )


def trimmed_word_halves(word: bytes) -> Tuple[str, str]:
    """Split a packed word into two trimmed hex quantities (high, low)."""

    raw = bytes(word)
    return trim_hex(raw[:16].hex()), trim_hex(raw[16:].hex())


__all__ = [
    "AnyUserOperation",
    "PackedUserOperation",
    "UserOperation",
    "as_packed",
    "build_paymaster_and_data",
    "deserialize_packed_user_operation",
    "deserialize_user_operation",
    "pack_user_operation",
    "serialize_packed_user_operation",
    "serialize_user_operation",
    "split_init_code",
    "split_paymaster_and_data",
    "trimmed_word_halves",
    "unpack_user_operation",
    "user_operation_hash",
]
