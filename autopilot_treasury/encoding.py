"""Byte-level helpers shared by the operation builder and the contract models."""
from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3

from .constants import (
    EXEC_MODE_DEFAULT,
    EXECUTE_SIGNATURE,
    EXECUTE_WITH_AUTO_YIELD_SIGNATURE,
    MIGRATE_STRATEGY_SIGNATURE,
    REBALANCE_SIGNATURE,
    SWEEP_DUST_SIGNATURE,
    TRANSFER_SIGNATURE,
)

HexLike = Union[str, bytes, bytearray]

UINT128_MAX = (1 << 128) - 1
ADDRESS_LENGTH = 20
WORD_LENGTH = 32


def selector(signature: str) -> bytes:
    """Return the 4-byte function selector for a canonical signature."""

    return bytes(function_signature_to_4byte_selector(signature))


EXECUTE_SELECTOR = selector(EXECUTE_SIGNATURE)
TRANSFER_SELECTOR = selector(TRANSFER_SIGNATURE)
REBALANCE_SELECTOR = selector(REBALANCE_SIGNATURE)
MIGRATE_STRATEGY_SELECTOR = selector(MIGRATE_STRATEGY_SIGNATURE)
SWEEP_DUST_SELECTOR = selector(SWEEP_DUST_SIGNATURE)
EXECUTE_WITH_AUTO_YIELD_SELECTOR = selector(EXECUTE_WITH_AUTO_YIELD_SIGNATURE)


def to_checksum(value: HexLike) -> str:
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ADDRESS_LENGTH:
            raise ValueError(f"Address must be {ADDRESS_LENGTH} bytes, received {len(value)}")
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise ValueError(f"Expected address-like value, received {value!r}")
    text = value.strip()
    if not text.startswith("0x"):
        text = f"0x{text}"
    if len(text) != 42:
        raise ValueError(f"Address has unexpected length: {value!r}")
    return Web3.to_checksum_address(text.lower())


def hex_to_bytes(value: Optional[HexLike]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


def bytes_to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def to_rpc_hex(value: int) -> str:
    if value < 0:
        raise ValueError("Quantities must be non-negative")
    return hex(value)


def trim_hex(value: str) -> str:
    """Strip leading zero nibbles from a hex quantity, keeping at least ``0x0``."""

    digits = value[2:] if value.startswith(("0x", "0X")) else value
    digits = digits.lstrip("0")
    return f"0x{digits}" if digits else "0x0"


def parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Expected quantity, received {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 0) if value.strip() else 0
    raise ValueError(f"Expected quantity, received {value!r}")


def pack_uint128(high: int, low: int) -> bytes:
    """Pack two 128-bit values into one 32-byte word (``high`` first)."""

    for name, part in (("high", high), ("low", low)):
        if not 0 <= part <= UINT128_MAX:
            raise ValueError(f"{name} value {part} does not fit in 128 bits")
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")


def unpack_uint128(packed: HexLike) -> Tuple[int, int]:
    raw = hex_to_bytes(packed)
    if len(raw) != WORD_LENGTH:
        raise ValueError(f"Packed value must be {WORD_LENGTH} bytes, received {len(raw)}")
    return int.from_bytes(raw[:16], "big"), int.from_bytes(raw[16:], "big")


def encode_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> bytes:
    return selector(signature) + abi_encode(list(types), list(args))


def encode_transfer(to: str, amount: int) -> bytes:
    return TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [to_checksum(to), amount])


def encode_rebalance(asset: str) -> bytes:
    return REBALANCE_SELECTOR + abi_encode(["address"], [to_checksum(asset)])


def encode_migrate_strategy(asset: str, new_strategy: str) -> bytes:
    return MIGRATE_STRATEGY_SELECTOR + abi_encode(
        ["address", "address"], [to_checksum(asset), to_checksum(new_strategy)]
    )


def encode_sweep_dust(router: str, consolidation_asset: str, dust_assets: Sequence[str]) -> bytes:
    return SWEEP_DUST_SELECTOR + abi_encode(
        ["address", "address", "address[]"],
        [to_checksum(router), to_checksum(consolidation_asset), [to_checksum(a) for a in dust_assets]],
    )


def encode_execute_with_auto_yield(asset: str, target: str, value: int, inner_data: bytes) -> bytes:
    return EXECUTE_WITH_AUTO_YIELD_SELECTOR + abi_encode(
        ["address", "address", "uint256", "bytes"],
        [to_checksum(asset), to_checksum(target), value, bytes(inner_data)],
    )


def decode_transfer_amount(inner_data: bytes) -> Optional[int]:
    """Return the amount of a ``transfer(address,uint256)`` call, if that is what it is."""

    data = bytes(inner_data)
    if len(data) < 4 + 2 * WORD_LENGTH or data[:4] != TRANSFER_SELECTOR:
        return None
    _recipient, amount = abi_decode(["address", "uint256"], data[4 : 4 + 2 * WORD_LENGTH])
    return int(amount)


def encode_single_execution(target: str, value: int, data: bytes) -> bytes:
    """``target(20) || value(32) || data`` as consumed by the account's execute."""

    return hex_to_bytes(to_checksum(target)) + value.to_bytes(WORD_LENGTH, "big") + bytes(data)


def decode_single_execution(execution: bytes) -> Tuple[str, int, bytes]:
    if len(execution) < ADDRESS_LENGTH + WORD_LENGTH:
        raise ValueError("Execution payload is shorter than target and value")
    target = to_checksum(execution[:ADDRESS_LENGTH])
    value = int.from_bytes(execution[ADDRESS_LENGTH : ADDRESS_LENGTH + WORD_LENGTH], "big")
    return target, value, bytes(execution[ADDRESS_LENGTH + WORD_LENGTH :])


def encode_account_execute(execution: bytes, mode: bytes = EXEC_MODE_DEFAULT) -> bytes:
    if len(mode) != WORD_LENGTH:
        raise ValueError("Execution mode must be 32 bytes")
    return EXECUTE_SELECTOR + abi_encode(["bytes32", "bytes"], [bytes(mode), bytes(execution)])


def decode_account_execute(call_data: bytes) -> Tuple[bytes, bytes]:
    """Decode ``execute(bytes32,bytes)``, accepting only the canonical encoding.

    Offsets pointing elsewhere, padding that is not zero and trailing bytes
    are all rejected, so the payload decoded here is the one a validator
    reads at fixed offsets.
    """

    data = bytes(call_data)
    if len(data) < 4 or data[:4] != EXECUTE_SELECTOR:
        raise ValueError("Call data is not an execute(bytes32,bytes) call")
    try:
        mode, execution = abi_decode(["bytes32", "bytes"], data[4:])
    except DecodingError as exc:
        raise ValueError(f"Malformed execute call data: {exc}") from exc
    if encode_account_execute(bytes(execution), bytes(mode)) != data:
        raise ValueError("execute call data is not canonically encoded")
    return bytes(mode), bytes(execution)


def build_module_call_data(module: str, module_call: bytes, mode: bytes = EXEC_MODE_DEFAULT) -> bytes:
    """Wrap a treasury module call in the account's single-execution envelope."""

    return encode_account_execute(encode_single_execution(module, 0, module_call), mode)


__all__ = [
    "EXECUTE_SELECTOR",
    "EXECUTE_WITH_AUTO_YIELD_SELECTOR",
    "MIGRATE_STRATEGY_SELECTOR",
    "REBALANCE_SELECTOR",
    "SWEEP_DUST_SELECTOR",
    "TRANSFER_SELECTOR",
    "UINT128_MAX",
    "build_module_call_data",
    "bytes_to_hex",
    "decode_account_execute",
    "decode_single_execution",
    "decode_transfer_amount",
    "encode_account_execute",
    "encode_call",
    "encode_execute_with_auto_yield",
    "encode_migrate_strategy",
    "encode_rebalance",
    "encode_single_execution",
    "encode_sweep_dust",
    "encode_transfer",
    "hex_to_bytes",
    "pack_uint128",
    "parse_quantity",
    "selector",
    "to_checksum",
    "to_rpc_hex",
    "trim_hex",
    "unpack_uint128",
]
