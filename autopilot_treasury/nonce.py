"""Versioned codecs for the 192-bit nonce key of an entry point nonce.

The entry point tracks one 64-bit sequence per ``(sender, key)``. Baking the
signing identity into the key gives every identity on an account its own
independent sequence. Callers pick the codec version explicitly through
:func:`codec_for`; it is never inferred from the key itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple, Type

from .encoding import to_checksum

KEY_BITS = 192
SEQUENCE_BITS = 64
KEY_MASK = (1 << KEY_BITS) - 1
SEQUENCE_MASK = (1 << SEQUENCE_BITS) - 1
ADDRESS_MASK = (1 << 160) - 1


@dataclass(frozen=True)
class NonceKey:
    identity_address: str
    identity_type: int
    mode: int = 0
    sub_key: int = 0


class NonceKeyCodec:
    """Encode/decode the identity fields packed into a nonce key."""

    version = ""

    def encode(self, identity_address: str, identity_type: int, *, mode: int = 0, sub_key: int = 0) -> int:
        raise NotImplementedError

    def decode(self, key: int) -> NonceKey:
        raise NotImplementedError

    @staticmethod
    def _check(name: str, value: int, bits: int) -> None:
        if not 0 <= value < (1 << bits):
            raise ValueError(f"{name} {value} does not fit in {bits} bits")


class KernelNonceKeyV3(NonceKeyCodec):
    """``[mode:8][identityType:8][identityAddress:160][subKey:16]``, most significant first."""

    version = "v3"

    def encode(self, identity_address: str, identity_type: int, *, mode: int = 0, sub_key: int = 0) -> int:
        self._check("mode", mode, 8)
        self._check("identity type", identity_type, 8)
        self._check("sub key", sub_key, 16)
        address = int(to_checksum(identity_address), 16)
        return (mode << 184) | (identity_type << 176) | (address << 16) | sub_key

    def decode(self, key: int) -> NonceKey:
        self._check("nonce key", key, KEY_BITS)
        return NonceKey(
            identity_address=to_checksum((key >> 16 & ADDRESS_MASK).to_bytes(20, "big")),
            identity_type=key >> 176 & 0xFF,
            mode=key >> 184 & 0xFF,
            sub_key=key & 0xFFFF,
        )


class LegacyNonceKey(NonceKeyCodec):
    """``identityAddress << 16 | identityType << 8`` as used by the first deployment."""

    version = "legacy"

    def encode(self, identity_address: str, identity_type: int, *, mode: int = 0, sub_key: int = 0) -> int:
        if mode or sub_key:
            raise ValueError("Legacy nonce keys carry neither a mode nor a sub key")
        self._check("identity type", identity_type, 8)
        address = int(to_checksum(identity_address), 16)
        return (address << 16) | (identity_type << 8)

    def decode(self, key: int) -> NonceKey:
        self._check("nonce key", key, KEY_BITS)
        return NonceKey(
            identity_address=to_checksum((key >> 16 & ADDRESS_MASK).to_bytes(20, "big")),
            identity_type=key >> 8 & 0xFF,
        )


_CODECS: Dict[str, Type[NonceKeyCodec]] = {
    KernelNonceKeyV3.version: KernelNonceKeyV3,
    LegacyNonceKey.version: LegacyNonceKey,
}


def codec_for(version: str) -> NonceKeyCodec:
    try:
        return _CODECS[version]()
    except KeyError:
        raise ValueError(f"Unknown nonce key version {version!r}; expected one of {sorted(_CODECS)}") from None


def compose_nonce(key: int, sequence: int) -> int:
    if not 0 <= key <= KEY_MASK:
        raise ValueError("Nonce key does not fit in 192 bits")
    if not 0 <= sequence <= SEQUENCE_MASK:
        raise ValueError("Nonce sequence does not fit in 64 bits")
    return (key << SEQUENCE_BITS) | sequence


def split_nonce(nonce: int) -> Tuple[int, int]:
    return nonce >> SEQUENCE_BITS, nonce & SEQUENCE_MASK


__all__ = [
    "KernelNonceKeyV3",
    "LegacyNonceKey",
    "NonceKey",
    "NonceKeyCodec",
    "codec_for",
    "compose_nonce",
    "split_nonce",
]
