"""Signing identities and signature recovery.

Two identities may sign for the same account: the owner, validated by the
account's ECDSA validator, and the automation key, validated by the
permission validator. They are distinct types so that an owner nonce can
never be paired with an automation signature (or vice versa).
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import keccak

from .encoding import to_checksum
from .exceptions import ConfigurationError
from .nonce import NonceKeyCodec

if TYPE_CHECKING:  # pragma: no cover - typing only
    from eth_account.signers.local import LocalAccount
else:
    LocalAccount = Any

PERSONAL_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"
SIGNATURE_LENGTH = 65


def personal_message_hash(digest: bytes) -> bytes:
    """EIP-191 hash of a raw 32-byte digest, as wallets sign it."""

    if len(digest) != 32:
        raise ValueError("Digest must be 32 bytes")
    return keccak(PERSONAL_MESSAGE_PREFIX + bytes(digest))


def sign_digest(account: LocalAccount, digest: bytes) -> bytes:
    """Sign ``digest`` directly (no prefix); returns ``r || s || v`` with ``v`` in {27, 28}."""

    if len(digest) != 32:
        raise ValueError("Digest must be 32 bytes")
    signature = keys.PrivateKey(bytes(account.key)).sign_msg_hash(bytes(digest))
    return signature.r.to_bytes(32, "big") + signature.s.to_bytes(32, "big") + bytes([signature.v + 27])


def sign_personal_digest(account: LocalAccount, digest: bytes) -> bytes:
    signed = account.sign_message(encode_defunct(primitive=bytes(digest)))
    return bytes(signed.signature)


def recover_digest_signer(digest: bytes, signature: bytes) -> Optional[str]:
    """Recover the signer of ``digest``; ``None`` for any malformed signature."""

    raw = bytes(signature)
    if len(digest) != 32 or len(raw) != SIGNATURE_LENGTH:
        return None
    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        return None
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    try:
        public_key = keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(bytes(digest))
    except (BadSignature, KeyValidationError, ValueError):
        return None
    return to_checksum(public_key.to_checksum_address())


def recover_personal_signer(digest: bytes, signature: bytes) -> Optional[str]:
    if len(digest) != 32:
        return None
    return recover_digest_signer(personal_message_hash(digest), signature)


def signed_by(expected: str, digest: bytes, signature: bytes) -> bool:
    """True when either recovery path yields ``expected``."""

    wanted = to_checksum(expected)
    for recovered in (recover_digest_signer(digest, signature), recover_personal_signer(digest, signature)):
        if recovered is not None and recovered == wanted:
            return True
    return False


class SigningIdentity:
    """An address that signs operations through one specific validator."""

    identity_type: ClassVar[int]
    role: ClassVar[str]

    def __init__(
        self,
        validator_address: str,
        *,
        account: Optional[LocalAccount] = None,
        address: Optional[str] = None,
    ) -> None:
        if account is None and address is None:
            raise ValueError(f"{self.role} identity needs an account or an address")
        if account is not None and address is not None and to_checksum(address) != to_checksum(account.address):
            raise ValueError(f"{self.role} address does not match the supplied account")
        self.validator_address = to_checksum(validator_address)
        self._account = account
        self.address = to_checksum(account.address if account is not None else address)  # type: ignore[arg-type]

    @property
    def can_sign(self) -> bool:
        return self._account is not None

    def nonce_key(self, codec: NonceKeyCodec, *, sub_key: int = 0) -> int:
        return codec.encode(self.validator_address, self.identity_type, sub_key=sub_key)

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise ConfigurationError(f"No signing key configured for the {self.role} identity {self.address}")
        return self._account

    def sign_operation_hash(self, operation_hash: bytes) -> bytes:
        """Personal-message signature over the raw operation hash."""

        return sign_personal_digest(self._require_account(), operation_hash)

    def sign_digest(self, digest: bytes) -> bytes:
        return sign_digest(self._require_account(), digest)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(address={self.address!r}, validator={self.validator_address!r})"


class OwnerIdentity(SigningIdentity):
    """The account owner; usually address-only because the wallet signs."""

    identity_type = 0x00
    role = "owner"


class AutomationIdentity(SigningIdentity):
    """The restricted automation key; always holds its private key."""

    identity_type = 0x01
    role = "automation"

    def __init__(self, validator_address: str, *, account: LocalAccount) -> None:
        super().__init__(validator_address, account=account)

    @classmethod
    def from_private_key(cls, private_key: str, validator_address: str) -> "AutomationIdentity":
        if not private_key:
            raise ConfigurationError("Automation private key is not configured")
        return cls(validator_address, account=Account.from_key(private_key))


__all__ = [
    "AutomationIdentity",
    "OwnerIdentity",
    "SigningIdentity",
    "personal_message_hash",
    "recover_digest_signer",
    "recover_personal_signer",
    "sign_digest",
    "sign_personal_digest",
    "signed_by",
]
