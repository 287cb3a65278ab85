from __future__ import annotations

import pytest
from eth_utils import keccak

from autopilot_treasury.constants import AUTOMATION_VALIDATOR_ADDRESS, OWNER_VALIDATOR_ADDRESS
from autopilot_treasury.exceptions import ConfigurationError
from autopilot_treasury.signing import (
    AutomationIdentity,
    OwnerIdentity,
    personal_message_hash,
    recover_digest_signer,
    recover_personal_signer,
    sign_digest,
    sign_personal_digest,
    signed_by,
)

DIGEST = keccak(b"operation")


def test_direct_digest_signature_recovers_signer(automation_account):
    signature = sign_digest(automation_account, DIGEST)

    assert len(signature) == 65
    assert signature[64] in (27, 28)
    assert recover_digest_signer(DIGEST, signature) == automation_account.address
    assert recover_personal_signer(DIGEST, signature) != automation_account.address


def test_personal_signature_recovers_through_the_prefix(automation_account):
    signature = sign_personal_digest(automation_account, DIGEST)

    assert recover_personal_signer(DIGEST, signature) == automation_account.address
    assert recover_digest_signer(personal_message_hash(DIGEST), signature) == automation_account.address
    assert recover_digest_signer(DIGEST, signature) != automation_account.address


def test_signed_by_accepts_either_path(automation_account, stranger_account):
    for signature in (sign_digest(automation_account, DIGEST), sign_personal_digest(automation_account, DIGEST)):
        assert signed_by(automation_account.address, DIGEST, signature)
        assert not signed_by(stranger_account.address, DIGEST, signature)


@pytest.mark.parametrize(
    "signature",
    [b"", b"\x00" * 64, b"\x01" * 64 + b"\x05", b"\x01" * 66],
)
def test_malformed_signatures_recover_nothing(signature):
    assert recover_digest_signer(DIGEST, signature) is None
    assert recover_personal_signer(DIGEST, signature) is None
    assert not signed_by("0x" + "11" * 20, DIGEST, signature)


def test_personal_message_hash_requires_32_bytes():
    with pytest.raises(ValueError):
        personal_message_hash(b"short")


def test_identities_sign_with_their_own_key(owner_account, automation_account):
    owner = OwnerIdentity(OWNER_VALIDATOR_ADDRESS, account=owner_account)
    automation = AutomationIdentity(AUTOMATION_VALIDATOR_ADDRESS, account=automation_account)

    assert recover_personal_signer(DIGEST, owner.sign_operation_hash(DIGEST)) == owner_account.address
    assert recover_personal_signer(DIGEST, automation.sign_operation_hash(DIGEST)) == automation_account.address
    assert recover_digest_signer(DIGEST, automation.sign_digest(DIGEST)) == automation_account.address


def test_address_only_owner_cannot_sign(owner_account):
    owner = OwnerIdentity(OWNER_VALIDATOR_ADDRESS, address=owner_account.address)

    assert not owner.can_sign
    with pytest.raises(ConfigurationError):
        owner.sign_operation_hash(DIGEST)


def test_owner_identity_rejects_mismatched_address(owner_account, stranger_account):
    with pytest.raises(ValueError):
        OwnerIdentity(OWNER_VALIDATOR_ADDRESS, account=owner_account, address=stranger_account.address)


def test_automation_identity_requires_a_key():
    with pytest.raises(ConfigurationError):
        AutomationIdentity.from_private_key("", AUTOMATION_VALIDATOR_ADDRESS)


def test_automation_identity_from_private_key(automation_account):
    identity = AutomationIdentity.from_private_key("0x" + "22" * 32, AUTOMATION_VALIDATOR_ADDRESS)

    assert identity.address == automation_account.address
    assert identity.can_sign
