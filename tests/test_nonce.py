from __future__ import annotations

import pytest

from autopilot_treasury.constants import AUTOMATION_VALIDATOR_ADDRESS, OWNER_VALIDATOR_ADDRESS
from autopilot_treasury.encoding import to_checksum
from autopilot_treasury.nonce import KernelNonceKeyV3, LegacyNonceKey, NonceKey, codec_for, compose_nonce, split_nonce
from autopilot_treasury.signing import AutomationIdentity, OwnerIdentity


def test_v3_layout():
    codec = KernelNonceKeyV3()
    address = int(AUTOMATION_VALIDATOR_ADDRESS, 16)

    key = codec.encode(AUTOMATION_VALIDATOR_ADDRESS, 1, mode=2, sub_key=5)

    assert key == (2 << 184) | (1 << 176) | (address << 16) | 5
    assert key < 1 << 192
    assert codec.decode(key) == NonceKey(to_checksum(AUTOMATION_VALIDATOR_ADDRESS), 1, mode=2, sub_key=5)


def test_legacy_layout_and_restrictions():
    codec = LegacyNonceKey()
    address = int(AUTOMATION_VALIDATOR_ADDRESS, 16)

    key = codec.encode(AUTOMATION_VALIDATOR_ADDRESS, 1)

    assert key == (address << 16) | (1 << 8)
    assert codec.decode(key) == NonceKey(to_checksum(AUTOMATION_VALIDATOR_ADDRESS), 1)
    with pytest.raises(ValueError):
        codec.encode(AUTOMATION_VALIDATOR_ADDRESS, 1, sub_key=1)


def test_codecs_disagree_on_the_same_identity():
    v3 = codec_for("v3").encode(AUTOMATION_VALIDATOR_ADDRESS, 1)
    legacy = codec_for("legacy").encode(AUTOMATION_VALIDATOR_ADDRESS, 1)

    assert v3 != legacy


def test_codec_for_rejects_unknown_versions():
    with pytest.raises(ValueError, match="v2"):
        codec_for("v2")


def test_encode_rejects_oversized_fields():
    codec = KernelNonceKeyV3()

    with pytest.raises(ValueError):
        codec.encode(AUTOMATION_VALIDATOR_ADDRESS, 256)
    with pytest.raises(ValueError):
        codec.encode(AUTOMATION_VALIDATOR_ADDRESS, 1, sub_key=1 << 16)


def test_compose_and_split_nonce():
    key = KernelNonceKeyV3().encode(AUTOMATION_VALIDATOR_ADDRESS, 1)

    nonce = compose_nonce(key, 7)

    assert nonce == (key << 64) | 7
    assert split_nonce(nonce) == (key, 7)
    with pytest.raises(ValueError):
        compose_nonce(key, 1 << 64)


def test_owner_and_automation_identities_use_separate_sequences(owner_account, automation_account):
    codec = KernelNonceKeyV3()
    owner = OwnerIdentity(OWNER_VALIDATOR_ADDRESS, account=owner_account)
    automation = AutomationIdentity(AUTOMATION_VALIDATOR_ADDRESS, account=automation_account)

    owner_key = owner.nonce_key(codec)
    automation_key = automation.nonce_key(codec)

    assert owner_key != automation_key
    assert codec.decode(owner_key).identity_type == 0
    assert codec.decode(automation_key).identity_type == 1
