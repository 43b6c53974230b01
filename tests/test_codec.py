from __future__ import annotations

import hashlib

import pytest
from solders.pubkey import Pubkey

from services.crypto_core.codec import (
    REGISTER_DISCRIMINATOR,
    REGISTRY_ENTRY_DISCRIMINATOR,
    UPDATE_AUTHORITY_DISCRIMINATOR,
    BorshWriter,
    RegistryRecord,
    decode_registry_record,
    encode_register_payload,
    encode_registry_record,
    encode_update_authority_payload,
)
from services.errors import MalformedAccountError


def test_register_discriminator_matches_anchor_hash() -> None:
    assert REGISTER_DISCRIMINATOR == hashlib.sha256(b"global:register").digest()[:8]
    assert UPDATE_AUTHORITY_DISCRIMINATOR == hashlib.sha256(b"global:update_authority").digest()[:8]


def test_register_payload_layout() -> None:
    dest = Pubkey.new_unique()
    payload = encode_register_payload("alice", dest)

    assert payload[:8] == REGISTER_DISCRIMINATOR
    assert int.from_bytes(payload[8:12], "little") == 5
    assert payload[12:17] == b"alice"
    assert payload[17:49] == bytes(dest)
    assert len(payload) == 49


def test_update_authority_payload_layout() -> None:
    new_auth = Pubkey.new_unique()
    payload = encode_update_authority_payload("bob_1", new_auth)
    assert payload[:8] == UPDATE_AUTHORITY_DISCRIMINATOR
    assert payload[12:17] == b"bob_1"
    assert payload[-32:] == bytes(new_auth)


def test_registry_record_with_destination() -> None:
    auth, dest = Pubkey.new_unique(), Pubkey.new_unique()
    data = encode_registry_record(RegistryRecord("alice", auth, dest, bump=254))

    rec = decode_registry_record(data)

    assert rec.handle == "alice"
    assert rec.authority == auth
    assert rec.destination == dest
    assert rec.bump == 254
    assert not rec.is_legacy
    assert rec.payout_key == dest


def test_legacy_record_falls_back_to_authority() -> None:
    auth = Pubkey.new_unique()
    data = encode_registry_record(RegistryRecord("old", auth, None))

    rec = decode_registry_record(data)

    assert rec.destination is None
    assert rec.is_legacy
    assert rec.payout_key == auth


def test_partial_destination_is_treated_as_absent() -> None:
    auth, dest = Pubkey.new_unique(), Pubkey.new_unique()
    full = encode_registry_record(RegistryRecord("carol", auth, dest))
    truncated = full[:-10]

    rec = decode_registry_record(truncated)

    assert rec.destination is None
    assert rec.payout_key == auth


def test_truncated_authority_is_malformed() -> None:
    data = BorshWriter().raw(REGISTRY_ENTRY_DISCRIMINATOR).string("dave").raw(b"\x01" * 10).to_bytes()
    with pytest.raises(MalformedAccountError):
        decode_registry_record(data)


def test_fixed_rejects_wrong_length() -> None:
    with pytest.raises(ValueError):
        BorshWriter().fixed(b"\x00" * 31, 32)
