from __future__ import annotations

import hashlib

import pytest
from solders.keypair import Keypair

from services.crypto_core.stealth import (
    BASE_MESSAGE,
    derive_stealth_identity,
    identity_from_signature,
    identity_message,
)
from services.crypto_core.wallet import KeypairWallet, read_secret_64_from_json_value
from services.errors import IdentityDerivationError, InvalidInputError


class RefusingWallet(KeypairWallet):
    async def sign_message(self, message: bytes) -> bytes:
        raise RuntimeError("User rejected the request")


class ForgingWallet(KeypairWallet):
    async def sign_message(self, message: bytes) -> bytes:
        return bytes(Keypair().sign_message(message))


def test_identity_message_is_stable() -> None:
    assert identity_message() == BASE_MESSAGE.encode()
    assert identity_message("alice") == f"{BASE_MESSAGE} for alice.stealth".encode()


async def test_same_wallet_same_identity(wallet) -> None:
    first = await derive_stealth_identity(wallet)
    second = await derive_stealth_identity(KeypairWallet(Keypair.from_bytes(bytes(wallet.keypair))))

    assert first.pubkey == second.pubkey
    assert first.pubkey != wallet.pubkey


async def test_identity_is_sha256_of_signature(wallet) -> None:
    sig = await wallet.sign_message(identity_message())
    ident = await derive_stealth_identity(wallet)
    assert ident.pubkey == Keypair.from_seed(hashlib.sha256(sig).digest()).pubkey()


async def test_handle_scopes_identity(wallet) -> None:
    plain = await derive_stealth_identity(wallet)
    scoped = await derive_stealth_identity(wallet, "alice")
    assert plain.pubkey != scoped.pubkey
    assert scoped.handle == "alice"


async def test_other_wallet_other_identity(wallet) -> None:
    mine = await derive_stealth_identity(wallet)
    theirs = await derive_stealth_identity(KeypairWallet(Keypair()))
    assert mine.pubkey != theirs.pubkey


async def test_refusal_raises_without_fallback() -> None:
    with pytest.raises(IdentityDerivationError, match="did not sign"):
        await derive_stealth_identity(RefusingWallet(Keypair()))


async def test_signature_from_another_key_is_rejected() -> None:
    with pytest.raises(IdentityDerivationError, match="does not verify"):
        await derive_stealth_identity(ForgingWallet(Keypair()))


def test_short_signature_rejected() -> None:
    with pytest.raises(IdentityDerivationError):
        identity_from_signature(b"\x01" * 63)


def test_secret_key_formats() -> None:
    kp = Keypair()
    raw = bytes(kp)
    assert read_secret_64_from_json_value(list(raw)) == raw
    assert len(read_secret_64_from_json_value(list(raw[:32]))) == 64
    with pytest.raises(InvalidInputError):
        read_secret_64_from_json_value([1, 2, 3])
    with pytest.raises(InvalidInputError):
        read_secret_64_from_json_value({"secret": "nope"})
