# crypto_core/stealth.py
"""
Deterministic stealth identity.

    seed    = SHA256(signature_by_wallet(fixed message))
    keypair = ed25519 keypair from seed

Ed25519 signatures are deterministic, so the same wallet signing the same
message yields the same identity on any device. Nothing here is persisted;
losing the identity only means signing the message again.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.crypto_core.wallet import WalletSigner
from services.errors import IdentityDerivationError

logger = get_logger("stealth")

SIGNATURE_LEN = 64
BASE_MESSAGE = "Sign this message to generate your Stealth Identity"


def identity_message(handle: Optional[str] = None) -> bytes:
    """The exact bytes the wallet signs. Must never change between releases."""
    if handle:
        return f"{BASE_MESSAGE} for {handle}.stealth".encode("utf-8")
    return BASE_MESSAGE.encode("utf-8")


@dataclass(frozen=True)
class StealthIdentity:
    keypair: Keypair = field(repr=False)
    handle: Optional[str] = None

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    def __repr__(self) -> str:
        return f"StealthIdentity(pubkey={self.pubkey}, handle={self.handle!r})"


def identity_from_signature(signature: bytes, handle: Optional[str] = None) -> StealthIdentity:
    if len(signature) != SIGNATURE_LEN:
        raise IdentityDerivationError(
            f"Expected a {SIGNATURE_LEN}-byte signature, got {len(signature)} bytes"
        )
    seed = hashlib.sha256(signature).digest()
    return StealthIdentity(keypair=Keypair.from_seed(seed), handle=handle)


async def derive_stealth_identity(signer: WalletSigner, handle: Optional[str] = None) -> StealthIdentity:
    """
    Ask the wallet to sign the identity message and derive the keypair.

    Raises IdentityDerivationError if the wallet refuses, cannot sign, or
    returns a signature that does not verify against its own key. There is
    no random fallback: a random key could never be recovered.
    """
    message = identity_message(handle)
    try:
        raw = await signer.sign_message(message)
    except IdentityDerivationError:
        raise
    except Exception as e:
        raise IdentityDerivationError(f"Wallet did not sign the identity message: {e}") from e

    sig = bytes(raw)
    try:
        VerifyKey(bytes(signer.pubkey)).verify(message, sig)
    except (BadSignatureError, ValueError) as e:
        raise IdentityDerivationError("Wallet returned a signature that does not verify") from e

    ident = identity_from_signature(sig, handle)
    logger.info(f"Derived stealth identity {ident.pubkey} for wallet {signer.pubkey}")
    return ident
