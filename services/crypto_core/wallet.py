# crypto_core/wallet.py
"""Wallet signer interface and a local keypair-file implementation."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from services.errors import InvalidInputError


@runtime_checkable
class WalletSigner(Protocol):
    """What the engine needs from a wallet: a key, message signing, tx signing."""

    @property
    def pubkey(self) -> Pubkey: ...

    async def sign_message(self, message: bytes) -> bytes: ...

    async def sign_transaction(self, tx: Transaction) -> Transaction: ...


class KeypairWallet:
    """Wallet backed by an in-process ed25519 keypair (CLI, tests, scripts)."""

    def __init__(self, keypair: Keypair) -> None:
        self._kp = keypair

    @property
    def pubkey(self) -> Pubkey:
        return self._kp.pubkey()

    @property
    def keypair(self) -> Keypair:
        return self._kp

    async def sign_message(self, message: bytes) -> bytes:
        return bytes(self._kp.sign_message(message))

    async def sign_transaction(self, tx: Transaction) -> Transaction:
        tx.partial_sign([self._kp], tx.message.recent_blockhash)
        return tx

    def __repr__(self) -> str:
        return f"KeypairWallet({self.pubkey})"


def read_secret_64_from_json_value(raw: Any) -> bytes:
    """
    Accept a JSON list[64] (solana-keygen format), a list[32] seed,
    or a base58 string of either length.
    """
    if isinstance(raw, list):
        b = bytes(int(x) & 0xFF for x in raw)
    elif isinstance(raw, str):
        try:
            b = base58.b58decode(raw.strip())
        except ValueError as e:
            raise InvalidInputError(f"Secret key is not valid base58: {e}", field="keypair") from e
    else:
        raise InvalidInputError("Unsupported secret key format", field="keypair")

    if len(b) == 32:
        return bytes(Keypair.from_seed(b))
    if len(b) != 64:
        raise InvalidInputError(f"Secret key must be 32 or 64 bytes, got {len(b)}", field="keypair")
    return b


def load_keypair(path: str | Path) -> Keypair:
    p = Path(path).expanduser()
    try:
        raw = json.loads(p.read_text())
    except FileNotFoundError as e:
        raise InvalidInputError(f"Keypair file not found: {p}", field="keypair") from e
    except json.JSONDecodeError:
        raw = p.read_text().strip()
    return Keypair.from_bytes(read_secret_64_from_json_value(raw))
