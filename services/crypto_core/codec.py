# crypto_core/codec.py
"""
Fixed-layout codecs for the stealth registry and pooled-ledger payloads.

All integers are little-endian. Strings are u32-length-prefixed UTF-8.
Account records and instructions start with an 8-byte Anchor discriminator
(first 8 bytes of sha256("<namespace>:<name>")).

Registry record:
    [8 disc][4 len N][N handle][32 authority][32 destination][1 bump]
Records written by the first program version have no destination field;
readers treat a buffer shorter than 8+4+N+32+32 as "destination absent".
"""
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

from solders.pubkey import Pubkey

from services.errors import MalformedAccountError

T = TypeVar("T")

DISCRIMINATOR_LEN = 8
PUBKEY_LEN = 32


def anchor_discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]


# sha256("global:register")[0..8]
REGISTER_DISCRIMINATOR = bytes([211, 124, 67, 15, 211, 194, 178, 240])
UPDATE_AUTHORITY_DISCRIMINATOR = anchor_discriminator("global", "update_authority")
REGISTRY_ENTRY_DISCRIMINATOR = anchor_discriminator("account", "RegistryEntry")


class BorshWriter:
    """Append-only little-endian writer for Borsh-style payloads."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def raw(self, b: bytes) -> "BorshWriter":
        self._buf += bytes(b)
        return self

    def u8(self, v: int) -> "BorshWriter":
        self._buf += struct.pack("<B", v)
        return self

    def u16(self, v: int) -> "BorshWriter":
        self._buf += struct.pack("<H", v)
        return self

    def u32(self, v: int) -> "BorshWriter":
        self._buf += struct.pack("<I", v)
        return self

    def u64(self, v: int) -> "BorshWriter":
        self._buf += struct.pack("<Q", v)
        return self

    def bool(self, v: bool) -> "BorshWriter":
        return self.u8(1 if v else 0)

    def fixed(self, b: bytes, size: int) -> "BorshWriter":
        b = bytes(b)
        if len(b) != size:
            raise ValueError(f"expected {size} bytes, got {len(b)}")
        return self.raw(b)

    def pubkey(self, pk: Pubkey) -> "BorshWriter":
        return self.fixed(bytes(pk), PUBKEY_LEN)

    def string(self, s: str) -> "BorshWriter":
        data = s.encode("utf-8")
        return self.u32(len(data)).raw(data)

    def option(self, v: Optional[T], write: Callable[["BorshWriter", T], object]) -> "BorshWriter":
        if v is None:
            return self.u8(0)
        self.u8(1)
        write(self, v)
        return self

    def vec(self, items: List[T], write: Callable[["BorshWriter", T], object]) -> "BorshWriter":
        self.u32(len(items))
        for it in items:
            write(self, it)
        return self

    def to_bytes(self) -> bytes:
        return bytes(self._buf)


class BorshReader:
    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, n: int) -> bytes:
        if self.remaining() < n:
            raise MalformedAccountError(
                f"buffer too short: need {n} bytes at offset {self.pos}, have {self.remaining()}"
            )
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(PUBKEY_LEN))


# ---------------------------------------------------------------------------
# Registry record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegistryRecord:
    handle: str
    authority: Pubkey
    destination: Optional[Pubkey]
    bump: Optional[int] = None

    @property
    def is_legacy(self) -> bool:
        return self.destination is None

    @property
    def payout_key(self) -> Pubkey:
        """Destination, or authority for records without a destination field."""
        return self.destination if self.destination is not None else self.authority


def destination_offset(handle_len: int) -> int:
    return DISCRIMINATOR_LEN + 4 + handle_len + PUBKEY_LEN


def encode_registry_record(rec: RegistryRecord, discriminator: bytes = REGISTRY_ENTRY_DISCRIMINATOR) -> bytes:
    w = BorshWriter().fixed(discriminator, DISCRIMINATOR_LEN).string(rec.handle).pubkey(rec.authority)
    if rec.destination is not None:
        w.pubkey(rec.destination)
    if rec.bump is not None:
        w.u8(rec.bump)
    return w.to_bytes()


def decode_registry_record(data: bytes) -> RegistryRecord:
    """
    Decode a registry account buffer.

    The destination is read only if the buffer holds all 32 bytes of it;
    otherwise it is reported absent (pre-destination record).
    Raises MalformedAccountError if even the authority is truncated.
    """
    r = BorshReader(data)
    r.take(DISCRIMINATOR_LEN)
    n = r.u32()
    try:
        handle = r.take(n).decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedAccountError(f"registry handle is not valid UTF-8: {e}") from e
    authority = r.pubkey()

    destination: Optional[Pubkey] = None
    if len(data) >= destination_offset(n) + PUBKEY_LEN:
        destination = r.pubkey()
    bump = r.u8() if r.remaining() >= 1 else None
    return RegistryRecord(handle=handle, authority=authority, destination=destination, bump=bump)


# ---------------------------------------------------------------------------
# Registry instruction payloads
# ---------------------------------------------------------------------------

def encode_register_payload(handle: str, destination: Pubkey) -> bytes:
    return (
        BorshWriter()
        .raw(REGISTER_DISCRIMINATOR)
        .string(handle)
        .pubkey(destination)
        .to_bytes()
    )


def encode_update_authority_payload(handle: str, new_authority: Pubkey) -> bytes:
    return (
        BorshWriter()
        .raw(UPDATE_AUTHORITY_DISCRIMINATOR)
        .string(handle)
        .pubkey(new_authority)
        .to_bytes()
    )
