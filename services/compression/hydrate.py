"""
Normalise raw indexer records into canonical PooledAccount values.

Indexers are not consistent about numeric encodings. A hash or lamports value
may arrive as a decimal string, a 0x-prefixed hex string, a bare hex string,
or a JSON number. The base is chosen as follows:

    1. "0x"/"0X" prefix         -> strip, base 16
    2. any of a-f / A-F present -> base 16
    3. exactly 64 characters    -> base 16 (raw 256-bit hash with no letters)
    4. otherwise                -> base 10

Picking the wrong base does not fail here; it produces a different number that
later fails proof verification. The rules above are therefore not negotiable.

Records are either flat, or carry owner / tree metadata under a nested
``compressedAccount`` object. Both are resolved here, at the boundary, and
nothing past this module sees the raw shapes.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

import base58
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.compression.types import U256_MAX, U64_MAX, PooledAccount, TreeInfo, TreeType
from services.errors import MalformedAccountError

logger = get_logger("hydrate")

HEX_LETTERS = frozenset("abcdefABCDEF")
RAW_HASH_HEX_LEN = 64


def detect_base(s: str) -> tuple[str, int]:
    """Return (digits, base) for a numeric string per the module rules."""
    if s.startswith(("0x", "0X")):
        return s[2:], 16
    if any(ch in HEX_LETTERS for ch in s):
        return s, 16
    if len(s) == RAW_HASH_HEX_LEN:
        return s, 16
    return s, 10


def parse_unsigned(value: Any, field: str, max_value: int = U256_MAX) -> int:
    """Parse an indexer numeric value into a non-negative int."""
    if isinstance(value, bool):
        raise MalformedAccountError(f"{field}: boolean is not a number", details={"field": field})
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            raise MalformedAccountError(f"{field}: empty string", details={"field": field})
        digits, base = detect_base(s)
        try:
            n = int(digits, base)
        except ValueError as e:
            raise MalformedAccountError(
                f"{field}: {value!r} is not a base-{base} number", details={"field": field}
            ) from e
    else:
        raise MalformedAccountError(
            f"{field}: unsupported type {type(value).__name__}", details={"field": field}
        )
    if n < 0 or n > max_value:
        raise MalformedAccountError(f"{field}: {n} out of range", details={"field": field})
    return n


# ---------------------------------------------------------------------------
# Raw shapes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FlatRecord:
    fields: Mapping[str, Any]

    def get(self, *names: str) -> Any:
        for n in names:
            v = self.fields.get(n)
            if v is not None:
                return v
        return None


@dataclass(frozen=True)
class NestedRecord:
    fields: Mapping[str, Any]
    inner: Mapping[str, Any]

    def get(self, *names: str) -> Any:
        for src in (self.fields, self.inner):
            for n in names:
                v = src.get(n)
                if v is not None:
                    return v
        return None


RawAccountRecord = Union[FlatRecord, NestedRecord]


def classify_record(raw: Mapping[str, Any]) -> RawAccountRecord:
    if not isinstance(raw, Mapping):
        raise MalformedAccountError(f"account record must be an object, got {type(raw).__name__}")
    inner = raw.get("compressedAccount")
    if isinstance(inner, Mapping):
        return NestedRecord(fields=raw, inner=inner)
    return FlatRecord(fields=raw)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _pubkey(value: Any, field: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        if isinstance(value, str):
            return Pubkey.from_string(value)
        if isinstance(value, (list, bytes, bytearray)):
            return Pubkey.from_bytes(bytes(value))
    except ValueError as e:
        raise MalformedAccountError(f"{field}: invalid public key {value!r}", details={"field": field}) from e
    raise MalformedAccountError(f"{field}: unsupported key type {type(value).__name__}", details={"field": field})


def _address(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            b = base58.b58decode(value)
        except ValueError as e:
            raise MalformedAccountError(f"address: invalid base58 {value!r}") from e
    elif isinstance(value, (list, bytes, bytearray)):
        b = bytes(value)
    else:
        raise MalformedAccountError(f"address: unsupported type {type(value).__name__}")
    if len(b) != 32:
        raise MalformedAccountError(f"address: expected 32 bytes, got {len(b)}")
    return b


def _data(value: Any) -> Optional[Any]:
    """Keep account data only if it actually carries bytes."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        payload = value.get("data")
        if not payload:
            return None
        if isinstance(payload, str):
            try:
                return base64.b64decode(payload) or None
            except ValueError:
                return payload
        return bytes(payload) or None
    if isinstance(value, (list, bytes, bytearray)):
        return bytes(value) or None
    return value


def _tree_info(rec: RawAccountRecord) -> Optional[TreeInfo]:
    ti = rec.get("treeInfo", "tree_info", "merkleContext")
    if isinstance(ti, Mapping):
        tree, queue = ti.get("tree"), ti.get("queue")
        ttype, cpi = ti.get("treeType", ti.get("tree_type")), ti.get("cpiContext", ti.get("cpi_context"))
    else:
        tree, queue = rec.get("tree", "merkleTree"), rec.get("queue", "nullifierQueue")
        ttype, cpi = rec.get("treeType", "tree_type"), rec.get("cpiContext")

    if tree is None or queue is None:
        return None
    if ttype is None:
        # The tree address says nothing reliable about the version.
        logger.warning(f"Tree {tree} reported without a treeType; treating tree info as absent")
        return None
    try:
        tree_type = TreeType.parse(ttype)
    except ValueError as e:
        raise MalformedAccountError(f"treeType: {e}") from e
    return TreeInfo(
        tree=_pubkey(tree, "treeInfo.tree"),
        queue=_pubkey(queue, "treeInfo.queue"),
        tree_type=tree_type,
        cpi_context=_pubkey(cpi, "treeInfo.cpiContext") if cpi else None,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def hydrate_account(raw: Mapping[str, Any], index: int = 0) -> PooledAccount:
    """Turn one raw indexer record into a PooledAccount."""
    rec = classify_record(raw)

    raw_hash = rec.get("hash")
    if raw_hash is None:
        raise MalformedAccountError(f"Account {index} missing hash", details={"index": index})

    owner = rec.get("owner")
    if owner is None:
        raise MalformedAccountError(f"Account {index} missing owner", details={"index": index})

    raw_lamports = rec.get("lamports")
    if raw_lamports is None:
        raise MalformedAccountError(f"Account {index} missing lamports", details={"index": index})

    leaf = rec.get("leafIndex", "leaf_index")
    return PooledAccount(
        hash=parse_unsigned(raw_hash, "hash"),
        owner=_pubkey(owner, "owner"),
        lamports=parse_unsigned(raw_lamports, "lamports", max_value=U64_MAX),
        tree_info=_tree_info(rec),
        leaf_index=parse_unsigned(leaf, "leafIndex", max_value=U64_MAX) if leaf is not None else None,
        address=_address(rec.get("address")),
        data=_data(rec.get("data")),
        prove_by_index=bool(rec.get("proveByIndex", "prove_by_index") or False),
    )


def hydrate_accounts(items: List[Mapping[str, Any]]) -> List[PooledAccount]:
    out: List[PooledAccount] = []
    for i, raw in enumerate(items):
        try:
            out.append(hydrate_account(raw, i))
        except MalformedAccountError:
            logger.error(f"Failed to hydrate account {i}")
            raise
    return out
