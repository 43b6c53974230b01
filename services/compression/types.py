"""Canonical pooled-ledger (compressed account) types."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, List, Optional, Tuple

from solders.pubkey import Pubkey

U64_MAX = (1 << 64) - 1
U256_MAX = (1 << 256) - 1


class TreeType(IntEnum):
    STATE_V1 = 1
    STATE_V2 = 2
    BATCHED_ADDRESS = 3

    @classmethod
    def parse(cls, value) -> "TreeType":
        """Accept 1/"1"/"StateV1"/"stateV1"/"STATE_V1" style values."""
        if isinstance(value, TreeType):
            return value
        if isinstance(value, int):
            return cls(value)
        s = str(value).strip()
        if s.isdigit():
            return cls(int(s))
        key = s.replace("_", "").lower()
        aliases = {
            "statev1": cls.STATE_V1,
            "v1": cls.STATE_V1,
            "statev2": cls.STATE_V2,
            "v2": cls.STATE_V2,
            "batchedaddress": cls.BATCHED_ADDRESS,
            "addressv2": cls.BATCHED_ADDRESS,
        }
        if key not in aliases:
            raise ValueError(f"unknown tree type {value!r}")
        return aliases[key]


# The only tree version deposits are written to and withdrawals read from.
SUPPORTED_TREE_TYPE = TreeType.STATE_V1


@dataclass(frozen=True)
class TreeInfo:
    tree: Pubkey
    queue: Pubkey
    tree_type: TreeType
    cpi_context: Optional[Pubkey] = None

    @property
    def is_supported(self) -> bool:
        return self.tree_type == SUPPORTED_TREE_TYPE


@dataclass(frozen=True)
class PooledAccount:
    """One unit of shielded value, as observed through the indexer."""

    hash: int
    owner: Pubkey
    lamports: int
    tree_info: Optional[TreeInfo] = None
    leaf_index: Optional[int] = None
    address: Optional[bytes] = None
    data: Optional[Any] = None
    prove_by_index: bool = False

    @property
    def has_data(self) -> bool:
        return bool(self.data)


@dataclass(frozen=True)
class TaggedAccount:
    """A PooledAccount together with the owner identity it was fetched for."""

    account: PooledAccount
    source: str


@dataclass(frozen=True)
class CompressedProof:
    a: bytes
    b: bytes
    c: bytes

    def __post_init__(self) -> None:
        if (len(self.a), len(self.b), len(self.c)) != (32, 64, 32):
            raise ValueError("compressed proof must be a[32], b[64], c[32]")


@dataclass(frozen=True)
class ValidityProof:
    compressed_proof: Optional[CompressedProof]
    root_indices: Tuple[int, ...]
    leaf_indices: Tuple[int, ...] = field(default_factory=tuple)
    prove_by_indices: Tuple[bool, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ProofInput:
    hash: int
    tree: Pubkey
    queue: Pubkey


def proof_inputs(accounts: List[PooledAccount]) -> List[ProofInput]:
    return [ProofInput(a.hash, a.tree_info.tree, a.tree_info.queue) for a in accounts if a.tree_info]
