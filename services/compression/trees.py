"""Pool-tree discovery and output-tree selection."""
from __future__ import annotations

from typing import Iterable, List, Sequence

from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.compression.types import SUPPORTED_TREE_TYPE, TreeInfo, TreeType
from services.errors import ConfigurationError, MalformedAccountError, NoCompatibleTreeError

logger = get_logger("trees")

# Address lookup table account: 56-byte metadata header, then packed 32-byte keys.
LOOKUP_TABLE_META_SIZE = 56
PUBKEY_LEN = 32

NO_TREE_MESSAGE = "No compatible state trees available for shielding. Please try again later."


def decode_lookup_table_addresses(data: bytes) -> List[Pubkey]:
    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise MalformedAccountError(f"lookup table too short: {len(data)} bytes")
    body = data[LOOKUP_TABLE_META_SIZE:]
    if len(body) % PUBKEY_LEN:
        raise MalformedAccountError(f"lookup table body not a multiple of {PUBKEY_LEN}: {len(body)}")
    return [Pubkey.from_bytes(body[i:i + PUBKEY_LEN]) for i in range(0, len(body), PUBKEY_LEN)]


def trees_from_lookup_table(data: bytes) -> List[TreeInfo]:
    """
    The state-tree lookup table lists (tree, queue, cpi_context) triplets.
    Every tree it lists is a V1 state tree.
    """
    addrs = decode_lookup_table_addresses(data)
    if len(addrs) % 3:
        logger.warning(f"State tree lookup table holds {len(addrs)} keys; ignoring trailing partial entry")
    return [
        TreeInfo(tree=addrs[i], queue=addrs[i + 1], tree_type=TreeType.STATE_V1, cpi_context=addrs[i + 2])
        for i in range(0, len(addrs) - len(addrs) % 3, 3)
    ]


def parse_extra_tree(entry: str) -> TreeInfo:
    """Parse an operator-configured ``tree:queue:type[:cpi]`` entry."""
    parts = [p.strip() for p in entry.split(":")]
    if len(parts) not in (3, 4):
        raise ConfigurationError(f"EXTRA_STATE_TREES entry must be tree:queue:type[:cpi], got {entry!r}")
    try:
        return TreeInfo(
            tree=Pubkey.from_string(parts[0]),
            queue=Pubkey.from_string(parts[1]),
            tree_type=TreeType.parse(parts[2]),
            cpi_context=Pubkey.from_string(parts[3]) if len(parts) == 4 and parts[3] else None,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid EXTRA_STATE_TREES entry {entry!r}: {e}") from e


def parse_extra_trees(entries: Iterable[str]) -> List[TreeInfo]:
    return [parse_extra_tree(s) for s in entries]


def select_output_tree(trees: Sequence[TreeInfo]) -> TreeInfo:
    """
    First tree of the supported version, in listing order.

    Never falls back to another version: value written there could not be
    withdrawn later.
    """
    for t in trees:
        if t.tree_type == SUPPORTED_TREE_TYPE:
            return t
    versions = sorted({int(t.tree_type) for t in trees})
    logger.error(f"No {SUPPORTED_TREE_TYPE.name} tree among {len(trees)} candidates (types seen: {versions})")
    raise NoCompatibleTreeError(NO_TREE_MESSAGE, details={"candidates": len(trees), "types": versions})

