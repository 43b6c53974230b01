"""
``.sol`` name resolution against the SPL name service program.

    hashed     = sha256("SPL Name Service" + label)
    domain key = PDA([hashed, class(32 zero bytes), parent], name program)
    record     = [32 parent][32 owner][32 class][data...]

Sub-domains hash "\\0" + label and use the parent domain key as parent.
"""
from __future__ import annotations

import hashlib
from typing import Optional, Protocol

from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.errors import DomainResolutionError, StealthLinkError

logger = get_logger("sns")

NAME_PROGRAM_ID = Pubkey.from_string("namesLPneVptA9Z5rqUDD9tMTWEJwofgaYwp8cawRkX")
SOL_TLD_AUTHORITY = Pubkey.from_string("58PwtjSDuFHuUkYjH9BYnnQKHfwo9reZhC2zMJv9JPkx")
HASH_PREFIX = "SPL Name Service"
SOL_SUFFIX = ".sol"
RECORD_HEADER_LEN = 96
NULL_KEY = Pubkey.default()


class DomainResolver(Protocol):
    async def resolve(self, name: str, rpc) -> Pubkey: ...


def hashed_name(label: str) -> bytes:
    return hashlib.sha256((HASH_PREFIX + label).encode("utf-8")).digest()


def name_account_key(label: str, parent: Optional[Pubkey] = None) -> Pubkey:
    seeds = [hashed_name(label), bytes(32), bytes(parent) if parent else bytes(32)]
    return Pubkey.find_program_address(seeds, NAME_PROGRAM_ID)[0]


def domain_key(name: str) -> Pubkey:
    """Key of the name record for ``alice.sol`` or ``sub.alice.sol``."""
    bare = name[: -len(SOL_SUFFIX)] if name.lower().endswith(SOL_SUFFIX) else name
    labels = bare.split(".")
    if not bare or len(labels) > 2 or not all(labels):
        raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name)
    key = name_account_key(labels[-1], SOL_TLD_AUTHORITY)
    if len(labels) == 2:
        key = name_account_key("\0" + labels[0], key)
    return key


class SnsResolver:
    async def resolve(self, name: str, rpc) -> Pubkey:
        key = domain_key(name)
        try:
            data = await rpc.get_account_info(key)
        except StealthLinkError as e:
            logger.warning(f"Name lookup for {name} failed: {e.message}")
            raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name) from e
        if data is None or len(data) < RECORD_HEADER_LEN:
            raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name)
        owner = Pubkey.from_bytes(data[32:64])
        if owner == NULL_KEY:
            raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name)
        logger.info(f"Resolved {name} -> {owner}")
        return owner
