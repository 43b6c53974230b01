"""
Handle -> recipient key.

Order, first match wins:
    1. a plain base58 public key
    2. ``*.sol``      via the name service
    3. ``*.stealth``  via the on-chain registry (destination, or authority for
                      records that predate the destination field)
    4. anything else is an InvalidAddressError
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import base58
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.crypto_core.codec import RegistryRecord
from services.errors import (
    DomainResolutionError,
    HandleNotRegisteredError,
    InvalidAddressError,
    MalformedAccountError,
)
from services.registry.registry import HANDLE_SUFFIX, ProgramId, fetch_registry_entry, validate_handle
from services.registry.sns import SOL_SUFFIX, DomainResolver, SnsResolver

logger = get_logger("resolver")

INVALID_ADDRESS_MESSAGE = "Invalid Creator Address: Must be a Solana Public Key, .sol, or .stealth domain"

SOURCE_PUBKEY = "pubkey"
SOURCE_SOL = "sol"
SOURCE_STEALTH = "stealth"


def parse_pubkey(value: str) -> Optional[Pubkey]:
    """A 32-byte base58 key, or None."""
    s = value.strip()
    if not 32 <= len(s) <= 44:
        return None
    try:
        raw = base58.b58decode(s)
    except ValueError:
        return None
    if len(raw) != 32:
        return None
    return Pubkey.from_bytes(raw)


@dataclass(frozen=True)
class ResolvedRecipient:
    pubkey: Pubkey
    source: str
    name: str
    record: Optional[RegistryRecord] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)


class HandleResolver:
    def __init__(self, domain_resolver: Optional[DomainResolver] = None,
                 registry_program_id: Optional[ProgramId] = None) -> None:
        self.domain_resolver = domain_resolver or SnsResolver()
        self.registry_program_id = registry_program_id

    async def resolve(self, name: str, rpc, registry_rpc=None) -> ResolvedRecipient:
        """
        ``rpc`` serves name-service lookups, ``registry_rpc`` (default: ``rpc``)
        the registry; they differ when the registry lives on another cluster.
        """
        name = name.strip()

        pk = parse_pubkey(name)
        if pk is not None:
            return ResolvedRecipient(pubkey=pk, source=SOURCE_PUBKEY, name=name)

        lower = name.lower()
        if lower.endswith(SOL_SUFFIX):
            return await self._resolve_sol(name, rpc)
        if lower.endswith(HANDLE_SUFFIX):
            return await self._resolve_stealth(name, registry_rpc or rpc)

        raise InvalidAddressError(INVALID_ADDRESS_MESSAGE, field="username", value=name)

    async def _resolve_sol(self, name: str, rpc) -> ResolvedRecipient:
        try:
            owner = await self.domain_resolver.resolve(name, rpc)
        except DomainResolutionError:
            raise
        except Exception as e:
            logger.warning(f"Domain resolver raised for {name}: {e}")
            raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name) from e
        if owner is None:
            raise DomainResolutionError(f"Could not resolve .sol domain: {name}", name=name)
        return ResolvedRecipient(pubkey=owner, source=SOURCE_SOL, name=name)

    async def _resolve_stealth(self, name: str, rpc) -> ResolvedRecipient:
        handle = validate_handle(name)
        not_found = f"Could not resolve .stealth domain: {name}. Ensure it is registered."
        try:
            rec = await fetch_registry_entry(rpc, handle, self.registry_program_id)
        except MalformedAccountError as e:
            logger.error(f"Registry entry for {handle} is malformed: {e.message}")
            raise HandleNotRegisteredError(not_found, name=name) from e
        if rec is None:
            raise HandleNotRegisteredError(not_found, name=name)

        warnings: Tuple[str, ...] = ()
        if rec.is_legacy:
            msg = f"Registry entry for {handle} has no destination field; paying its authority {rec.authority}"
            logger.warning(msg)
            warnings = (msg,)
        return ResolvedRecipient(
            pubkey=rec.payout_key, source=SOURCE_STEALTH, name=name, record=rec, warnings=warnings
        )
