"""
On-chain ``.stealth`` handle registry.

Entry address = PDA(["stealth", handle], registry program). One entry per
handle, created once; only the recorded authority may hand it over.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from services.api.config import STEALTH_REGISTRY_PROGRAM_ID
from services.api.logging_config import get_logger
from services.crypto_core.codec import (
    RegistryRecord,
    decode_registry_record,
    encode_register_payload,
    encode_update_authority_payload,
)
from services.errors import (
    HandleAlreadyRegisteredError,
    HandleNotRegisteredError,
    InvalidHandleError,
    UnauthorizedError,
)

logger = get_logger("registry")

HANDLE_SUFFIX = ".stealth"
MAX_HANDLE_LEN = 32
HANDLE_RE = re.compile(r"[A-Za-z0-9_]+")
REGISTRY_SEED = b"stealth"

ProgramId = Union[str, Pubkey]


def _program(program_id: Optional[ProgramId]) -> Pubkey:
    if program_id is None:
        return Pubkey.from_string(STEALTH_REGISTRY_PROGRAM_ID)
    return program_id if isinstance(program_id, Pubkey) else Pubkey.from_string(program_id)


def strip_suffix(name: str) -> str:
    if name.lower().endswith(HANDLE_SUFFIX):
        return name[: -len(HANDLE_SUFFIX)]
    return name


def validate_handle(handle: str) -> str:
    """Return the bare handle or raise InvalidHandleError."""
    h = strip_suffix(handle.strip())
    if not h:
        raise InvalidHandleError("Handle cannot be empty", field="handle", value=handle)
    if len(h) > MAX_HANDLE_LEN:
        raise InvalidHandleError(f"Handle must be {MAX_HANDLE_LEN} characters or less", field="handle", value=handle)
    if not HANDLE_RE.fullmatch(h):
        raise InvalidHandleError(
            "Handle can only contain letters, numbers, and underscores", field="handle", value=handle
        )
    return h


def derive_registry_address(handle: str, program_id: Optional[ProgramId] = None) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([REGISTRY_SEED, handle.encode("utf-8")], _program(program_id))


def build_register_instruction(
    authority: Pubkey, handle: str, destination: Pubkey, program_id: Optional[ProgramId] = None
) -> Instruction:
    h = validate_handle(handle)
    entry, _ = derive_registry_address(h, program_id)
    return Instruction(
        _program(program_id),
        encode_register_payload(h, destination),
        [
            AccountMeta(authority, is_signer=True, is_writable=True),
            AccountMeta(entry, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def build_update_authority_instruction(
    current_authority: Pubkey, handle: str, new_authority: Pubkey, program_id: Optional[ProgramId] = None
) -> Instruction:
    h = validate_handle(handle)
    entry, _ = derive_registry_address(h, program_id)
    return Instruction(
        _program(program_id),
        encode_update_authority_payload(h, new_authority),
        [
            AccountMeta(entry, is_signer=False, is_writable=True),
            AccountMeta(current_authority, is_signer=True, is_writable=False),
        ],
    )


async def fetch_registry_entry(rpc, handle: str, program_id: Optional[ProgramId] = None) -> Optional[RegistryRecord]:
    h = validate_handle(handle)
    entry, _ = derive_registry_address(h, program_id)
    data = await rpc.get_account_info(entry)
    if data is None:
        return None
    return decode_registry_record(data)


@dataclass(frozen=True)
class RegistrationRequest:
    handle: str
    entry: Pubkey
    instruction: Instruction


async def prepare_registration(
    rpc, authority: Pubkey, handle: str, destination: Pubkey, program_id: Optional[ProgramId] = None
) -> RegistrationRequest:
    h = validate_handle(handle)
    entry, _ = derive_registry_address(h, program_id)
    if await rpc.get_account_info(entry) is not None:
        raise HandleAlreadyRegisteredError(f'Handle "{h}.stealth" is already registered', name=h)
    ix = build_register_instruction(authority, h, destination, program_id)
    logger.info(f"Prepared registration of {h}.stealth -> {destination} (authority {authority})")
    return RegistrationRequest(handle=h, entry=entry, instruction=ix)


async def prepare_authority_transfer(
    rpc, signer: Pubkey, handle: str, new_authority: Pubkey, program_id: Optional[ProgramId] = None
) -> RegistrationRequest:
    h = validate_handle(handle)
    rec = await fetch_registry_entry(rpc, h, program_id)
    if rec is None:
        raise HandleNotRegisteredError(f"Handle {h}.stealth is not registered", name=h)
    if rec.authority != signer:
        raise UnauthorizedError(
            "You are not authorized to modify this handle.",
            details={"handle": h, "authority": str(rec.authority), "signer": str(signer)},
        )
    entry, _ = derive_registry_address(h, program_id)
    ix = build_update_authority_instruction(signer, h, new_authority, program_id)
    logger.info(f"Prepared authority transfer of {h}.stealth: {signer} -> {new_authority}")
    return RegistrationRequest(handle=h, entry=entry, instruction=ix)
