"""
Account-permission patch for withdrawal instructions.

The pooled-ledger program writes to the input trees, their queues and any
CPI context while nullifying. Builders are free to hand those over
read-only, so every non-signer account outside the fixed set of program /
system ids is upgraded to writable, and any required key the builder left
out is appended as writable.

``patch_permissions`` never mutates its argument. It is monotonic (nothing
is ever downgraded) and idempotent.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import CLOCK, INSTRUCTIONS, RENT

from services.api.logging_config import get_logger
from services.compression.instructions import (
    ACCOUNT_COMPRESSION_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    LIGHT_SYSTEM_PROGRAM_ID,
    NOOP_PROGRAM_ID,
    REGISTERED_PROGRAM_PDA,
    account_compression_authority,
)

logger = get_logger("permissions")


def system_allow_list() -> FrozenSet[Pubkey]:
    return frozenset({
        SYSTEM_PROGRAM_ID,
        COMPUTE_BUDGET_PROGRAM_ID,
        LIGHT_SYSTEM_PROGRAM_ID,
        ACCOUNT_COMPRESSION_PROGRAM_ID,
        NOOP_PROGRAM_ID,
        REGISTERED_PROGRAM_PDA,
        account_compression_authority(),
        CLOCK,
        RENT,
        INSTRUCTIONS,
    })


@dataclass(frozen=True)
class PermissionPatch:
    instruction: Instruction
    upgraded: Tuple[Pubkey, ...]
    appended: Tuple[Pubkey, ...]

    @property
    def changed(self) -> bool:
        return bool(self.upgraded or self.appended)


def patch_metas(
    metas: Sequence[AccountMeta],
    required: Iterable[Pubkey] = (),
    allow_list: FrozenSet[Pubkey] = frozenset(),
) -> Tuple[List[AccountMeta], List[Pubkey], List[Pubkey]]:
    """Pure transform over account metas; returns (new_metas, upgraded, appended)."""
    out: List[AccountMeta] = []
    upgraded: List[Pubkey] = []
    for m in metas:
        if not m.is_signer and not m.is_writable and m.pubkey not in allow_list:
            out.append(AccountMeta(m.pubkey, is_signer=False, is_writable=True))
            upgraded.append(m.pubkey)
        else:
            out.append(m)

    present = {m.pubkey for m in out}
    appended: List[Pubkey] = []
    for key in required:
        if key not in present:
            out.append(AccountMeta(key, is_signer=False, is_writable=True))
            present.add(key)
            appended.append(key)
    return out, upgraded, appended


def patch_permissions(ix: Instruction, required: Iterable[Pubkey] = ()) -> PermissionPatch:
    metas, upgraded, appended = patch_metas(ix.accounts, required, system_allow_list())
    for key in upgraded:
        logger.warning(f"Permission patch: upgrading {key} to writable")
    for key in appended:
        logger.warning(f"Permission patch: appending missing {key} as writable")
    new_ix = Instruction(ix.program_id, bytes(ix.data), metas)
    return PermissionPatch(instruction=new_ix, upgraded=tuple(upgraded), appended=tuple(appended))
