from __future__ import annotations

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from services.compression.instructions import LIGHT_SYSTEM_PROGRAM_ID, NOOP_PROGRAM_ID
from services.compression.permissions import patch_metas, patch_permissions, system_allow_list


def _ix(metas):
    return Instruction(LIGHT_SYSTEM_PROGRAM_ID, b"\x01\x02", metas)


def test_readonly_non_signers_are_upgraded() -> None:
    payer, tree, queue = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    ix = _ix([
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(NOOP_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(tree, is_signer=False, is_writable=False),
        AccountMeta(queue, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ])

    patch = patch_permissions(ix)

    flags = {m.pubkey: m.is_writable for m in patch.instruction.accounts}
    assert flags[tree] and flags[queue]
    assert not flags[NOOP_PROGRAM_ID]
    assert not flags[SYSTEM_PROGRAM_ID]
    assert patch.upgraded == (tree, queue)
    assert patch.changed


def test_missing_required_key_is_appended() -> None:
    payer, tree, cpi = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    ix = _ix([
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(tree, is_signer=False, is_writable=True),
    ])

    patch = patch_permissions(ix, required=[tree, cpi])

    assert patch.appended == (cpi,)
    last = patch.instruction.accounts[-1]
    assert last.pubkey == cpi and last.is_writable and not last.is_signer


def test_patch_does_not_mutate_input() -> None:
    tree = Pubkey.new_unique()
    ix = _ix([AccountMeta(tree, is_signer=False, is_writable=False)])

    patch_permissions(ix, required=[Pubkey.new_unique()])

    assert len(ix.accounts) == 1
    assert not ix.accounts[0].is_writable


def test_monotonic_and_idempotent() -> None:
    signer_ro = Pubkey.new_unique()
    metas = [
        AccountMeta(signer_ro, is_signer=True, is_writable=False),
        AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=False),
    ]
    allow = system_allow_list()
    required = [Pubkey.new_unique()]

    once, _, _ = patch_metas(metas, required, allow)
    twice, upgraded, appended = patch_metas(once, required, allow)

    assert twice == once
    assert upgraded == [] and appended == []
    for before, after in zip(metas, once):
        assert after.pubkey == before.pubkey
        assert after.is_signer == before.is_signer
        assert after.is_writable or not before.is_writable
    assert once[0].is_writable is False


def test_program_data_is_preserved() -> None:
    ix = _ix([AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=False)])
    patch = patch_permissions(ix)
    assert bytes(patch.instruction.data) == b"\x01\x02"
    assert patch.instruction.program_id == LIGHT_SYSTEM_PROGRAM_ID
