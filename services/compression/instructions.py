"""
Deposit (compress) and withdrawal (decompress) instructions for the Light
system program ``invoke`` entrypoint.

Instruction data:
    [8 disc "global:invoke"][u32 len][borsh InstructionDataInvoke]

InstructionDataInvoke:
    proof                         Option<{a[32], b[64], c[32]}>
    input_accounts                Vec<PackedCompressedAccountWithMerkleContext>
    output_accounts               Vec<OutputCompressedAccountWithPackedContext>
    relay_fee                     Option<u64>
    new_address_params            Vec<..>            (always empty here)
    compress_or_decompress_lamports Option<u64>
    is_compress                   bool

Account order:
    fee_payer(s,w) authority(s) registered_program_pda noop_program
    account_compression_authority account_compression_program
    sol_pool_pda(w) decompression_recipient(w)|program system_program
    + remaining accounts (trees / queues, referenced by index)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from services.compression.types import U64_MAX, CompressedProof, PooledAccount, TreeInfo, ValidityProof
from services.crypto_core.codec import BorshWriter
from services.errors import InvalidAmountError, ProofError

LIGHT_SYSTEM_PROGRAM_ID = Pubkey.from_string("SySTEM1eSU2p4BGQfQpimFEWWSC1XDFeun3Nqzz3rT7")
ACCOUNT_COMPRESSION_PROGRAM_ID = Pubkey.from_string("compr6CUsB5m2jS4Y3831ztGSTnDpnKJTKS95d64XVq")
NOOP_PROGRAM_ID = Pubkey.from_string("noopb9bkMVfRPU8AsbpTUg8AQkHtKwMYZiFUjNRtMmV")
REGISTERED_PROGRAM_PDA = Pubkey.from_string("35hkDgaAKwMCaxRz2ocSZ6NaUrtKkyNqU6c4RV3tYJRh")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")

# sha256("global:invoke")[0..8]
INVOKE_DISCRIMINATOR = bytes([26, 16, 169, 7, 21, 202, 242, 25])


def account_compression_authority() -> Pubkey:
    return Pubkey.find_program_address([b"cpi_authority"], LIGHT_SYSTEM_PROGRAM_ID)[0]


def sol_pool_pda() -> Pubkey:
    return Pubkey.find_program_address([b"sol_pool_pda"], LIGHT_SYSTEM_PROGRAM_ID)[0]


class PackedAccounts:
    """Remaining-accounts list; each key appears once and is referenced by index."""

    def __init__(self) -> None:
        self._index: Dict[Pubkey, int] = {}
        self._metas: List[AccountMeta] = []

    def insert(self, key: Pubkey, writable: bool = False) -> int:
        idx = self._index.get(key)
        if idx is None:
            idx = len(self._metas)
            self._index[key] = idx
            self._metas.append(AccountMeta(key, is_signer=False, is_writable=writable))
        elif writable and not self._metas[idx].is_writable:
            self._metas[idx] = AccountMeta(key, is_signer=False, is_writable=True)
        return idx

    def to_metas(self) -> List[AccountMeta]:
        return list(self._metas)


@dataclass(frozen=True)
class OutputAccount:
    owner: Pubkey
    lamports: int
    tree_index: int


def _write_proof(w: BorshWriter, p: CompressedProof) -> None:
    w.fixed(p.a, 32).fixed(p.b, 64).fixed(p.c, 32)


def _write_account_body(w: BorshWriter, owner: Pubkey, lamports: int, address: Optional[bytes]) -> None:
    w.pubkey(owner).u64(lamports)
    w.option(address, lambda ww, a: ww.fixed(a, 32))
    w.u8(0)  # data: None


def _encode_invoke(
    proof: Optional[CompressedProof],
    inputs: Sequence[PooledAccount],
    input_indices: Sequence[tuple],
    root_indices: Sequence[int],
    outputs: Sequence[OutputAccount],
    lamports: Optional[int],
    is_compress: bool,
) -> bytes:
    body = BorshWriter()
    body.option(proof, _write_proof)

    body.u32(len(inputs))
    for acc, (tree_idx, queue_idx), root_idx in zip(inputs, input_indices, root_indices):
        _write_account_body(body, acc.owner, acc.lamports, acc.address)
        body.u8(tree_idx).u8(queue_idx).u32(acc.leaf_index or 0).bool(acc.prove_by_index)
        body.u16(root_idx)
        body.bool(False)  # read_only

    body.u32(len(outputs))
    for out in outputs:
        _write_account_body(body, out.owner, out.lamports, None)
        body.u8(out.tree_index)

    body.u8(0)   # relay_fee: None
    body.u32(0)  # new_address_params
    body.option(lamports, lambda ww, v: ww.u64(v))
    body.bool(is_compress)

    payload = body.to_bytes()
    return BorshWriter().raw(INVOKE_DISCRIMINATOR).u32(len(payload)).raw(payload).to_bytes()


def _static_metas(fee_payer: Pubkey, authority: Pubkey, recipient: Optional[Pubkey]) -> List[AccountMeta]:
    metas = [AccountMeta(fee_payer, is_signer=True, is_writable=True)]
    if authority != fee_payer:
        metas.append(AccountMeta(authority, is_signer=True, is_writable=False))
    else:
        metas.append(AccountMeta(authority, is_signer=True, is_writable=True))
    metas += [
        AccountMeta(REGISTERED_PROGRAM_PDA, is_signer=False, is_writable=False),
        AccountMeta(NOOP_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(account_compression_authority(), is_signer=False, is_writable=False),
        AccountMeta(ACCOUNT_COMPRESSION_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(sol_pool_pda(), is_signer=False, is_writable=True),
    ]
    if recipient is not None:
        metas.append(AccountMeta(recipient, is_signer=False, is_writable=True))
    else:
        metas.append(AccountMeta(LIGHT_SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False))
    metas.append(AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False))
    return metas


def build_compress_instruction(payer: Pubkey, recipient: Pubkey, lamports: int, output_tree: TreeInfo) -> Instruction:
    """Move ``lamports`` from ``payer`` into one pooled account owned by ``recipient``."""
    if lamports <= 0 or lamports > U64_MAX:
        raise InvalidAmountError("Invalid amount", field="amount", value=lamports)
    packed = PackedAccounts()
    tree_idx = packed.insert(output_tree.tree, writable=True)
    data = _encode_invoke(
        proof=None,
        inputs=[],
        input_indices=[],
        root_indices=[],
        outputs=[OutputAccount(owner=recipient, lamports=lamports, tree_index=tree_idx)],
        lamports=lamports,
        is_compress=True,
    )
    metas = _static_metas(payer, payer, None) + packed.to_metas()
    return Instruction(LIGHT_SYSTEM_PROGRAM_ID, data, metas)


def build_decompress_instruction(
    fee_payer: Pubkey,
    authority: Pubkey,
    inputs: Sequence[PooledAccount],
    to_address: Pubkey,
    lamports: int,
    proof: ValidityProof,
) -> Instruction:
    """
    Consume ``inputs`` (all owned by ``authority``) and credit ``lamports`` to
    ``to_address``. ``lamports`` must equal the input sum: no change output is
    written, so any difference would be value created or destroyed.

    Trees and queues are packed read-only; callers must run the permission
    patch before submitting.
    """
    if not inputs:
        raise InvalidAmountError("No pooled accounts to withdraw", field="inputs")
    total = sum(a.lamports for a in inputs)
    if total != lamports:
        raise InvalidAmountError(
            f"Withdrawal amount {lamports} does not match input total {total}", field="lamports", value=lamports
        )
    if len(proof.root_indices) != len(inputs):
        raise ProofError(
            f"Proof has {len(proof.root_indices)} root indices for {len(inputs)} inputs",
            details={"root_indices": len(proof.root_indices), "inputs": len(inputs)},
        )

    packed = PackedAccounts()
    indices = []
    for acc in inputs:
        if acc.tree_info is None:
            raise ProofError(f"Pooled account {acc.hash:#x} has no tree info")
        indices.append((packed.insert(acc.tree_info.tree), packed.insert(acc.tree_info.queue)))

    data = _encode_invoke(
        proof=proof.compressed_proof,
        inputs=list(inputs),
        input_indices=indices,
        root_indices=list(proof.root_indices),
        outputs=[],
        lamports=lamports,
        is_compress=False,
    )
    metas = _static_metas(fee_payer, authority, to_address) + packed.to_metas()
    return Instruction(LIGHT_SYSTEM_PROGRAM_ID, data, metas)
