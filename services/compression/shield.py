"""Deposit ("shield") transaction builder."""
from __future__ import annotations

import base64
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

from solders.pubkey import Pubkey
from solders.transaction import Transaction

from services.api.logging_config import get_logger
from services.compression.instructions import build_compress_instruction
from services.compression.trees import select_output_tree
from services.compression.types import U64_MAX, TreeInfo
from services.errors import InvalidAmountError
from services.rpc.tx import TransactionAssembler

logger = get_logger("shield")

LAMPORTS_PER_SOL = 1_000_000_000


def sol_to_lamports(amount: Union[str, float, Decimal]) -> int:
    """Positive, finite SOL amount to lamports (truncated). Zero lamports is invalid."""
    try:
        d = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError("Invalid amount", field="amount", value=amount) from e
    if not d.is_finite() or d <= 0:
        raise InvalidAmountError("Invalid amount", field="amount", value=amount)
    lamports = int((d * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))
    if lamports <= 0 or lamports > U64_MAX:
        raise InvalidAmountError("Invalid amount", field="amount", value=amount)
    return lamports


def format_sol(amount: Union[str, float, Decimal]) -> str:
    return format(Decimal(str(amount)).normalize(), "f")


@dataclass(frozen=True)
class ShieldPlan:
    transaction: Transaction
    tree: TreeInfo
    lamports: int
    last_valid_block_height: int

    def to_base64(self) -> str:
        return base64.b64encode(bytes(self.transaction)).decode("ascii")


class ShieldBuilder:
    """
    Builds an unsigned deposit transaction: compute budget, then a compress
    instruction crediting ``recipient`` inside the first supported tree.
    """

    def __init__(self, rpc, assembler: TransactionAssembler) -> None:
        self.rpc = rpc
        self.assembler = assembler

    async def build(self, payer: Pubkey, recipient: Pubkey, lamports: int) -> ShieldPlan:
        trees = await self.rpc.get_state_tree_infos()
        tree = select_output_tree(trees)
        ix = build_compress_instruction(payer, recipient, lamports, tree)
        tx, last_valid = await self.assembler.build(payer, ix)
        logger.info(f"Shield {lamports} lamports from {payer} to {recipient} via tree {tree.tree}")
        return ShieldPlan(transaction=tx, tree=tree, lamports=lamports, last_valid_block_height=last_valid)
