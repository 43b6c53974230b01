"""
Withdrawal ("unshield") aggregation across several owner identities.

    fetch per identity -> hydrate + tag -> drop unusable -> pick one partition
    -> one validity proof -> checked sum -> decompress ix -> permission patch
    -> optional rent funding for a derived authority
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from services.api.logging_config import get_logger
from services.compression.hydrate import hydrate_accounts
from services.compression.instructions import build_decompress_instruction
from services.compression.permissions import patch_permissions
from services.compression.types import U64_MAX, PooledAccount, TaggedAccount, ValidityProof, proof_inputs
from services.errors import NoFundsError, ProtocolError
from services.rpc.tx import funding_instruction

logger = get_logger("unshield")

SOURCE_STEALTH = "stealth"
SOURCE_WALLET = "wallet"
SOURCE_REGISTRY = "registry"
PRIORITY = (SOURCE_STEALTH, SOURCE_WALLET, SOURCE_REGISTRY)

# Largest input set the V1 inclusion circuits prove in one go.
MAX_INPUTS_PER_WITHDRAWAL = 4


@dataclass(frozen=True)
class OwnerCandidate:
    source: str
    pubkey: Pubkey
    keypair: Optional[Keypair] = field(default=None, repr=False)
    # the connected wallet signs through its signer, not a local keypair
    wallet_signed: bool = False

    @property
    def can_sign(self) -> bool:
        return self.keypair is not None or self.wallet_signed


@dataclass(frozen=True)
class UnshieldPlan:
    instruction: Instruction
    funding: Optional[Instruction]
    authority: OwnerCandidate
    destination: Pubkey
    inputs: Tuple[PooledAccount, ...]
    total_lamports: int
    proof: ValidityProof
    skipped: int = 0
    remaining: int = 0

    @property
    def secondary_signers(self) -> List[Keypair]:
        return [self.authority.keypair] if self.authority.keypair is not None else []


def checked_sum(values: Sequence[int]) -> int:
    total = 0
    for v in values:
        if v < 0:
            raise ProtocolError(f"Negative lamports value {v}")
        total += v
        if total > U64_MAX:
            raise ProtocolError("Pooled balance overflows u64", details={"partial": total})
    return total


def is_withdrawable(acc: PooledAccount) -> bool:
    return acc.tree_info is not None and acc.tree_info.is_supported and not acc.has_data


def partition(tagged: Sequence[TaggedAccount]) -> Dict[str, List[PooledAccount]]:
    parts: Dict[str, List[PooledAccount]] = {}
    for t in tagged:
        parts.setdefault(t.source, []).append(t.account)
    return parts


def dedupe_candidates(candidates: Sequence[OwnerCandidate]) -> List[OwnerCandidate]:
    """One candidate per key; the higher-priority source (and its signer) wins."""
    ordered = sorted(candidates, key=lambda c: PRIORITY.index(c.source) if c.source in PRIORITY else len(PRIORITY))
    seen: Dict[Pubkey, OwnerCandidate] = {}
    for c in ordered:
        if c.pubkey not in seen:
            seen[c.pubkey] = c
        elif not seen[c.pubkey].can_sign and c.can_sign:
            seen[c.pubkey] = c
    return list(seen.values())


def choose_partition(
    parts: Dict[str, List[PooledAccount]], candidates: Sequence[OwnerCandidate]
) -> Optional[OwnerCandidate]:
    by_source = {c.source: c for c in candidates}
    for source in PRIORITY:
        c = by_source.get(source)
        if c is None or not parts.get(source):
            continue
        if not c.can_sign:
            logger.warning(f"{source} identity {c.pubkey} holds pooled funds but no signing key is available")
            continue
        return c
    return None


class UnshieldAggregator:
    def __init__(self, rpc, rent_safety_margin: int = 10_000) -> None:
        self.rpc = rpc
        self.rent_safety_margin = rent_safety_margin

    async def fetch_tagged(self, candidates: Sequence[OwnerCandidate]) -> List[TaggedAccount]:
        tagged: List[TaggedAccount] = []
        for c in candidates:
            raw = await self.rpc.get_compressed_accounts_by_owner(c.pubkey)
            accounts = hydrate_accounts(raw)
            logger.info(f"{c.source} identity {c.pubkey}: {len(accounts)} pooled accounts")
            tagged.extend(TaggedAccount(account=a, source=c.source) for a in accounts)
        return tagged

    async def plan(
        self,
        fee_payer: Pubkey,
        candidates: Sequence[OwnerCandidate],
        destination: Optional[Pubkey] = None,
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> UnshieldPlan:
        destination = destination or fee_payer
        candidates = dedupe_candidates(candidates)

        tagged = await self.fetch_tagged(candidates)
        usable = [t for t in tagged if is_withdrawable(t.account)]
        skipped = len(tagged) - len(usable)
        if skipped:
            logger.warning(f"Skipping {skipped} pooled accounts in unsupported trees or carrying data")

        chosen = choose_partition(partition(usable), candidates)
        if chosen is None:
            raise NoFundsError(
                "No withdrawable shielded funds found",
                details={"fetched": len(tagged), "skipped": skipped},
            )

        inputs = [t.account for t in usable if t.source == chosen.source]
        inputs.sort(key=lambda a: a.lamports, reverse=True)
        remaining = max(0, len(inputs) - MAX_INPUTS_PER_WITHDRAWAL)
        if remaining:
            logger.warning(f"{remaining} pooled accounts left for a later withdrawal")
        inputs = inputs[:MAX_INPUTS_PER_WITHDRAWAL]

        if on_stage:
            on_stage("proof_fetch")
        proof = await self.rpc.get_validity_proof(proof_inputs(inputs))
        total = checked_sum([a.lamports for a in inputs])

        raw_ix = build_decompress_instruction(
            fee_payer=fee_payer,
            authority=chosen.pubkey,
            inputs=inputs,
            to_address=destination,
            lamports=total,
            proof=proof,
        )
        required = []
        for a in inputs:
            required += [a.tree_info.tree, a.tree_info.queue]
        patched = patch_permissions(raw_ix, required=required)

        funding = None
        if chosen.pubkey != fee_payer:
            funding = await self.rent_funding(fee_payer, chosen.pubkey)

        logger.info(
            f"Unshield plan: {len(inputs)} inputs from {chosen.source} {chosen.pubkey}, "
            f"{total} lamports to {destination}"
        )
        return UnshieldPlan(
            instruction=patched.instruction,
            funding=funding,
            authority=chosen,
            destination=destination,
            inputs=tuple(inputs),
            total_lamports=total,
            proof=proof,
            skipped=skipped,
            remaining=remaining,
        )

    async def rent_funding(self, payer: Pubkey, authority: Pubkey) -> Optional[Instruction]:
        rent_min = await self.rpc.get_minimum_balance_for_rent_exemption(0)
        balance = await self.rpc.get_balance(authority)
        if balance >= rent_min:
            return None
        amount = rent_min + self.rent_safety_margin
        logger.info(f"Funding derived authority {authority} with {amount} lamports")
        return funding_instruction(payer, authority, amount)
