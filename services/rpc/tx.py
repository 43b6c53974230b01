"""
Transaction assembly, signing, submission and confirmation.

Instruction order is fixed:

    [compute unit limit, compute unit price, (funding transfer), domain ix]

Secondary authorities (a stealth identity) sign first, the wallet signs last
as fee payer. Submission skips preflight and is retried a bounded number of
times for transient failures only. Confirmation polls the original signature
until the blockhash validity window closes; it never re-sends.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from services.api.logging_config import get_logger
from services.crypto_core.wallet import WalletSigner
from services.errors import (
    NetworkError,
    ProofError,
    RateLimitedError,
    RpcError,
    ServiceUnavailableError,
    SigningError,
    StealthLinkError,
    TransactionExpiredError,
    TransactionFailedError,
    TransientNetworkError,
)

logger = get_logger("tx")

CONFIRMED = ("confirmed", "finalized")


def classify_failure(message: str) -> str:
    """Map a raw failure message to rate_limited / unavailable / network / unknown."""
    low = message.lower()
    if "429" in low or "rate limit" in low or "too many requests" in low:
        return "rate_limited"
    if "503" in low or "502" in low or "unavailable" in low or "overloaded" in low:
        return "unavailable"
    if ("connection" in low or "timeout" in low or "timed out" in low
            or "ECONNREFUSED" in message or "ENOTFOUND" in message):
        return "network"
    return "unknown"


def as_transient(err: StealthLinkError) -> Optional[TransientNetworkError]:
    if isinstance(err, TransientNetworkError):
        return err
    kind = classify_failure(err.message)
    if kind == "rate_limited":
        return RateLimitedError(err.message)
    if kind == "unavailable":
        return ServiceUnavailableError(err.message)
    if kind == "network":
        return NetworkError(err.message)
    return None


def funding_instruction(payer: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=payer, to_pubkey=recipient, lamports=lamports))


@dataclass
class SubmitResult:
    signature: str
    last_valid_block_height: int


class TransactionAssembler:
    def __init__(
        self,
        rpc,
        compute_unit_limit: int = 1_000_000,
        compute_unit_price: int = 1_000,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        confirm_poll: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price = compute_unit_price
        self.max_retries = max(1, min(max_retries, 3))
        self.retry_base_delay = retry_base_delay
        self.confirm_poll = confirm_poll
        self._sleep = sleep

    @classmethod
    def from_settings(cls, rpc, settings) -> "TransactionAssembler":
        return cls(
            rpc,
            compute_unit_limit=settings.compute_unit_limit,
            compute_unit_price=settings.compute_unit_price,
            max_retries=settings.send_max_retries,
            retry_base_delay=settings.retry_base_delay_sec,
            confirm_poll=settings.confirm_poll_sec,
        )

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def compose(self, domain_ix: Instruction, funding: Optional[Instruction] = None) -> List[Instruction]:
        ixs = [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(self.compute_unit_price),
        ]
        if funding is not None:
            ixs.append(funding)
        ixs.append(domain_ix)
        return ixs

    @staticmethod
    def compile(ixs: Sequence[Instruction], fee_payer: Pubkey, blockhash: Hash) -> Transaction:
        msg = Message.new_with_blockhash(list(ixs), fee_payer, blockhash)
        return Transaction.new_unsigned(msg)

    async def build(
        self, fee_payer: Pubkey, domain_ix: Instruction, funding: Optional[Instruction] = None
    ) -> tuple[Transaction, int]:
        blockhash, last_valid = await self.rpc.get_latest_blockhash()
        return self.compile(self.compose(domain_ix, funding), fee_payer, blockhash), last_valid

    # ------------------------------------------------------------------
    # Sign
    # ------------------------------------------------------------------

    async def sign(self, tx: Transaction, wallet: WalletSigner, secondary: Sequence[Keypair] = ()) -> Transaction:
        if secondary:
            tx.partial_sign(list(secondary), tx.message.recent_blockhash)
        try:
            signed = await wallet.sign_transaction(tx)
        except StealthLinkError:
            raise
        except Exception as e:
            raise SigningError(f"Wallet refused to sign the transaction: {e}") from e
        if not signed.is_signed():
            raise SigningError("Transaction is missing required signatures")
        return signed

    # ------------------------------------------------------------------
    # Send / confirm
    # ------------------------------------------------------------------

    async def send(self, tx: Transaction) -> str:
        raw = bytes(tx)
        last: Optional[TransientNetworkError] = None
        for attempt in range(self.max_retries):
            logger.info(f"Sending transaction (attempt {attempt + 1}/{self.max_retries})")
            try:
                return await self.rpc.send_raw_transaction(raw, skip_preflight=True)
            except RpcError as e:
                transient = as_transient(e)
                if transient is None:
                    logger.error(f"Send failed: {e.message}")
                    raise
                last = transient
            except TransientNetworkError as e:
                last = e
            if attempt < self.max_retries - 1:
                wait = self.retry_base_delay * (2 ** attempt)
                logger.warning(f"{last.kind}: {last.message}; retrying in {wait}s")
                await self._sleep(wait)
        logger.error(f"Send failed after {self.max_retries} attempts: {last.message}")
        raise last

    async def confirm(self, signature: str, last_valid_block_height: int) -> None:
        strikes = 0
        while True:
            try:
                status = (await self.rpc.get_signature_statuses([signature]))[0]
                if status:
                    if status.get("err"):
                        await self._raise_failed(signature, status["err"])
                    if status.get("confirmationStatus") in CONFIRMED:
                        logger.info(f"Transaction {signature} {status['confirmationStatus']}")
                        return
                height = await self.rpc.get_block_height()
                strikes = 0
            except TransientNetworkError as e:
                strikes += 1
                if strikes >= self.max_retries:
                    raise
                logger.warning(f"Confirmation poll failed ({e.kind}); polling again")
                await self._sleep(self.confirm_poll)
                continue

            if height > last_valid_block_height:
                raise TransactionExpiredError(
                    f"Transaction {signature} was not confirmed before its blockhash expired",
                    signature=signature,
                    details={"last_valid_block_height": last_valid_block_height, "block_height": height},
                )
            await self._sleep(self.confirm_poll)

    async def _raise_failed(self, signature: str, err) -> None:
        try:
            logs = await self.rpc.get_transaction_logs(signature)
        except StealthLinkError as e:
            logger.warning(f"Could not fetch logs for {signature}: {e.message}")
            logs = []
        for line in logs:
            logger.error(f"[{signature[:8]}] {line}")
        cls = ProofError if any("proof" in line.lower() for line in logs) else TransactionFailedError
        msg = f"Transaction {signature} failed: {err}"
        if cls is ProofError:
            raise ProofError(msg, logs=logs, details={"signature": signature, "err": err})
        raise TransactionFailedError(msg, signature=signature, logs=logs, details={"err": err})

    async def submit(
        self,
        wallet: WalletSigner,
        domain_ix: Instruction,
        funding: Optional[Instruction] = None,
        secondary: Sequence[Keypair] = (),
        on_stage: Optional[Callable[[str], None]] = None,
    ) -> SubmitResult:
        def stage(name: str) -> None:
            if on_stage:
                on_stage(name)

        tx, last_valid = await self.build(wallet.pubkey, domain_ix, funding)
        stage("signing")
        signed = await self.sign(tx, wallet, secondary)
        stage("sending")
        sig = await self.send(signed)
        stage("confirming")
        await self.confirm(sig, last_valid)
        return SubmitResult(signature=sig, last_valid_block_height=last_valid)
