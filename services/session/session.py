"""
One user session: RPC context, wallet, in-memory stealth identity, a
single-flight guard for transactions and the balance poller.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from solders.pubkey import Pubkey

from services.api.config import Settings
from services.api.logging_config import get_logger
from services.compression.shield import ShieldBuilder, sol_to_lamports
from services.compression.unshield import (
    SOURCE_REGISTRY,
    SOURCE_STEALTH,
    SOURCE_WALLET,
    OwnerCandidate,
    UnshieldAggregator,
    UnshieldPlan,
)
from services.crypto_core.stealth import StealthIdentity, derive_stealth_identity
from services.crypto_core.wallet import WalletSigner
from services.errors import ConcurrentFlowError, SessionClosedError, StealthLinkError
from services.registry.registry import (
    fetch_registry_entry,
    prepare_authority_transfer,
    prepare_registration,
    validate_handle,
)
from services.registry.resolver import HandleResolver, ResolvedRecipient
from services.rpc.tx import TransactionAssembler
from services.session.flow import FlowMachine, FlowState

logger = get_logger("session")

ProgressCallback = Callable[[str, FlowState], None]


class BalancePoller:
    """Calls ``fetch`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        interval: float = 10.0,
        on_update: Optional[Callable[[Any], None]] = None,
    ):
        self.fetch = fetch
        self.interval = interval
        self.on_update = on_update
        self.latest: Any = None
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running:
            logger.warning("Balance poller already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._poll_loop())
        logger.info(f"Balance poller started: interval={self.interval}s")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("Balance poller stopped")

    async def _poll_loop(self):
        while self.running:
            try:
                self.latest = await self.fetch()
                if self.on_update and self.running:
                    self.on_update(self.latest)
            except asyncio.CancelledError:
                break
            except StealthLinkError as e:
                logger.warning(f"Balance poll failed: {e.message}")
            except Exception as e:
                logger.error(f"Balance poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)


@dataclass(frozen=True)
class OperationResult:
    signature: str
    details: Dict[str, Any]


class StealthSession:
    def __init__(
        self,
        rpc,
        wallet: WalletSigner,
        settings: Optional[Settings] = None,
        resolver: Optional[HandleResolver] = None,
        assembler: Optional[TransactionAssembler] = None,
        on_progress: Optional[ProgressCallback] = None,
        owns_rpc: bool = True,
    ) -> None:
        self.settings = settings or Settings()
        self.rpc = rpc
        self.wallet = wallet
        self.resolver = resolver or HandleResolver(registry_program_id=self.settings.registry_program_id)
        self.assembler = assembler or TransactionAssembler.from_settings(rpc, self.settings)
        self.on_progress = on_progress
        self.identity: Optional[StealthIdentity] = None
        self.closed = False
        self._owns_rpc = owns_rpc
        self._rpc_close_pending = False
        self._active: Optional[FlowMachine] = None
        self.poller = BalancePoller(self.balances, interval=self.settings.balance_poll_sec)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "StealthSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        """
        Stop polling, drop the identity and silence progress callbacks.
        A transaction already in flight keeps going; only its UI updates stop.
        """
        if self.closed:
            return
        self.closed = True
        try:
            await self.poller.stop()
        finally:
            self.identity = None
            if self._active is not None:
                self._active.clear_listeners()
            if self._active is not None and self._active.busy:
                self._rpc_close_pending = True
                logger.info("Session closed with an operation in flight; leaving it to finish")
            elif self._owns_rpc:
                await self.rpc.aclose()

    def _begin(self, name: str) -> FlowMachine:
        if self.closed:
            raise SessionClosedError("Session is closed")
        if self._active is not None and self._active.busy:
            raise ConcurrentFlowError(
                f"Another operation ({self._active.name}) is already in progress",
                details={"active": self._active.name, "state": self._active.state.value},
            )
        m = FlowMachine(name)
        if self.on_progress:
            cb = self.on_progress
            m.subscribe(lambda _old, new: cb(name, new))
        self._active = m
        return m

    async def _run(self, name: str, body: Callable[[FlowMachine], Awaitable[OperationResult]]) -> OperationResult:
        m = self._begin(name)
        try:
            result = await body(m)
            m.advance(FlowState.SUCCESS)
            return result
        except Exception as e:
            if m.busy:
                m.fail(e)
            if isinstance(e, StealthLinkError):
                logger.error(f"{name} failed: {e.kind}: {e.message}")
            else:
                logger.error(f"{name} failed unexpectedly: {e}", exc_info=True)
            raise
        finally:
            if self._rpc_close_pending and self._owns_rpc:
                self._rpc_close_pending = False
                await self.rpc.aclose()

    async def start_polling(self, on_update: Optional[Callable[[Dict[str, int]], None]] = None) -> None:
        if self.closed:
            raise SessionClosedError("Session is closed")
        self.poller.on_update = on_update
        await self.poller.start()

    async def stop_polling(self) -> None:
        await self.poller.stop()

    @property
    def state(self) -> FlowState:
        return self._active.state if self._active else FlowState.IDLE

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def derive_identity(self, handle: Optional[str] = None) -> StealthIdentity:
        if self.closed:
            raise SessionClosedError("Session is closed")
        handle = validate_handle(handle) if handle else None
        if self.identity is None or self.identity.handle != handle:
            self.identity = await derive_stealth_identity(self.wallet, handle)
        return self.identity

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def resolve(self, name: str) -> ResolvedRecipient:
        return await self.resolver.resolve(name, self.rpc)

    async def register_handle(self, handle: str) -> OperationResult:
        handle = validate_handle(handle)

        async def body(m: FlowMachine) -> OperationResult:
            m.advance(FlowState.DERIVING_IDENTITY)
            ident = await self.derive_identity(handle)
            m.advance(FlowState.RESOLVING)
            req = await prepare_registration(
                self.rpc, self.wallet.pubkey, handle, ident.pubkey, self.settings.registry_program_id
            )
            res = await self.assembler.submit(self.wallet, req.instruction, on_stage=lambda s: m.advance(FlowState(s)))
            logger.info(f"Registered {req.handle}.stealth -> {ident.pubkey}: {res.signature}")
            return OperationResult(res.signature, {"handle": req.handle, "entry": str(req.entry),
                                                   "destination": str(ident.pubkey)})

        return await self._run("register", body)

    async def transfer_authority(self, handle: str, new_authority: Pubkey) -> OperationResult:
        async def body(m: FlowMachine) -> OperationResult:
            m.advance(FlowState.RESOLVING)
            req = await prepare_authority_transfer(
                self.rpc, self.wallet.pubkey, handle, new_authority, self.settings.registry_program_id
            )
            res = await self.assembler.submit(self.wallet, req.instruction, on_stage=lambda s: m.advance(FlowState(s)))
            return OperationResult(res.signature, {"handle": req.handle, "new_authority": str(new_authority)})

        return await self._run("transfer_authority", body)

    async def shield(self, name: str, amount) -> OperationResult:
        lamports = sol_to_lamports(amount)

        async def body(m: FlowMachine) -> OperationResult:
            m.advance(FlowState.RESOLVING)
            recipient = await self.resolve(name)
            m.advance(FlowState.FETCHING)
            plan = await ShieldBuilder(self.rpc, self.assembler).build(self.wallet.pubkey, recipient.pubkey, lamports)
            m.advance(FlowState.SIGNING)
            signed = await self.assembler.sign(plan.transaction, self.wallet)
            m.advance(FlowState.SENDING)
            sig = await self.assembler.send(signed)
            m.advance(FlowState.CONFIRMING)
            await self.assembler.confirm(sig, plan.last_valid_block_height)
            return OperationResult(sig, {"recipient": str(recipient.pubkey), "lamports": lamports,
                                         "tree": str(plan.tree.tree)})

        return await self._run("shield", body)

    async def unshield_candidates(self, use_stealth: bool = True, handle: Optional[str] = None) -> List[OwnerCandidate]:
        handle = validate_handle(handle) if handle else None
        candidates: List[OwnerCandidate] = []
        if use_stealth:
            ident = await self.derive_identity(handle)
            candidates.append(OwnerCandidate(SOURCE_STEALTH, ident.pubkey, keypair=ident.keypair))
        candidates.append(OwnerCandidate(SOURCE_WALLET, self.wallet.pubkey, wallet_signed=True))

        if handle:
            rec = await fetch_registry_entry(self.rpc, handle, self.settings.registry_program_id)
            if rec is not None:
                known = {c.pubkey: c for c in candidates}
                dest = rec.payout_key
                if rec.destination is not None and rec.authority != rec.destination \
                        and rec.authority == self.wallet.pubkey and dest not in known:
                    logger.warning(
                        f"Registry entry {handle}: destination {dest} differs from authority {rec.authority}; "
                        f"treating destination as authoritative"
                    )
                match = known.get(dest)
                candidates.append(OwnerCandidate(
                    SOURCE_REGISTRY, dest,
                    keypair=match.keypair if match else None,
                    wallet_signed=match.wallet_signed if match else False,
                ))
        return candidates

    async def plan_unshield(self, to: Optional[Pubkey] = None, use_stealth: bool = True,
                            handle: Optional[str] = None,
                            on_stage: Optional[Callable[[str], None]] = None) -> UnshieldPlan:
        candidates = await self.unshield_candidates(use_stealth, handle)
        aggregator = UnshieldAggregator(self.rpc, self.settings.rent_safety_margin_lamports)
        return await aggregator.plan(self.wallet.pubkey, candidates, destination=to, on_stage=on_stage)

    async def unshield(self, to: Optional[Pubkey] = None, use_stealth: bool = True,
                       handle: Optional[str] = None) -> OperationResult:
        handle = validate_handle(handle) if handle else None

        async def body(m: FlowMachine) -> OperationResult:
            if use_stealth:
                m.advance(FlowState.DERIVING_IDENTITY)
                await self.derive_identity(handle)
            m.advance(FlowState.FETCHING)
            plan = await self.plan_unshield(to, use_stealth, handle, on_stage=lambda s: m.advance(FlowState(s)))
            res = await self.assembler.submit(
                self.wallet, plan.instruction, funding=plan.funding, secondary=plan.secondary_signers,
                on_stage=lambda s: m.advance(FlowState(s)),
            )
            return OperationResult(res.signature, {
                "lamports": plan.total_lamports,
                "inputs": len(plan.inputs),
                "authority": str(plan.authority.pubkey),
                "source": plan.authority.source,
                "destination": str(plan.destination),
                "remaining": plan.remaining,
            })

        return await self._run("unshield", body)

    async def balances(self) -> Dict[str, int]:
        out = {
            "wallet_public": await self.rpc.get_balance(self.wallet.pubkey),
            "wallet_shielded": await self.rpc.get_compressed_balance_by_owner(self.wallet.pubkey),
        }
        if self.identity is not None:
            out["stealth_shielded"] = await self.rpc.get_compressed_balance_by_owner(self.identity.pubkey)
        return out
