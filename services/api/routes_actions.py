"""
Donation action endpoint.

    GET|OPTIONS /api/actions/donate/{username}   action descriptor
    POST        /api/actions/donate/{username}   unsigned shield transaction
    GET         /actions.json                    path -> action mapping

Every response carries the action CORS headers; errors are {"error": msg}.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Callable, Dict, Optional
from urllib.parse import urljoin

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from services.api.config import Settings
from services.api.logging_config import get_logger
from services.api.schemas_api import (
    ActionGetRes,
    ActionLinks,
    ActionParameter,
    ActionPostReq,
    ActionPostRes,
    ActionRule,
    ActionsJson,
    ErrorRes,
    LinkedAction,
)
from services.compression.shield import ShieldBuilder, format_sol, sol_to_lamports
from services.errors import (
    ConfigurationError,
    InvalidAddressError,
    InvalidAmountError,
    NoCompatibleTreeError,
    StealthLinkError,
)
from services.registry.resolver import HandleResolver, parse_pubkey
from services.registry.sns import SnsResolver
from services.rpc.client import RpcContext
from services.rpc.tx import TransactionAssembler

logger = get_logger("actions")

router = APIRouter(tags=["actions"])

ACTION_VERSION = "2.1.3"
SHIELD_FAILED_MESSAGE = "Failed to generate shielding transaction. Ensure RPC supports ZK compression."
MISSING_RPC_MESSAGE = "Server Configuration Error: Missing RPC URL"


def action_headers(settings: Settings) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET,POST,PUT,OPTIONS",
        "Access-Control-Allow-Headers": (
            "Content-Type, Authorization, Content-Encoding, Accept-Encoding, "
            "X-Accept-Action-Version, X-Accept-Blockchain-Ids"
        ),
        "Access-Control-Expose-Headers": "X-Action-Version, X-Blockchain-Ids",
        "X-Action-Version": ACTION_VERSION,
        "X-Blockchain-Ids": settings.blockchain_id,
    }


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings read once per process."""
    return Settings.from_env()


def get_handle_resolver(settings: Settings = Depends(get_settings)) -> HandleResolver:
    return HandleResolver(SnsResolver(), registry_program_id=settings.registry_program_id)


RpcFactory = Callable[[str], RpcContext]


def get_rpc_factory(settings: Settings = Depends(get_settings)) -> RpcFactory:
    """Builds a short-lived RpcContext per request for the given URL."""
    def factory(url: str) -> RpcContext:
        return RpcContext.from_settings(settings, url=url)
    return factory


# ============================================================================
# HELPERS
# ============================================================================

def truncate_pubkey(pubkey: str) -> str:
    if len(pubkey) <= 10:
        return pubkey
    return f"{pubkey[:4]}...{pubkey[-4:]}"


def _error(settings: Settings, status: int, message: str) -> JSONResponse:
    return JSONResponse(ErrorRes(error=message).model_dump(), status_code=status, headers=action_headers(settings))


def _resolution_message(username: str, err: StealthLinkError) -> str:
    low = username.lower()
    if low.endswith(".sol"):
        return f"Could not resolve .sol domain: {username}"
    if low.endswith(".stealth"):
        return f"Could not resolve .stealth domain: {username}. Ensure it is registered."
    return err.message


def build_descriptor(username: str, icon_url: str) -> ActionGetRes:
    low = username.lower()
    title = "Donate Privately"
    description = (
        "Support this creator with a shielded donation. Your funds will be compressed "
        "into a private UTXO. Privacy by Default."
    )
    owned = (
        "Support this creator with a shielded donation. Your funds will be compressed "
        f"into a private UTXO owned by {username}. Privacy by Default."
    )
    if low.endswith(".sol") or low.endswith(".stealth"):
        title = f"Donate Privately to {username} (Secure v2)"
        description = owned
    elif parse_pubkey(username) is not None:
        title = f"Donate Privately to {truncate_pubkey(username)} (Secure v2)"
        description = owned
    else:
        title = "Invalid Creator Address"

    base = f"/api/actions/donate/{username}"
    return ActionGetRes(
        title=title,
        icon=icon_url,
        description=description,
        label="Donate 0.1 SOL",
        links=ActionLinks(actions=[
            LinkedAction(label="Donate 0.1 SOL", href=f"{base}?amount=0.1&v=2"),
            LinkedAction(label="Donate 0.5 SOL", href=f"{base}?amount=0.5&v=2"),
            LinkedAction(
                label="Donate Custom Amount",
                href=f"{base}?amount={{amount}}&v=2",
                parameters=[ActionParameter(name="amount", label="Enter amount (SOL)", required=True)],
            ),
        ]),
    )


# ============================================================================
# ROUTES
# ============================================================================

@router.get("/actions.json", response_model=ActionsJson)
def actions_json(settings: Settings = Depends(get_settings)):
    payload = ActionsJson(rules=[
        ActionRule(pathPattern="/donate/*", apiPath="/api/actions/donate/*"),
        ActionRule(pathPattern="/api/actions/**", apiPath="/api/actions/**"),
    ])
    return JSONResponse(payload.model_dump(), headers=action_headers(settings))


@router.api_route("/api/actions/donate/{username}", methods=["GET", "OPTIONS"], response_model=ActionGetRes)
def donate_get(username: str, request: Request, settings: Settings = Depends(get_settings)):
    icon = urljoin(str(request.url), settings.action_icon_path)
    payload = build_descriptor(username, icon)
    return JSONResponse(payload.model_dump(exclude_none=True), headers=action_headers(settings))


@router.post("/api/actions/donate/{username}", response_model=ActionPostRes)
async def donate_post(
    username: str,
    request: Request,
    amount: str = Query("0.1", description="Donation in SOL"),
    settings: Settings = Depends(get_settings),
    resolver: HandleResolver = Depends(get_handle_resolver),
    rpc_factory: RpcFactory = Depends(get_rpc_factory),
):
    try:
        lamports = sol_to_lamports(amount)
    except InvalidAmountError:
        return _error(settings, 400, "Invalid amount")

    try:
        body = ActionPostReq(**(await request.json()))
    except (ValueError, TypeError):
        return _error(settings, 400, "Invalid account")
    payer = parse_pubkey(body.account)
    if payer is None:
        return _error(settings, 400, "Invalid account")

    # Name lookups may use a public endpoint; submission never does.
    is_registry = username.lower().endswith(".stealth")
    try:
        async with rpc_factory(settings.resolution_rpc_url(for_registry=is_registry)) as res_rpc:
            recipient = await resolver.resolve(username, res_rpc)
    except InvalidAddressError as e:
        return _error(settings, 400, e.message)
    except ConfigurationError as e:
        logger.error(f"Misconfigured RPC context: {e.message}")
        return _error(settings, 500, e.message)
    except StealthLinkError as e:
        logger.error(f"Failed to resolve {username}: {e.kind}: {e.message}")
        return _error(settings, 400, _resolution_message(username, e))

    if not settings.rpc_url:
        return _error(settings, 500, MISSING_RPC_MESSAGE)

    logger.info(f"Preparing shield tx: {payer} -> {recipient.pubkey} ({amount} SOL)")
    try:
        async with rpc_factory(settings.rpc_url) as rpc:
            builder = ShieldBuilder(rpc, TransactionAssembler.from_settings(rpc, settings))
            plan = await builder.build(payer, recipient.pubkey, lamports)
    except NoCompatibleTreeError as e:
        return _error(settings, 503, e.message)
    except StealthLinkError as e:
        logger.error(f"Shield build failed: {e.kind}: {e.message}")
        return _error(settings, 500, SHIELD_FAILED_MESSAGE)

    payload = ActionPostRes(
        transaction=plan.to_base64(),
        message=f"Shielding {format_sol(amount)} SOL to private UTXO 🥷",
    )
    return JSONResponse(payload.model_dump(), headers=action_headers(settings))
