#!/usr/bin/env python3
# clients/cli/stealth_link.py
# Command-line client for stealth links: resolve, register, shield, unshield.

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Optional

from solders.pubkey import Pubkey

from services.api.config import Settings
from services.api.logging_config import setup_logging
from services.compression.shield import LAMPORTS_PER_SOL
from services.crypto_core.stealth import derive_stealth_identity
from services.crypto_core.wallet import KeypairWallet, load_keypair
from services.errors import StealthLinkError
from services.registry.resolver import HandleResolver, parse_pubkey
from services.rpc.client import RpcContext
from services.session.session import StealthSession

DEFAULT_KEYPAIR = os.path.expanduser(os.environ.get("STEALTH_KEYPAIR", "~/.config/solana/id.json"))


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


def _short(pk: str) -> str:
    return f"{pk[:4]}…{pk[-5:]}" if pk and len(pk) > 10 else pk


def _sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.9f}"


def _pubkey_arg(value: str) -> Pubkey:
    pk = parse_pubkey(value)
    if pk is None:
        raise argparse.ArgumentTypeError(f"not a public key: {value}")
    return pk


def _progress(op: str, state) -> None:
    print(f"{C.DIM}[{op}] {state.value}{C.RST}")


def _session(args, settings: Settings) -> StealthSession:
    wallet = KeypairWallet(load_keypair(args.keypair))
    rpc = RpcContext.from_settings(settings)
    return StealthSession(rpc, wallet, settings=settings, on_progress=_progress)


# ======== Commands ========

async def cmd_resolve(args, settings: Settings) -> None:
    is_registry = args.name.lower().endswith(".stealth")
    async with RpcContext.from_settings(settings, url=settings.resolution_rpc_url(for_registry=is_registry)) as rpc:
        res = await HandleResolver(registry_program_id=settings.registry_program_id).resolve(args.name, rpc)
    print(f"{args.name} -> {C.BOLD}{res.pubkey}{C.RST} (via {res.source})")
    for w in res.warnings:
        print(f"{C.WARN}warning: {w}{C.RST}")


async def cmd_derive(args, settings: Settings) -> None:
    wallet = KeypairWallet(load_keypair(args.keypair))
    ident = await derive_stealth_identity(wallet, args.handle)
    print(f"Wallet          : {wallet.pubkey}")
    print(f"Stealth identity: {C.BOLD}{ident.pubkey}{C.RST}")


async def cmd_register(args, settings: Settings) -> None:
    async with _session(args, settings) as s:
        res = await s.register_handle(args.handle)
    print(f"{C.OK}Registered {res.details['handle']}.stealth -> {res.details['destination']}{C.RST}")
    print(f"Signature: {res.signature}")


async def cmd_transfer_authority(args, settings: Settings) -> None:
    async with _session(args, settings) as s:
        res = await s.transfer_authority(args.handle, args.new_authority)
    print(f"{C.OK}Authority of {res.details['handle']}.stealth -> {res.details['new_authority']}{C.RST}")
    print(f"Signature: {res.signature}")


async def cmd_shield(args, settings: Settings) -> None:
    async with _session(args, settings) as s:
        res = await s.shield(args.name, args.amount)
    print(f"{C.OK}Shielded {_sol(res.details['lamports'])} SOL to {_short(res.details['recipient'])}{C.RST}")
    print(f"Signature: {res.signature}")


async def cmd_balance(args, settings: Settings) -> None:
    async with _session(args, settings) as s:
        if args.stealth:
            await s.derive_identity(args.handle)
        bal = await s.balances()
    print("\n=== BALANCES ===")
    print(f"Wallet (public)   : {_sol(bal['wallet_public'])} SOL")
    print(f"Wallet (shielded) : {_sol(bal['wallet_shielded'])} SOL")
    if "stealth_shielded" in bal:
        print(f"Stealth (shielded): {_sol(bal['stealth_shielded'])} SOL")


async def cmd_unshield(args, settings: Settings) -> None:
    async with _session(args, settings) as s:
        res = await s.unshield(to=args.to, use_stealth=not args.no_stealth, handle=args.handle)
    d = res.details
    print(f"{C.OK}Unshielded {_sol(d['lamports'])} SOL from {d['inputs']} accounts "
          f"({d['source']} {_short(d['authority'])}) to {_short(d['destination'])}{C.RST}")
    if d["remaining"]:
        print(f"{C.WARN}{d['remaining']} pooled accounts remain; run unshield again.{C.RST}")
    print(f"Signature: {res.signature}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stealth-link", description="Private donations via stealth links")
    parser.add_argument("--keypair", default=DEFAULT_KEYPAIR, help="Wallet keypair JSON (64 ints or base58)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING...")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Resolve a key, .sol or .stealth name")
    p.add_argument("name")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("derive", help="Print the stealth identity derived from the wallet")
    p.add_argument("--handle", default=None, help="Handle the identity is bound to")
    p.set_defaults(func=cmd_derive)

    p = sub.add_parser("register", help="Register <handle>.stealth paying out to your stealth identity")
    p.add_argument("handle")
    p.set_defaults(func=cmd_register)

    p = sub.add_parser("transfer-authority", help="Hand a handle over to another authority")
    p.add_argument("handle")
    p.add_argument("new_authority", type=_pubkey_arg)
    p.set_defaults(func=cmd_transfer_authority)

    p = sub.add_parser("shield", help="Shield SOL to a key, .sol or .stealth name")
    p.add_argument("name")
    p.add_argument("amount", help="Amount in SOL")
    p.set_defaults(func=cmd_shield)

    p = sub.add_parser("balance", help="Show public and shielded balances")
    p.add_argument("--stealth", action="store_true", help="Include the stealth identity")
    p.add_argument("--handle", default=None)
    p.set_defaults(func=cmd_balance)

    p = sub.add_parser("unshield", help="Withdraw shielded funds")
    p.add_argument("--to", type=_pubkey_arg, default=None, help="Destination (default: wallet)")
    p.add_argument("--no-stealth", action="store_true", help="Only withdraw funds owned by the wallet")
    p.add_argument("--handle", default=None, help="Handle the stealth identity is bound to")
    p.set_defaults(func=cmd_unshield)
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        settings = Settings.from_env()
        asyncio.run(args.func(args, settings))
    except StealthLinkError as e:
        print(f"{C.ERR}{e.kind}: {e.message}{C.RST}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
