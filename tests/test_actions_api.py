from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from conftest import FakeRpc, make_tree
from services.api.app import create_app
from services.api.config import Settings
from services.api.routes_actions import (
    ACTION_VERSION,
    MISSING_RPC_MESSAGE,
    SHIELD_FAILED_MESSAGE,
    get_handle_resolver,
    get_rpc_factory,
)
from services.compression.trees import NO_TREE_MESSAGE
from services.compression.types import TreeType
from services.errors import HandleNotRegisteredError, RpcError
from services.registry.resolver import INVALID_ADDRESS_MESSAGE, HandleResolver

PAYER = Pubkey.new_unique()
CREATOR = Pubkey.new_unique()


class DummyDomains:
    def __init__(self, owners: dict[str, Pubkey] | None = None) -> None:
        self.owners = owners or {}

    async def resolve(self, name: str, rpc) -> Pubkey:
        if name not in self.owners:
            raise LookupError(name)
        return self.owners[name]


class BrokenTreesRpc(FakeRpc):
    async def get_state_tree_infos(self):
        raise RpcError("getAccountInfo: Method not found", code=-32601)


def _client(rpc: FakeRpc, settings: Settings | None = None, domains: DummyDomains | None = None):
    settings = settings or Settings(rpc_url="https://rpc.test")
    app = create_app(settings)
    urls: list[str] = []

    def factory(url: str) -> FakeRpc:
        urls.append(url)
        return rpc

    app.dependency_overrides[get_rpc_factory] = lambda: factory
    app.dependency_overrides[get_handle_resolver] = lambda: HandleResolver(domains or DummyDomains())
    return TestClient(app), urls


def _donate(client, username: str, amount: str = "0.1", body=None):
    payload = {"account": str(PAYER)} if body is None else body
    return client.post(f"/api/actions/donate/{username}", params={"amount": amount}, json=payload)


# ---------------------------------------------------------------------------
# GET descriptor
# ---------------------------------------------------------------------------

def test_descriptor_for_domain(rpc) -> None:
    client, _ = _client(rpc)
    r = client.get("/api/actions/donate/alice.sol")

    assert r.status_code == 200
    body = r.json()
    assert body["type"] == "action"
    assert body["title"] == "Donate Privately to alice.sol (Secure v2)"
    assert body["label"] == "Donate 0.1 SOL"
    assert body["icon"].endswith("/stealth-icon.png")
    hrefs = [a["href"] for a in body["links"]["actions"]]
    assert hrefs == [
        "/api/actions/donate/alice.sol?amount=0.1&v=2",
        "/api/actions/donate/alice.sol?amount=0.5&v=2",
        "/api/actions/donate/alice.sol?amount={amount}&v=2",
    ]
    assert body["links"]["actions"][2]["parameters"][0]["name"] == "amount"
    assert r.headers["X-Action-Version"] == ACTION_VERSION
    assert r.headers["Access-Control-Allow-Origin"] == "*"


def test_descriptor_truncates_pubkey(rpc) -> None:
    client, _ = _client(rpc)
    key = str(CREATOR)
    body = client.get(f"/api/actions/donate/{key}").json()
    assert body["title"] == f"Donate Privately to {key[:4]}...{key[-4:]} (Secure v2)"


def test_descriptor_for_invalid_name(rpc) -> None:
    client, _ = _client(rpc)
    assert client.get("/api/actions/donate/nonsense").json()["title"] == "Invalid Creator Address"


def test_options_returns_descriptor_with_headers(rpc) -> None:
    client, _ = _client(rpc)
    r = client.options("/api/actions/donate/bob.stealth")
    assert r.status_code == 200
    assert r.headers["X-Action-Version"] == ACTION_VERSION


def test_actions_json(rpc) -> None:
    client, _ = _client(rpc)
    rules = client.get("/actions.json").json()["rules"]
    assert {"pathPattern": "/donate/*", "apiPath": "/api/actions/donate/*"} in rules


# ---------------------------------------------------------------------------
# POST transaction
# ---------------------------------------------------------------------------

def test_post_builds_unsigned_shield_tx(rpc) -> None:
    client, urls = _client(rpc)

    r = _donate(client, str(CREATOR), amount="0.10")

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["type"] == "transaction"
    assert body["message"] == "Shielding 0.1 SOL to private UTXO 🥷"
    tx = Transaction.from_bytes(base64.b64decode(body["transaction"]))
    assert tx.message.account_keys[0] == PAYER
    assert not tx.is_signed()
    assert urls == ["https://rpc.test", "https://rpc.test"]
    assert r.headers["X-Action-Version"] == ACTION_VERSION


def test_post_resolves_sol_domain(rpc) -> None:
    client, _ = _client(rpc, domains=DummyDomains({"alice.sol": CREATOR}))
    r = _donate(client, "alice.sol")
    assert r.status_code == 200
    tx = Transaction.from_bytes(base64.b64decode(r.json()["transaction"]))
    assert bytes(CREATOR) in bytes(tx.message.instructions[-1].data)


@pytest.mark.parametrize("amount", ["-1", "0", "abc", "0.0000000001"])
def test_post_invalid_amount(rpc, amount) -> None:
    client, _ = _client(rpc)
    r = _donate(client, str(CREATOR), amount=amount)
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid amount"}


@pytest.mark.parametrize("body", [{}, {"account": "not-a-key"}, ["x"]])
def test_post_invalid_account(rpc, body) -> None:
    client, _ = _client(rpc)
    r = _donate(client, str(CREATOR), body=body)
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid account"}


def test_post_unresolvable_sol(rpc) -> None:
    client, _ = _client(rpc)
    r = _donate(client, "alice.sol")
    assert r.status_code == 400
    assert r.json() == {"error": "Could not resolve .sol domain: alice.sol"}


def test_post_unregistered_stealth(rpc) -> None:
    client, _ = _client(rpc)
    r = _donate(client, "ghost.stealth")
    assert r.status_code == 400
    assert r.json() == {"error": "Could not resolve .stealth domain: ghost.stealth. Ensure it is registered."}


def test_post_invalid_creator(rpc) -> None:
    client, _ = _client(rpc)
    r = _donate(client, "nonsense")
    assert r.status_code == 400
    assert r.json() == {"error": INVALID_ADDRESS_MESSAGE}


def test_post_missing_rpc_url(rpc) -> None:
    client, urls = _client(rpc, settings=Settings(rpc_url=None))
    r = _donate(client, str(CREATOR))
    assert r.status_code == 500
    assert r.json() == {"error": MISSING_RPC_MESSAGE}
    assert urls == [Settings().sns_fallback_rpc_url]


def test_post_stealth_resolution_uses_registry_fallback(rpc) -> None:
    settings = Settings(rpc_url=None)
    client, urls = _client(rpc, settings=settings)
    _donate(client, "ghost.stealth")
    assert urls == [settings.registry_fallback_rpc_url]


def test_post_no_compatible_tree(rpc) -> None:
    rpc.trees = [make_tree(TreeType.STATE_V2)]
    client, _ = _client(rpc)
    r = _donate(client, str(CREATOR))
    assert r.status_code == 503
    assert r.json() == {"error": NO_TREE_MESSAGE}


def test_post_builder_failure(rpc) -> None:
    client, _ = _client(BrokenTreesRpc())
    r = _donate(client, str(CREATOR))
    assert r.status_code == 500
    assert r.json() == {"error": SHIELD_FAILED_MESSAGE}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_liveness(rpc) -> None:
    client, _ = _client(rpc)
    assert client.get("/health/live").json()["status"] == "alive"


def test_readiness(rpc) -> None:
    client, _ = _client(rpc)
    assert client.get("/health/ready").json()["status"] == "ready"

    rpc.trees = []
    r = client.get("/health/ready")
    assert r.status_code == 503
    assert r.json()["reason"] == "No compatible state tree available"


def test_readiness_without_rpc(rpc) -> None:
    client, _ = _client(rpc, settings=Settings(rpc_url=None))
    r = client.get("/health/ready")
    assert r.status_code == 503
    assert r.json()["status"] == "not_ready"


def test_health(rpc) -> None:
    client, _ = _client(rpc)
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["checks"]["rpc"]["status"] == "healthy"
    assert body["checks"]["state_trees"]["usable"] == 1
    assert "memory" in body["system"]


def test_post_bad_extra_tree_config_is_server_error(rpc) -> None:
    settings = Settings(rpc_url="https://rpc.test", extra_state_trees=("not-a-tree",))
    client, _ = _client(rpc, settings=settings)
    client.app.dependency_overrides.pop(get_rpc_factory)

    r = _donate(client, str(CREATOR))

    assert r.status_code == 500
    assert "EXTRA_STATE_TREES" in r.json()["error"]
    assert r.headers["X-Action-Version"] == ACTION_VERSION


def test_unhandled_engine_error_uses_structured_payload(rpc) -> None:
    client, _ = _client(rpc)

    async def lookup():
        raise HandleNotRegisteredError("ghost is not registered", details={"handle": "ghost"})

    client.app.add_api_route("/lookup", lookup)
    r = client.get("/lookup")

    assert r.status_code == HandleNotRegisteredError.http_status
    assert r.json() == {
        "error": "ghost is not registered",
        "kind": HandleNotRegisteredError.kind,
        "message": "ghost is not registered",
        "details": {"handle": "ghost"},
    }
    assert r.headers["X-Action-Version"] == ACTION_VERSION
