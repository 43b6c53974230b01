from __future__ import annotations

import pytest
from solders.pubkey import Pubkey

from services.crypto_core.codec import RegistryRecord, encode_registry_record
from services.errors import (
    DomainResolutionError,
    HandleNotRegisteredError,
    InvalidAddressError,
    InvalidHandleError,
    NetworkError,
)
from services.registry.registry import derive_registry_address, validate_handle
from services.registry.resolver import HandleResolver, parse_pubkey
from services.registry.sns import NULL_KEY, SnsResolver, domain_key


class DummyDomainResolver:
    def __init__(self, owner: Pubkey | None = None, error: Exception | None = None) -> None:
        self.owner = owner
        self.error = error
        self.calls: list[str] = []

    async def resolve(self, name: str, rpc) -> Pubkey:
        self.calls.append(name)
        if self.error is not None:
            raise self.error
        return self.owner


def _register(rpc, handle: str, authority: Pubkey, destination: Pubkey | None) -> None:
    entry, _ = derive_registry_address(handle)
    rpc.accounts[entry] = encode_registry_record(RegistryRecord(handle, authority, destination, bump=255))


def test_parse_pubkey() -> None:
    pk = Pubkey.new_unique()
    assert parse_pubkey(str(pk)) == pk
    assert parse_pubkey(f"  {pk}  ") == pk
    assert parse_pubkey("alice.sol") is None
    assert parse_pubkey("1" * 32) == Pubkey.default()
    assert parse_pubkey("0OIl" * 10) is None
    assert parse_pubkey("z" * 44) is None


async def test_plain_pubkey_wins_without_lookups(rpc) -> None:
    domains = DummyDomainResolver()
    pk = Pubkey.new_unique()

    res = await HandleResolver(domains).resolve(str(pk), rpc)

    assert res.pubkey == pk
    assert res.source == "pubkey"
    assert domains.calls == []


async def test_sol_domain_uses_injected_resolver(rpc) -> None:
    owner = Pubkey.new_unique()
    domains = DummyDomainResolver(owner=owner)

    res = await HandleResolver(domains).resolve("alice.sol", rpc)

    assert res.pubkey == owner
    assert res.source == "sol"
    assert domains.calls == ["alice.sol"]


async def test_sol_domain_failure_is_domain_error(rpc) -> None:
    domains = DummyDomainResolver(error=RuntimeError("boom"))
    with pytest.raises(DomainResolutionError, match="Could not resolve .sol domain: alice.sol"):
        await HandleResolver(domains).resolve("alice.sol", rpc)


async def test_sol_domain_none_owner(rpc) -> None:
    with pytest.raises(DomainResolutionError):
        await HandleResolver(DummyDomainResolver(owner=None)).resolve("ghost.sol", rpc)


async def test_stealth_handle_pays_destination(rpc) -> None:
    auth, dest = Pubkey.new_unique(), Pubkey.new_unique()
    _register(rpc, "alice", auth, dest)

    res = await HandleResolver(DummyDomainResolver()).resolve("alice.stealth", rpc)

    assert res.pubkey == dest
    assert res.source == "stealth"
    assert res.warnings == ()


async def test_legacy_stealth_record_pays_authority_with_warning(rpc, caplog) -> None:
    auth = Pubkey.new_unique()
    _register(rpc, "oldie", auth, None)

    res = await HandleResolver(DummyDomainResolver()).resolve("oldie.stealth", rpc)

    assert res.pubkey == auth
    assert len(res.warnings) == 1
    assert "no destination" in caplog.text


async def test_unregistered_stealth_handle(rpc) -> None:
    with pytest.raises(HandleNotRegisteredError, match="Ensure it is registered"):
        await HandleResolver(DummyDomainResolver()).resolve("nobody.stealth", rpc)


async def test_malformed_registry_entry_is_not_registered(rpc) -> None:
    entry, _ = derive_registry_address("broken")
    rpc.accounts[entry] = b"\x00" * 10
    with pytest.raises(HandleNotRegisteredError):
        await HandleResolver(DummyDomainResolver()).resolve("broken.stealth", rpc)


async def test_registry_rpc_is_used_for_stealth(rpc) -> None:
    from conftest import FakeRpc

    registry_rpc = FakeRpc()
    dest = Pubkey.new_unique()
    _register(registry_rpc, "alice", Pubkey.new_unique(), dest)

    res = await HandleResolver(DummyDomainResolver()).resolve("alice.stealth", rpc, registry_rpc=registry_rpc)
    assert res.pubkey == dest


@pytest.mark.parametrize("name", ["alice", "", "alice.eth", "x" * 50])
async def test_unrecognised_name(rpc, name) -> None:
    with pytest.raises(InvalidAddressError):
        await HandleResolver(DummyDomainResolver()).resolve(name, rpc)


@pytest.mark.parametrize(
    ("handle", "message"),
    [
        (".stealth", "cannot be empty"),
        ("a" * 33, "32 characters or less"),
        ("bad-handle", "letters, numbers, and underscores"),
        ("alice\n.stealth", "letters, numbers, and underscores"),
    ],
)
def test_validate_handle_errors(handle, message) -> None:
    with pytest.raises(InvalidHandleError, match=message):
        validate_handle(handle)


def test_validate_handle_strips_suffix() -> None:
    assert validate_handle("Alice_1.stealth") == "Alice_1"
    assert validate_handle("Alice_1.STEALTH") == "Alice_1"


async def test_sns_resolver_reads_owner(rpc) -> None:
    owner = Pubkey.new_unique()
    rpc.accounts[domain_key("alice.sol")] = bytes(32) + bytes(owner) + bytes(32) + b"payload"

    assert await SnsResolver().resolve("alice.sol", rpc) == owner


async def test_sns_subdomain_key_differs(rpc) -> None:
    assert domain_key("pay.alice.sol") != domain_key("alice.sol")
    with pytest.raises(DomainResolutionError):
        domain_key("a.b.c.sol")


async def test_sns_resolver_failures(rpc) -> None:
    with pytest.raises(DomainResolutionError):
        await SnsResolver().resolve("missing.sol", rpc)

    rpc.accounts[domain_key("burned.sol")] = bytes(32) + bytes(NULL_KEY) + bytes(32)
    with pytest.raises(DomainResolutionError):
        await SnsResolver().resolve("burned.sol", rpc)

    rpc.account_errors.append(NetworkError("getAccountInfo: request timed out"))
    with pytest.raises(DomainResolutionError):
        await SnsResolver().resolve("flaky.sol", rpc)
