"""
Per-session JSON-RPC context for the validator RPC and the ZK-compression
indexer (both served from the same URL by Helius-style providers).

One RpcContext is built per session and handed to every component; nothing
in the engine constructs its own client.
"""
from __future__ import annotations

import base64
import itertools
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import base58
import httpx
from solders.hash import Hash
from solders.pubkey import Pubkey

from services.api.config import Settings
from services.api.logging_config import get_logger
from services.compression.trees import parse_extra_trees, trees_from_lookup_table
from services.compression.types import CompressedProof, ProofInput, TreeInfo, ValidityProof
from services.errors import (
    NetworkError,
    ProofError,
    RateLimitedError,
    RpcError,
    ServiceUnavailableError,
)

logger = get_logger("rpc")

UNAVAILABLE_STATUSES = {502, 503, 504}
RATE_LIMIT_CODES = {429, -32429}
MAX_INDEXER_PAGES = 50
PAGE_LIMIT = 1000


def _hash_to_hex(h: Any) -> Any:
    """Indexer hashes are base58; hand the hydrator an unambiguous 0x-hex string."""
    if isinstance(h, str) and not h.startswith(("0x", "0X")):
        try:
            raw = base58.b58decode(h)
        except ValueError:
            return h
        if len(raw) == 32:
            return "0x" + raw.hex()
    return h


def _bytes_field(v: Any) -> bytes:
    if isinstance(v, str):
        if v.startswith(("0x", "0X")):
            return bytes.fromhex(v[2:])
        return base64.b64decode(v)
    return bytes(v)


class RpcContext:
    """Async JSON-RPC client with error classification."""

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        lookup_table: Optional[str] = None,
        extra_trees: Sequence[TreeInfo] = (),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)
        self._lookup_table = lookup_table
        self._extra_trees = list(extra_trees)
        self._tree_cache: Optional[List[TreeInfo]] = None

    @classmethod
    def from_settings(cls, settings: Settings, url: Optional[str] = None,
                      transport: Optional[httpx.AsyncBaseTransport] = None) -> "RpcContext":
        return cls(
            url or settings.require_rpc_url(),
            timeout=settings.request_timeout_sec,
            lookup_table=settings.state_tree_lookup_table,
            extra_trees=parse_extra_trees(settings.extra_state_trees),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RpcContext":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: Any = None) -> Any:
        body: Dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            body["params"] = params
        try:
            r = await self._client.post(self.url, json=body)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method}: request timed out", endpoint=method) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method}: {e}", endpoint=method) from e

        if r.status_code == 429:
            raise RateLimitedError(f"{method}: rate limited", endpoint=method, status_code=429)
        if r.status_code in UNAVAILABLE_STATUSES:
            raise ServiceUnavailableError(
                f"{method}: service unavailable ({r.status_code})", endpoint=method, status_code=r.status_code
            )
        if r.status_code >= 400:
            raise RpcError(f"{method}: HTTP {r.status_code}: {r.text[:300]}", code=r.status_code)

        try:
            j = r.json()
        except ValueError as e:
            raise RpcError(f"{method}: response is not JSON") from e

        err = j.get("error")
        if err:
            code = err.get("code")
            msg = str(err.get("message", err))
            if code in RATE_LIMIT_CODES or "rate limit" in msg.lower():
                raise RateLimitedError(f"{method}: {msg}", endpoint=method, status_code=429)
            raise RpcError(f"{method}: {msg}", code=code, data=err.get("data"))
        return j.get("result")

    # ------------------------------------------------------------------
    # Validator RPC
    # ------------------------------------------------------------------

    async def get_account_info(self, pubkey: Pubkey) -> Optional[bytes]:
        res = await self._call("getAccountInfo", [str(pubkey), {"encoding": "base64", "commitment": "confirmed"}])
        value = (res or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def get_balance(self, pubkey: Pubkey) -> int:
        res = await self._call("getBalance", [str(pubkey), {"commitment": "confirmed"}])
        return int((res or {}).get("value", 0))

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        res = await self._call("getLatestBlockhash", [{"commitment": "confirmed"}])
        v = res["value"]
        return Hash.from_string(v["blockhash"]), int(v["lastValidBlockHeight"])

    async def get_block_height(self) -> int:
        return int(await self._call("getBlockHeight", [{"commitment": "confirmed"}]))

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return int(await self._call("getMinimumBalanceForRentExemption", [size]))

    async def send_raw_transaction(self, raw: bytes, skip_preflight: bool = True) -> str:
        params = [
            base64.b64encode(raw).decode("ascii"),
            {"encoding": "base64", "skipPreflight": skip_preflight, "maxRetries": 0},
        ]
        return str(await self._call("sendTransaction", params))

    async def get_signature_statuses(self, signatures: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
        res = await self._call("getSignatureStatuses", [list(signatures), {"searchTransactionHistory": False}])
        return list((res or {}).get("value") or [None] * len(signatures))

    async def get_transaction_logs(self, signature: str) -> List[str]:
        res = await self._call(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": "confirmed", "maxSupportedTransactionVersion": 0}],
        )
        return list(((res or {}).get("meta") or {}).get("logMessages") or [])

    async def get_health(self) -> str:
        return str(await self._call("getHealth"))

    # ------------------------------------------------------------------
    # Compression indexer
    # ------------------------------------------------------------------

    async def get_state_tree_infos(self) -> List[TreeInfo]:
        if self._tree_cache is None:
            trees: List[TreeInfo] = []
            if self._lookup_table:
                data = await self.get_account_info(Pubkey.from_string(self._lookup_table))
                if data is None:
                    logger.warning(f"State tree lookup table {self._lookup_table} not found")
                else:
                    trees.extend(trees_from_lookup_table(data))
            trees.extend(self._extra_trees)
            self._tree_cache = trees
            logger.debug(f"Loaded {len(trees)} state trees")
        return list(self._tree_cache)

    async def _complete_tree_info(self, item: Dict[str, Any]) -> None:
        """Fill queue / treeType for records that only name their tree."""
        if "treeInfo" in item or "merkleContext" in item:
            return
        tree = item.get("tree")
        if not tree or item.get("queue"):
            return
        for t in await self.get_state_tree_infos():
            if str(t.tree) == tree:
                item["treeInfo"] = {
                    "tree": tree,
                    "queue": str(t.queue),
                    "treeType": int(t.tree_type),
                    "cpiContext": str(t.cpi_context) if t.cpi_context else None,
                }
                return

    async def get_compressed_accounts_by_owner(self, owner: Pubkey) -> List[Dict[str, Any]]:
        """Raw indexer records (hashes as 0x-hex) for every page."""
        out: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(MAX_INDEXER_PAGES):
            params: Dict[str, Any] = {"owner": str(owner), "limit": PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            res = await self._call("getCompressedAccountsByOwner", params)
            value = (res or {}).get("value") or {}
            for item in value.get("items") or []:
                item = dict(item)
                if "hash" in item:
                    item["hash"] = _hash_to_hex(item["hash"])
                await self._complete_tree_info(item)
                out.append(item)
            cursor = value.get("cursor")
            if not cursor:
                break
        else:
            logger.warning(f"Stopped paging compressed accounts for {owner} after {MAX_INDEXER_PAGES} pages")
        return out

    async def get_compressed_balance_by_owner(self, owner: Pubkey) -> int:
        res = await self._call("getCompressedBalanceByOwner", {"owner": str(owner)})
        value = (res or {}).get("value", 0)
        return int(value or 0)

    async def get_validity_proof(self, inputs: Sequence[ProofInput]) -> ValidityProof:
        hashes = [base58.b58encode(i.hash.to_bytes(32, "big")).decode("ascii") for i in inputs]
        res = await self._call("getValidityProof", {"hashes": hashes, "newAddressesWithTrees": []})
        return parse_validity_proof(res, len(inputs))


def parse_validity_proof(res: Mapping[str, Any], expected: int) -> ValidityProof:
    value = (res or {}).get("value", res) or {}
    root_indices = tuple(int(x) for x in value.get("rootIndices") or [])
    if len(root_indices) != expected:
        raise ProofError(
            f"Indexer returned {len(root_indices)} root indices for {expected} accounts",
            details={"expected": expected, "got": len(root_indices)},
        )
    cp = value.get("compressedProof")
    proof = None
    if cp:
        try:
            proof = CompressedProof(a=_bytes_field(cp["a"]), b=_bytes_field(cp["b"]), c=_bytes_field(cp["c"]))
        except (KeyError, ValueError) as e:
            raise ProofError(f"Malformed compressed proof: {e}") from e
    return ValidityProof(
        compressed_proof=proof,
        root_indices=root_indices,
        leaf_indices=tuple(int(x) for x in value.get("leafIndices") or []),
        prove_by_indices=tuple(bool(x) for x in value.get("proveByIndices") or []),
    )
