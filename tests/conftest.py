from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from services.compression.types import CompressedProof, ProofInput, TreeInfo, TreeType, ValidityProof
from services.crypto_core.wallet import KeypairWallet


def make_tree(tree_type: TreeType = TreeType.STATE_V1) -> TreeInfo:
    return TreeInfo(
        tree=Pubkey.new_unique(),
        queue=Pubkey.new_unique(),
        tree_type=tree_type,
        cpi_context=Pubkey.new_unique(),
    )


def raw_account(
    owner: Pubkey,
    lamports: int,
    tree: Optional[TreeInfo],
    hash_value: int,
    leaf_index: int = 0,
    data: Any = None,
) -> Dict[str, Any]:
    """Indexer-shaped record, nested the way the compression indexer returns it."""
    rec: Dict[str, Any] = {
        "hash": f"0x{hash_value:064x}",
        "leafIndex": leaf_index,
        "compressedAccount": {
            "owner": str(owner),
            "lamports": lamports,
            "data": data,
        },
    }
    if tree is not None:
        rec["treeInfo"] = {
            "tree": str(tree.tree),
            "queue": str(tree.queue),
            "treeType": int(tree.tree_type),
        }
    return rec


class FakeRpc:
    """In-memory stand-in for RpcContext."""

    def __init__(self) -> None:
        self.accounts: Dict[Pubkey, bytes] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.compressed: Dict[Pubkey, List[Dict[str, Any]]] = {}
        self.compressed_balances: Dict[Pubkey, int] = {}
        self.trees: List[TreeInfo] = [make_tree()]
        self.blockhash = Hash.new_unique()
        self.last_valid_block_height = 1_000
        self.block_height = 10
        self.rent_min = 890_880
        self.health = "ok"

        self.statuses: List[Optional[Dict[str, Any]]] = [{"confirmationStatus": "confirmed", "err": None}]
        self.status_errors: List[Exception] = []
        self.send_errors: List[Exception] = []
        self.account_errors: List[Exception] = []
        self.logs: List[str] = []
        self.proof_root_indices: Optional[Sequence[int]] = None

        self.sent: List[bytes] = []
        self.proof_calls: List[List[ProofInput]] = []
        self.owner_calls: List[Pubkey] = []
        self.closed = False

    async def __aenter__(self) -> "FakeRpc":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.closed = True

    async def get_account_info(self, pubkey: Pubkey) -> Optional[bytes]:
        if self.account_errors:
            raise self.account_errors.pop(0)
        return self.accounts.get(pubkey)

    async def get_balance(self, pubkey: Pubkey) -> int:
        return self.balances.get(pubkey, 0)

    async def get_latest_blockhash(self):
        return self.blockhash, self.last_valid_block_height

    async def get_block_height(self) -> int:
        return self.block_height

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return self.rent_min

    async def send_raw_transaction(self, raw: bytes, skip_preflight: bool = True) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(raw)
        return "5igNaTuRe1111111111111111111111111111111111"

    async def get_signature_statuses(self, signatures):
        if self.status_errors:
            raise self.status_errors.pop(0)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return [status]

    async def get_transaction_logs(self, signature: str) -> List[str]:
        return list(self.logs)

    async def get_health(self) -> str:
        return self.health

    async def get_state_tree_infos(self) -> List[TreeInfo]:
        return list(self.trees)

    async def get_compressed_accounts_by_owner(self, owner: Pubkey) -> List[Dict[str, Any]]:
        self.owner_calls.append(owner)
        return [dict(r) for r in self.compressed.get(owner, [])]

    async def get_compressed_balance_by_owner(self, owner: Pubkey) -> int:
        return self.compressed_balances.get(owner, 0)

    async def get_validity_proof(self, inputs: Sequence[ProofInput]) -> ValidityProof:
        self.proof_calls.append(list(inputs))
        roots = self.proof_root_indices if self.proof_root_indices is not None else range(len(inputs))
        return ValidityProof(
            compressed_proof=CompressedProof(a=bytes(32), b=bytes(64), c=bytes(32)),
            root_indices=tuple(roots),
        )


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def rpc() -> FakeRpc:
    return FakeRpc()


@pytest.fixture
def wallet() -> KeypairWallet:
    return KeypairWallet(Keypair())
