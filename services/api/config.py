# services/api/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from services.errors import ConfigurationError

# Public endpoints, used for name resolution only (never for submission)
MAINNET_PUBLIC_RPC = "https://api.mainnet-beta.solana.com"
DEVNET_PUBLIC_RPC = "https://api.devnet.solana.com"

STEALTH_REGISTRY_PROGRAM_ID = "DbGF7nB2kuMpRxwm4b6n11XcWzwvysDGQGztJ4Wvvu13"

# Light protocol state-tree lookup table (mainnet)
STATE_TREE_LOOKUP_TABLE = "7i86eQs3GSqHjN47WdWLTCGMW6gde1q96G2EVnUyK2st"


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip():
            return v.strip()
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment."""

    rpc_url: Optional[str] = None
    sns_fallback_rpc_url: str = MAINNET_PUBLIC_RPC
    registry_fallback_rpc_url: str = DEVNET_PUBLIC_RPC
    registry_program_id: str = STEALTH_REGISTRY_PROGRAM_ID
    state_tree_lookup_table: Optional[str] = STATE_TREE_LOOKUP_TABLE
    # "tree:queue:type[:cpi]" entries, comma separated
    extra_state_trees: Tuple[str, ...] = field(default_factory=tuple)

    compute_unit_limit: int = 1_000_000
    compute_unit_price: int = 1_000  # micro-lamports
    rent_safety_margin_lamports: int = 10_000
    send_max_retries: int = 3
    retry_base_delay_sec: float = 1.0
    confirm_poll_sec: float = 1.0
    balance_poll_sec: float = 10.0
    request_timeout_sec: float = 15.0

    action_icon_path: str = "/stealth-icon.png"
    blockchain_id: str = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"

    @classmethod
    def from_env(cls) -> "Settings":
        extra = _env("EXTRA_STATE_TREES", default="") or ""
        return cls(
            rpc_url=_env("HELIUS_RPC_URL", "NEXT_PUBLIC_HELIUS_RPC_URL", "SOLANA_RPC_URL"),
            sns_fallback_rpc_url=_env("SNS_FALLBACK_RPC_URL", default=MAINNET_PUBLIC_RPC),
            registry_fallback_rpc_url=_env("REGISTRY_FALLBACK_RPC_URL", default=DEVNET_PUBLIC_RPC),
            registry_program_id=_env("STEALTH_REGISTRY_PROGRAM_ID", default=STEALTH_REGISTRY_PROGRAM_ID),
            state_tree_lookup_table=_env("STATE_TREE_LOOKUP_TABLE", default=STATE_TREE_LOOKUP_TABLE),
            extra_state_trees=tuple(x.strip() for x in extra.split(",") if x.strip()),
            compute_unit_limit=_env_int("COMPUTE_UNIT_LIMIT", 1_000_000),
            compute_unit_price=_env_int("COMPUTE_UNIT_PRICE", 1_000),
            rent_safety_margin_lamports=_env_int("RENT_SAFETY_MARGIN_LAMPORTS", 10_000),
            send_max_retries=min(_env_int("SEND_MAX_RETRIES", 3), 3),
            retry_base_delay_sec=_env_float("RETRY_BASE_DELAY_SEC", 1.0),
            confirm_poll_sec=_env_float("CONFIRM_POLL_SEC", 1.0),
            balance_poll_sec=_env_float("BALANCE_POLL_SEC", 10.0),
            request_timeout_sec=_env_float("RPC_TIMEOUT_SEC", 15.0),
            action_icon_path=_env("ACTION_ICON_PATH", default="/stealth-icon.png"),
            blockchain_id=_env("BLOCKCHAIN_ID", default="solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"),
        )

    def require_rpc_url(self) -> str:
        if not self.rpc_url:
            raise ConfigurationError("Server Configuration Error: Missing RPC URL")
        return self.rpc_url

    def resolution_rpc_url(self, for_registry: bool = False) -> str:
        """Endpoint used to *look up* names; may fall back to a public one."""
        if self.rpc_url:
            return self.rpc_url
        return self.registry_fallback_rpc_url if for_registry else self.sns_fallback_rpc_url
