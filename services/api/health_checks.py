#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil

from services.api.logging_config import get_logger
from services.compression.types import SUPPORTED_TREE_TYPE
from services.errors import StealthLinkError

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def check_rpc_health(rpc) -> Dict[str, Any]:
    """
    Check RPC connectivity with getHealth

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        result = await rpc.get_health()
        response_time = (time.time() - start) * 1000
        return {
            "status": "healthy" if result == "ok" else "degraded",
            "response_time_ms": round(response_time, 2),
            "result": result,
        }
    except StealthLinkError as e:
        logger.error(f"RPC health check failed: {e.message}")
        return {"status": "unhealthy", "error": e.message, "kind": e.kind}


async def check_state_trees(rpc) -> Dict[str, Any]:
    """At least one pool tree deposits can be written to."""
    try:
        trees = await rpc.get_state_tree_infos()
    except StealthLinkError as e:
        logger.error(f"State tree check failed: {e.message}")
        return {"status": "unhealthy", "error": e.message, "kind": e.kind}
    usable = sum(1 for t in trees if t.tree_type == SUPPORTED_TREE_TYPE)
    return {
        "status": "healthy" if usable else "unhealthy",
        "total": len(trees),
        "usable": usable,
    }


def get_system_metrics() -> Dict[str, Any]:
    """CPU, memory and disk usage of the host."""
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return {
        "cpu": {"usage_percent": round(psutil.cpu_percent(interval=None), 2)},
        "memory": {
            "usage_percent": round(memory.percent, 2),
            "used_mb": round(memory.used / (1024 * 1024), 2),
        },
        "disk": {
            "usage_percent": round(disk.percent, 2),
            "used_gb": round(disk.used / (1024 ** 3), 2),
        },
    }


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    minutes, hours = uptime_seconds / 60, uptime_seconds / 3600
    if hours >= 24:
        uptime_str = f"{int(hours / 24)}d {int(hours % 24)}h"
    elif hours >= 1:
        uptime_str = f"{int(hours)}h {int(minutes % 60)}m"
    else:
        uptime_str = f"{int(minutes)}m {int(uptime_seconds % 60)}s"
    return {"uptime_seconds": int(uptime_seconds), "uptime_formatted": uptime_str}


async def comprehensive_health_check(rpc: Optional[Any]) -> Dict[str, Any]:
    """
    Check every dependency the action endpoint needs.

    Args:
        rpc: RpcContext for the configured endpoint, or None if not configured
    """
    checks: Dict[str, dict] = {}
    if rpc is None:
        checks["rpc"] = {"status": "not_configured"}
        checks["state_trees"] = {"status": "not_configured"}
    else:
        checks["rpc"] = await check_rpc_health(rpc)
        checks["state_trees"] = await check_state_trees(rpc)

    statuses = [c.get("status") for c in checks.values()]
    if all(s == "healthy" for s in statuses):
        overall = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall = "unhealthy"
    else:
        overall = "degraded"

    return {
        "status": overall,
        "timestamp": utc_now_iso(),
        "uptime_seconds": get_uptime()["uptime_seconds"],
        "checks": checks,
        "system": get_system_metrics(),
    }


async def readiness_check(rpc: Optional[Any]) -> Optional[str]:
    """
    Returns:
        None if ready, otherwise the reason it is not
    """
    if rpc is None:
        return "RPC URL not configured"
    rpc_check = await check_rpc_health(rpc)
    if rpc_check["status"] == "unhealthy":
        return f"RPC unhealthy: {rpc_check.get('error')}"
    trees = await check_state_trees(rpc)
    if trees["status"] != "healthy":
        return "No compatible state tree available"
    return None
