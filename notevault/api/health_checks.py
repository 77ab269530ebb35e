"""
Health checks and system monitoring for the notevault service
"""
import asyncio
import os
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import psutil

from notevault.logging_config import get_logger

logger = get_logger("health")

# Track service startup time
API_START_TIME = time.time()


def _touch_storage(data_dir: Path, events_db: Optional[Path]) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    marker = data_dir / ".health_check"
    marker.write_text("ok", encoding="utf-8")
    marker.unlink()
    if events_db is not None and events_db.exists():
        cx = sqlite3.connect(events_db)
        try:
            cx.execute("SELECT 1").fetchone()
        finally:
            cx.close()


async def check_storage_health(data_dir: Path, events_db: Optional[Path] = None) -> Dict[str, Any]:
    """
    Check that the data directory is writable and the event log opens

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        await asyncio.to_thread(_touch_storage, Path(data_dir), Path(events_db) if events_db else None)
        response_time = (time.time() - start) * 1000
        return {"status": "healthy", "response_time_ms": round(response_time, 2)}
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Storage health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


async def check_rpc_health(rpc_url: str) -> Dict[str, Any]:
    """
    Check EVM JSON-RPC connectivity with eth_blockNumber

    Args:
        rpc_url: JSON-RPC endpoint URL

    Returns:
        dict with status, response_time_ms, block and error (if any)
    """
    try:
        start = time.time()
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(
                rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []},
            )
            response.raise_for_status()
            body = response.json()
        response_time = (time.time() - start) * 1000
        if "error" in body:
            raise ValueError(body["error"])
        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "block": int(body.get("result", "0x0"), 16),
            "rpc_url": rpc_url,
        }
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"RPC health check failed: {e}")
        return {"status": "unhealthy", "error": str(e), "rpc_url": rpc_url}


def get_system_metrics() -> Dict[str, Any]:
    """CPU, memory and disk usage of the host."""
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(os.path.abspath(os.sep))
        return {
            "cpu": {"usage_percent": round(psutil.cpu_percent(interval=0.1), 2)},
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2),
            },
            "disk": {
                "usage_percent": round(disk.percent, 2),
                "used_gb": round(disk.used / (1024 ** 3), 2),
                "total_gb": round(disk.total / (1024 ** 3), 2),
            },
        }
    except (psutil.Error, OSError) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {"uptime_seconds": round(uptime_seconds, 2), "uptime_formatted": uptime_str}


async def comprehensive_health_check(
    data_dir: Path,
    events_db: Optional[Path] = None,
    rpc_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Health of every component the service depends on

    Returns:
        dict with overall status and component statuses
    """
    checks: Dict[str, Any] = {"storage": await check_storage_health(data_dir, events_db)}
    checks["rpc"] = await check_rpc_health(rpc_url) if rpc_url else {"status": "not_configured"}
    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    statuses = [checks["storage"].get("status"), checks["rpc"].get("status")]
    overall = "healthy" if all(s in ("healthy", "not_configured") for s in statuses) else "unhealthy"

    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "checks": checks,
    }


async def readiness_check(data_dir: Path, rpc_url: Optional[str] = None) -> bool:
    """True when storage is usable and, if configured, the RPC answers."""
    checks = [(await check_storage_health(data_dir))["status"] == "healthy"]
    if rpc_url:
        checks.append((await check_rpc_health(rpc_url))["status"] == "healthy")
    return all(checks)
