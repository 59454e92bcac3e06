"""
Dependency checks behind GET /health.

The service is "unhealthy" only when the database is unreachable. A
missing object store or a tight host degrades it: uploads fall back to
local disk and everything else keeps working.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import psutil
from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from .logging import get_logger

logger = get_logger(__name__)

OK, DEGRADED, ERROR = "ok", "degraded", "error"

MEMORY_DEGRADED_PERCENT = 90
MEMORY_ERROR_PERCENT = 95
DISK_DEGRADED_PERCENT = 85
DISK_ERROR_PERCENT = 95


@dataclass
class HealthCheckResult:
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": self.status, "details": self.details}
        if self.error:
            result["error"] = self.error
        return result


async def check_database(session: AsyncSession, timeout: float = 5.0) -> HealthCheckResult:
    started = time.perf_counter()
    try:
        await asyncio.wait_for(session.exec(text("SELECT 1")), timeout=timeout)
    except asyncio.TimeoutError:
        return HealthCheckResult(ERROR, error=f"Database query timeout after {timeout}s")
    except Exception:
        logger.error("Database health check failed", exc_info=True)
        return HealthCheckResult(ERROR, error="Database unreachable")

    return HealthCheckResult(OK, {"latency_ms": round((time.perf_counter() - started) * 1000, 2)})


def check_storage(storage_kind: Optional[str], public_urls: bool) -> HealthCheckResult:
    """Object storage is ok; local disk works but is degraded."""
    if storage_kind is None:
        return HealthCheckResult(ERROR, error="No usable storage backend configured")
    return HealthCheckResult(
        OK if storage_kind == "bucket" else DEGRADED,
        {"provider": storage_kind, "public_urls": public_urls},
    )


def _grade(percent: float, degraded_at: float, error_at: float) -> str:
    if percent > error_at:
        return ERROR
    if percent > degraded_at:
        return DEGRADED
    return OK


def check_system_resources() -> HealthCheckResult:
    try:
        memory = psutil.virtual_memory()
        # Local storage fallback writes receipts here
        disk = psutil.disk_usage("/")
    except Exception:
        logger.error("System resource check failed", exc_info=True)
        return HealthCheckResult(ERROR, error="Unavailable")

    grades = [
        _grade(memory.percent, MEMORY_DEGRADED_PERCENT, MEMORY_ERROR_PERCENT),
        _grade(disk.percent, DISK_DEGRADED_PERCENT, DISK_ERROR_PERCENT),
    ]
    status = ERROR if ERROR in grades else DEGRADED if DEGRADED in grades else OK

    return HealthCheckResult(
        status,
        {
            "memory_percent": round(memory.percent, 1),
            "disk_percent": round(disk.percent, 1),
            "disk_free_gb": round(disk.free / 1024 ** 3, 1),
        },
    )


async def run_health_checks(
    session: AsyncSession,
    storage_kind: Optional[str] = None,
    public_urls: bool = False,
) -> Dict[str, Any]:
    checks = {
        "database": await check_database(session),
        "storage": check_storage(storage_kind, public_urls),
        "system_resources": check_system_resources(),
    }

    if checks["database"].status == ERROR:
        overall = "unhealthy"
    elif any(check.status != OK for check in checks.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {name: check.to_dict() for name, check in checks.items()},
    }
