"""
Liveness and readiness checks.

/healthz only proves the process is serving. /readyz checks the two
backing stores ingestion cannot run without, plus the secrets the
webhook and operator endpoints need.
"""

import time

from fastapi import APIRouter

from nailit.config import settings
from nailit.db.pool import db_health_check
from nailit.services.redis_client import fast_redis

router = APIRouter()

REQUIRED_SETTINGS = ("DATABASE_URL", "GMAIL_WEBHOOK_TOKEN", "OPERATIONS_API_KEY")


def _elapsed_ms(started: float) -> float:
    return round((time.time() - started) * 1000, 1)


async def _check_redis() -> dict:
    started = time.time()
    try:
        reachable = bool(await fast_redis.ping())
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}"}
    return {"ok": reachable, "latency_ms": _elapsed_ms(started)}


async def _check_database() -> dict:
    started = time.time()
    try:
        report = await db_health_check()
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}", "latency_ms": _elapsed_ms(started)}

    healthy = bool(report.get("healthy"))
    result = {"ok": healthy, "latency_ms": _elapsed_ms(started), **report.get("pool_stats", {})}
    if not healthy:
        result["error"] = report.get("error", "Database unhealthy")
    return result


def _check_configuration() -> dict:
    issues = [f"{name} not set" for name in REQUIRED_SETTINGS if not getattr(settings, name)]
    return {"ok": not issues, "issues": issues or None, "environment": settings.environment}


@router.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "nailit-ingestion"}


@router.get("/readyz")
async def readyz():
    checks = {
        "redis": await _check_redis(),
        "database": await _check_database(),
        "configuration": _check_configuration(),
    }
    return {
        "overall_ok": all(check["ok"] for check in checks.values()),
        "checks": checks,
        "timestamp": time.time(),
    }


@router.get("/health/database")
async def database_health():
    """Pool statistics for the ingestion database."""
    return await db_health_check()
