"""
Health check endpoints with Redis, database pool and configuration checks.
"""

import time

from fastapi import APIRouter, Request

from support_agent.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "support-agent"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check with all dependencies including database pool.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"overall_ok": False, "error": "Services not initialized", "timestamp": time.time()}

    checks = {}
    overall_ok = True

    # 1) Redis
    t0 = time.time()
    try:
        redis_ok = await services.redis.ping()
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": round((time.time() - t0) * 1000, 1)}
        overall_ok = overall_ok and bool(redis_ok)
        log_health_check("redis", bool(redis_ok), checks["redis"]["latency_ms"])
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await services.db.health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {"ok": is_healthy, "latency_ms": round((time.time() - t0) * 1000, 1)}
        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check(
            "database", is_healthy, checks["database"]["latency_ms"], db_health.get("error")
        )
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 3) Configuration
    missing = services.settings.missing_required()
    checks["configuration"] = {
        "ok": not missing,
        "issues": [f"{name} not set" for name in missing] or None,
        "environment": services.settings.environment,
    }
    overall_ok = overall_ok and not missing

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
