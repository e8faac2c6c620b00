"""Health check routes: liveness, readiness, and general health."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from deedboard.api.schemas.common import HealthResponse

router = APIRouter()


def _store_backend(request: Request) -> str:
    engine = getattr(request.app.state, "engine", None)
    return engine.backend if engine is not None else "unavailable"


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request) -> dict[str, Any]:
    """Application health check endpoint."""
    settings = getattr(request.app.state, "settings", None)
    engine = getattr(request.app.state, "engine", None)
    cache = engine.cache if engine is not None else None
    return {
        "status": "ok",
        "environment": settings.app_env if settings else "unknown",
        "store": _store_backend(request),
        "cache": ("redis" if cache.is_redis else "memory") if cache is not None else "none",
    }


@router.get("/health/live")
def liveness_probe() -> dict[str, Any]:
    """Liveness probe: is the process alive and responding?"""
    return {"status": "alive"}


@router.get("/health/ready")
def readiness_probe(request: Request) -> JSONResponse:
    """Readiness probe: can the engine serve traffic?

    Checks database connectivity (Oracle backend) and the cache.
    """
    checks: dict[str, Any] = {}
    ready = True

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        checks["engine"] = {"status": "error", "detail": "not initialized"}
        ready = False

    db_pool = getattr(request.app.state, "db_pool", None)
    if db_pool is not None:
        try:
            start = time.perf_counter()
            conn = db_pool.acquire()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1 FROM DUAL")
                    cur.fetchone()
                checks["database"] = {
                    "status": "ok",
                    "response_time_ms": round((time.perf_counter() - start) * 1000, 1),
                }
            finally:
                conn.close()
        except Exception as exc:
            checks["database"] = {"status": "error", "detail": type(exc).__name__}
            ready = False
    else:
        checks["database"] = {"status": "not_configured"}

    if engine is not None and engine.cache is not None:
        cache_ok = engine.cache.ping()
        checks["cache"] = {"status": "ok" if cache_ok else "error"}
        # Leaderboards fall back to the store when the cache is down
    else:
        checks["cache"] = {"status": "not_configured"}

    body = {"status": "ready" if ready else "not_ready", "checks": checks}
    return JSONResponse(status_code=200 if ready else 503, content=body)
