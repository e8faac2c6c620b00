"""API middleware: CORS, compression, security headers, request logging, problem details."""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from deedboard.core.context import new_correlation_id, set_correlation_id
from deedboard.core.errors import DeedboardError, StoreUnavailable

logger = logging.getLogger(__name__)

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

HSTS_HEADER = "max-age=31536000; includeSubDomains"


def setup_middleware(app: FastAPI) -> None:
    """Attach all middleware and error handlers to the FastAPI app."""
    settings = getattr(app.state, "settings", None)
    is_prod = settings.is_production if settings else False
    # Pending events are retried on the next tick.
    retry_after = settings.tick_interval_seconds if settings else 60

    # GZip compression (>500 bytes)
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_get_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_and_logging(  # type: ignore[no-untyped-def]
        request: Request, call_next
    ):
        supplied = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
        if supplied:
            set_correlation_id(supplied)
            correlation_id = supplied
        else:
            correlation_id = new_correlation_id()

        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{elapsed:.1f}ms"
        response.headers.update(SECURITY_HEADERS)
        if is_prod:
            response.headers["Strict-Transport-Security"] = HSTS_HEADER

        # Probes would drown the access log.
        if not request.url.path.startswith("/health"):
            logger.info(
                "%s %s %d",
                request.method,
                request.url.path,
                response.status_code,
                extra={"duration_ms": round(elapsed, 1), "status": response.status_code},
            )
        return response

    @app.exception_handler(DeedboardError)
    async def deedboard_error_handler(  # type: ignore[no-untyped-def]
        request: Request, exc: DeedboardError
    ):
        headers: dict[str, str] = {}
        if isinstance(exc, StoreUnavailable):
            logger.warning("%s on %s: %s", exc.title, request.url.path, exc.detail)
            headers["Retry-After"] = str(retry_after)
        return rfc7807_error_response(
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            instance=request.url.path,
            headers=headers or None,
        )


def _get_cors_origins(settings: Any) -> list[str]:
    """Resolve CORS origins from settings."""
    if settings is None:
        return ["*"]
    return list(settings.cors_origin_list)


def rfc7807_error_response(
    status: int,
    title: str,
    detail: str,
    type_uri: str = "about:blank",
    instance: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build an RFC 7807 Problem Details JSON response."""
    body: dict[str, Any] = {
        "type": type_uri,
        "title": title,
        "status": status,
        "detail": detail,
    }
    if instance:
        body["instance"] = instance
    return JSONResponse(
        status_code=status,
        content=body,
        headers=headers,
        media_type="application/problem+json",
    )
