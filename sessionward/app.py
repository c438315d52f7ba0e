from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import client_fingerprint, router
from sessionward.config import SecurityHeadersMode
from sessionward.logging import get_logger, set_correlation_id
from sessionward.service.authenticator import begin_request
from sessionward.service.rate_limit import (
    LOGIN_PATH_MARKER,
    PASSWORD_RESET_PATH_MARKER,
    RequestInfo,
)
from sessionward.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_STRICT_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store",
}
_DEFAULT_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Sessionward", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def reset_request_context(request: Request, call_next):
    """Start every request unauthenticated."""
    begin_request()
    return await call_next(request)


async def _credential_from_body(request: Request) -> Optional[str]:
    path = request.url.path
    if request.method.upper() != "POST":
        return None
    if LOGIN_PATH_MARKER not in path and PASSWORD_RESET_PATH_MARKER not in path:
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    email = payload.get("email_address")
    return email if isinstance(email, str) else None


@app.middleware("http")
async def throttle_requests(request: Request, call_next):
    """Reject requests over any applicable throttle before they reach a handler."""
    limiter = get_runtime().rate_limiter
    if not limiter.enabled:
        return await call_next(request)
    ip_address, _ = client_fingerprint(request)
    info = RequestInfo(
        method=request.method,
        path=request.url.path,
        ip=ip_address,
        email=await _credential_from_body(request),
    )
    # Counter stores may block on the network
    decision = await asyncio.to_thread(limiter.check, info)
    if not decision.allowed:
        return JSONResponse(
            status_code=decision.status_code,
            content=decision.body(),
            headers=decision.headers(),
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    mode = get_runtime().settings.security_headers
    if mode == SecurityHeadersMode.STRICT:
        headers = _STRICT_HEADERS
    elif mode == SecurityHeadersMode.DEFAULT:
        headers = _DEFAULT_HEADERS
    else:
        headers = {}
    for name, value in headers.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs with X-Request-ID (client supplied or generated) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        db_ok = await _run_bounded("database", verify_store)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    redis_ok = True
    if runtime.redis is not None:
        redis_ok = await _run_bounded("redis", runtime.redis.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
