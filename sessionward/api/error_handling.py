from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sessionward.api.schemas import Envelope, ErrorBody
from sessionward.logging import get_logger
from sessionward.service.errors import ServiceError
from sessionward.storage.errors import ConstraintViolation

logger = get_logger(__name__)

ERROR_CODES_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "unprocessable",
    429: "rate_limited",
}


def code_for_status(status_code: int) -> str:
    return ERROR_CODES_BY_STATUS.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    *,
    code: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Render ``{"status": "error", "error": {...}}`` with the given status."""
    body = Envelope(
        status="error",
        error=ErrorBody(code=code or code_for_status(status_code), message=message, details=details),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers=dict(headers) if headers else None,
    )


def _log_fields(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            status_code=exc.status_code,
            error_code=exc.error_code,
            reason=exc.message,
            **_log_fields(request),
        )
        return error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", reason=exc.message, **_log_fields(request))
        return error_response(409, exc.message, exc.detail or None)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return error_response(422, "invalid request body", {"errors": problems})

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # Routes raise HTTPException with a prebuilt envelope as ``detail``
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            error = detail["error"]
            return error_response(
                exc.status_code,
                error.get("message") or "request failed",
                error.get("details"),
                code=error.get("code"),
                headers=exc.headers,
            )
        return error_response(exc.status_code, str(detail), headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception", error_type=type(exc).__name__, **_log_fields(request)
        )
        return error_response(500, "internal server error")
