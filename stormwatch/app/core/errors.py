"""
Error model for the impact pipeline and its HTTP surface.

Pipeline code raises these; the FastAPI layer renders them:

    StormWatchError            500  INTERNAL_ERROR
    ├── NotFoundError          404  NOT_FOUND            unknown alert / property / run
    ├── ValidationError        422  VALIDATION_ERROR     bad phone, bad status, missing job id
    ├── ExternalServiceError   502  EXTERNAL_SERVICE_ERROR   SMS / email / push gateway
    └── StoreUnavailableError  503  STORE_UNAVAILABLE    database unreachable

Channel senders catch ValidationError and ExternalServiceError and turn
them into a ChannelResult; StoreUnavailableError always propagates.

Response envelope:

    {"error": {"code": "NOT_FOUND", "message": "ImpactAlert not found",
               "status": 404, "details": {...}, "request_id": "..."}}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stormwatch.app.core.config import settings
from stormwatch.app.core.logging_config import get_log_context

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class StormWatchError(Exception):
    """Base for every error the pipeline raises on purpose."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Unexpected pipeline error", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}


class NotFoundError(StormWatchError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", resource=resource, **identifiers)


class ValidationError(StormWatchError):
    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class ExternalServiceError(StormWatchError):
    """A delivery gateway rejected the request or could not be reached."""

    status_code = 502
    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(f"External service '{service}' failed: {message}", service=service, **details)
        self.service = service


class StoreUnavailableError(StormWatchError):
    """The property / alert store could not be reached. Fatal to a monitoring run."""

    status_code = 503
    error_code = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, message: str = ""):
        super().__init__(f"Store unavailable during '{operation}': {message}", operation=operation)
        self.operation = operation


# ═══════════════════════════════════════════════════════════════════════════
# Response envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_body(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details

    request_id = get_log_context().get("request_id")
    if request_id:
        error["request_id"] = request_id
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def _respond(status_code: int, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Render pipeline errors, request validation and crashes in one envelope."""

    @app.exception_handler(StormWatchError)
    async def handle_pipeline_error(request: Request, exc: StormWatchError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "[%s] %s | details=%s", exc.error_code, exc.message, exc.details)
        headers = {"Retry-After": "30"} if isinstance(exc, StoreUnavailableError) else None
        return _respond(
            exc.status_code,
            error_body(exc.status_code, exc.error_code, exc.message, exc.details, request),
            headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _respond(
            422,
            error_body(422, "VALIDATION_ERROR", "Request validation failed", {"fields": fields}, request),
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected request: %s", exc)
        return _respond(422, error_body(422, "VALIDATION_ERROR", str(exc), request=request))

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _respond(500, error_body(500, "INTERNAL_ERROR", message, request=request))
