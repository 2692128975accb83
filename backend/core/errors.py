# backend/core/errors.py
"""
Error taxonomy shared by the engine and the HTTP layer.

Services raise these; `register_exception_handlers` renders them as
`{message, kind, requestId}` with the matching status code.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.request_id import current_request_id

log = logging.getLogger(__name__)


class EngineError(Exception):
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "", *, retry_after: Optional[int] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(EngineError):
    kind = "ValidationError"
    status_code = 400


class InvalidInput(ValidationError):
    kind = "InvalidInput"


class Unauthorized(EngineError):
    kind = "Unauthorized"
    status_code = 401


class Forbidden(EngineError):
    kind = "Forbidden"
    status_code = 403


class NotFound(EngineError):
    kind = "NotFound"
    status_code = 404


class Conflict(EngineError):
    kind = "Conflict"
    status_code = 409


class TurnKindMismatch(Conflict):
    kind = "TurnKindMismatch"


class AlreadyAttached(Conflict):
    kind = "AlreadyAttached"


class RateLimited(EngineError):
    kind = "RateLimited"
    status_code = 429


class SchemaMismatch(EngineError):
    kind = "SchemaMismatch"
    status_code = 502


class TranscriptionFailed(EngineError):
    kind = "TranscriptionFailed"
    status_code = 502


class UpstreamUnavailable(EngineError):
    kind = "UpstreamUnavailable"
    status_code = 503


class BackendUnavailable(UpstreamUnavailable):
    kind = "BackendUnavailable"


class Cancelled(EngineError):
    kind = "Cancelled"
    status_code = 499


class ConfigError(EngineError):
    """Settings that cannot work; raised at startup."""
    kind = "ConfigError"
    status_code = 500


# vendor failures that are worth another attempt
RETRYABLE = (UpstreamUnavailable, RateLimited)


def _render(exc: EngineError) -> JSONResponse:
    body = exc.to_dict()
    body["requestId"] = current_request_id()
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, UpstreamUnavailable):
        headers["Retry-After"] = "2"
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        log.warning("request failed: %s: %s", exc.kind, exc.message)
    return _render(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", []) if p != "body")
    msg = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg", "invalid request"))
    return JSONResponse(
        status_code=400,
        content={"kind": "ValidationError", "message": msg, "requestId": current_request_id()},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"kind": "Internal", "message": "internal error", "requestId": current_request_id()},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
