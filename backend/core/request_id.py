# backend/core/request_id.py
import uuid
from contextvars import ContextVar
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from typing import Callable, Optional

HEADER = "X-Request-ID"

# correlation id visible to loggers and error handlers for the current request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def current_request_id() -> Optional[str]:
    return request_id_var.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, header_name: str = HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next: Callable):
        req_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        # stash on scope so handlers/loggers can use it
        request.state.request_id = req_id
        token = request_id_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[self.header_name] = req_id
        return response
