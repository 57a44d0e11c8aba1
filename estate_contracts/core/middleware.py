from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIdLogFilter(logging.Filter):
    """Stamps request_id on every record emitted while a request is in flight."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _request_id.get()
        return True


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Accepts the incoming request-id header or generates one, exposes it on
    request.state and to the logging filter, and echoes it in the response.
    """

    def __init__(self, app, header_name: str = "X-Request-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = rid
        token = _request_id.set(rid)
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)
        response.headers[self.header_name] = rid
        return response
