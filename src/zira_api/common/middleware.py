from __future__ import annotations

import contextvars
import logging
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp


account_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("account_id", default=None)
request_id_ctx_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:  # type: ignore[override]
        req_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        token = request_id_ctx_var.set(req_id)
        try:
            request.state.request_id = req_id
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers.setdefault(self.header_name, req_id)
        return response


class AccountContextMiddleware(BaseHTTPMiddleware):
    """Expose the requesting merchant account on ``request.state``.

    Authentication happens upstream; this only carries the resolved account
    id so services and log records can be scoped to it.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Account-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:  # type: ignore[override]
        account_id = request.headers.get(self.header_name)
        token = account_id_ctx_var.set(account_id)
        try:
            request.state.account_id = account_id
            response = await call_next(request)
        finally:
            account_id_ctx_var.reset(token)
        return response


class RequestIDLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - pure logging
        record.request_id = request_id_ctx_var.get()
        record.account_id = account_id_ctx_var.get() or "-"
        return True
