"""Request ID 中间件：每个请求（含 Polar webhook 投递）一个可追踪的 ID。"""

from __future__ import annotations

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER_NAME = "X-Request-Id"
# Standard Webhooks 投递 ID；重试时保持不变，可串起同一事件的多次投递
WEBHOOK_ID_HEADER_NAME = "webhook-id"

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def resolve_request_id(request: Request) -> str:
    """Caller-supplied id if it is log-safe, else the webhook delivery id, else a new one."""
    for header in (REQUEST_ID_HEADER_NAME, WEBHOOK_ID_HEADER_NAME):
        candidate = request.headers.get(header)
        if candidate and _SAFE_REQUEST_ID.match(candidate):
            return candidate
    return uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request)
        token = _request_id_ctx.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            _request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER_NAME] = request_id
        return response


def get_current_request_id() -> str | None:
    return _request_id_ctx.get()


__all__ = [
    "REQUEST_ID_HEADER_NAME",
    "RequestIDMiddleware",
    "WEBHOOK_ID_HEADER_NAME",
    "get_current_request_id",
    "resolve_request_id",
]
