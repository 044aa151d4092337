from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import ErrorCode, app_error
from .logging import log_event
from .request_context import request_id_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds `X-Request-ID` (or a fresh uuid4) to the request and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_var.set(rid)
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
            log_event(
                "request_finished",
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                },
                level=logging.DEBUG,
            )
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response


def api_key_dependency(settings: Settings) -> Callable[[str | None], None]:
    required = settings.security.api_key.strip()

    def _check(x_api_key: str | None = Header(default=None)) -> None:
        if required and x_api_key != required:
            raise app_error(ErrorCode.unauthorized)

    return _check
