"""
Request context middleware.

Each request gets a request id (the caller's x-request-id when it is a sane
token, otherwise a fresh uuid4). The id is bound for the lifetime of the
request so every log line and error payload can be correlated, echoed back
in the response header, and a single request.complete line is logged.
"""
import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from persona.core.logging import LOGGER_NAME, bind_request_id, latency_bucket_ms

REQUEST_ID_HEADER = "x-request-id"
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _inbound_request_id(value: Optional[str]) -> Optional[str]:
    if value and _SAFE_REQUEST_ID.match(value):
        return value
    return None


def _caller_hint(request: Request) -> Optional[str]:
    """Non-secret identification of the caller for request logs."""
    api_key = request.headers.get("x-api-key")
    if api_key:
        return f"key:{api_key[:12]}"
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _inbound_request_id(request.headers.get(self.header_name)) or str(uuid4())
        request.state.request_id = rid

        started = time.perf_counter()
        with bind_request_id(rid):
            response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        logging.getLogger(LOGGER_NAME).info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
                "caller": _caller_hint(request),
            },
        )
        return response
