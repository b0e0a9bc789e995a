"""
Request context for logging.

CorrelationMiddleware puts request_id and correlation_id into contextvars
so every log line of a request carries them, echoes both back as response
headers and logs one request_completed line per request. Callers may pass
their own ids via x-request-id / x-correlation-id; anything that is not a
short token is replaced with a fresh id.

bind_tenant_context is a router dependency for tenant-scoped routes.
"""
from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from studio_billing.core.structured_logging import correlation_id_var, request_id_var, tenant_id_var

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Polled by load balancers; logged at DEBUG to keep the request log readable
_QUIET_PATHS = {"/api/health"}


def _inbound_id(request: Request, header: str) -> str:
    value = request.headers.get(header)
    if value and _ID_PATTERN.match(value):
        return value
    return uuid.uuid4().hex


class CorrelationMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = _inbound_id(request, "x-request-id")
        corr_id = _inbound_id(request, "x-correlation-id")
        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            status = response.status_code if response is not None else 500
            if request.url.path in _QUIET_PATHS:
                level = logging.DEBUG
            elif status >= 500:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response


async def bind_tenant_context(tenant_id: str) -> str:
    """Tag log lines of tenant-scoped requests with tenant_id.

    Async so the contextvar is set in the request task and copied into the
    threadpool that runs sync endpoints.
    """
    tenant_id_var.set(tenant_id)
    return tenant_id
