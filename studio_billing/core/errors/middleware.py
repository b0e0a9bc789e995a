"""
FastAPI exception handler for BillingError.

Renders every BillingError as

    {"error": {"code", "title", "message", "retryable",
               "user_action_required", "remediation", "request_id"[, "detail"]}}

with the registry's HTTP status. The internal detail is only included when
the registry entry sets expose_detail (validation and state conflicts).
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from studio_billing.core.errors import BillingError
from studio_billing.core.errors.registry import ErrorEntry, error_registry
from studio_billing.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def error_body(entry: ErrorEntry, exc: BillingError) -> dict:
    body = {
        "code": entry.code,
        "title": entry.title,
        "message": entry.safe_message,
        "retryable": entry.retryable,
        "user_action_required": entry.user_action_required,
        "remediation": entry.remediation,
        "request_id": request_id_var.get(None),
    }
    if entry.expose_detail and exc.detail:
        body["detail"] = exc.detail
    return body


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("unregistered_error_code", extra={"error.code": exc.code, "error.message": exc.detail})
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": exc.code,
                    "title": "Internal error",
                    "message": "An unexpected error occurred.",
                    "retryable": False,
                    "user_action_required": False,
                    "remediation": [],
                    "request_id": request_id_var.get(None),
                }
            },
        )

    logger.log(
        _LOG_LEVELS.get(entry.severity, logging.ERROR),
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.message": exc.detail,
            "error.retryable": entry.retryable,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )
    return JSONResponse(status_code=entry.http_status, content={"error": error_body(entry, exc)})
