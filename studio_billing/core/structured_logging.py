"""
Structured logging with structlog.

JSON lines on stderr and in a rotating file. Modules keep using
``logging.getLogger(__name__)``; the stdlib records go through the same
structlog processors, so every line carries service, version and whatever
correlation context is bound: request_id and correlation_id (HTTP),
tenant_id (tenant-scoped routes) and billing_run_id (one billing batch).
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

# ── Context vars for correlation ──────────────────────────────────────
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
billing_run_id_var: ContextVar[str | None] = ContextVar("billing_run_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)

APP_VERSION = "0.4.0"
SERVICE_NAME = "studio-billing"


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: inject correlation context from contextvars."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION

    for key, var in (
        ("request_id", request_id_var),
        ("correlation_id", correlation_id_var),
        ("billing_run_id", billing_run_id_var),
        ("tenant_id", tenant_id_var),
    ):
        value = var.get(None)
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


@contextmanager
def billing_run(run_id: Optional[str] = None) -> Iterator[str]:
    """Bind a billing run id for the duration of the block and yield it."""
    run_id = run_id or uuid.uuid4().hex[:12]
    token = billing_run_id_var.set(run_id)
    try:
        yield run_id
    finally:
        billing_run_id_var.reset(token)


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _rotating_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError:
        # Read-only filesystem: stderr only
        return None


def setup_logging(
    log_dir: Optional[str] = "logs",
    log_file: str = "studio_billing.jsonl",
    level: str | int = "INFO",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Route structlog and stdlib logging through one JSON formatter.

    Called once per process by the API lifespan and by the CLI. Pass
    ``log_dir=None`` to log to stderr only. Calling it again replaces the
    root handlers rather than stacking them.
    """
    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        file_handler = _rotating_handler(log_dir, log_file, max_bytes, backup_count)
        if file_handler is not None:
            handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for noisy in ("httpcore", "httpx", "asyncio", "alembic.runtime.migration"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
