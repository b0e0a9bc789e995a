"""
Studio Billing API
==================

Application factory and lifespan. The lifespan owns the database engine
(app.state.engine) and two background loops:

- scheduler: billing run, reminders and overdue sweep every
  scheduler_interval_s (each pass is idempotent)
- outbox: drains the notification queue every notification_interval_s

Tests may preset app.state.engine before startup; the lifespan then uses
it instead of building one and leaves its disposal to the caller.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studio_billing.config import settings
from studio_billing.core.background import run_blocking
from studio_billing.core.database import build_engine, close_db, init_db, session_scope
from studio_billing.core.errors import BillingError, raised_codes
from studio_billing.core.errors.middleware import billing_error_handler
from studio_billing.core.errors.registry import error_registry
from studio_billing.core.log_middleware import CorrelationMiddleware
from studio_billing.core.structured_logging import APP_VERSION, setup_logging
from studio_billing.routers import billing, health, invoices, subscriptions
from studio_billing.services.billing_processor import process_due_subscriptions, send_billing_reminders
from studio_billing.services.invoice_service import mark_overdue_invoices
from studio_billing.services.notification_queue import NotificationQueue

logger = logging.getLogger(__name__)

API_TITLE = "Studio Billing API"

TAGS_METADATA = [
    {"name": "health", "description": "Liveness check. No authentication required."},
    {"name": "subscriptions", "description": "Recurring subscriptions of a tenant's clients."},
    {"name": "invoices", "description": "Manual invoices and invoice state transitions."},
    {"name": "billing", "description": "Billing runs over due subscriptions."},
]


def _sweep_overdue(engine) -> int:
    with session_scope(engine) as session:
        return mark_overdue_invoices(session)


async def billing_scheduler_loop(engine):
    while True:
        try:
            outcomes = await run_blocking(
                process_due_subscriptions, engine, label="billing run", timeout=settings.scheduler_interval_s,
            )
            reminders = await run_blocking(send_billing_reminders, engine, label="billing reminders")
            overdue = await run_blocking(_sweep_overdue, engine, label="overdue sweep")
            logger.info(
                "Scheduled billing pass: %d processed, %d reminders, %d overdue",
                len(outcomes), reminders, overdue,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled billing pass failed; retrying next interval")
        await asyncio.sleep(settings.scheduler_interval_s)


async def notification_loop(queue: NotificationQueue):
    while True:
        try:
            sent = await queue.process_pending()
            logger.debug("Notification outbox: delivered %d", sent)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Notification outbox pass failed")
        await asyncio.sleep(settings.notification_interval_s)


async def _cancel(task: asyncio.Task, name: str) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("%s cancelled", name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    setup_logging(log_dir=settings.log_dir, log_file=settings.log_file, level=settings.log_level)
    logger.info("Starting %s v%s", API_TITLE, APP_VERSION)

    error_registry.load()
    error_registry.ensure_registered(raised_codes())

    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        app.state.engine = build_engine(settings.resolve_database_url(), echo=settings.debug)
        init_db(app.state.engine)
        logger.info("Database initialized")
    engine = app.state.engine

    tasks = []
    if settings.scheduler_enabled:
        tasks.append(("Billing scheduler", asyncio.create_task(billing_scheduler_loop(engine))))
        tasks.append(("Notification outbox", asyncio.create_task(notification_loop(NotificationQueue(engine)))))
    else:
        logger.info("Scheduler disabled; billing runs only via POST /api/billing/run or the CLI")

    yield

    logger.info("Shutting down %s...", API_TITLE)
    for name, task in tasks:
        await _cancel(task, name)
    if owns_engine:
        close_db(engine)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=API_TITLE,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(BillingError, billing_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(
        subscriptions.router,
        prefix="/api/tenants/{tenant_id}/subscriptions",
        tags=["subscriptions"],
    )
    app.include_router(
        invoices.router,
        prefix="/api/tenants/{tenant_id}/invoices",
        tags=["invoices"],
    )
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])

    return app


app = create_app()
