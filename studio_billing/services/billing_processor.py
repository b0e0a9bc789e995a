"""
Billing Processor
=================

PURPOSE:
    Turns due subscriptions into invoices. One billing cycle = one unit of
    work: the row is re-read fresh under the write lock, the invoice is
    written, next_billing_date is advanced, and both are committed together
    or not at all. A subscription several cycles behind is caught up by
    repeating that unit until next_billing_date is past as_of.

FLOW (per cycle, inside one transaction):
    1. status != ACTIVE (PAUSED, PAST_DUE, …) → skipped
    2. next_billing_date > as_of              → skipped
    3. auto_renew off and end_date reached    → EXPIRED / CANCELLED, no invoice
    4. invoice (1 line, tenant VAT, allocator number) + package credits
    5. next_billing_date += one period; a pending period-end cancellation
       whose end_date is now behind us flips to CANCELLED
    6. commit; then enqueue the receipt (outside the transaction)
    7. still due → repeat from 1

BATCH:
    process_due_subscriptions() selects candidate ids and fans them out to a
    bounded thread pool. Each worker opens its own session. Failures are
    recorded per subscription as outcome "failed" and never stop the batch.
"""

import contextvars
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from studio_billing.config import settings
from studio_billing.core.database import session_scope
from studio_billing.core.errors import BillingError, NotFoundError, PersistenceFailure
from studio_billing.core.structured_logging import billing_run
from studio_billing.models.billing import (
    Client,
    InvoiceStatus,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from studio_billing.models.schemas import LineItemIn
from studio_billing.services.invoice_service import build_invoice, get_tenant, recurring_invoice_status
from studio_billing.services.notification_queue import (
    KIND_BILLING_REMINDER,
    KIND_INVOICE_RECEIPT,
    NotificationQueue,
)
from studio_billing.services.schedule import add_period, anchor_day, utc_today

logger = logging.getLogger(__name__)

INVOICED = "invoiced"
SKIPPED = "skipped"
EXPIRED = "expired"
CANCELLED = "cancelled"
FAILED = "failed"


@dataclass
class ProcessOutcome:
    subscription_id: str
    tenant_id: Optional[str] = None
    outcome: str = SKIPPED
    invoice_ids: List[str] = field(default_factory=list)
    invoice_numbers: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Cycle:
    """What one billing transaction did."""

    tenant_id: str
    outcome: str = SKIPPED
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    receipt: Optional[dict] = None
    due_again: bool = False


def _line_description(sub: Subscription) -> str:
    name = sub.package.name if sub.package is not None else "Recurring charge"
    return f"Subscription — {name}"


def _grant_package_credits(session: Session, sub: Subscription) -> None:
    """Top up the client's credits with the package allowance for this cycle."""
    package = sub.package
    if package is None or not package.credits:
        return
    client = session.exec(
        select(Client).where(Client.id == sub.client_id).with_for_update()
    ).one()
    client.credits_remaining += package.credits
    session.add(client)
    logger.info("Granted %d credits to client %s", package.credits, client.id)


def _bill_one(session: Session, subscription_id: str, as_of: date, tenant_id: Optional[str]) -> _Cycle:
    """Steps 1-5 for a single subscription and a single cycle."""
    stmt = select(Subscription).where(Subscription.id == subscription_id).with_for_update()
    if tenant_id is not None:
        stmt = stmt.where(Subscription.tenant_id == tenant_id)
    sub = session.exec(stmt).first()
    if sub is None:
        raise NotFoundError("subscription", subscription_id, tenant_id=tenant_id)

    cycle = _Cycle(tenant_id=sub.tenant_id)

    if sub.status != SubscriptionStatus.ACTIVE or sub.next_billing_date > as_of:
        return cycle

    now = datetime.now(timezone.utc)
    if not sub.auto_renew and sub.end_date is not None:
        if sub.cancel_at_period_end:
            # end_date is the final billable date
            if sub.next_billing_date > sub.end_date:
                sub.status = SubscriptionStatus.CANCELLED
                sub.updated_at = now
                session.add(sub)
                cycle.outcome = CANCELLED
                logger.info("Subscription %s cancelled at period end %s", sub.id, sub.end_date)
                return cycle
        elif sub.next_billing_date >= sub.end_date:
            sub.status = SubscriptionStatus.EXPIRED
            sub.updated_at = now
            session.add(sub)
            cycle.outcome = EXPIRED
            logger.info("Subscription %s expired on %s", sub.id, sub.end_date)
            return cycle

    tenant = get_tenant(session, sub.tenant_id)
    invoice = build_invoice(
        session,
        tenant,
        client_id=sub.client_id,
        items=[LineItemIn(description=_line_description(sub), quantity=Decimal("1"), unit_price=sub.amount)],
        issue_date=sub.next_billing_date,
        status=recurring_invoice_status(),
        currency=sub.currency,
        subscription_id=sub.id,
    )
    _grant_package_credits(session, sub)

    billed_for = sub.next_billing_date
    sub.last_billed_at = billed_for
    sub.next_billing_date = add_period(billed_for, sub.frequency, anchor_day(sub.frequency, sub.billing_day, sub.start_date))
    sub.reminder_sent = False
    sub.last_payment_status = PaymentStatus.PENDING
    sub.retry_count = 0
    sub.updated_at = now
    if sub.cancel_at_period_end and sub.end_date is not None and sub.next_billing_date > sub.end_date:
        sub.status = SubscriptionStatus.CANCELLED
        logger.info("Subscription %s billed its final cycle and is now cancelled", sub.id)
    session.add(sub)

    cycle.outcome = INVOICED
    cycle.invoice_id = invoice.id
    cycle.invoice_number = invoice.invoice_number
    cycle.due_again = sub.status == SubscriptionStatus.ACTIVE and sub.next_billing_date <= as_of
    logger.info(
        "Subscription %s billed for %s: invoice %s, next billing %s",
        sub.id, billed_for, invoice.invoice_number, sub.next_billing_date,
    )

    if invoice.status == InvoiceStatus.SENT:
        cycle.receipt = {
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "client_id": invoice.client_id,
            "subscription_id": sub.id,
            "issue_date": invoice.issue_date.isoformat(),
            "due_date": invoice.due_date.isoformat(),
            "total_amount": str(invoice.total_amount),
            "currency": invoice.currency,
        }
    return cycle


def _run_cycle(engine: Engine, subscription_id: str, as_of: date, tenant_id: Optional[str]) -> _Cycle:
    try:
        with session_scope(engine, write=True) as session:
            return _bill_one(session, subscription_id, as_of, tenant_id)
    except BillingError:
        raise
    except SQLAlchemyError as exc:
        logger.error("Billing transaction for subscription %s rolled back: %s", subscription_id, exc)
        raise PersistenceFailure(
            f"billing transaction for subscription {subscription_id} failed",
            context={"subscription_id": subscription_id},
        ) from exc


def _enqueue(queue: NotificationQueue, tenant_id: str, kind: str, key: str, data: dict) -> None:
    # Billing already committed; a lost notification is only logged
    try:
        queue.enqueue(tenant_id, kind, key, data)
    except SQLAlchemyError:
        logger.warning("Failed to enqueue %s notification %s", kind, key, exc_info=True)


def process_subscription(
    engine: Engine,
    subscription_id: str,
    as_of: Optional[date] = None,
    tenant_id: Optional[str] = None,
    queue: Optional[NotificationQueue] = None,
) -> ProcessOutcome:
    """
    Bill every cycle of one subscription that is due on ``as_of`` (default:
    today, UTC).

    A subscription several periods behind is caught up in one call, one
    transaction per cycle, so an immediate re-run finds nothing due. The
    outcome lists every invoice issued; its ``outcome`` is that of the last
    cycle that changed anything. If a later cycle fails, the cycles before
    it stay committed and their receipts queued, and the error is raised.

    Raises:
        NotFoundError: unknown subscription (or wrong tenant).
        InvoiceNumberConflict: the allocator produced a duplicate number.
        PersistenceFailure: any other database failure; the failing cycle
            wrote nothing.
    """
    as_of = as_of or utc_today()
    result = ProcessOutcome(subscription_id=subscription_id, tenant_id=tenant_id)
    while True:
        cycle = _run_cycle(engine, subscription_id, as_of, tenant_id)
        result.tenant_id = cycle.tenant_id
        if cycle.outcome != SKIPPED:
            result.outcome = cycle.outcome
        if cycle.invoice_id is not None:
            result.invoice_ids.append(cycle.invoice_id)
            result.invoice_numbers.append(cycle.invoice_number)
        if cycle.receipt is not None:
            queue = queue or NotificationQueue(engine)
            _enqueue(
                queue,
                cycle.tenant_id,
                KIND_INVOICE_RECEIPT,
                f"{KIND_INVOICE_RECEIPT}:{cycle.invoice_id}",
                cycle.receipt,
            )
        if not cycle.due_again:
            break

    if len(result.invoice_ids) > 1:
        logger.info("Subscription %s caught up %d cycles", subscription_id, len(result.invoice_ids))
    return result


def _process_guarded(engine, subscription_id, as_of, tenant_id, queue) -> ProcessOutcome:
    """Batch worker: never raises."""
    try:
        return process_subscription(engine, subscription_id, as_of=as_of, tenant_id=tenant_id, queue=queue)
    except BillingError as exc:
        logger.error("Subscription %s failed [%s]: %s", subscription_id, exc.code, exc.detail)
        return ProcessOutcome(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            outcome=FAILED,
            error_code=exc.code,
            error=exc.detail,
        )
    except Exception as exc:
        logger.exception("Unexpected error billing subscription %s", subscription_id)
        return ProcessOutcome(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            outcome=FAILED,
            error_code=BillingError.default_code,
            error=str(exc),
        )


def due_subscription_ids(engine: Engine, as_of: date, tenant_id: Optional[str] = None) -> List[str]:
    with Session(engine) as session:
        stmt = select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.next_billing_date <= as_of,
        )
        if tenant_id is not None:
            stmt = stmt.where(Subscription.tenant_id == tenant_id)
        return list(session.exec(stmt.order_by(Subscription.next_billing_date, Subscription.id)).all())


def process_due_subscriptions(
    engine: Engine,
    tenant_id: Optional[str] = None,
    as_of: Optional[date] = None,
    max_workers: Optional[int] = None,
) -> List[ProcessOutcome]:
    """
    Bill every subscription due on ``as_of``, one transaction per cycle.

    Safe to re-run: a billed subscription's next_billing_date has moved past
    ``as_of``, so the second pass skips it.
    """
    as_of = as_of or utc_today()
    workers = max(1, max_workers or settings.processor_max_workers)
    with billing_run() as run_id:
        ids = due_subscription_ids(engine, as_of, tenant_id)
        logger.info("Billing run %s: %d subscription(s) due as of %s", run_id, len(ids), as_of)
        if not ids:
            return []

        queue = NotificationQueue(engine)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="billing") as pool:
            # copy_context() so the worker log lines carry billing_run_id
            futures = [
                pool.submit(
                    contextvars.copy_context().run,
                    _process_guarded, engine, sub_id, as_of, tenant_id, queue,
                )
                for sub_id in ids
            ]
            outcomes = [f.result() for f in futures]

        counts = Counter(o.outcome for o in outcomes)
        logger.info("Billing run %s finished: %s", run_id, dict(counts))
        return outcomes


def send_billing_reminders(
    engine: Engine,
    tenant_id: Optional[str] = None,
    as_of: Optional[date] = None,
    days_before: Optional[int] = None,
) -> int:
    """
    Queue a reminder for auto-renewing subscriptions billing within
    ``days_before`` days. Each cycle is reminded once (reminder_sent is
    reset when the cycle is billed). Returns the number of reminders queued.
    """
    as_of = as_of or utc_today()
    if days_before is None:
        days_before = settings.reminder_days_before
    horizon = as_of + timedelta(days=days_before)

    with session_scope(engine, write=True) as session:
        stmt = select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.auto_renew.is_(True),
            Subscription.reminder_sent.is_(False),
            Subscription.next_billing_date >= as_of,
            Subscription.next_billing_date <= horizon,
        )
        if tenant_id is not None:
            stmt = stmt.where(Subscription.tenant_id == tenant_id)

        reminders = []
        for sub in session.exec(stmt).all():
            sub.reminder_sent = True
            session.add(sub)
            reminders.append((
                sub.tenant_id,
                f"{KIND_BILLING_REMINDER}:{sub.id}:{sub.next_billing_date.isoformat()}",
                {
                    "subscription_id": sub.id,
                    "client_id": sub.client_id,
                    "next_billing_date": sub.next_billing_date.isoformat(),
                    "amount": str(sub.amount),
                    "currency": sub.currency,
                    "frequency": sub.frequency.value,
                },
            ))

    queue = NotificationQueue(engine)
    for sub_tenant, key, data in reminders:
        _enqueue(queue, sub_tenant, KIND_BILLING_REMINDER, key, data)

    logger.info("Queued %d billing reminder(s) for %s..%s", len(reminders), as_of, horizon)
    return len(reminders)
