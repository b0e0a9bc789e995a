"""
Subscription Service
====================

PURPOSE:
    Lifecycle of a recurring billing agreement, scoped to one tenant:

        ACTIVE ⇄ PAUSED
        ACTIVE ⇄ PAST_DUE             (services.payments, failed captures / settlement)
        ACTIVE | PAUSED | PAST_DUE → CANCELLED   (immediately, or at period end via the processor)
        ACTIVE → EXPIRED              (processor, fixed term reached)

    CANCELLED and EXPIRED are terminal; subscriptions are never deleted so
    their invoices keep a valid subscription_id.

    Each public operation is one unit of work on the caller's Session and
    commits before returning.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from studio_billing.config import settings
from studio_billing.core.database import begin_write
from studio_billing.core.errors import SUBSCRIPTION_STATE_CONFLICT, NotFoundError, ValidationError
from studio_billing.models.billing import (
    TERMINAL_SUBSCRIPTION_STATUSES,
    Frequency,
    Package,
    Subscription,
    SubscriptionStatus,
)
from studio_billing.models.schemas import LineItemIn, SubscriptionCreate, SubscriptionStats
from studio_billing.services.invoice_service import (
    build_invoice,
    get_client,
    get_tenant,
    recurring_invoice_status,
)
from studio_billing.services.schedule import (
    add_period,
    anchor_day,
    first_billing_date,
    monthly_factor,
    previous_period_start,
    utc_today,
)
from studio_billing.services.tax import prorate

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("amount", "frequency", "billing_day", "auto_renew", "end_date")

_CENT = Decimal("0.01")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _state_error(sub: Subscription, action: str) -> ValidationError:
    return ValidationError(
        f"cannot {action} a subscription in status {sub.status.value}",
        field="status",
        code=SUBSCRIPTION_STATE_CONFLICT,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_subscription(session: Session, tenant_id: str, subscription_id: str) -> Subscription:
    sub = session.exec(
        select(Subscription).where(Subscription.id == subscription_id, Subscription.tenant_id == tenant_id)
    ).first()
    if sub is None:
        raise NotFoundError("subscription", subscription_id, tenant_id=tenant_id)
    return sub


def list_subscriptions(
    session: Session,
    tenant_id: str,
    status: Optional[SubscriptionStatus] = None,
    client_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Subscription]:
    stmt = select(Subscription).where(Subscription.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(Subscription.status == status)
    if client_id is not None:
        stmt = stmt.where(Subscription.client_id == client_id)
    stmt = stmt.order_by(Subscription.next_billing_date, Subscription.id).offset(offset).limit(limit)
    return list(session.exec(stmt).all())


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def create_subscription(session: Session, tenant_id: str, data: SubscriptionCreate) -> Subscription:
    """
    Register a new ACTIVE subscription and schedule its first billing date.

    No invoice is generated for the first cycle; the processor issues it on
    next_billing_date. With ``prorate_first_period`` and a billing-day
    anchor later than start_date, a stub invoice covers the gap.
    """
    if data.amount is None or data.amount <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")
    if data.billing_day is not None and not 1 <= data.billing_day <= 31:
        raise ValidationError("billing_day must be between 1 and 31", field="billing_day")

    start = data.start_date or utc_today()
    if data.end_date is not None and data.end_date < start:
        raise ValidationError("end_date must not precede start_date", field="end_date")

    # A prorated stub allocates an invoice number
    begin_write(session)
    tenant = get_tenant(session, tenant_id)
    get_client(session, tenant_id, data.client_id)

    package = None
    if data.package_id is not None:
        package = session.exec(
            select(Package).where(Package.id == data.package_id, Package.tenant_id == tenant_id)
        ).first()
        if package is None:
            raise NotFoundError("package", data.package_id, tenant_id=tenant_id)

    frequency = Frequency(data.frequency)
    first = first_billing_date(start, frequency, data.billing_day)

    sub = Subscription(
        tenant_id=tenant_id,
        client_id=data.client_id,
        package_id=package.id if package else None,
        amount=data.amount,
        currency=(data.currency or tenant.currency or settings.default_currency).upper(),
        frequency=frequency,
        billing_day=data.billing_day,
        start_date=start,
        end_date=data.end_date,
        auto_renew=data.auto_renew,
        status=SubscriptionStatus.ACTIVE,
        next_billing_date=first,
        max_retries=settings.payment_max_retries,
    )
    session.add(sub)
    session.flush()

    if data.prorate_first_period and first > start:
        _issue_stub_invoice(session, tenant, sub, package)

    session.commit()
    session.refresh(sub)
    logger.info(
        "Subscription %s created for client %s: %s %s %s, first billing %s",
        sub.id, sub.client_id, sub.amount, sub.currency, frequency.value, first,
    )
    return sub


def _issue_stub_invoice(session: Session, tenant, sub: Subscription, package: Optional[Package]) -> None:
    """Charge the partial period [start_date, next_billing_date)."""
    anchor = anchor_day(sub.frequency, sub.billing_day, sub.start_date)
    period_start = previous_period_start(sub.next_billing_date, sub.frequency, anchor)
    days_in_period = (sub.next_billing_date - period_start).days
    days_used = (sub.next_billing_date - sub.start_date).days
    charge = prorate(sub.amount, days_used, days_in_period, sub.currency)
    # unit prices are stored with 2 places
    charge = charge.quantize(_CENT, rounding=ROUND_HALF_UP)
    if charge <= 0:
        return

    name = package.name if package is not None else "Recurring charge"
    last_day = sub.next_billing_date - timedelta(days=1)
    invoice = build_invoice(
        session,
        tenant,
        client_id=sub.client_id,
        items=[LineItemIn(
            description=f"Subscription — {name} ({sub.start_date.isoformat()} to {last_day.isoformat()}, prorated)",
            quantity=Decimal("1"),
            unit_price=charge,
        )],
        issue_date=sub.start_date,
        status=recurring_invoice_status(),
        currency=sub.currency,
        subscription_id=sub.id,
    )
    logger.info(
        "Prorated stub %s for subscription %s: %d/%d days = %s",
        invoice.invoice_number, sub.id, days_used, days_in_period, charge,
    )


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

def update_subscription(
    session: Session, tenant_id: str, subscription_id: str, changes: Dict[str, Any]
) -> Subscription:
    """
    Apply a partial update. Only keys present in ``changes`` are touched;
    ``end_date=None`` clears the end date.

    Changing frequency or billing_day leaves the already scheduled
    next_billing_date alone; the new values apply from the cycle after it.
    """
    sub = get_subscription(session, tenant_id, subscription_id)
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        raise _state_error(sub, "update")

    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"fields not updatable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

    if "amount" in changes:
        amount = changes["amount"]
        if amount is None or Decimal(amount) <= 0:
            raise ValidationError("amount must be greater than zero", field="amount")
        sub.amount = Decimal(amount)

    if "frequency" in changes:
        if changes["frequency"] is None:
            raise ValidationError("frequency is required", field="frequency")
        try:
            sub.frequency = Frequency(changes["frequency"])
        except ValueError:
            raise ValidationError(f"unknown frequency {changes['frequency']!r}", field="frequency")

    if "billing_day" in changes:
        day = changes["billing_day"]
        if day is not None and not 1 <= day <= 31:
            raise ValidationError("billing_day must be between 1 and 31", field="billing_day")
        sub.billing_day = day

    if "end_date" in changes:
        end = changes["end_date"]
        if end is not None and end < sub.start_date:
            raise ValidationError("end_date must not precede start_date", field="end_date")
        sub.end_date = end

    if "auto_renew" in changes:
        if changes["auto_renew"] is None:
            raise ValidationError("auto_renew must be true or false", field="auto_renew")
        sub.auto_renew = bool(changes["auto_renew"])
        if sub.auto_renew and sub.cancelled_at is not None:
            # Renewing again withdraws the pending period-end cancellation
            sub.cancel_at_period_end = False
            sub.cancelled_at = None
            logger.info("Subscription %s: period-end cancellation withdrawn", sub.id)

    sub.updated_at = _now()
    session.add(sub)
    session.commit()
    session.refresh(sub)
    logger.info("Subscription %s updated: %s", sub.id, sorted(changes))
    return sub


# ---------------------------------------------------------------------------
# Cancel / pause / resume
# ---------------------------------------------------------------------------

def cancel_subscription(
    session: Session, tenant_id: str, subscription_id: str, immediate: bool = False
) -> Subscription:
    """
    Cancel now (no further invoices) or at the end of the current period
    (the processor bills the one remaining scheduled cycle, then cancels).

    A cancellation never extends billing: a fixed term that ends on or
    before next_billing_date keeps its end_date, and the processor expires
    the subscription there without a final invoice.

    Cancelling a CANCELLED or EXPIRED subscription returns it unchanged.
    """
    sub = get_subscription(session, tenant_id, subscription_id)
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        return sub

    now = _now()
    if immediate:
        today = utc_today()
        sub.status = SubscriptionStatus.CANCELLED
        sub.cancelled_at = now
        sub.cancel_at_period_end = False
        if sub.end_date is None or sub.end_date > today:
            sub.end_date = today
        logger.info("Subscription %s cancelled immediately", sub.id)
    elif sub.cancel_at_period_end:
        return sub
    elif not sub.auto_renew and sub.end_date is not None and sub.end_date <= sub.next_billing_date:
        sub.cancelled_at = now
        logger.info("Subscription %s: term already ends on %s, no further cycle", sub.id, sub.end_date)
    else:
        sub.end_date = sub.next_billing_date
        sub.auto_renew = False
        sub.cancel_at_period_end = True
        sub.cancelled_at = now
        logger.info("Subscription %s will cancel after its cycle on %s", sub.id, sub.end_date)

    sub.updated_at = now
    session.add(sub)
    session.commit()
    session.refresh(sub)
    return sub


def pause_subscription(session: Session, tenant_id: str, subscription_id: str) -> Subscription:
    sub = get_subscription(session, tenant_id, subscription_id)
    if sub.status != SubscriptionStatus.ACTIVE:
        raise _state_error(sub, "pause")

    now = _now()
    sub.status = SubscriptionStatus.PAUSED
    sub.paused_at = now
    sub.updated_at = now
    session.add(sub)
    session.commit()
    session.refresh(sub)
    logger.info("Subscription %s paused", sub.id)
    return sub


def resume_subscription(
    session: Session, tenant_id: str, subscription_id: str, as_of: Optional[date] = None
) -> Subscription:
    """
    PAUSED → ACTIVE. Periods that fell inside the pause are not billed:
    next_billing_date moves forward by whole periods until it is on or
    after ``as_of``. It never moves backwards.
    """
    sub = get_subscription(session, tenant_id, subscription_id)
    if sub.status != SubscriptionStatus.PAUSED:
        raise _state_error(sub, "resume")

    today = as_of or utc_today()
    anchor = anchor_day(sub.frequency, sub.billing_day, sub.start_date)
    nbd = sub.next_billing_date
    while nbd < today:
        nbd = add_period(nbd, sub.frequency, anchor)
    if nbd != sub.next_billing_date:
        logger.info("Subscription %s: skipping paused cycles %s → %s", sub.id, sub.next_billing_date, nbd)

    sub.next_billing_date = nbd
    sub.status = SubscriptionStatus.ACTIVE
    sub.paused_at = None
    sub.reminder_sent = False
    sub.updated_at = _now()
    session.add(sub)
    session.commit()
    session.refresh(sub)
    logger.info("Subscription %s resumed, next billing %s", sub.id, nbd)
    return sub


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def get_subscription_stats(session: Session, tenant_id: str, as_of: Optional[date] = None) -> SubscriptionStats:
    """Status counts, MRR of active subscriptions and renewals due soon.

    ``mrr_by_currency`` always holds the per-currency totals. ``mrr`` is the
    single total when every active subscription bills in one currency and
    None when they are mixed.
    """
    get_tenant(session, tenant_id)
    today = as_of or utc_today()
    horizon = today + timedelta(days=settings.upcoming_renewal_window_days)

    stats = SubscriptionStats()
    mrr_by_currency: Dict[str, Decimal] = {}
    subs = session.exec(select(Subscription).where(Subscription.tenant_id == tenant_id)).all()
    for sub in subs:
        if sub.status == SubscriptionStatus.ACTIVE:
            stats.active += 1
            monthly = Decimal(sub.amount) * monthly_factor(sub.frequency)
            mrr_by_currency[sub.currency] = mrr_by_currency.get(sub.currency, Decimal("0")) + monthly
            if today <= sub.next_billing_date <= horizon:
                stats.upcoming_renewals += 1
        elif sub.status == SubscriptionStatus.PAUSED:
            stats.paused += 1
        elif sub.status == SubscriptionStatus.PAST_DUE:
            stats.past_due += 1
        elif sub.status == SubscriptionStatus.CANCELLED:
            stats.cancelled += 1
        elif sub.status == SubscriptionStatus.EXPIRED:
            stats.expired += 1

    stats.mrr_by_currency = {
        code: value.quantize(_CENT, rounding=ROUND_HALF_UP) for code, value in sorted(mrr_by_currency.items())
    }
    # Amounts in different currencies are never added up
    if len(stats.mrr_by_currency) == 1:
        stats.mrr = next(iter(stats.mrr_by_currency.values()))
    elif stats.mrr_by_currency:
        stats.mrr = None
    return stats
