"""
Invoice Service
===============

PURPOSE:
    Everything that writes an Invoice row goes through build_invoice(), so
    recurring invoices, proration stubs and staff-issued manual invoices
    share one totals rule and one number allocator.

    Also owns the invoice lifecycle:

        DRAFT → SENT → PAID
                SENT → OVERDUE → PAID
        DRAFT | SENT | OVERDUE → CANCELLED

    PAID and CANCELLED are final.

BOUNDARIES:
    build_invoice() only flushes; the caller's unit of work decides when to
    commit (the billing processor's per-subscription transaction, the
    subscription service's create). The public operations below commit
    their own change; the ones that allocate a number or sweep many rows
    take the write lock first (core.database.begin_write).
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from studio_billing.config import settings
from studio_billing.core.database import begin_write
from studio_billing.core.errors import INVOICE_STATE_CONFLICT, InvoiceNumberConflict, NotFoundError, ValidationError
from studio_billing.models.billing import (
    Client,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    Tenant,
)
from studio_billing.models.schemas import InvoiceCreate
from studio_billing.services.invoice_numbering import allocate_invoice_number
from studio_billing.services.schedule import utc_today
from studio_billing.services.tax import invoice_totals, line_total

logger = logging.getLogger(__name__)

_PAYABLE = (InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)
_FINAL = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Tenant-scoped lookups
# ---------------------------------------------------------------------------

def get_tenant(session: Session, tenant_id: str) -> Tenant:
    tenant = session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("tenant", tenant_id)
    return tenant


def get_client(session: Session, tenant_id: str, client_id: str) -> Client:
    client = session.exec(
        select(Client).where(Client.id == client_id, Client.tenant_id == tenant_id)
    ).first()
    if client is None:
        raise NotFoundError("client", client_id, tenant_id=tenant_id)
    return client


def tenant_vat_rate(tenant: Tenant) -> Decimal:
    return tenant.vat_rate if tenant.vat_rate is not None else settings.default_vat_rate


def tenant_payment_term(tenant: Tenant) -> int:
    if tenant.payment_term_days is not None:
        return tenant.payment_term_days
    return settings.default_payment_term_days


def recurring_invoice_status() -> InvoiceStatus:
    """Status for machine-generated invoices (recurring and proration stubs)."""
    if settings.recurring_invoice_status == "draft":
        return InvoiceStatus.DRAFT
    return InvoiceStatus.SENT


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def is_invoice_number_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return "uq_invoices_tenant_number" in message or "invoices.invoice_number" in message


def build_invoice(
    session: Session,
    tenant: Tenant,
    client_id: str,
    items: Iterable,
    issue_date: date,
    status: InvoiceStatus,
    currency: Optional[str] = None,
    vat_rate: Optional[Decimal] = None,
    payment_term_days: Optional[int] = None,
    subscription_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> Invoice:
    """Allocate a number, compute totals and add the invoice with its items.

    ``items`` are objects with ``description``, ``quantity`` and
    ``unit_price``. The invoice is flushed but not committed.
    """
    items = list(items)
    if not items:
        raise ValidationError("an invoice needs at least one line item", field="items")

    currency = currency or tenant.currency or settings.default_currency
    rate = vat_rate if vat_rate is not None else tenant_vat_rate(tenant)
    term = payment_term_days if payment_term_days is not None else tenant_payment_term(tenant)
    totals = invoice_totals(items, rate, currency)
    # A failed flush expires every loaded instance; the error path reads these
    tenant_id = tenant.id
    number = allocate_invoice_number(session, tenant, issue_date)

    invoice = Invoice(
        tenant_id=tenant_id,
        client_id=client_id,
        subscription_id=subscription_id,
        invoice_number=number,
        issue_date=issue_date,
        due_date=issue_date + timedelta(days=term),
        currency=currency,
        subtotal=totals.subtotal,
        vat_rate=totals.vat_rate,
        vat_amount=totals.vat_amount,
        total_amount=totals.total,
        status=status,
        notes=notes,
    )
    invoice.items = [
        InvoiceItem(
            position=position,
            description=item.description,
            quantity=Decimal(item.quantity),
            unit_price=Decimal(item.unit_price),
            total_price=line_total(item.quantity, item.unit_price),
        )
        for position, item in enumerate(items, start=1)
    ]
    session.add(invoice)
    try:
        session.flush()
    except IntegrityError as exc:
        if not is_invoice_number_conflict(exc):
            raise
        logger.critical(
            "Invoice number %s already exists for tenant %s; sequence is out of step",
            number, tenant_id,
        )
        raise InvoiceNumberConflict(tenant_id, number) from exc

    logger.info(
        "Invoice %s issued for tenant %s: subtotal=%s vat=%s total=%s %s",
        number, tenant_id, totals.subtotal, totals.vat_amount, totals.total, currency,
    )
    return invoice


# ---------------------------------------------------------------------------
# Manual invoices
# ---------------------------------------------------------------------------

def create_manual_invoice(session: Session, tenant_id: str, data: InvoiceCreate) -> Invoice:
    begin_write(session)
    tenant = get_tenant(session, tenant_id)
    get_client(session, tenant_id, data.client_id)

    invoice = build_invoice(
        session,
        tenant,
        client_id=data.client_id,
        items=data.items,
        issue_date=data.issue_date or utc_today(),
        status=InvoiceStatus(data.status),
        vat_rate=data.vat_rate,
        payment_term_days=data.payment_term_days,
        notes=data.notes,
    )
    session.commit()
    session.refresh(invoice)
    return invoice


def get_invoice(session: Session, tenant_id: str, invoice_id: str) -> Invoice:
    invoice = session.exec(
        select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
    ).first()
    if invoice is None:
        raise NotFoundError("invoice", invoice_id, tenant_id=tenant_id)
    return invoice


def list_invoices(
    session: Session,
    tenant_id: str,
    status: Optional[InvoiceStatus] = None,
    subscription_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Invoice]:
    stmt = select(Invoice).where(Invoice.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(Invoice.status == status)
    if subscription_id is not None:
        stmt = stmt.where(Invoice.subscription_id == subscription_id)
    stmt = stmt.order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc()).offset(offset).limit(limit)
    return list(session.exec(stmt).all())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def outstanding_invoice(session: Session, subscription_id: str) -> Optional[Invoice]:
    """Latest SENT or OVERDUE invoice of a subscription."""
    return session.exec(
        select(Invoice)
        .where(
            Invoice.subscription_id == subscription_id,
            Invoice.status.in_((InvoiceStatus.SENT, InvoiceStatus.OVERDUE)),
        )
        .order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
    ).first()


def settle_subscription_payment(session: Session, invoice: Invoice, now: datetime) -> None:
    """Clear the dunning state of the invoice's subscription once nothing is left unpaid.

    Call after ``invoice`` has been marked PAID and flushed.
    """
    if invoice.subscription_id is None:
        return
    sub = session.get(Subscription, invoice.subscription_id)
    if sub is None or outstanding_invoice(session, sub.id) is not None:
        return

    sub.last_payment_status = PaymentStatus.PAID
    sub.retry_count = 0
    if sub.status == SubscriptionStatus.PAST_DUE:
        sub.status = SubscriptionStatus.ACTIVE
        logger.info("Subscription %s settled and active again", sub.id)
    sub.updated_at = now
    session.add(sub)


def mark_invoice_paid(session: Session, tenant_id: str, invoice_id: str) -> Invoice:
    invoice = get_invoice(session, tenant_id, invoice_id)
    if invoice.status == InvoiceStatus.PAID:
        return invoice
    if invoice.status not in _PAYABLE:
        raise ValidationError(
            f"invoice {invoice.invoice_number} is {invoice.status.value} and cannot be paid",
            field="status",
            code=INVOICE_STATE_CONFLICT,
        )

    now = datetime.now(timezone.utc)
    invoice.status = InvoiceStatus.PAID
    invoice.paid_at = now
    invoice.updated_at = now
    session.add(invoice)
    session.flush()
    settle_subscription_payment(session, invoice, now)
    session.commit()
    session.refresh(invoice)
    logger.info("Invoice %s marked paid", invoice.invoice_number)
    return invoice


def cancel_invoice(session: Session, tenant_id: str, invoice_id: str) -> Invoice:
    invoice = get_invoice(session, tenant_id, invoice_id)
    if invoice.status == InvoiceStatus.CANCELLED:
        return invoice
    if invoice.status in _FINAL:
        raise ValidationError(
            f"invoice {invoice.invoice_number} is already paid",
            field="status",
            code=INVOICE_STATE_CONFLICT,
        )

    invoice.status = InvoiceStatus.CANCELLED
    invoice.updated_at = datetime.now(timezone.utc)
    session.add(invoice)
    session.commit()
    session.refresh(invoice)
    logger.info("Invoice %s cancelled", invoice.invoice_number)
    return invoice


def mark_overdue_invoices(session: Session, as_of: Optional[date] = None, tenant_id: Optional[str] = None) -> int:
    """SENT invoices past their due date become OVERDUE. Returns the count."""
    begin_write(session)
    as_of = as_of or utc_today()
    stmt = select(Invoice).where(Invoice.status == InvoiceStatus.SENT, Invoice.due_date < as_of)
    if tenant_id is not None:
        stmt = stmt.where(Invoice.tenant_id == tenant_id)

    now = datetime.now(timezone.utc)
    count = 0
    for invoice in session.exec(stmt).all():
        invoice.status = InvoiceStatus.OVERDUE
        invoice.updated_at = now
        session.add(invoice)
        count += 1
    session.commit()

    if count:
        logger.info("Marked %d invoice(s) overdue as of %s", count, as_of)
    return count
