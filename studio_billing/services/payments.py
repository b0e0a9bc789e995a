"""
Payment Retries
===============

PURPOSE:
    Dunning for recurring invoices. Moving money is done by an external
    collaborator (card terminal, bank, payment provider) passed in as a
    PaymentCapture; this module records what it reported and moves the
    subscription along:

        capture succeeded → invoice PAID, retry_count = 0, PAST_DUE → ACTIVE
        capture failed    → retry_count += 1; at max_retries → PAST_DUE

    A PAST_DUE subscription is not billed by the processor until a payment
    settles it, through retry_payment() or invoice_service.mark_invoice_paid().

BOUNDARIES:
    The capture runs before anything is written, so a slow provider never
    holds the database write lock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlmodel import Session

from studio_billing.core.errors import PAYMENT_RETRIES_EXHAUSTED, SUBSCRIPTION_STATE_CONFLICT, ValidationError
from studio_billing.models.billing import Invoice, InvoiceStatus, PaymentStatus, Subscription, SubscriptionStatus
from studio_billing.services.invoice_service import outstanding_invoice, settle_subscription_payment
from studio_billing.services.subscription_service import get_subscription

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


@dataclass
class CaptureResult:
    succeeded: bool
    reference: Optional[str] = None
    error: Optional[str] = None


# Called with the invoice to collect; must not touch the session
PaymentCapture = Callable[[Invoice], CaptureResult]


def reported_capture(result: CaptureResult) -> PaymentCapture:
    """A capture whose outcome the provider has already reported."""

    def _capture(invoice: Invoice) -> CaptureResult:
        return result

    return _capture


@dataclass
class RetryOutcome:
    subscription: Subscription
    invoice: Invoice
    succeeded: bool
    error: Optional[str] = None


def retry_payment(
    session: Session,
    tenant_id: str,
    subscription_id: str,
    capture: PaymentCapture,
) -> RetryOutcome:
    """
    Try once more to collect the subscription's latest unpaid invoice.

    Raises:
        NotFoundError: unknown subscription (or wrong tenant).
        ValidationError: BIL-SUB-002 when the subscription is paused or
            terminal or has nothing unpaid; BIL-SUB-003 when its retries
            are used up (it is left PAST_DUE).
    """
    sub = get_subscription(session, tenant_id, subscription_id)
    if sub.status not in _RETRYABLE_STATUSES:
        raise ValidationError(
            f"cannot retry payment of a subscription in status {sub.status.value}",
            field="status",
            code=SUBSCRIPTION_STATE_CONFLICT,
        )

    invoice = outstanding_invoice(session, sub.id)
    if invoice is None:
        raise ValidationError(
            f"subscription {sub.id} has no unpaid invoice",
            field="status",
            code=SUBSCRIPTION_STATE_CONFLICT,
        )

    if sub.retry_count >= sub.max_retries:
        if sub.status != SubscriptionStatus.PAST_DUE:
            sub.status = SubscriptionStatus.PAST_DUE
            sub.updated_at = datetime.now(timezone.utc)
            session.add(sub)
            session.commit()
        raise ValidationError(
            f"subscription {subscription_id} used {sub.retry_count} of {sub.max_retries} payment retries",
            field="retry_count",
            code=PAYMENT_RETRIES_EXHAUSTED,
        )

    try:
        result = capture(invoice)
    except Exception as exc:
        logger.warning("Payment capture for invoice %s raised", invoice.invoice_number, exc_info=True)
        result = CaptureResult(succeeded=False, error=str(exc) or type(exc).__name__)

    now = datetime.now(timezone.utc)
    if result.succeeded:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now
        invoice.updated_at = now
        session.add(invoice)
        session.flush()
        settle_subscription_payment(session, invoice, now)
        logger.info(
            "Payment retry for subscription %s collected invoice %s (ref=%s)",
            sub.id, invoice.invoice_number, result.reference,
        )
    else:
        sub.retry_count += 1
        sub.last_payment_status = PaymentStatus.FAILED
        if sub.retry_count >= sub.max_retries:
            sub.status = SubscriptionStatus.PAST_DUE
            logger.warning(
                "Subscription %s is past due after %d failed payment attempts",
                sub.id, sub.retry_count,
            )
        else:
            logger.info(
                "Payment retry %d/%d for subscription %s failed: %s",
                sub.retry_count, sub.max_retries, sub.id, result.error,
            )
        sub.updated_at = now
        session.add(sub)

    session.commit()
    session.refresh(sub)
    session.refresh(invoice)
    return RetryOutcome(subscription=sub, invoice=invoice, succeeded=result.succeeded, error=result.error)
