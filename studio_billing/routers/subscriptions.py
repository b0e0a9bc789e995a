"""
Subscriptions Router
====================

Tenant-scoped CRUD and lifecycle transitions for recurring subscriptions.
Errors raised by the service layer are rendered by the BillingError
handler (404 not found, 400 validation / state conflict).
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from studio_billing.core.database import get_session
from studio_billing.core.log_middleware import bind_tenant_context
from studio_billing.models.billing import SubscriptionStatus
from studio_billing.models.schemas import (
    CancelRequest,
    PaymentRetryRead,
    PaymentRetryRequest,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionStats,
    SubscriptionUpdate,
)
from studio_billing.services import payments, subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(bind_tenant_context)])


@router.post("", response_model=SubscriptionRead, status_code=201)
def create_subscription(
    tenant_id: str,
    body: SubscriptionCreate,
    session: Session = Depends(get_session),
):
    return subscription_service.create_subscription(session, tenant_id, body)


@router.get("", response_model=List[SubscriptionRead])
def list_subscriptions(
    tenant_id: str,
    status: Optional[SubscriptionStatus] = None,
    client_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
):
    return subscription_service.list_subscriptions(
        session, tenant_id, status=status, client_id=client_id, limit=limit, offset=offset
    )


@router.get("/stats", response_model=SubscriptionStats)
def subscription_stats(tenant_id: str, session: Session = Depends(get_session)):
    return subscription_service.get_subscription_stats(session, tenant_id)


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(tenant_id: str, subscription_id: str, session: Session = Depends(get_session)):
    return subscription_service.get_subscription(session, tenant_id, subscription_id)


@router.patch("/{subscription_id}", response_model=SubscriptionRead)
def update_subscription(
    tenant_id: str,
    subscription_id: str,
    body: SubscriptionUpdate,
    session: Session = Depends(get_session),
):
    return subscription_service.update_subscription(
        session, tenant_id, subscription_id, body.model_dump(exclude_unset=True)
    )


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    tenant_id: str,
    subscription_id: str,
    body: Optional[CancelRequest] = None,
    session: Session = Depends(get_session),
):
    immediate = body.immediate if body is not None else False
    return subscription_service.cancel_subscription(session, tenant_id, subscription_id, immediate=immediate)


@router.post("/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(tenant_id: str, subscription_id: str, session: Session = Depends(get_session)):
    return subscription_service.pause_subscription(session, tenant_id, subscription_id)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(tenant_id: str, subscription_id: str, session: Session = Depends(get_session)):
    return subscription_service.resume_subscription(session, tenant_id, subscription_id)


@router.post("/{subscription_id}/retry-payment", response_model=PaymentRetryRead)
def retry_payment(
    tenant_id: str,
    subscription_id: str,
    body: PaymentRetryRequest,
    session: Session = Depends(get_session),
):
    """Record the result of another collection attempt reported by the payment provider."""
    capture = payments.reported_capture(payments.CaptureResult(**body.model_dump()))
    outcome = payments.retry_payment(session, tenant_id, subscription_id, capture)
    return PaymentRetryRead(
        succeeded=outcome.succeeded,
        invoice_id=outcome.invoice.id,
        invoice_number=outcome.invoice.invoice_number,
        error=outcome.error,
        subscription=SubscriptionRead.model_validate(outcome.subscription),
    )
