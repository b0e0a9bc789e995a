"""
Invoices Router
===============

Staff-issued invoices and invoice state transitions. Recurring invoices
are produced by the billing processor, not through this router.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from studio_billing.core.database import get_session
from studio_billing.core.log_middleware import bind_tenant_context
from studio_billing.models.billing import InvoiceStatus
from studio_billing.models.schemas import InvoiceCreate, InvoiceRead
from studio_billing.services import invoice_service

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(bind_tenant_context)])


@router.post("", response_model=InvoiceRead, status_code=201)
def create_invoice(tenant_id: str, body: InvoiceCreate, session: Session = Depends(get_session)):
    return invoice_service.create_manual_invoice(session, tenant_id, body)


@router.get("", response_model=List[InvoiceRead])
def list_invoices(
    tenant_id: str,
    status: Optional[InvoiceStatus] = None,
    subscription_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
):
    return invoice_service.list_invoices(
        session, tenant_id, status=status, subscription_id=subscription_id, limit=limit, offset=offset
    )


@router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(tenant_id: str, invoice_id: str, session: Session = Depends(get_session)):
    return invoice_service.get_invoice(session, tenant_id, invoice_id)


@router.post("/{invoice_id}/pay", response_model=InvoiceRead)
def pay_invoice(tenant_id: str, invoice_id: str, session: Session = Depends(get_session)):
    return invoice_service.mark_invoice_paid(session, tenant_id, invoice_id)


@router.post("/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(tenant_id: str, invoice_id: str, session: Session = Depends(get_session)):
    return invoice_service.cancel_invoice(session, tenant_id, invoice_id)
