"""
Invoice Number Allocator
========================

Tenant-scoped, per-calendar-year sequence: ``<prefix><year><NNNN>``, e.g.
FA20240001, FA20240002, ... The counter row is read with a row lock inside
the caller's transaction, so numbers are only consumed when the invoice
that uses them commits, and two concurrent transactions can never read the
same last_number.

Uniqueness is additionally enforced by UNIQUE(tenant_id, invoice_number)
on the invoices table; the billing code maps a violation of it to
InvoiceNumberConflict.
"""

import logging
from datetime import date

from sqlmodel import Session, select

from studio_billing.config import settings
from studio_billing.models.billing import InvoiceSequence, Tenant

logger = logging.getLogger(__name__)

NUMBER_WIDTH = 4


def format_invoice_number(prefix: str, year: int, number: int) -> str:
    return f"{prefix}{year}{number:0{NUMBER_WIDTH}d}"


def allocate_invoice_number(session: Session, tenant: Tenant, issue_date: date) -> str:
    """Reserve the next number for ``tenant`` in ``issue_date``'s year.

    Must be called inside the transaction that inserts the invoice.
    """
    year = issue_date.year
    seq = session.exec(
        select(InvoiceSequence)
        .where(InvoiceSequence.tenant_id == tenant.id, InvoiceSequence.year == year)
        .with_for_update()
    ).first()

    if seq is None:
        seq = InvoiceSequence(tenant_id=tenant.id, year=year, last_number=0)

    seq.last_number += 1
    session.add(seq)
    session.flush()

    prefix = tenant.invoice_prefix or settings.invoice_number_prefix
    number = format_invoice_number(prefix, year, seq.last_number)
    logger.debug("Allocated invoice number %s for tenant %s", number, tenant.id)
    return number
