"""
Billing Schemas — Pydantic request/response models.

Requests are validated at the boundary: amounts must be positive, billing
days must be 1–31, frequencies must be one of the Frequency values. Services
re-check the same rules so direct Python callers get ValidationError too.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from studio_billing.models.billing import Frequency, InvoiceStatus, PaymentStatus, SubscriptionStatus


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class SubscriptionCreate(BaseModel):
    client_id: str
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    frequency: Frequency
    package_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    billing_day: Optional[int] = Field(None, ge=1, le=31)
    auto_renew: bool = True
    prorate_first_period: bool = Field(
        False, description="Issue a prorated stub invoice up to the first billing-day anchor"
    )


class SubscriptionUpdate(BaseModel):
    """Partial update. Only fields present in the request body are applied;
    an explicit null end_date clears it."""

    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    frequency: Optional[Frequency] = None
    billing_day: Optional[int] = Field(None, ge=1, le=31)
    auto_renew: Optional[bool] = None
    end_date: Optional[date] = None


class CancelRequest(BaseModel):
    immediate: bool = False


class SubscriptionRead(BaseModel):
    id: str
    tenant_id: str
    client_id: str
    package_id: Optional[str] = None
    amount: Decimal
    currency: str
    frequency: Frequency
    billing_day: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    auto_renew: bool
    status: SubscriptionStatus
    next_billing_date: date
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    last_billed_at: Optional[date] = None
    last_payment_status: Optional[PaymentStatus] = None
    retry_count: int = 0
    max_retries: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentRetryRequest(BaseModel):
    """Outcome of a capture attempt, as reported by the payment provider."""

    succeeded: bool
    reference: Optional[str] = Field(None, max_length=255)
    error: Optional[str] = Field(None, max_length=500)


class PaymentRetryRead(BaseModel):
    succeeded: bool
    invoice_id: str
    invoice_number: str
    error: Optional[str] = None
    subscription: SubscriptionRead


class SubscriptionStats(BaseModel):
    active: int = 0
    paused: int = 0
    past_due: int = 0
    cancelled: int = 0
    expired: int = 0
    # None when active subscriptions bill in more than one currency
    mrr: Optional[Decimal] = Decimal("0")
    mrr_by_currency: Dict[str, Decimal] = Field(default_factory=dict)
    upcoming_renewals: int = 0


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(Decimal("1"), gt=0, decimal_places=2)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)


class InvoiceCreate(BaseModel):
    client_id: str
    items: List[LineItemIn] = Field(..., min_length=1)
    vat_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    issue_date: Optional[date] = None
    payment_term_days: Optional[int] = Field(None, ge=0, le=365)
    status: Literal["DRAFT", "SENT"] = "DRAFT"
    notes: Optional[str] = Field(None, max_length=1000)


class LineItemRead(BaseModel):
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}


class InvoiceRead(BaseModel):
    id: str
    tenant_id: str
    client_id: str
    subscription_id: Optional[str] = None
    invoice_number: str
    issue_date: date
    due_date: date
    currency: str
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    items: List[LineItemRead] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Billing runs
# ---------------------------------------------------------------------------

class BillingRunRequest(BaseModel):
    tenant_id: Optional[str] = None
    as_of: Optional[date] = None


class ProcessOutcomeRead(BaseModel):
    subscription_id: str
    tenant_id: Optional[str] = None
    outcome: str
    invoice_ids: List[str] = []
    invoice_numbers: List[str] = []
    error_code: Optional[str] = None
    error: Optional[str] = None


class BillingRunResponse(BaseModel):
    as_of: date
    invoiced: int
    expired: int
    cancelled: int
    skipped: int
    failed: int
    outcomes: List[ProcessOutcomeRead]
