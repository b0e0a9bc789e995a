"""
Billing Models
==============

SQLModel tables for persistent billing state:
- Tenant: studio account and its billing defaults (VAT, payment term, prefix).
- Client / Package: the billed party and the optional credits bundle.
- Subscription: recurring billing agreement; soft-terminated, never deleted.
  Also carries the dunning counters (retry_count / max_retries).
- Invoice / InvoiceItem: issued documents with explicit, typed line items.
- InvoiceSequence: per-tenant, per-year invoice number counter.

Every table that holds tenant data carries tenant_id and every query in the
services filters by it.
"""

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import Column, Enum as SAEnum, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Frequency(str, enum.Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"

    @property
    def is_month_based(self) -> bool:
        return self in (Frequency.MONTHLY, Frequency.QUARTERLY, Frequency.YEARLY)


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PaymentStatus(str, enum.Enum):
    """Collection state of the latest recurring invoice."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


TERMINAL_SUBSCRIPTION_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class Tenant(SQLModel, table=True):
    """Studio account. Billing defaults fall back to settings when NULL."""

    __tablename__ = "tenants"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    name: str = Field(max_length=255)
    currency: str = Field(default="CZK", max_length=3)
    vat_rate: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)
    payment_term_days: Optional[int] = Field(default=None)
    invoice_prefix: Optional[str] = Field(default=None, max_length=16)
    created_at: datetime = Field(default_factory=_utcnow)


class Client(SQLModel, table=True):
    __tablename__ = "clients"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, max_length=32)
    name: str = Field(max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    credits_remaining: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)


class Package(SQLModel, table=True):
    """Purchasable credits bundle; informational for billing math."""

    __tablename__ = "packages"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, max_length=32)
    name: str = Field(max_length=255)
    credits: int = Field(default=0)
    price: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    created_at: datetime = Field(default_factory=_utcnow)


class Subscription(SQLModel, table=True):
    """Recurring billing agreement between a tenant and one of its clients."""

    __tablename__ = "subscriptions"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, max_length=32)
    client_id: str = Field(foreign_key="clients.id", index=True, max_length=32)
    package_id: Optional[str] = Field(default=None, foreign_key="packages.id", max_length=32)

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="CZK", max_length=3)
    frequency: Frequency = Field(sa_column=Column(SAEnum(Frequency, name="subscription_frequency"), nullable=False))
    billing_day: Optional[int] = Field(default=None)

    start_date: date
    end_date: Optional[date] = Field(default=None)
    auto_renew: bool = Field(default=True)
    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.ACTIVE,
        sa_column=Column(SAEnum(SubscriptionStatus, name="subscription_status"), nullable=False, index=True),
    )
    next_billing_date: date = Field(index=True)

    cancel_at_period_end: bool = Field(default=False)
    cancelled_at: Optional[datetime] = Field(default=None)
    paused_at: Optional[datetime] = Field(default=None)
    last_billed_at: Optional[date] = Field(default=None)
    reminder_sent: bool = Field(default=False)

    last_payment_status: Optional[PaymentStatus] = Field(
        default=None,
        sa_column=Column(SAEnum(PaymentStatus, name="payment_status"), nullable=True),
    )
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    package: Optional[Package] = Relationship()


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=32)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, max_length=32)
    client_id: str = Field(foreign_key="clients.id", index=True, max_length=32)
    # Only set for machine-generated recurring invoices
    subscription_id: Optional[str] = Field(default=None, foreign_key="subscriptions.id", index=True, max_length=32)

    invoice_number: str = Field(max_length=32)
    issue_date: date
    due_date: date
    currency: str = Field(default="CZK", max_length=3)

    subtotal: Decimal = Field(max_digits=14, decimal_places=4)
    vat_rate: Decimal = Field(default=Decimal("0"), max_digits=5, decimal_places=2)
    vat_amount: Decimal = Field(max_digits=12, decimal_places=2)
    total_amount: Decimal = Field(max_digits=14, decimal_places=4)

    status: InvoiceStatus = Field(
        default=InvoiceStatus.DRAFT,
        sa_column=Column(SAEnum(InvoiceStatus, name="invoice_status"), nullable=False, index=True),
    )
    notes: Optional[str] = Field(default=None, max_length=1000)
    paid_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    items: List["InvoiceItem"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"order_by": "InvoiceItem.position", "cascade": "all, delete-orphan"},
    )


class InvoiceItem(SQLModel, table=True):
    """One ordered line of an invoice. total_price == quantity * unit_price."""

    __tablename__ = "invoice_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: str = Field(foreign_key="invoices.id", index=True, max_length=32)
    position: int = Field(default=0)
    description: str = Field(max_length=500)
    quantity: Decimal = Field(max_digits=10, decimal_places=2)
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    # unit_price and quantity both have 2 places, so 4 keeps the product exact
    total_price: Decimal = Field(max_digits=14, decimal_places=4)

    invoice: Optional[Invoice] = Relationship(back_populates="items")


class InvoiceSequence(SQLModel, table=True):
    """Last allocated invoice number per tenant and calendar year."""

    __tablename__ = "invoice_sequences"

    tenant_id: str = Field(foreign_key="tenants.id", primary_key=True, max_length=32)
    year: int = Field(primary_key=True)
    last_number: int = Field(default=0)
