"""
Error code system.

BillingError is the base exception for all structured errors. Each raised
error carries a code from registry.yaml, and the error middleware turns it
into a structured JSON response with the registry's HTTP status.

Usage:
    from studio_billing.core.errors import NotFoundError
    raise NotFoundError("client", client_id, tenant_id=tenant_id)
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^BIL-[A-Z]{2,6}-\d{3}$")

# Raised through ValidationError(code=...) for transitions the current state forbids
SUBSCRIPTION_STATE_CONFLICT = "BIL-SUB-002"
INVOICE_STATE_CONFLICT = "BIL-INV-003"
PAYMENT_RETRIES_EXHAUSTED = "BIL-SUB-003"


class BillingError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "BIL-SUB-001".
        detail: Internal detail message. Only exposed to callers when the
            registry entry sets ``expose_detail``.
        context: Arbitrary key-value context for structured logging.
    """

    default_code = "BIL-SYS-001"

    def __init__(
        self,
        detail: str | None = None,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class NotFoundError(BillingError):
    """Referenced record does not exist or belongs to another tenant."""

    ENTITY_CODES = {
        "tenant": "BIL-TEN-001",
        "client": "BIL-CLI-001",
        "package": "BIL-PKG-001",
        "subscription": "BIL-SUB-001",
        "invoice": "BIL-INV-001",
    }

    def __init__(self, entity: str, entity_id: str, tenant_id: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id!r} not found",
            code=self.ENTITY_CODES.get(entity, "BIL-API-002"),
            context={"entity": entity, "entity_id": entity_id, "tenant_id": tenant_id},
        )


class ValidationError(BillingError):
    """Malformed input or an operation not allowed in the record's state."""

    default_code = "BIL-API-001"

    def __init__(self, detail: str, field: str | None = None, code: str | None = None) -> None:
        self.field = field
        super().__init__(detail, code=code, context={"field": field} if field else None)


class InvoiceNumberConflict(BillingError):
    """The allocator handed out a number that already exists for the tenant.

    Fatal: never retried with the same number.
    """

    default_code = "BIL-INV-002"

    def __init__(self, tenant_id: str, invoice_number: str) -> None:
        self.tenant_id = tenant_id
        self.invoice_number = invoice_number
        super().__init__(
            f"invoice number {invoice_number!r} already used by tenant {tenant_id!r}",
            context={"tenant_id": tenant_id, "invoice_number": invoice_number},
        )


class PersistenceFailure(BillingError):
    """The transaction was aborted; nothing was written. Safe to retry later."""

    default_code = "BIL-DB-001"


def raised_codes() -> set[str]:
    """Every code this package can raise; checked against the registry at startup."""
    codes = {SUBSCRIPTION_STATE_CONFLICT, INVOICE_STATE_CONFLICT, PAYMENT_RETRIES_EXHAUSTED, "BIL-API-002"}
    codes.update(NotFoundError.ENTITY_CODES.values())
    for cls in (BillingError, ValidationError, InvoiceNumberConflict, PersistenceFailure):
        codes.add(cls.default_code)
    return codes
