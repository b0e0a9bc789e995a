"""
Billing Run Router
==================

POST /api/billing/run triggers the same batch the scheduler runs. Re-runs
are idempotent: subscriptions billed by an earlier pass are skipped.
"""

import logging
from collections import Counter
from typing import Optional

from fastapi import APIRouter, Request

from studio_billing.core.background import run_blocking
from studio_billing.models.schemas import BillingRunRequest, BillingRunResponse, ProcessOutcomeRead
from studio_billing.services.billing_processor import (
    CANCELLED,
    EXPIRED,
    FAILED,
    INVOICED,
    SKIPPED,
    process_due_subscriptions,
)
from studio_billing.services.schedule import utc_today

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/run", response_model=BillingRunResponse)
async def run_billing(request: Request, body: Optional[BillingRunRequest] = None):
    body = body or BillingRunRequest()
    as_of = body.as_of or utc_today()
    outcomes = await run_blocking(
        process_due_subscriptions,
        request.app.state.engine,
        label="billing run (api)",
        tenant_id=body.tenant_id,
        as_of=as_of,
    )
    counts = Counter(o.outcome for o in outcomes)
    return BillingRunResponse(
        as_of=as_of,
        invoiced=counts[INVOICED],
        expired=counts[EXPIRED],
        cancelled=counts[CANCELLED],
        skipped=counts[SKIPPED],
        failed=counts[FAILED],
        outcomes=[ProcessOutcomeRead(**o.to_dict()) for o in outcomes],
    )
