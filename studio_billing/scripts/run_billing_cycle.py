"""
Run Billing Cycle
=================

CLI entry point for an external cron trigger (when the in-process scheduler
is disabled). Bills every due subscription and prints a JSON summary.

Usage:
    studio-billing-run [--tenant ID] [--as-of YYYY-MM-DD] [--workers N] [--reminders] [--overdue]
    python -m studio_billing.scripts.run_billing_cycle --as-of 2024-02-01

Exit code 1 when at least one subscription failed.
"""

import argparse
import json
import sys
from collections import Counter
from datetime import date

from studio_billing.config import settings
from studio_billing.core.database import build_engine, close_db, init_db, session_scope
from studio_billing.core.structured_logging import setup_logging
from studio_billing.services.billing_processor import FAILED, process_due_subscriptions, send_billing_reminders
from studio_billing.services.invoice_service import mark_overdue_invoices
from studio_billing.services.schedule import utc_today


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Bill all due subscriptions")
    parser.add_argument("--tenant", help="Only bill this tenant")
    parser.add_argument("--as-of", type=_parse_date, help="Billing date (default: today, UTC)")
    parser.add_argument("--workers", type=int, help=f"Worker threads (default: {settings.processor_max_workers})")
    parser.add_argument("--reminders", action="store_true", help="Also queue upcoming-renewal reminders")
    parser.add_argument("--overdue", action="store_true", help="Also mark past-due invoices OVERDUE")
    args = parser.parse_args(argv)

    setup_logging(log_dir=settings.log_dir, log_file=settings.log_file, level=settings.log_level)
    as_of = args.as_of or utc_today()

    engine = build_engine(settings.resolve_database_url())
    try:
        init_db(engine)
        outcomes = process_due_subscriptions(
            engine, tenant_id=args.tenant, as_of=as_of, max_workers=args.workers
        )
        summary = {
            "as_of": as_of.isoformat(),
            "tenant_id": args.tenant,
            "counts": dict(Counter(o.outcome for o in outcomes)),
            "failures": [o.to_dict() for o in outcomes if o.outcome == FAILED],
        }
        if args.reminders:
            summary["reminders"] = send_billing_reminders(engine, tenant_id=args.tenant, as_of=as_of)
        if args.overdue:
            with session_scope(engine) as session:
                summary["overdue"] = mark_overdue_invoices(session, as_of=as_of, tenant_id=args.tenant)
    finally:
        close_db(engine)

    print(json.dumps(summary, indent=2))
    return 1 if summary["failures"] else 0


if __name__ == "__main__":
    sys.exit(main())
