"""
Tests for the billing processor: invoice generation, calendar advancement,
idempotence, atomicity, cancellation and expiry semantics, batch isolation.
"""

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from studio_billing.core.errors import InvoiceNumberConflict, NotFoundError, PersistenceFailure
from studio_billing.models.billing import (
    Client,
    Frequency,
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from studio_billing.services import billing_processor
from studio_billing.services.billing_processor import (
    process_due_subscriptions,
    process_subscription,
    send_billing_reminders,
)
from studio_billing.services.notification_queue import notifications_table
from studio_billing.services.subscription_service import cancel_subscription, get_subscription, pause_subscription


def _invoices(engine, subscription_id=None):
    with Session(engine) as session:
        stmt = select(Invoice).order_by(Invoice.issue_date)
        if subscription_id:
            stmt = stmt.where(Invoice.subscription_id == subscription_id)
        invoices = session.exec(stmt).all()
        for inv in invoices:
            _ = inv.items
        return invoices


def _reload(engine, sub_id) -> Subscription:
    with Session(engine) as session:
        return session.get(Subscription, sub_id)


def _notifications(engine):
    with engine.connect() as conn:
        return conn.execute(sa.select(notifications_table).order_by(notifications_table.c.id)).fetchall()


class TestHappyPath:
    def test_monthly_czk(self, engine, make_subscription):
        sub = make_subscription(billing_day=1)
        assert sub.next_billing_date == date(2024, 1, 1)

        outcomes = process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        assert [o.outcome for o in outcomes] == ["invoiced"]
        invoices = _invoices(engine)
        assert len(invoices) == 1
        inv = invoices[0]
        assert inv.invoice_number == "FA20240001"
        assert inv.issue_date == date(2024, 1, 1)
        assert inv.due_date == date(2024, 1, 15)
        assert inv.subtotal == Decimal("1000")
        assert inv.vat_rate == Decimal("21")
        assert inv.vat_amount == Decimal("210")
        assert inv.total_amount == Decimal("1210")
        assert inv.status == InvoiceStatus.SENT
        assert inv.subscription_id == sub.id
        assert inv.currency == "CZK"

        assert len(inv.items) == 1
        item = inv.items[0]
        assert item.description == "Subscription — Recurring charge"
        assert item.quantity == 1
        assert item.unit_price == Decimal("1000")
        assert item.total_price == Decimal("1000")

        updated = _reload(engine, sub.id)
        assert updated.next_billing_date == date(2024, 2, 1)
        assert updated.last_billed_at == date(2024, 1, 1)
        assert updated.status == SubscriptionStatus.ACTIVE

    def test_package_name_and_credits(self, engine, make_subscription, package, client):
        sub = make_subscription(package_id=package.id)

        process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        inv = _invoices(engine, sub.id)[0]
        assert inv.items[0].description == "Subscription — 8 Class Pass"
        with Session(engine) as session:
            assert session.get(Client, client.id).credits_remaining == 8

    def test_vat_rounding_in_czk(self, engine, make_subscription):
        make_subscription(amount=Decimal("333"))

        process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        inv = _invoices(engine)[0]
        assert inv.vat_amount == Decimal("70")
        assert inv.total_amount == Decimal("403")

    def test_receipt_enqueued_after_commit(self, engine, make_subscription):
        make_subscription()

        outcomes = process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        rows = _notifications(engine)
        assert len(rows) == 1
        assert rows[0].kind == "invoice_receipt"
        assert rows[0].idempotency_key == f"invoice_receipt:{outcomes[0].invoice_ids[0]}"

    def test_draft_invoices_send_no_receipt(self, engine, make_subscription):
        make_subscription()

        with patch.object(billing_processor, "recurring_invoice_status", return_value=InvoiceStatus.DRAFT):
            process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        assert _invoices(engine)[0].status == InvoiceStatus.DRAFT
        assert _notifications(engine) == []

    def test_enqueue_failure_does_not_undo_billing(self, engine, make_subscription):
        sub = make_subscription()

        with patch(
            "studio_billing.services.notification_queue.NotificationQueue.enqueue",
            side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
        ):
            outcomes = process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        assert outcomes[0].outcome == "invoiced"
        assert len(_invoices(engine)) == 1
        assert _reload(engine, sub.id).next_billing_date == date(2024, 2, 1)


class TestNotDue:
    def test_future_date_skipped(self, engine, make_subscription):
        sub = make_subscription(start_date=date(2024, 1, 10))

        assert process_due_subscriptions(engine, as_of=date(2024, 1, 9)) == []
        outcome = process_subscription(engine, sub.id, as_of=date(2024, 1, 9))

        assert outcome.outcome == "skipped"
        assert _invoices(engine) == []

    def test_paused_skipped(self, engine, session, tenant, make_subscription):
        sub = make_subscription()
        pause_subscription(session, tenant.id, sub.id)

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 6, 1))

        assert outcome.outcome == "skipped"
        assert _invoices(engine) == []

    def test_open_reader_does_not_block_billing(self, engine, session, tenant, make_subscription):
        sub = make_subscription()
        # Leaves a read transaction open on another connection
        get_subscription(session, tenant.id, sub.id)

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        assert outcome.outcome == "invoiced"
        assert len(_invoices(engine)) == 1

    def test_past_due_skipped(self, engine, make_subscription):
        sub = make_subscription()
        with Session(engine) as session:
            row = session.get(Subscription, sub.id)
            row.status = SubscriptionStatus.PAST_DUE
            session.add(row)
            session.commit()

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 3, 1))

        assert outcome.outcome == "skipped"
        assert _invoices(engine) == []

    def test_unknown_subscription(self, engine):
        with pytest.raises(NotFoundError):
            process_subscription(engine, "missing", as_of=date(2024, 1, 1))

    def test_wrong_tenant(self, engine, make_subscription, other_tenant):
        sub = make_subscription()
        with pytest.raises(NotFoundError):
            process_subscription(engine, sub.id, as_of=date(2024, 1, 1), tenant_id=other_tenant.id)


class TestIdempotence:
    def test_second_run_creates_nothing(self, engine, make_subscription):
        make_subscription()
        make_subscription(amount=Decimal("500"), frequency=Frequency.WEEKLY)

        first = process_due_subscriptions(engine, as_of=date(2024, 1, 1))
        second = process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        assert len(first) == 2
        assert second == []
        assert len(_invoices(engine)) == 2

    def test_late_run_catches_up_every_missed_cycle(self, engine, make_subscription):
        sub = make_subscription()

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 3, 15))

        assert outcome.outcome == "invoiced"
        assert outcome.invoice_numbers == ["FA20240001", "FA20240002", "FA20240003"]
        assert len(outcome.invoice_ids) == 3
        issue_dates = [i.issue_date for i in _invoices(engine)]
        assert issue_dates == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]
        assert _reload(engine, sub.id).next_billing_date == date(2024, 4, 1)
        assert len(_notifications(engine)) == 3

    def test_late_rerun_creates_nothing(self, engine, make_subscription):
        make_subscription()

        first = process_due_subscriptions(engine, as_of=date(2024, 3, 15))
        second = process_due_subscriptions(engine, as_of=date(2024, 3, 15))

        assert [len(o.invoice_ids) for o in first] == [3]
        assert second == []
        assert len(_invoices(engine)) == 3

    def test_catch_up_stops_at_fixed_term_end(self, engine, make_subscription):
        sub = make_subscription(end_date=date(2024, 3, 1), auto_renew=False)

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 5, 1))

        assert outcome.outcome == "expired"
        assert len(outcome.invoice_ids) == 2
        assert _reload(engine, sub.id).status == SubscriptionStatus.EXPIRED

    def test_failed_cycle_keeps_earlier_cycles(self, engine, make_subscription, package):
        sub = make_subscription(package_id=package.id)
        real_grant = billing_processor._grant_package_credits
        calls = []

        def grant_then_fail(session, s):
            calls.append(s.next_billing_date)
            if len(calls) == 2:
                raise OperationalError("UPDATE clients", {}, Exception("disk I/O error"))
            real_grant(session, s)

        with patch.object(billing_processor, "_grant_package_credits", side_effect=grant_then_fail):
            with pytest.raises(PersistenceFailure):
                process_subscription(engine, sub.id, as_of=date(2024, 3, 15))

        assert [i.issue_date for i in _invoices(engine)] == [date(2024, 1, 1)]
        assert _reload(engine, sub.id).next_billing_date == date(2024, 2, 1)

    def test_numbers_strictly_increase(self, engine, make_subscription):
        for _ in range(5):
            make_subscription()

        process_due_subscriptions(engine, as_of=date(2024, 1, 1), max_workers=4)

        numbers = sorted(i.invoice_number for i in _invoices(engine))
        assert numbers == [f"FA2024000{n}" for n in range(1, 6)]


class TestBillingDayClamp:
    def test_31st_through_leap_february(self, engine, make_subscription):
        sub = make_subscription(start_date=date(2024, 1, 31), billing_day=31)

        for as_of in (date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)):
            process_due_subscriptions(engine, as_of=as_of)

        issue_dates = [i.issue_date for i in _invoices(engine, sub.id)]
        assert issue_dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]
        assert _reload(engine, sub.id).next_billing_date == date(2024, 5, 31)

    def test_31st_non_leap_february(self, engine, make_subscription):
        sub = make_subscription(start_date=date(2023, 1, 31))

        process_due_subscriptions(engine, as_of=date(2023, 1, 31))
        process_due_subscriptions(engine, as_of=date(2023, 2, 28))

        issue_dates = [i.issue_date for i in _invoices(engine, sub.id)]
        assert issue_dates == [date(2023, 1, 31), date(2023, 2, 28)]
        assert _reload(engine, sub.id).next_billing_date == date(2023, 3, 31)


class TestAtomicity:
    def test_failure_after_invoice_rolls_back_everything(self, engine, make_subscription, package):
        sub = make_subscription(package_id=package.id)

        with patch.object(billing_processor, "_grant_package_credits", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        assert _invoices(engine) == []
        assert _reload(engine, sub.id).next_billing_date == date(2024, 1, 1)
        with Session(engine) as session:
            assert session.exec(select(InvoiceSequence)).all() == []
        assert _notifications(engine) == []

    def test_database_error_becomes_persistence_failure(self, engine, make_subscription, package):
        sub = make_subscription(package_id=package.id)

        with patch.object(
            billing_processor,
            "_grant_package_credits",
            side_effect=OperationalError("UPDATE clients", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(PersistenceFailure) as exc_info:
                process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        assert exc_info.value.code == "BIL-DB-001"
        assert _invoices(engine) == []
        assert _reload(engine, sub.id).next_billing_date == date(2024, 1, 1)

    def test_retry_after_failure_bills_once(self, engine, make_subscription, package):
        sub = make_subscription(package_id=package.id)

        with patch.object(billing_processor, "_grant_package_credits", side_effect=RuntimeError("boom")):
            process_due_subscriptions(engine, as_of=date(2024, 1, 1))
        process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        invoices = _invoices(engine, sub.id)
        assert len(invoices) == 1
        assert invoices[0].invoice_number == "FA20240001"

    def test_number_collision_is_fatal(self, engine, make_subscription, tenant, client):
        sub = make_subscription()
        # A number taken outside the allocator
        with Session(engine) as session:
            session.add(Invoice(
                tenant_id=tenant.id,
                client_id=client.id,
                invoice_number="FA20240001",
                issue_date=date(2024, 1, 1),
                due_date=date(2024, 1, 15),
                subtotal=Decimal("1"),
                vat_amount=Decimal("0"),
                total_amount=Decimal("1"),
            ))
            session.commit()

        with pytest.raises(InvoiceNumberConflict) as exc_info:
            process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        assert exc_info.value.code == "BIL-INV-002"
        assert exc_info.value.invoice_number == "FA20240001"
        assert _reload(engine, sub.id).next_billing_date == date(2024, 1, 1)


class TestBatchIsolation:
    def test_one_failure_does_not_stop_the_batch(self, engine, make_subscription):
        good_a = make_subscription()
        bad = make_subscription(amount=Decimal("700"))
        good_b = make_subscription(amount=Decimal("300"))

        real_grant = billing_processor._grant_package_credits

        def flaky_grant(session, sub):
            if sub.id == bad.id:
                raise RuntimeError("credits service exploded")
            return real_grant(session, sub)

        with patch.object(billing_processor, "_grant_package_credits", side_effect=flaky_grant):
            outcomes = process_due_subscriptions(engine, as_of=date(2024, 1, 1), max_workers=3)

        by_id = {o.subscription_id: o for o in outcomes}
        assert by_id[good_a.id].outcome == "invoiced"
        assert by_id[good_b.id].outcome == "invoiced"
        assert by_id[bad.id].outcome == "failed"
        assert by_id[bad.id].error_code == "BIL-SYS-001"

        assert _reload(engine, bad.id).next_billing_date == date(2024, 1, 1)
        assert {i.subscription_id for i in _invoices(engine)} == {good_a.id, good_b.id}

    def test_tenant_filter(self, engine, make_subscription, other_tenant):
        with Session(engine) as session:
            foreign_client = Client(tenant_id=other_tenant.id, name="Petr Svoboda")
            session.add(foreign_client)
            session.commit()
            session.refresh(foreign_client)
        mine = make_subscription()
        make_subscription(tenant_id=other_tenant.id, client_id=foreign_client.id)

        outcomes = process_due_subscriptions(engine, tenant_id=mine.tenant_id, as_of=date(2024, 1, 1))

        assert [o.subscription_id for o in outcomes] == [mine.id]


class TestCancellation:
    def test_immediate_cancel_never_bills(self, engine, session, tenant, make_subscription):
        sub = make_subscription()
        cancel_subscription(session, tenant.id, sub.id, immediate=True)

        for as_of in (date(2024, 1, 1), date(2024, 6, 1), date(2025, 1, 1)):
            process_due_subscriptions(engine, as_of=as_of)
            process_subscription(engine, sub.id, as_of=as_of)

        assert _invoices(engine) == []

    def test_period_end_cancel_bills_exactly_once_more(self, engine, session, tenant, make_subscription):
        sub = make_subscription()
        process_due_subscriptions(engine, as_of=date(2024, 1, 1))

        cancelled = cancel_subscription(session, tenant.id, sub.id, immediate=False)
        assert cancelled.status == SubscriptionStatus.ACTIVE
        assert cancelled.end_date == date(2024, 2, 1)
        assert cancelled.auto_renew is False

        outcomes = process_due_subscriptions(engine, as_of=date(2024, 2, 1))
        assert [o.outcome for o in outcomes] == ["invoiced"]
        assert _reload(engine, sub.id).status == SubscriptionStatus.CANCELLED

        for as_of in (date(2024, 3, 1), date(2024, 4, 1)):
            process_due_subscriptions(engine, as_of=as_of)

        assert [i.issue_date for i in _invoices(engine, sub.id)] == [date(2024, 1, 1), date(2024, 2, 1)]

    def test_period_end_reached_without_billing_cancels(self, engine, tenant, make_subscription):
        sub = make_subscription()
        with Session(engine) as session:
            row = session.get(Subscription, sub.id)
            row.auto_renew = False
            row.cancel_at_period_end = True
            row.end_date = date(2023, 12, 31)
            session.add(row)
            session.commit()

        outcome = process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        assert outcome.outcome == "cancelled"
        assert _reload(engine, sub.id).status == SubscriptionStatus.CANCELLED
        assert _invoices(engine) == []


    def test_period_end_cancel_never_extends_fixed_term(self, engine, session, tenant, make_subscription):
        sub = make_subscription(end_date=date(2024, 2, 15), auto_renew=False)
        process_due_subscriptions(engine, as_of=date(2024, 1, 1))
        process_due_subscriptions(engine, as_of=date(2024, 2, 1))

        cancel_subscription(session, tenant.id, sub.id, immediate=False)
        outcomes = process_due_subscriptions(engine, as_of=date(2024, 3, 1))

        assert [o.outcome for o in outcomes] == ["expired"]
        final = _reload(engine, sub.id)
        assert final.status == SubscriptionStatus.EXPIRED
        assert final.end_date == date(2024, 2, 15)
        assert [i.issue_date for i in _invoices(engine, sub.id)] == [date(2024, 1, 1), date(2024, 2, 1)]

    def test_period_end_cancel_on_term_end_date(self, engine, session, tenant, make_subscription):
        sub = make_subscription(end_date=date(2024, 3, 1), auto_renew=False)
        process_due_subscriptions(engine, as_of=date(2024, 2, 1))

        cancel_subscription(session, tenant.id, sub.id, immediate=False)
        process_due_subscriptions(engine, as_of=date(2024, 4, 1))

        assert _reload(engine, sub.id).status == SubscriptionStatus.EXPIRED
        assert len(_invoices(engine, sub.id)) == 2


class TestExpiry:
    def test_expires_on_end_date_without_invoice(self, engine, make_subscription):
        sub = make_subscription(end_date=date(2024, 3, 1), auto_renew=False)

        process_due_subscriptions(engine, as_of=date(2024, 1, 1))
        process_due_subscriptions(engine, as_of=date(2024, 2, 1))
        assert _reload(engine, sub.id).next_billing_date == date(2024, 3, 1)

        outcomes = process_due_subscriptions(engine, as_of=date(2024, 3, 1))

        assert [o.outcome for o in outcomes] == ["expired"]
        assert _reload(engine, sub.id).status == SubscriptionStatus.EXPIRED
        assert [i.issue_date for i in _invoices(engine, sub.id)] == [date(2024, 1, 1), date(2024, 2, 1)]

    def test_auto_renew_ignores_end_date(self, engine, make_subscription):
        sub = make_subscription(end_date=date(2024, 1, 15), auto_renew=True)

        for as_of in (date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)):
            process_due_subscriptions(engine, as_of=as_of)

        assert len(_invoices(engine, sub.id)) == 3
        assert _reload(engine, sub.id).status == SubscriptionStatus.ACTIVE


class TestMonotonicDate:
    def test_next_billing_date_only_moves_forward(self, engine, make_subscription):
        sub = make_subscription(start_date=date(2024, 1, 31), frequency=Frequency.QUARTERLY)
        seen = [_reload(engine, sub.id).next_billing_date]

        for as_of in (date(2024, 1, 31), date(2024, 4, 30), date(2024, 2, 1), date(2024, 7, 31), date(2024, 7, 31)):
            process_due_subscriptions(engine, as_of=as_of)
            seen.append(_reload(engine, sub.id).next_billing_date)

        assert all(b >= a for a, b in zip(seen, seen[1:]))
        assert seen[-1] == date(2024, 10, 31)


class TestReminders:
    def test_reminds_once_per_cycle(self, engine, make_subscription):
        sub = make_subscription(start_date=date(2024, 1, 10))

        assert send_billing_reminders(engine, as_of=date(2024, 1, 5), days_before=3) == 0
        assert send_billing_reminders(engine, as_of=date(2024, 1, 8), days_before=3) == 1
        assert send_billing_reminders(engine, as_of=date(2024, 1, 9), days_before=3) == 0

        rows = _notifications(engine)
        assert len(rows) == 1
        assert rows[0].kind == "billing_reminder"
        assert rows[0].idempotency_key == f"billing_reminder:{sub.id}:2024-01-10"

        process_due_subscriptions(engine, as_of=date(2024, 1, 10))
        assert _reload(engine, sub.id).reminder_sent is False
        assert send_billing_reminders(engine, as_of=date(2024, 2, 8), days_before=3) == 1

    def test_no_reminder_without_auto_renew(self, engine, make_subscription):
        make_subscription(start_date=date(2024, 1, 10), auto_renew=False, end_date=date(2024, 6, 1))

        assert send_billing_reminders(engine, as_of=date(2024, 1, 8), days_before=3) == 0


class TestConcurrentRuns:
    def test_two_runs_bill_a_cycle_once(self, engine, make_subscription):
        sub = make_subscription()
        barrier = threading.Barrier(2)
        outcomes = []

        def run():
            barrier.wait()
            outcomes.append(process_subscription(engine, sub.id, as_of=date(2024, 1, 1)))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(o.outcome for o in outcomes) == ["invoiced", "skipped"]
        assert len(_invoices(engine, sub.id)) == 1
        assert _reload(engine, sub.id).next_billing_date == date(2024, 2, 1)


class TestPaymentState:
    def test_billing_resets_dunning_counters(self, engine, make_subscription):
        sub = make_subscription()
        with Session(engine) as session:
            row = session.get(Subscription, sub.id)
            row.retry_count = 2
            row.last_payment_status = PaymentStatus.FAILED
            session.add(row)
            session.commit()

        process_subscription(engine, sub.id, as_of=date(2024, 1, 1))

        billed = _reload(engine, sub.id)
        assert billed.retry_count == 0
        assert billed.last_payment_status == PaymentStatus.PENDING
