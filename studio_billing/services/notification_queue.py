"""
Notification Outbox — fire-and-forget delivery after commit
============================================================

PURPOSE:
    Receipts and billing reminders must never block or roll back a billing
    transaction. The billing code enqueues a row here only after its own
    transaction has committed; a background loop drains the outbox and POSTs
    each message as JSON to the configured delivery endpoint (a mail relay
    or the studio app's notification webhook).

STATE MACHINE:
    pending → processing (leased, worker_id + leased_at set)
    processing → completed (2xx, or delivery disabled → last_error="skipped")
    processing → failed_terminal (4xx other than 408/429)
    processing → pending (retryable: 5xx, 408/429, timeout, network error;
                          next_retry_at pushed out with jittered backoff)
    processing → dead_letter (retryable failure with attempts >= max)
    processing → pending (lease expired: leased_at + LEASE_TTL < now)

Idempotency: each message has a unique idempotency_key; a second enqueue
with the same key is a no-op. The key is also sent as the Idempotency-Key
header so the receiver can de-duplicate redeliveries.
"""

import json
import logging
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx
import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel

from studio_billing.config import settings
from studio_billing.core.database import write_transaction

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_BACKOFF = 3600  # seconds
LEASE_TTL = 300  # seconds
CLAIM_BATCH_SIZE = 25

KIND_INVOICE_RECEIPT = "invoice_receipt"
KIND_BILLING_REMINDER = "billing_reminder"

# ---------------------------------------------------------------------------
# SQLAlchemy Core table, registered on the shared SQLModel metadata
# ---------------------------------------------------------------------------
notifications_table = Table(
    "notifications",
    SQLModel.metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(32), nullable=False),
    Column("kind", String(64), nullable=False),
    Column("idempotency_key", String(255), nullable=False, unique=True),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("next_retry_at", DateTime, nullable=False),
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("last_error", Text, nullable=True),
    Column("status", String(32), nullable=False, server_default="pending"),
    Column("worker_id", String(64), nullable=True),
    Column("leased_at", DateTime, nullable=True),
)

sa.Index("idx_notifications_status_retry", notifications_table.c.status, notifications_table.c.next_retry_at)


def _utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _calculate_backoff(attempt_count: int) -> float:
    """
    Jittered exponential backoff.

    Formula: min(3600, 30 * 2^attempt) + random(0, attempt*5)
    """
    base = min(MAX_BACKOFF, 30 * (2 ** attempt_count))
    jitter = random.uniform(0, attempt_count * 5)
    return base + jitter


class NotificationQueue:
    """
    Persistent outbox backed by the billing database via SQLAlchemy Core.

    Each public method acquires its own connection (per-operation isolation).
    Uses SELECT FOR UPDATE SKIP LOCKED for the claim where the backend
    supports it (PostgreSQL); SQLite serialises writers instead.
    """

    def __init__(
        self,
        engine: Engine,
        webhook_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._client = client
        self._max_attempts = max_attempts or settings.notification_max_attempts
        self._timeout_s = timeout_s or settings.notification_timeout_s

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, tenant_id: str, kind: str, idempotency_key: str, data: dict) -> bool:
        """
        Insert a message into the outbox. Returns True on success, False if
        the idempotency_key already exists (duplicate).
        """
        now = _utcnow()
        payload = {
            "kind": kind,
            "tenant_id": tenant_id,
            "idempotency_key": idempotency_key,
            "data": data,
        }
        with self._engine.begin() as conn:
            try:
                conn.execute(
                    notifications_table.insert().values(
                        tenant_id=tenant_id,
                        kind=kind,
                        idempotency_key=idempotency_key,
                        payload=json.dumps(payload, default=str),
                        created_at=now,
                        next_retry_at=now,
                        status="pending",
                        attempt_count=0,
                    )
                )
            except IntegrityError:
                logger.info("Duplicate notification enqueue: %s", idempotency_key)
                return False
        logger.info("Notification queued: kind=%s key=%s", kind, idempotency_key)
        return True

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def _claim_batch(self, conn, worker_id: str) -> list[dict]:
        now = _utcnow()
        t = notifications_table
        lease_cutoff = now - timedelta(seconds=LEASE_TTL)

        due = sa.or_(
            sa.and_(t.c.status == "pending", t.c.next_retry_at <= now),
            sa.and_(t.c.status == "processing", t.c.leased_at < lease_cutoff),
        )
        rows = conn.execute(
            sa.select(t.c.id)
            .where(due)
            .order_by(t.c.created_at.asc(), t.c.id.asc())
            .limit(CLAIM_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        ).fetchall()
        if not rows:
            return []

        claimed_ids = [r.id for r in rows]
        conn.execute(
            t.update()
            .where(t.c.id.in_(claimed_ids))
            .values(status="processing", worker_id=worker_id, leased_at=now)
        )
        result = conn.execute(
            sa.select(t.c.id, t.c.payload, t.c.attempt_count, t.c.idempotency_key)
            .where(t.c.id.in_(claimed_ids))
            .order_by(t.c.created_at.asc(), t.c.id.asc())
        )
        return [dict(r._mapping) for r in result.fetchall()]

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    async def process_pending(self) -> int:
        """
        Claim and deliver one batch of pending messages.

        Returns the number of messages completed.
        """
        worker_id = uuid.uuid4().hex[:12]
        t = notifications_table

        with write_transaction(self._engine) as conn:
            items = self._claim_batch(conn, worker_id)

        if not items:
            return 0

        completed = 0
        client = self._client
        owns_client = client is None and bool(self._webhook_url)
        if owns_client:
            client = httpx.AsyncClient(timeout=self._timeout_s)

        try:
            for item in items:
                note_id = item["id"]
                key = item["idempotency_key"]
                attempt_count = item["attempt_count"]

                start = time.monotonic()
                sent, retryable, reason = await self._attempt_send(client, item["payload"], key)
                elapsed = time.monotonic() - start

                with self._engine.begin() as conn:
                    if sent:
                        conn.execute(
                            t.update().where(t.c.id == note_id)
                            .values(status="completed", last_error=reason, worker_id=None)
                        )
                        completed += 1
                        logger.info("Notification delivered: id=%d key=%s elapsed=%.2fs", note_id, key, elapsed)
                    elif not retryable:
                        conn.execute(
                            t.update().where(t.c.id == note_id)
                            .values(status="failed_terminal", last_error=reason, worker_id=None)
                        )
                        logger.warning("Notification failed_terminal: id=%d key=%s reason=%s", note_id, key, reason)
                    else:
                        new_attempt = attempt_count + 1
                        if new_attempt >= self._max_attempts:
                            conn.execute(
                                t.update().where(t.c.id == note_id)
                                .values(
                                    status="dead_letter",
                                    attempt_count=new_attempt,
                                    last_error=reason,
                                    worker_id=None,
                                )
                            )
                            logger.error(
                                "Notification dead_letter: id=%d key=%s attempts=%d reason=%s",
                                note_id, key, new_attempt, reason,
                            )
                        else:
                            delay = _calculate_backoff(new_attempt)
                            conn.execute(
                                t.update().where(t.c.id == note_id)
                                .values(
                                    status="pending",
                                    attempt_count=new_attempt,
                                    last_error=reason,
                                    next_retry_at=_utcnow() + timedelta(seconds=delay),
                                    worker_id=None,
                                    leased_at=None,
                                )
                            )
                            logger.warning(
                                "Notification retry scheduled: id=%d key=%s attempt=%d delay=%.0fs reason=%s",
                                note_id, key, new_attempt, delay, reason,
                            )
        finally:
            if owns_client:
                await client.aclose()

        return completed

    async def _attempt_send(self, client: Optional[httpx.AsyncClient], payload: str, key: str):
        """
        POST one message.

        Returns (sent, retryable, reason).
        """
        if not self._webhook_url:
            logger.info("Notification delivery disabled (no webhook URL); completing %s as skipped", key)
            return True, False, "skipped"

        try:
            response = await client.post(
                self._webhook_url,
                content=payload,
                headers={"Content-Type": "application/json", "Idempotency-Key": key},
            )
        except httpx.TimeoutException:
            return False, True, "timeout"
        except httpx.HTTPError as exc:
            return False, True, f"network_error: {type(exc).__name__}"

        status = response.status_code
        if 200 <= status < 300:
            return True, False, None
        if status in (408, 429) or status >= 500:
            return False, True, f"HTTP {status}"
        return False, False, f"HTTP {status}"

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def status_counts(self) -> Dict[str, int]:
        t = notifications_table
        with self._engine.connect() as conn:
            rows = conn.execute(
                sa.select(t.c.status, sa.func.count()).group_by(t.c.status)
            ).fetchall()
        return {status: count for status, count in rows}
