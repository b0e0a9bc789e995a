"""Payment retry bookkeeping on subscriptions + PAST_DUE status

Revision ID: 003_payment_retry
Revises: 002_notifications
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003_payment_retry"
down_revision: Union[str, None] = "002_notifications"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_STATUSES = ("PENDING", "PAID", "FAILED")


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        # ADD VALUE cannot run inside a transaction block before PG 12
        with op.get_context().autocommit_block():
            op.execute("ALTER TYPE subscription_status ADD VALUE IF NOT EXISTS 'PAST_DUE'")

    payment_status = sa.Enum(*PAYMENT_STATUSES, name="payment_status")
    payment_status.create(bind, checkfirst=True)

    with op.batch_alter_table("subscriptions") as batch:
        batch.add_column(sa.Column("last_payment_status", payment_status, nullable=True))
        batch.add_column(sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"))
        batch.add_column(sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"))


def downgrade() -> None:
    with op.batch_alter_table("subscriptions") as batch:
        batch.drop_column("max_retries")
        batch.drop_column("retry_count")
        batch.drop_column("last_payment_status")
    sa.Enum(name="payment_status").drop(op.get_bind(), checkfirst=True)
