"""
Alembic Environment Configuration
==================================

Runs migrations against the studio billing database.
The sqlalchemy.url is overridden at runtime by studio_billing.core.database
so the value in alembic.ini is only a fallback for CLI usage.

Logging is left to studio_billing.core.structured_logging; alembic.ini has
no logging sections, so fileConfig() is not called.
"""

import os

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

# Register every table on SQLModel.metadata (ORM models + outbox Core table)
from studio_billing.models import billing  # noqa: F401
from studio_billing.services.notification_queue import notifications_table  # noqa: F401

config = context.config

# Override sqlalchemy.url from DATABASE_URL env var (used in container deployments)
database_url = os.environ.get("DATABASE_URL")
if database_url:
    config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL to stdout)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=url.startswith("sqlite"),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
