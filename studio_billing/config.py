"""
Studio Billing Configuration
============================

PURPOSE:
    Pydantic-Settings based configuration for the billing service.
    All settings can be overridden via environment variables
    (STUDIO_BILLING_ prefix) or a local .env file.

    Tenant rows may override the VAT rate, payment term and invoice prefix;
    the values here are the fallbacks.
"""

import os
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Studio Billing"
    debug: bool = False

    # Persistence. DATABASE_URL (no prefix) wins, see core.database.
    database_url: str = "sqlite:///data/studio_billing.db"

    # Logging
    log_dir: Optional[str] = "logs"  # empty: stderr only
    log_file: str = "studio_billing.jsonl"
    log_level: str = "INFO"

    # Money defaults (per-tenant overrides live on the Tenant row)
    default_currency: str = "CZK"
    default_vat_rate: Decimal = Decimal("21")
    default_payment_term_days: int = 14  # net-14
    invoice_number_prefix: str = "FA"

    # Status given to machine-generated recurring invoices
    recurring_invoice_status: Literal["sent", "draft"] = "sent"

    # Billing processor
    processor_max_workers: int = 4
    scheduler_enabled: bool = True
    scheduler_interval_s: int = 3600
    reminder_days_before: int = 3
    upcoming_renewal_window_days: int = 7

    # Dunning: failed captures before a subscription goes PAST_DUE
    payment_max_retries: int = 3

    # Outbound notifications (receipts, reminders)
    notification_webhook_url: Optional[str] = None
    notification_timeout_s: float = 10.0
    notification_max_attempts: int = 5
    notification_interval_s: int = 30

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_prefix = "STUDIO_BILLING_"

    def resolve_database_url(self) -> str:
        """DATABASE_URL (as set by most PaaS hosts) takes precedence."""
        return os.environ.get("DATABASE_URL") or self.database_url


settings = Settings()
