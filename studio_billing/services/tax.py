"""
Tax & Invoice Totals
====================

Pure money helpers shared by the recurring billing path and manual invoices:

    vat_amount = round_half_up(subtotal × vat_rate / 100)   to the currency minor unit
    total      = subtotal + vat_amount

Line totals are summed exactly and rounding is applied once, on the VAT, so
a multi-line invoice and a single subscription charge of the same subtotal
always produce the same VAT.

CZK is settled in whole crowns (no haléř coins since 2008), hence
333 @ 21 % → 69.93 → 70.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Protocol

from studio_billing.config import settings

# Currencies settled without a fractional minor unit
_ZERO_DECIMAL_CURRENCIES = frozenset({"CZK", "HUF", "ISK", "JPY", "KRW"})

_HUNDRED = Decimal("100")


class _LineLike(Protocol):
    quantity: Decimal
    unit_price: Decimal


@dataclass(frozen=True)
class VatBreakdown:
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total: Decimal


def minor_unit_exponent(currency: Optional[str]) -> Decimal:
    """Quantum for the currency's smallest settled unit (Decimal('1') or Decimal('0.01'))."""
    code = (currency or settings.default_currency).upper()
    return Decimal("1") if code in _ZERO_DECIMAL_CURRENCIES else Decimal("0.01")


def round_money(value: Decimal, currency: Optional[str] = None) -> Decimal:
    return Decimal(value).quantize(minor_unit_exponent(currency), rounding=ROUND_HALF_UP)


def calculate_vat(subtotal, vat_rate, currency: Optional[str] = None) -> VatBreakdown:
    """VAT and gross total for a net subtotal.

    Deterministic and side-effect free. Accepts Decimal, int or str; floats
    are converted through str() so 0.1 stays 0.1.
    """
    subtotal = _to_decimal(subtotal)
    vat_rate = _to_decimal(vat_rate)
    if subtotal < 0:
        raise ValueError("subtotal must be >= 0")
    if vat_rate < 0:
        raise ValueError("vat_rate must be >= 0")

    vat_amount = round_money(subtotal * vat_rate / _HUNDRED, currency)
    return VatBreakdown(
        subtotal=subtotal,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        total=subtotal + vat_amount,
    )


def line_total(quantity, unit_price) -> Decimal:
    return _to_decimal(quantity) * _to_decimal(unit_price)


def invoice_totals(items: Iterable[_LineLike], vat_rate, currency: Optional[str] = None) -> VatBreakdown:
    """Exact sum of line totals, then a single VAT rounding."""
    subtotal = sum((line_total(i.quantity, i.unit_price) for i in items), Decimal("0"))
    return calculate_vat(subtotal, vat_rate, currency)


def prorate(amount, days_used: int, days_in_period: int, currency: Optional[str] = None) -> Decimal:
    """Charge for ``days_used`` out of a ``days_in_period``-day period."""
    if days_in_period <= 0:
        raise ValueError("days_in_period must be positive")
    if not 0 <= days_used <= days_in_period:
        raise ValueError("days_used must be between 0 and days_in_period")
    return round_money(_to_decimal(amount) * days_used / days_in_period, currency)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)
