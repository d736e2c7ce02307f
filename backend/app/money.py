from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from .config import settings

AMOUNT_Q = Decimal("0.01")
RATE_Q = Decimal("0.0001")


def d(v) -> Decimal:
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    # Never go through binary floats: str() first.
    return Decimal(str(v))


def q_amount(v) -> Decimal:
    return d(v).quantize(AMOUNT_Q, rounding=ROUND_HALF_UP)


def q_rate(v) -> Decimal:
    return d(v).quantize(RATE_Q, rounding=ROUND_HALF_UP)


def fmt2(v) -> str:
    return f"{q_amount(v):.2f}"


def is_balanced(debits, credits, tolerance: Optional[Decimal] = None) -> bool:
    tol = settings.balance_tolerance if tolerance is None else d(tolerance)
    return abs(d(debits) - d(credits)) <= tol


def to_base(amount, currency: str, fx_rate=None) -> Decimal:
    """
    Convert a transaction-currency amount into the base currency (PKR).
    Base-currency amounts pass through unchanged (quantized); anything else
    needs a positive fx_rate.
    """
    if currency == settings.base_currency:
        return q_amount(amount)
    rate = d(fx_rate) if fx_rate is not None else Decimal("0")
    if rate <= 0:
        raise ValueError(f"fx rate required to convert {currency} to {settings.base_currency}")
    return q_amount(d(amount) * rate)


def base_amounts(debit, credit, currency: str, fx_rate=None) -> Tuple[Decimal, Decimal]:
    return to_base(debit, currency, fx_rate), to_base(credit, currency, fx_rate)
