from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..config import settings


def _rate(rate: Optional[float]) -> float:
    return settings.commission_rate if rate is None else float(rate)


def _dec(v: Optional[float]) -> Decimal:
    return Decimal(str(v or 0))


def _whole(v: Decimal) -> Decimal:
    return v.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def required_balance(price: float, rate: Optional[float] = None) -> float:
    """Unrounded ``price × rate`` the balance must cover before accepting."""
    return float(_dec(price) * _dec(_rate(rate)) / Decimal(100))


def commission_for(price: float, rate: Optional[float] = None) -> float:
    """Commission owed for a job at ``price``, in whole rupiah (halves round up).

    The same value is shown on the order card, debited at finish and printed
    on the invoice, so every caller goes through here.
    """
    return float(_whole(_dec(price) * _dec(_rate(rate)) / Decimal(100)))


def can_accept(price: float, balance: float, rate: Optional[float] = None) -> bool:
    return _dec(balance) >= _dec(price) * _dec(_rate(rate)) / Decimal(100)


def shortfall(price: float, balance: float, rate: Optional[float] = None) -> float:
    missing = _dec(price) * _dec(_rate(rate)) / Decimal(100) - _dec(balance)
    return float(max(missing, Decimal(0)))


def order_total(price: Optional[float], total_amount: Optional[float]) -> float:
    # what the customer paid; falls back to the hourly rate when unset
    return float(total_amount if total_amount is not None else (price or 0.0))


def format_rupiah(amount: float) -> str:
    value = int(_whole(_dec(amount)))
    sign = "-" if value < 0 else ""
    return f"{sign}Rp {abs(value):,}".replace(",", ".")


def rate_label(rate: Optional[float] = None) -> str:
    r = _rate(rate)
    return f"{int(r)}%" if r == int(r) else f"{r:g}%"
