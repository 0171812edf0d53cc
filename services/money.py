"""Money rounding and SST quotes."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Round *value* half-up to two decimal places."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    if not amount.is_finite():
        return Decimal("0.00")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_unit(value) -> int:
    """Whole cents for provider APIs."""
    return int(to_money(value) * 100)


def from_minor_unit(value) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return Decimal("0.00")
    return to_money(Decimal(str(value)) / 100)


def money_float(value) -> float:
    """JSON-friendly float of a money column (``0.0`` for NULL)."""
    if value is None:
        return 0.0
    return float(to_money(value))


def sst_quote(subtotal, currency: str, sst_rate: float) -> dict:
    amount = to_money(subtotal)
    if amount < 0:
        amount = Decimal("0.00")
    sst_amount = to_money(amount * Decimal(str(sst_rate)))
    return {
        "subtotal": float(amount),
        "sst_rate": sst_rate,
        "sst_amount": float(sst_amount),
        "total": float(to_money(amount + sst_amount)),
        "currency": (currency or "").strip().lower() or "myr",
    }
