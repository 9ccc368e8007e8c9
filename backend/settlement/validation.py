from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


# Maximum amount: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999

CENT = Decimal("0.01")


class SettlementError(Exception):
    """Base for every failure the engine reports to its caller."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(SettlementError, ValueError):
    """400-level input problem. Commit refused, nothing applied."""


class ConflictError(SettlementError):
    """
    409-level: authoritative state moved since the draft was computed
    (balance, stock, returned quantities). Caller must re-fetch and retry.
    """


class CollaboratorError(SettlementError):
    """Persistence layer failed mid-commit. The session has been rolled back."""


# =============================================================================
# COERCION HELPERS
# =============================================================================

def require_int(value: Any, field: str) -> int:
    """
    Strict integer coercion.

    Rejects bools, floats, scientific notation and decimal strings so a
    float amount can never sneak into cents arithmetic.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_cents(value: Any, field: str, *, positive: bool = False) -> int:
    """Integer cents in [0, MAX_AMOUNT_CENTS] (or (0, MAX] when positive)."""
    cents = require_int(value, field)
    if cents < 0:
        raise ValidationError(f"{field} cannot be negative", {field: cents})
    if positive and cents == 0:
        raise ValidationError(f"{field} must be greater than zero", {field: cents})
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum allowed amount", {field: cents})
    return cents


def require_quantity(value: Any, field: str = "quantity", *, positive: bool = False) -> int:
    qty = require_int(value, field)
    if qty < 0:
        raise ValidationError(f"{field} cannot be negative", {field: qty})
    if positive and qty == 0:
        raise ValidationError(f"{field} must be at least 1", {field: qty})
    return qty


def to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", {field: value})
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", {field: value})
    return result


def money_to_cents(value: Any, field: str) -> int:
    """
    Currency text/Decimal ("12.50", Decimal("12.5")) -> integer cents.

    Rounded half-up to the cent.
    """
    amount = to_decimal(value, field)
    cents = int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum allowed amount", {field: str(value)})
    return cents


def multiply_cents(cents: int, factor: Decimal) -> int:
    """cents * factor, rounded half-up to the cent."""
    return int((Decimal(cents) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percent_of(base_cents: int, percent: Decimal) -> int:
    """Percentage of an amount in cents, rounded half-up to the cent."""
    return multiply_cents(base_cents, percent / Decimal(100))


def clamp(value: int, lower: int, upper: int) -> int:
    if upper < lower:
        upper = lower
    return max(lower, min(value, upper))
