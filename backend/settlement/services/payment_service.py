"""
Payment Splitter

WHY: A sale may be settled across several instruments (part cash, part
card). This module validates the payment lines and derives what is still
due, what change is owed and what status the invoice ends up in.

SALE TYPES:
- receipt: immediate payment. Must be fully settled to commit; change is
  given when the customer over-tenders.
- invoice: deferred payment. May be committed with an amount still due
  (status Sent / Partially Paid). Over-payment is never handed back as
  change; it stays on the customer's account as credit.

RULES:
- Each configured method may appear on at most one payment line. Enforced
  while editing lines (update_payment_line), re-checked at commit.
- The cheque method requires a non-empty cheque number.
- At least one payment line always exists; the last one cannot be removed.
- Lines with amount <= 0 are dropped at commit.

All functions here are pure: they take and return immutable values.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from ..validation import ValidationError, require_cents


class PaymentError(ValidationError):
    """Raised for payment line validation errors."""


# =============================================================================
# SALE TYPE / STATUS CONSTANTS
# =============================================================================

SALE_TYPE_RECEIPT = "receipt"
SALE_TYPE_INVOICE = "invoice"
VALID_SALE_TYPES = {SALE_TYPE_RECEIPT, SALE_TYPE_INVOICE}

# Sale types that must be fully settled at commit (and may give change)
IMMEDIATE_PAYMENT_SALE_TYPES = {SALE_TYPE_RECEIPT}

INVOICE_STATUS_DRAFT = "Draft"
INVOICE_STATUS_SENT = "Sent"
INVOICE_STATUS_PAID = "Paid"
INVOICE_STATUS_PARTIALLY_PAID = "Partially Paid"
INVOICE_STATUS_OVERDUE = "Overdue"

CHEQUE_METHOD = "cheque"


def is_immediate_payment(sale_type: str) -> bool:
    return sale_type in IMMEDIATE_PAYMENT_SALE_TYPES


def require_sale_type(sale_type: str) -> str:
    if sale_type not in VALID_SALE_TYPES:
        raise PaymentError(
            f"Invalid sale type: {sale_type}",
            {"sale_type": sale_type, "valid_sale_types": sorted(VALID_SALE_TYPES)},
        )
    return sale_type


def is_cheque(method: str | None) -> bool:
    return (method or "").strip().lower() == CHEQUE_METHOD


def invoice_status_for(total_cents: int, paid_cents: int) -> str:
    if paid_cents >= total_cents:
        return INVOICE_STATUS_PAID
    if paid_cents > 0:
        return INVOICE_STATUS_PARTIALLY_PAID
    return INVOICE_STATUS_SENT


# =============================================================================
# PAYMENT LINES
# =============================================================================

@dataclass(frozen=True)
class PaymentLine:
    line_id: str
    method: str
    amount_cents: int = 0
    cheque_number: str | None = None

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "cheque_number": self.cheque_number,
        }


def new_payment_line(method: str, amount_cents: int = 0, cheque_number: str | None = None) -> PaymentLine:
    return PaymentLine(
        line_id=uuid.uuid4().hex,
        method=method,
        amount_cents=require_cents(amount_cents, "amount_cents"),
        cheque_number=cheque_number,
    )


def available_methods(
    lines: Sequence[PaymentLine],
    configured: Sequence[str],
    for_line_id: str | None = None,
) -> list[str]:
    """Configured methods not already taken by another line (config order kept)."""
    taken = {line.method for line in lines if line.line_id != for_line_id}
    return [method for method in configured if method not in taken]


def _find_line(lines: Sequence[PaymentLine], line_id: str) -> int:
    for index, line in enumerate(lines):
        if line.line_id == line_id:
            return index
    raise PaymentError("Payment line not found", {"line_id": line_id})


def add_payment_line(
    lines: Sequence[PaymentLine],
    configured: Sequence[str],
    amount_cents: int = 0,
) -> tuple[PaymentLine, ...]:
    """Append a line using the first configured method not yet in use."""
    free = available_methods(lines, configured)
    if not free:
        raise PaymentError(
            "Every configured payment method is already in use",
            {"configured": list(configured)},
        )
    return tuple(lines) + (new_payment_line(free[0], max(0, amount_cents)),)


def remove_payment_line(lines: Sequence[PaymentLine], line_id: str) -> tuple[PaymentLine, ...]:
    index = _find_line(lines, line_id)
    if len(lines) <= 1:
        raise PaymentError("At least one payment line is required")
    return tuple(lines[:index]) + tuple(lines[index + 1:])


UNSET = object()


def update_payment_line(
    lines: Sequence[PaymentLine],
    line_id: str,
    configured: Sequence[str],
    *,
    method=UNSET,
    amount_cents=UNSET,
    cheque_number=UNSET,
) -> tuple[PaymentLine, ...]:
    """
    Edit one line. A method already used on another line is refused here,
    at edit time, not only at commit.
    """
    index = _find_line(lines, line_id)
    line = lines[index]
    changes = {}

    if method is not UNSET:
        if method not in configured:
            raise PaymentError(
                f"Unknown payment method: {method}",
                {"method": method, "configured": list(configured)},
            )
        if method not in available_methods(lines, configured, for_line_id=line_id):
            raise PaymentError(
                f"Payment method {method} is already used on another line",
                {"method": method},
            )
        changes["method"] = method
        if not is_cheque(method):
            changes["cheque_number"] = None

    if amount_cents is not UNSET:
        changes["amount_cents"] = require_cents(amount_cents, "amount_cents")

    if cheque_number is not UNSET:
        target_method = changes.get("method", line.method)
        if cheque_number and not is_cheque(target_method):
            raise PaymentError("Cheque number only applies to cheque payments", {"method": target_method})
        changes["cheque_number"] = (cheque_number or "").strip() or None

    updated = list(lines)
    updated[index] = replace(line, **changes)
    return tuple(updated)


def validate_payment_lines(
    lines: Iterable[PaymentLine],
    configured: Sequence[str],
) -> tuple[PaymentLine, ...]:
    """
    Commit-time check. Returns the lines that will be persisted
    (amount > 0), raising for duplicates, unknown methods or a cheque
    without a number.
    """
    committed = []
    seen = set()
    for line in lines:
        amount = require_cents(line.amount_cents, "amount_cents")
        if line.method not in configured:
            raise PaymentError(
                f"Unknown payment method: {line.method}",
                {"method": line.method, "configured": list(configured)},
            )
        if line.method in seen:
            raise PaymentError(
                f"Payment method {line.method} appears on more than one line",
                {"method": line.method},
            )
        seen.add(line.method)
        if amount <= 0:
            continue
        if is_cheque(line.method) and not (line.cheque_number or "").strip():
            raise PaymentError("Cheque number is required for cheque payments", {"line_id": line.line_id})
        committed.append(line)
    return tuple(committed)


# =============================================================================
# BREAKDOWN
# =============================================================================

@dataclass(frozen=True)
class PaymentBreakdown:
    sale_type: str
    final_total_cents: int
    total_paid_cents: int
    amount_due_cents: int
    change_due_cents: int
    status: str
    payments: tuple[PaymentLine, ...] = ()

    @property
    def overpaid_cents(self) -> int:
        """Excess on a deferred invoice; it becomes store credit, not change."""
        if is_immediate_payment(self.sale_type):
            return 0
        return max(0, -self.amount_due_cents)

    def to_dict(self) -> dict:
        return {
            "sale_type": self.sale_type,
            "final_total_cents": self.final_total_cents,
            "total_paid_cents": self.total_paid_cents,
            "amount_due_cents": self.amount_due_cents,
            "change_due_cents": self.change_due_cents,
            "overpaid_cents": self.overpaid_cents,
            "status": self.status,
            "payments": [p.to_dict() for p in self.payments],
        }


def summarize_payments(
    final_total_cents: int,
    lines: Iterable[PaymentLine],
    sale_type: str = SALE_TYPE_RECEIPT,
) -> PaymentBreakdown:
    """Display-time figures. Never raises for an incomplete draft."""
    payable = tuple(line for line in lines if line.amount_cents > 0)
    total_paid = sum(line.amount_cents for line in payable)
    amount_due = final_total_cents - total_paid

    change_due = 0
    if is_immediate_payment(sale_type) and total_paid > final_total_cents:
        change_due = total_paid - final_total_cents

    if is_immediate_payment(sale_type):
        status = INVOICE_STATUS_PAID if amount_due <= 0 else INVOICE_STATUS_DRAFT
    else:
        status = invoice_status_for(final_total_cents, total_paid)

    return PaymentBreakdown(
        sale_type=sale_type,
        final_total_cents=final_total_cents,
        total_paid_cents=total_paid,
        amount_due_cents=amount_due,
        change_due_cents=change_due,
        status=status,
        payments=payable,
    )


def split_payments(
    final_total_cents: int,
    lines: Iterable[PaymentLine],
    sale_type: str,
    configured: Sequence[str],
) -> PaymentBreakdown:
    """
    Commit-time split: validated lines plus the resulting status.

    Raises PaymentError when an immediate-payment sale is not fully settled.
    """
    require_sale_type(sale_type)
    lines = tuple(lines)
    if not lines:
        raise PaymentError("At least one payment line is required")

    committed = validate_payment_lines(lines, configured)
    breakdown = summarize_payments(final_total_cents, committed, sale_type)

    if is_immediate_payment(sale_type) and breakdown.amount_due_cents > 0:
        raise PaymentError(
            "Receipt must be paid in full",
            {
                "final_total_cents": final_total_cents,
                "total_paid_cents": breakdown.total_paid_cents,
                "amount_due_cents": breakdown.amount_due_cents,
            },
        )
    return breakdown
