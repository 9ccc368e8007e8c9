"""
Credit Allocator

Applies a customer's available store credit to a cart and, optionally,
adds the customer's outstanding balance so it is settled with this sale.

    available_credit = max(0, balance)
    outstanding      = max(0, -balance)
    credit_applied   in [0, min(available_credit, cart_total)]   (clamped)
    final_total      = cart_total - credit_applied + (settle ? outstanding : 0)

Settling the outstanding balance is only offered on immediate-payment
sales (receipts); on a deferred invoice the request is ignored.

Pure module. The commit path (sales_service) re-runs this against the
balance read under lock and refuses the commit on any difference.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..validation import ValidationError, clamp, require_int
from .payment_service import SALE_TYPE_RECEIPT, is_immediate_payment


class CreditError(ValidationError):
    """Raised for malformed credit input."""


@dataclass(frozen=True)
class CreditAllocation:
    balance_cents: int
    cart_total_cents: int
    available_credit_cents: int
    outstanding_balance_cents: int
    max_credit_cents: int
    credit_applied_cents: int
    settle_balance_offered: bool
    balance_settled_cents: int
    final_total_cents: int

    def to_dict(self) -> dict:
        return {
            "balance_cents": self.balance_cents,
            "cart_total_cents": self.cart_total_cents,
            "available_credit_cents": self.available_credit_cents,
            "outstanding_balance_cents": self.outstanding_balance_cents,
            "max_credit_cents": self.max_credit_cents,
            "credit_applied_cents": self.credit_applied_cents,
            "settle_balance_offered": self.settle_balance_offered,
            "balance_settled_cents": self.balance_settled_cents,
            "final_total_cents": self.final_total_cents,
        }


def max_applicable_credit(balance_cents: int, cart_total_cents: int) -> int:
    return max(0, min(max(0, balance_cents), cart_total_cents))


def clamp_credit(requested_cents: int, balance_cents: int, cart_total_cents: int) -> int:
    """Never errors: anything outside [0, bound] snaps to the nearest end."""
    return clamp(requested_cents, 0, max_applicable_credit(balance_cents, cart_total_cents))


def settle_balance_offered(balance_cents: int, sale_type: str) -> bool:
    return balance_cents < 0 and is_immediate_payment(sale_type)


def allocate_credit(
    balance_cents: int,
    cart_total_cents: int,
    credit_to_apply_cents: int = 0,
    settle_balance: bool = False,
    sale_type: str = SALE_TYPE_RECEIPT,
) -> CreditAllocation:
    balance = require_int(balance_cents, "balance_cents")
    cart_total = require_int(cart_total_cents, "cart_total_cents")
    if cart_total < 0:
        raise CreditError("Cart total cannot be negative", {"cart_total_cents": cart_total})
    requested = require_int(credit_to_apply_cents, "credit_to_apply_cents")

    available = max(0, balance)
    outstanding = max(0, -balance)
    applied = clamp_credit(requested, balance, cart_total)
    offered = settle_balance_offered(balance, sale_type)
    settled = outstanding if (settle_balance and offered) else 0

    return CreditAllocation(
        balance_cents=balance,
        cart_total_cents=cart_total,
        available_credit_cents=available,
        outstanding_balance_cents=outstanding,
        max_credit_cents=max_applicable_credit(balance, cart_total),
        credit_applied_cents=applied,
        settle_balance_offered=offered,
        balance_settled_cents=settled,
        final_total_cents=cart_total - applied + settled,
    )
