"""
Checkout Draft Reducer

WHY: The checkout screen edits many interdependent figures (quantities,
discounts, delivery, credit, payment lines). Instead of patching derived
values incrementally, every edit produces a new immutable draft and all
derivations (cart -> credit -> payments) are recomputed from scratch:

    apply_edit(draft, edit) -> draft'
    quote(draft) -> SettlementQuote

Normalization after every edit:
- walk-in customers are always on a receipt
- credit_to_apply is re-clamped to [0, min(available credit, cart total)]
- settle_balance is dropped when it is no longer offered
- with exactly one payment line, that line follows the final total

Nothing here touches the database. Cancelling a checkout is discarding the
draft; sales_service.commit_sale is the only writer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Sequence

from ..validation import ValidationError, require_cents, require_int, require_quantity
from .cart_service import (
    NO_DELIVERY,
    NO_DISCOUNT,
    CartTotals,
    Delivery,
    Discount,
    LineItemDraft,
    compute_cart,
    parse_discount,
)
from .credit_service import CreditAllocation, CreditError, allocate_credit, clamp_credit, settle_balance_offered
from .payment_service import (
    SALE_TYPE_RECEIPT,
    PaymentBreakdown,
    PaymentLine,
    UNSET,
    add_payment_line,
    new_payment_line,
    remove_payment_line,
    require_sale_type,
    summarize_payments,
    update_payment_line,
)


class CheckoutError(ValidationError):
    """Raised for edits that cannot apply to the current draft."""


@dataclass(frozen=True)
class CustomerSnapshot:
    """Customer as read when the checkout opened. Re-validated at commit."""
    customer_id: int
    balance_cents: int
    is_walk_in: bool = False

    @classmethod
    def from_customer(cls, customer) -> "CustomerSnapshot":
        return cls(
            customer_id=customer.id,
            balance_cents=customer.balance_cents,
            is_walk_in=bool(customer.is_walk_in),
        )


@dataclass(frozen=True)
class CheckoutDraft:
    customer: CustomerSnapshot
    payment_methods: tuple[str, ...]
    lines: tuple[LineItemDraft, ...] = ()
    overall_discount: Discount = NO_DISCOUNT
    delivery: Delivery = NO_DELIVERY
    sale_type: str = SALE_TYPE_RECEIPT
    credit_to_apply_cents: int = 0
    settle_balance: bool = False
    payments: tuple[PaymentLine, ...] = ()
    notes: str | None = None


@dataclass(frozen=True)
class SettlementQuote:
    cart: CartTotals
    credit: CreditAllocation
    payments: PaymentBreakdown

    @property
    def final_total_cents(self) -> int:
        return self.credit.final_total_cents

    def to_dict(self) -> dict:
        return {
            "cart": self.cart.to_dict(),
            "credit": self.credit.to_dict(),
            "payments": self.payments.to_dict(),
        }


def quote(draft: CheckoutDraft) -> SettlementQuote:
    cart = compute_cart(draft.lines, draft.overall_discount, draft.delivery)
    credit = allocate_credit(
        draft.customer.balance_cents,
        cart.total_cents,
        draft.credit_to_apply_cents,
        draft.settle_balance,
        draft.sale_type,
    )
    payments = summarize_payments(credit.final_total_cents, draft.payments, draft.sale_type)
    return SettlementQuote(cart=cart, credit=credit, payments=payments)


# =============================================================================
# EDITS
# =============================================================================

@dataclass(frozen=True)
class AddLine:
    line: LineItemDraft


@dataclass(frozen=True)
class RemoveLine:
    index: int


@dataclass(frozen=True)
class SetLineQuantity:
    index: int
    quantity: int


@dataclass(frozen=True)
class SetLinePrice:
    index: int
    unit_price_cents: int


@dataclass(frozen=True)
class SetLineDiscount:
    index: int
    discount: object  # Discount or free text ("10%", "5.00")


@dataclass(frozen=True)
class SetOverallDiscount:
    discount: object


@dataclass(frozen=True)
class SetDelivery:
    delivery: Delivery


@dataclass(frozen=True)
class SetSaleType:
    sale_type: str


@dataclass(frozen=True)
class SetCreditToApply:
    amount_cents: int


@dataclass(frozen=True)
class SetSettleBalance:
    settle: bool


@dataclass(frozen=True)
class AddPaymentLine:
    pass


@dataclass(frozen=True)
class RemovePaymentLine:
    line_id: str


@dataclass(frozen=True)
class UpdatePaymentLine:
    line_id: str
    method: object = UNSET
    amount_cents: object = UNSET
    cheque_number: object = UNSET


@dataclass(frozen=True)
class SetNotes:
    notes: str | None


def _line_at(draft: CheckoutDraft, index: int) -> LineItemDraft:
    if index < 0 or index >= len(draft.lines):
        raise CheckoutError("Line not found", {"index": index})
    return draft.lines[index]


def _replace_line(draft: CheckoutDraft, index: int, **changes) -> CheckoutDraft:
    lines = list(draft.lines)
    lines[index] = replace(_line_at(draft, index), **changes)
    return replace(draft, lines=tuple(lines))


def _add_line(draft, edit: AddLine):
    require_quantity(edit.line.quantity)
    require_cents(edit.line.unit_price_cents, "unit_price_cents")
    return replace(draft, lines=draft.lines + (edit.line,))


def _remove_line(draft, edit: RemoveLine):
    _line_at(draft, edit.index)
    return replace(draft, lines=draft.lines[:edit.index] + draft.lines[edit.index + 1:])


def _set_quantity(draft, edit: SetLineQuantity):
    return _replace_line(draft, edit.index, quantity=require_quantity(edit.quantity))


def _set_price(draft, edit: SetLinePrice):
    return _replace_line(draft, edit.index, unit_price_cents=require_cents(edit.unit_price_cents, "unit_price_cents"))


def _set_line_discount(draft, edit: SetLineDiscount):
    return _replace_line(draft, edit.index, discount=parse_discount(edit.discount))


def _set_overall_discount(draft, edit: SetOverallDiscount):
    return replace(draft, overall_discount=parse_discount(edit.discount))


def _set_delivery(draft, edit: SetDelivery):
    return replace(draft, delivery=edit.delivery or NO_DELIVERY)


def _set_sale_type(draft, edit: SetSaleType):
    sale_type = require_sale_type(edit.sale_type)
    if draft.customer.is_walk_in and sale_type != SALE_TYPE_RECEIPT:
        raise CheckoutError("Walk-in customers must pay on a receipt", {"sale_type": sale_type})
    return replace(draft, sale_type=sale_type)


def _set_credit(draft, edit: SetCreditToApply):
    # Clamped in _normalize; negative input simply snaps to 0
    try:
        amount = require_int(edit.amount_cents, "credit_to_apply_cents")
    except ValidationError as exc:
        raise CreditError(exc.message, {"credit_to_apply_cents": edit.amount_cents}) from exc
    return replace(draft, credit_to_apply_cents=amount)


def _set_settle(draft, edit: SetSettleBalance):
    return replace(draft, settle_balance=bool(edit.settle))


def _add_payment(draft, edit: AddPaymentLine):
    current = quote(draft)
    remaining = max(0, current.payments.amount_due_cents)
    return replace(draft, payments=add_payment_line(draft.payments, draft.payment_methods, remaining))


def _remove_payment(draft, edit: RemovePaymentLine):
    return replace(draft, payments=remove_payment_line(draft.payments, edit.line_id))


def _update_payment(draft, edit: UpdatePaymentLine):
    return replace(
        draft,
        payments=update_payment_line(
            draft.payments,
            edit.line_id,
            draft.payment_methods,
            method=edit.method,
            amount_cents=edit.amount_cents,
            cheque_number=edit.cheque_number,
        ),
    )


def _set_notes(draft, edit: SetNotes):
    return replace(draft, notes=edit.notes)


_HANDLERS = {
    AddLine: _add_line,
    RemoveLine: _remove_line,
    SetLineQuantity: _set_quantity,
    SetLinePrice: _set_price,
    SetLineDiscount: _set_line_discount,
    SetOverallDiscount: _set_overall_discount,
    SetDelivery: _set_delivery,
    SetSaleType: _set_sale_type,
    SetCreditToApply: _set_credit,
    SetSettleBalance: _set_settle,
    AddPaymentLine: _add_payment,
    RemovePaymentLine: _remove_payment,
    UpdatePaymentLine: _update_payment,
    SetNotes: _set_notes,
}

# Edits that set payment amounts by hand; the single-line sync must not undo them
_PAYMENT_EDITS = (AddPaymentLine, RemovePaymentLine, UpdatePaymentLine)


def _normalize(draft: CheckoutDraft, previous_final_total: int | None, sync_payment: bool) -> CheckoutDraft:
    if draft.customer.is_walk_in and draft.sale_type != SALE_TYPE_RECEIPT:
        draft = replace(draft, sale_type=SALE_TYPE_RECEIPT)

    cart = compute_cart(draft.lines, draft.overall_discount, draft.delivery)
    balance = draft.customer.balance_cents
    credit = clamp_credit(draft.credit_to_apply_cents, balance, cart.total_cents)
    settle = draft.settle_balance and settle_balance_offered(balance, draft.sale_type)
    draft = replace(draft, credit_to_apply_cents=credit, settle_balance=settle)

    final_total = quote(draft).final_total_cents
    if sync_payment and len(draft.payments) == 1 and final_total != previous_final_total:
        only = draft.payments[0]
        draft = replace(draft, payments=(replace(only, amount_cents=max(0, final_total)),))
    return draft


def apply_edit(draft: CheckoutDraft, edit) -> CheckoutDraft:
    handler = _HANDLERS.get(type(edit))
    if handler is None:
        raise CheckoutError(f"Unsupported checkout edit: {type(edit).__name__}")
    previous_final_total = quote(draft).final_total_cents
    edited = handler(draft, edit)
    return _normalize(edited, previous_final_total, sync_payment=not isinstance(edit, _PAYMENT_EDITS))


def apply_edits(draft: CheckoutDraft, edits: Sequence) -> CheckoutDraft:
    for edit in edits:
        draft = apply_edit(draft, edit)
    return draft


def start_checkout(
    customer: CustomerSnapshot,
    payment_methods: Sequence[str],
    lines: Sequence[LineItemDraft] = (),
    *,
    overall_discount: Discount = NO_DISCOUNT,
    delivery: Delivery = NO_DELIVERY,
    sale_type: str = SALE_TYPE_RECEIPT,
    credit_to_apply_cents: int = 0,
    settle_balance: bool = False,
    notes: str | None = None,
) -> CheckoutDraft:
    """
    Open a draft with one payment line (first configured method) covering
    the full final total.
    """
    methods = tuple(payment_methods)
    if not methods:
        raise CheckoutError("No payment methods are configured")
    require_sale_type(sale_type)
    for line in lines:
        require_quantity(line.quantity)
        require_cents(line.unit_price_cents, "unit_price_cents")

    draft = CheckoutDraft(
        customer=customer,
        payment_methods=methods,
        lines=tuple(lines),
        overall_discount=overall_discount,
        delivery=delivery,
        sale_type=sale_type,
        credit_to_apply_cents=credit_to_apply_cents,
        settle_balance=settle_balance,
        payments=(new_payment_line(methods[0], 0),),
        notes=notes,
    )
    return _normalize(draft, previous_final_total=None, sync_payment=True)
