"""
Return / Refund Service

WHY: A refund must never exceed what the customer actually paid, must
reference the original invoice lines (original unit price, not today's
catalog price) and must be reversible as a unit.

DESIGN PRINCIPLES:
- calculate_refund is pure; commit_return re-reads the invoice under lock
- Returned value is credited to the customer's ledger in full
  (return_value); every real payout is then debited (refund_payout).
  Whatever is not paid out stays on the account as store credit.
- The pseudo-method "Credits" on a payout line only documents that split;
  it produces no ledger debit.
- Restocking is optional per return and draws bundle components back in
- Expenses are reporting data; they never bound the refund

REVERSAL:
delete_return removes exactly the movements and transactions carrying the
return's id. It is refused once the restocked units have been sold again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from flask import current_app

from ..extensions import db
from ..models import (
    CustomerTransaction,
    Invoice,
    InvoiceLine,
    ReturnExpense,
    ReturnItem,
    ReturnPayout,
    ReturnRecord,
    StockMovement,
)
from ..validation import ConflictError, ValidationError, require_cents, require_quantity
from .concurrency import begin_immediate, lock_for_update, run_atomic
from .document_service import DOCUMENT_TYPE_RETURN, next_document_number
from .event_service import EVENT_RETURN_COMMITTED, EVENT_RETURN_REVERSED, append_domain_event
from .inventory_service import (
    MOVEMENT_RETURN_RESTOCK,
    expand_stock_requirements,
    get_quantity_on_hand,
    record_movement,
)
from .ledger_service import (
    KIND_REFUND_PAYOUT,
    KIND_RETURN_VALUE,
    TRANSACTION_CREDIT,
    TRANSACTION_DEBIT,
    lock_customer,
    post_transaction,
    reverse_transactions,
)
from .payment_service import is_cheque
from .sales_service import get_configured_payment_methods


class RefundError(ValidationError):
    """Raised for return operation errors."""


# =============================================================================
# RETURN STATUS CONSTANTS
# =============================================================================

RETURN_STATUS_NONE = None
RETURN_STATUS_PARTIAL = "Partially Returned"
RETURN_STATUS_FULL = "Fully Returned"


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class ReturnableLine:
    line_id: int
    description: str
    quantity: int
    quantity_returned: int
    unit_price_cents: int
    product_id: int | None = None

    @property
    def max_returnable(self) -> int:
        return max(0, self.quantity - self.quantity_returned)

    @classmethod
    def from_invoice_line(cls, line: InvoiceLine) -> "ReturnableLine":
        return cls(
            line_id=line.id,
            description=line.description,
            quantity=line.quantity,
            quantity_returned=line.quantity_returned or 0,
            unit_price_cents=line.unit_price_cents,
            product_id=line.product_id,
        )


@dataclass(frozen=True)
class ExpenseDraft:
    description: str
    amount_cents: int


@dataclass(frozen=True)
class RefundPayout:
    method: str
    amount_cents: int
    cheque_number: str | None = None


@dataclass(frozen=True)
class RefundItem:
    line_id: int
    quantity: int
    unit_price_cents: int
    line_refund_cents: int


@dataclass(frozen=True)
class ReturnDraft:
    invoice_id: int
    quantities: Mapping[int, int] = field(default_factory=dict)  # invoice line id -> qty
    delivery_refund_cents: int = 0
    expenses: tuple[ExpenseDraft, ...] = ()
    payouts: tuple[RefundPayout, ...] = ()
    restock_items: bool = True
    notes: str | None = None


@dataclass(frozen=True)
class RefundBreakdown:
    items: tuple[RefundItem, ...]
    items_refund_cents: int
    delivery_refund_cents: int
    total_refund_cents: int
    max_refundable_cents: int
    payouts: tuple[RefundPayout, ...]
    expenses: tuple[ExpenseDraft, ...]
    store_credit_method: str

    @property
    def payout_cents(self) -> int:
        """Money leaving the store (every method except store credit)."""
        return sum(p.amount_cents for p in self.payouts if p.method != self.store_credit_method)

    @property
    def store_credit_cents(self) -> int:
        return self.total_refund_cents - self.payout_cents

    @property
    def total_expense_cents(self) -> int:
        return sum(e.amount_cents for e in self.expenses)

    def to_dict(self) -> dict:
        return {
            "items": [
                {
                    "line_id": i.line_id,
                    "quantity": i.quantity,
                    "unit_price_cents": i.unit_price_cents,
                    "line_refund_cents": i.line_refund_cents,
                }
                for i in self.items
            ],
            "items_refund_cents": self.items_refund_cents,
            "delivery_refund_cents": self.delivery_refund_cents,
            "total_refund_cents": self.total_refund_cents,
            "max_refundable_cents": self.max_refundable_cents,
            "payout_cents": self.payout_cents,
            "store_credit_cents": self.store_credit_cents,
            "total_expense_cents": self.total_expense_cents,
        }


# =============================================================================
# CALCULATION (pure)
# =============================================================================

def _validate_payouts(
    payouts: Sequence[RefundPayout],
    configured_methods: Sequence[str],
    store_credit_method: str,
) -> tuple[RefundPayout, ...]:
    allowed = list(configured_methods) + [store_credit_method]
    seen = set()
    kept = []
    for payout in payouts:
        amount = require_cents(payout.amount_cents, "payout amount_cents")
        if payout.method not in allowed:
            raise RefundError(
                f"Unknown refund method: {payout.method}",
                {"method": payout.method, "allowed": allowed},
            )
        if payout.method in seen:
            raise RefundError(
                f"Refund method {payout.method} appears on more than one line",
                {"method": payout.method},
            )
        seen.add(payout.method)
        if amount == 0:
            continue
        if is_cheque(payout.method) and not (payout.cheque_number or "").strip():
            raise RefundError("Cheque number is required for cheque refunds", {"method": payout.method})
        kept.append(payout)
    return tuple(kept)


def calculate_refund(
    lines: Sequence[ReturnableLine],
    quantities: Mapping[int, int],
    *,
    delivery_refund_cents: int = 0,
    original_delivery_charge_cents: int = 0,
    amount_paid_cents: int = 0,
    already_refunded_cents: int = 0,
    payouts: Sequence[RefundPayout] = (),
    expenses: Sequence[ExpenseDraft] = (),
    configured_methods: Sequence[str] = (),
    store_credit_method: str = "Credits",
) -> RefundBreakdown:
    """
    Refund figures for a return.

    Requested quantities are clamped to [0, max_returnable]; the refund is
    bounded by amount paid minus what was already refunded.
    """
    by_id = {line.line_id: line for line in lines}
    items = []
    for line_id, requested in quantities.items():
        line = by_id.get(line_id)
        if line is None:
            raise RefundError("Invoice line not found on this invoice", {"line_id": line_id})
        qty = min(require_quantity(requested), line.max_returnable)
        if qty == 0:
            continue
        items.append(RefundItem(
            line_id=line_id,
            quantity=qty,
            unit_price_cents=line.unit_price_cents,
            line_refund_cents=qty * line.unit_price_cents,
        ))

    delivery_refund = require_cents(delivery_refund_cents, "delivery_refund_cents")
    if delivery_refund > original_delivery_charge_cents:
        raise RefundError(
            "Delivery refund cannot exceed the original delivery charge",
            {
                "delivery_refund_cents": delivery_refund,
                "delivery_charge_cents": original_delivery_charge_cents,
            },
        )

    if not items and delivery_refund == 0:
        raise RefundError("Nothing to return: select at least one item or a delivery refund")

    items_refund = sum(i.line_refund_cents for i in items)
    total_refund = items_refund + delivery_refund
    max_refundable = max(0, amount_paid_cents - already_refunded_cents)
    if total_refund > max_refundable:
        raise RefundError(
            "Refund exceeds the amount paid on the invoice",
            {"total_refund_cents": total_refund, "max_refundable_cents": max_refundable},
        )

    kept_payouts = _validate_payouts(payouts, configured_methods, store_credit_method)
    payout_total = sum(p.amount_cents for p in kept_payouts)
    if payout_total > total_refund:
        raise RefundError(
            "Refund payouts exceed the total refund",
            {"payout_total_cents": payout_total, "total_refund_cents": total_refund},
        )

    kept_expenses = []
    for expense in expenses:
        if not (expense.description or "").strip():
            raise RefundError("Expense description is required")
        require_cents(expense.amount_cents, "expense amount_cents")
        kept_expenses.append(expense)

    return RefundBreakdown(
        items=tuple(items),
        items_refund_cents=items_refund,
        delivery_refund_cents=delivery_refund,
        total_refund_cents=total_refund,
        max_refundable_cents=max_refundable,
        payouts=kept_payouts,
        expenses=tuple(kept_expenses),
        store_credit_method=store_credit_method,
    )


# =============================================================================
# READ HELPERS
# =============================================================================

def _line_components(line: InvoiceLine) -> list[tuple[int, int]]:
    return [(c["product_id"], c["quantity"]) for c in (line.components or [])]


def _return_status_for(invoice: Invoice) -> str | None:
    lines = list(invoice.lines)
    returned = sum(line.quantity_returned or 0 for line in lines)
    if returned == 0:
        return RETURN_STATUS_NONE
    if all((line.quantity_returned or 0) >= line.quantity for line in lines):
        return RETURN_STATUS_FULL
    return RETURN_STATUS_PARTIAL


def returnable_lines(invoice_id: int) -> list[ReturnableLine]:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise RefundError("Invoice not found", {"invoice_id": invoice_id})
    return [ReturnableLine.from_invoice_line(line) for line in invoice.lines]


def get_refund_ceiling(invoice_id: int) -> int:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise RefundError("Invoice not found", {"invoice_id": invoice_id})
    return max(0, invoice.amount_paid_cents - invoice.refunded_cents)


def _calculate_for_invoice(invoice: Invoice, draft: ReturnDraft) -> RefundBreakdown:
    return calculate_refund(
        [ReturnableLine.from_invoice_line(line) for line in invoice.lines],
        draft.quantities,
        delivery_refund_cents=draft.delivery_refund_cents,
        original_delivery_charge_cents=invoice.delivery_charge_cents,
        amount_paid_cents=invoice.amount_paid_cents,
        already_refunded_cents=invoice.refunded_cents,
        payouts=draft.payouts,
        expenses=draft.expenses,
        configured_methods=get_configured_payment_methods(),
        store_credit_method=current_app.config["STORE_CREDIT_METHOD"],
    )


def preview_return(draft: ReturnDraft) -> RefundBreakdown:
    """Refund figures for display. Writes nothing."""
    invoice = db.session.get(Invoice, draft.invoice_id)
    if not invoice:
        raise RefundError("Invoice not found", {"invoice_id": draft.invoice_id})
    return _calculate_for_invoice(invoice, draft)


# =============================================================================
# COMMIT
# =============================================================================

def commit_return(draft: ReturnDraft) -> ReturnRecord:
    """
    Commit a return atomically.

    Raises:
    - RefundError: invalid figures (over ceiling, nothing returned, bad payouts)
    - ConflictError: a requested quantity exceeds what is still returnable
    """
    def _op():
        begin_immediate()
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=draft.invoice_id)).first()
        if not invoice:
            raise RefundError("Invoice not found", {"invoice_id": draft.invoice_id})
        customer = lock_customer(invoice.customer_id)

        lines_by_id = {line.id: line for line in invoice.lines}
        for line_id, requested in draft.quantities.items():
            line = lines_by_id.get(line_id)
            if line is None:
                raise RefundError("Invoice line not found on this invoice", {"line_id": line_id})
            qty = require_quantity(requested)
            if qty > line.max_returnable:
                raise ConflictError(
                    "Requested return quantity exceeds what is still returnable",
                    {"line_id": line_id, "requested": qty, "max_returnable": line.max_returnable},
                )

        breakdown = _calculate_for_invoice(invoice, draft)
        store_credit_method = breakdown.store_credit_method

        doc_num = next_document_number(
            document_type=DOCUMENT_TYPE_RETURN,
            prefix=current_app.config["RETURN_PREFIX"],
        )
        record = ReturnRecord(
            document_number=doc_num,
            original_invoice_id=invoice.id,
            customer_id=customer.id,
            items_refund_cents=breakdown.items_refund_cents,
            delivery_refund_cents=breakdown.delivery_refund_cents,
            total_refund_cents=breakdown.total_refund_cents,
            payout_cents=breakdown.payout_cents,
            store_credit_cents=breakdown.store_credit_cents,
            total_expense_cents=breakdown.total_expense_cents,
            restock_items=draft.restock_items,
            notes=draft.notes,
        )
        db.session.add(record)
        db.session.flush()

        restock = []
        for item in breakdown.items:
            line = lines_by_id[item.line_id]
            db.session.add(ReturnItem(
                return_id=record.id,
                invoice_line_id=line.id,
                product_id=line.product_id,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                line_refund_cents=item.line_refund_cents,
            ))
            line.quantity_returned = (line.quantity_returned or 0) + item.quantity
            if draft.restock_items and line.product_id is not None and line.stock_deducted:
                restock.append((line.product_id, item.quantity, _line_components(line)))

        for expense in breakdown.expenses:
            db.session.add(ReturnExpense(
                return_id=record.id,
                description=expense.description.strip(),
                amount_cents=expense.amount_cents,
            ))
        for payout in breakdown.payouts:
            db.session.add(ReturnPayout(
                return_id=record.id,
                method=payout.method,
                amount_cents=payout.amount_cents,
                cheque_number=payout.cheque_number,
            ))

        # Ledger: full value back to the account, then every real payout out of it
        if breakdown.total_refund_cents:
            post_transaction(
                customer,
                amount_cents=breakdown.total_refund_cents,
                type=TRANSACTION_CREDIT,
                kind=KIND_RETURN_VALUE,
                description=f"Return {doc_num} against {invoice.document_number}",
                return_id=record.id,
            )
        for payout in breakdown.payouts:
            if payout.method == store_credit_method:
                continue
            post_transaction(
                customer,
                amount_cents=payout.amount_cents,
                type=TRANSACTION_DEBIT,
                kind=KIND_REFUND_PAYOUT,
                description=f"Refund payout for {doc_num}",
                payment_method=payout.method,
                cheque_number=payout.cheque_number,
                return_id=record.id,
            )

        requirements = expand_stock_requirements(restock)
        for product_id, quantity in requirements.items():
            record_movement(
                product_id=product_id,
                quantity_delta=quantity,
                movement_type=MOVEMENT_RETURN_RESTOCK,
                note=doc_num,
                return_id=record.id,
            )

        invoice.refunded_cents = (invoice.refunded_cents or 0) + breakdown.total_refund_cents
        invoice.return_status = _return_status_for(invoice)
        db.session.flush()

        append_domain_event(
            event_type=EVENT_RETURN_COMMITTED,
            entity_type="return",
            entity_id=record.id,
            customer_id=customer.id,
            note=doc_num,
            payload={
                "document_number": doc_num,
                "invoice_id": invoice.id,
                "total_refund_cents": breakdown.total_refund_cents,
                "payout_cents": breakdown.payout_cents,
                "store_credit_cents": breakdown.store_credit_cents,
                "restocked": {str(pid): qty for pid, qty in requirements.items()},
            },
        )
        return record

    record = run_atomic(_op, operation="Return commit")
    current_app.logger.info(
        "Committed return %s: refund=%s payout=%s store_credit=%s",
        record.document_number, record.total_refund_cents, record.payout_cents, record.store_credit_cents,
    )
    return record


def delete_return(return_id: int) -> None:
    """Fully reverse a committed return (ledger, stock, returned quantities)."""
    def _op():
        begin_immediate()
        record = lock_for_update(db.session.query(ReturnRecord).filter_by(id=return_id)).first()
        if not record:
            raise RefundError("Return not found", {"return_id": return_id})
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=record.original_invoice_id)).first()
        customer = lock_customer(record.customer_id)

        movements = db.session.query(StockMovement).filter_by(return_id=record.id).all()
        restocked: dict[int, int] = {}
        for movement in movements:
            restocked[movement.product_id] = restocked.get(movement.product_id, 0) + movement.quantity_delta
        for product_id, quantity in restocked.items():
            on_hand = get_quantity_on_hand(product_id)
            if on_hand < quantity:
                raise ConflictError(
                    "Cannot reverse return: restocked items have already been sold",
                    {"product_id": product_id, "restocked": quantity, "on_hand": on_hand},
                )
        for movement in movements:
            db.session.delete(movement)
        db.session.flush()

        transactions = db.session.query(CustomerTransaction).filter_by(return_id=record.id).all()
        reverse_transactions(customer, transactions)

        for item in record.items:
            line = item.invoice_line
            line.quantity_returned = max(0, (line.quantity_returned or 0) - item.quantity)
            db.session.delete(item)
        for expense in record.expenses:
            db.session.delete(expense)
        for payout in record.payouts:
            db.session.delete(payout)

        invoice.refunded_cents = max(0, (invoice.refunded_cents or 0) - record.total_refund_cents)
        invoice.return_status = _return_status_for(invoice)

        document_number = record.document_number
        total_refund = record.total_refund_cents
        db.session.delete(record)
        db.session.flush()

        append_domain_event(
            event_type=EVENT_RETURN_REVERSED,
            entity_type="return",
            entity_id=return_id,
            customer_id=customer.id,
            note=document_number,
            payload={
                "document_number": document_number,
                "invoice_id": invoice.id,
                "total_refund_cents": total_refund,
                "unstocked": {str(pid): qty for pid, qty in restocked.items()},
            },
        )
        return document_number

    document_number = run_atomic(_op, operation="Return reversal")
    current_app.logger.info("Reversed return %s", document_number)
