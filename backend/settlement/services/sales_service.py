"""
Sales Service - checkout commit

WHY: The checkout draft is computed against the balance and stock read
when the operator opened the dialog. By the time they press confirm,
another till may have spent the same credit or sold the last unit. The
commit therefore re-reads both under lock, re-runs the pure derivations
and refuses (ConflictError) if anything moved.

COMMIT EFFECTS (one DB transaction, all or nothing):
- Invoice + InvoiceLines (totals frozen from the authoritative quote)
- StockMovements for every stock-tracked line (bundles expanded)
- Ledger postings:
    debit  credit_applied   (store credit consumed)
    debit  sale             (total - credit_applied)
    credit payment          (one per payment line)
    debit  change           (change handed back on a receipt)
  so the balance moves by  -credit_applied + balance_settled  on a receipt,
  and any invoice overpayment stays on the account as credit.
- DomainEvent sale.committed
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Sequence

from flask import current_app

from ..extensions import db
from ..models import Courier, Invoice, InvoiceLine, Customer, Product
from ..validation import ValidationError, ConflictError, SettlementError, require_cents, require_int
from settlement.time_utils import utcnow, due_date_from
from .cart_service import NO_DISCOUNT, CourierRate, Delivery, Discount, LineItemDraft
from .checkout_service import CheckoutDraft, CustomerSnapshot, quote, start_checkout
from .credit_service import CreditAllocation, CreditError, allocate_credit, max_applicable_credit
from .payment_service import (
    INVOICE_STATUS_OVERDUE,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_SENT,
    SALE_TYPE_INVOICE,
    SALE_TYPE_RECEIPT,
    PaymentError,
    PaymentLine,
    invoice_status_for,
    is_immediate_payment,
    new_payment_line,
    split_payments,
    validate_payment_lines,
)
from .inventory_service import (
    MOVEMENT_SALE,
    bundle_components_for,
    ensure_stock_available,
    expand_stock_requirements,
    record_movement,
)
from .ledger_service import (
    KIND_CHANGE,
    KIND_CREDIT_APPLIED,
    KIND_PAYMENT,
    KIND_SALE,
    TRANSACTION_CREDIT,
    TRANSACTION_DEBIT,
    get_configured_payment_methods,
    lock_customer,
    post_transaction,
)
from .document_service import DOCUMENT_TYPE_INVOICE, next_document_number
from .event_service import append_domain_event, EVENT_SALE_COMMITTED, EVENT_PAYMENT_RECEIVED
from .concurrency import lock_for_update, begin_immediate, run_atomic


class SaleError(ValidationError):
    """Raised for sale operation errors."""


# =============================================================================
# READ HELPERS
# =============================================================================

def courier_delivery(courier_id: int, weight_kg=None) -> Delivery:
    """Delivery priced by an active courier's weight table (cart weight when weight_kg is None)."""
    courier = db.session.get(Courier, courier_id)
    if not courier or not courier.is_active:
        raise SaleError("Courier not found", {"courier_id": courier_id})
    rate = CourierRate(
        first_kg_price_cents=courier.first_kg_price_cents,
        additional_kg_price_cents=courier.additional_kg_price_cents,
        name=courier.name,
    )
    return Delivery(courier=rate, weight_kg=weight_kg)


def line_from_product(product: Product, quantity: int, discount: Discount = NO_DISCOUNT) -> LineItemDraft:
    """Cart line priced from the catalog (current price, weight, warranty, bundle parts)."""
    components = tuple(bundle_components_for(product.id)) if product.is_bundle else ()
    return LineItemDraft(
        description=product.name,
        quantity=quantity,
        unit_price_cents=product.price_cents,
        discount=discount,
        product_id=product.id,
        warranty_period=product.warranty_period,
        warranty_unit=product.warranty_unit,
        weight_grams=product.weight_grams or 0,
        components=components,
    )


def open_checkout(customer_id: int, lines: Sequence[LineItemDraft] = (), **options) -> CheckoutDraft:
    """Start a draft from the customer's current balance and the configured methods."""
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise SaleError("Customer not found", {"customer_id": customer_id})
    return start_checkout(
        CustomerSnapshot.from_customer(customer),
        get_configured_payment_methods(),
        lines,
        **options,
    )


# =============================================================================
# COMMIT
# =============================================================================

def _revalidate_credit(draft: CheckoutDraft, customer: Customer, drafted) -> CreditAllocation:
    snapshot_bound = max_applicable_credit(draft.customer.balance_cents, drafted.cart.total_cents)
    if draft.credit_to_apply_cents < 0 or draft.credit_to_apply_cents > snapshot_bound:
        raise CreditError(
            "Credit to apply exceeds available credit",
            {
                "credit_to_apply_cents": draft.credit_to_apply_cents,
                "max_credit_cents": snapshot_bound,
            },
        )

    authoritative = allocate_credit(
        customer.balance_cents,
        drafted.cart.total_cents,
        draft.credit_to_apply_cents,
        draft.settle_balance,
        draft.sale_type,
    )
    if (
        authoritative.credit_applied_cents != draft.credit_to_apply_cents
        or authoritative.final_total_cents != drafted.final_total_cents
    ):
        raise ConflictError(
            "Customer balance changed since checkout opened; re-open checkout",
            {
                "customer_id": customer.id,
                "drafted_balance_cents": draft.customer.balance_cents,
                "current_balance_cents": customer.balance_cents,
                "drafted_final_total_cents": drafted.final_total_cents,
                "current_final_total_cents": authoritative.final_total_cents,
                "available_credit_cents": authoritative.available_credit_cents,
            },
        )
    return authoritative


def _commit_sale_locked(
    draft: CheckoutDraft,
    *,
    due_date: datetime | None = None,
    movement_type: str = MOVEMENT_SALE,
    description_prefix: str = "Invoice",
) -> Invoice:
    """Core commit logic without begin/commit; caller runs it inside run_atomic."""
    if not draft.lines:
        raise SaleError("Cannot commit an empty cart")
    for index, line in enumerate(draft.lines):
        if line.quantity <= 0:
            raise SaleError("Line quantity must be at least 1", {"line_index": index})

    customer = lock_customer(draft.customer.customer_id)
    if customer.is_walk_in and draft.sale_type != SALE_TYPE_RECEIPT:
        raise SaleError("Walk-in customers must pay on a receipt", {"sale_type": draft.sale_type})

    drafted = quote(draft)
    credit = _revalidate_credit(draft, customer, drafted)
    cart = drafted.cart

    breakdown = split_payments(
        credit.final_total_cents,
        draft.payments,
        draft.sale_type,
        get_configured_payment_methods(),
    )

    requirements = expand_stock_requirements(
        (line.product_id, line.quantity, line.components)
        for line in draft.lines
        if line.stock_tracked and line.product_id is not None
    )
    ensure_stock_available(requirements)

    now = utcnow()
    if due_date is None and draft.sale_type == SALE_TYPE_INVOICE:
        due_date = due_date_from(now, current_app.config["DEFAULT_DUE_DATE_DAYS"])

    doc_num = next_document_number(
        document_type=DOCUMENT_TYPE_INVOICE,
        prefix=current_app.config["INVOICE_PREFIX"],
    )

    invoice = Invoice(
        document_number=doc_num,
        customer_id=customer.id,
        sale_type=draft.sale_type,
        status=INVOICE_STATUS_SENT,
        subtotal_cents=cart.subtotal_cents,
        item_discount_cents=cart.item_discount_cents,
        discount_cents=cart.overall_discount_cents,
        delivery_charge_cents=cart.delivery_charge_cents,
        total_cents=cart.total_cents,
        credit_applied_cents=credit.credit_applied_cents,
        balance_settled_cents=credit.balance_settled_cents,
        change_given_cents=breakdown.change_due_cents,
        courier_name=draft.delivery.courier.name if draft.delivery.courier else None,
        free_shipping=draft.delivery.free_shipping,
        notes=draft.notes,
        due_date=due_date,
    )
    db.session.add(invoice)
    db.session.flush()

    for line, totals in zip(draft.lines, cart.lines):
        db.session.add(InvoiceLine(
            invoice_id=invoice.id,
            product_id=line.product_id,
            description=line.description,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            discount_cents=totals.discount_cents,
            line_total_cents=totals.net_cents,
            unit=line.unit,
            warranty_period=line.warranty_period,
            warranty_unit=line.warranty_unit,
            components=[{"product_id": pid, "quantity": qty} for pid, qty in line.components] or None,
            stock_deducted=line.stock_tracked and line.product_id is not None,
            quantity_returned=0,
        ))

    for product_id, quantity in requirements.items():
        record_movement(
            product_id=product_id,
            quantity_delta=-quantity,
            movement_type=movement_type,
            note=doc_num,
            invoice_id=invoice.id,
        )

    # Ledger postings
    credit_applied = credit.credit_applied_cents
    if credit_applied:
        post_transaction(
            customer,
            amount_cents=credit_applied,
            type=TRANSACTION_DEBIT,
            kind=KIND_CREDIT_APPLIED,
            description=f"Store credit applied to {doc_num}",
            invoice_id=invoice.id,
        )
    charge = cart.total_cents - credit_applied
    if charge > 0:
        post_transaction(
            customer,
            amount_cents=charge,
            type=TRANSACTION_DEBIT,
            kind=KIND_SALE,
            description=f"{description_prefix} {doc_num}",
            invoice_id=invoice.id,
        )
    for payment in breakdown.payments:
        post_transaction(
            customer,
            amount_cents=payment.amount_cents,
            type=TRANSACTION_CREDIT,
            kind=KIND_PAYMENT,
            description=f"Payment for {doc_num}",
            payment_method=payment.method,
            cheque_number=payment.cheque_number,
            invoice_id=invoice.id,
        )
    if breakdown.change_due_cents:
        post_transaction(
            customer,
            amount_cents=breakdown.change_due_cents,
            type=TRANSACTION_DEBIT,
            kind=KIND_CHANGE,
            description=f"Change given for {doc_num}",
            invoice_id=invoice.id,
        )

    # Part of the payments settles the prior balance; the rest covers this invoice
    net_payments = breakdown.total_paid_cents - breakdown.change_due_cents - credit.balance_settled_cents
    invoice.amount_paid_cents = credit_applied + max(0, min(net_payments, charge))
    invoice.status = invoice_status_for(invoice.total_cents, invoice.amount_paid_cents)
    if invoice.status == INVOICE_STATUS_PAID:
        invoice.paid_at = now
    db.session.flush()

    append_domain_event(
        event_type=EVENT_SALE_COMMITTED,
        entity_type="invoice",
        entity_id=invoice.id,
        customer_id=customer.id,
        note=doc_num,
        payload={
            "document_number": doc_num,
            "sale_type": invoice.sale_type,
            "status": invoice.status,
            "total_cents": invoice.total_cents,
            "final_total_cents": credit.final_total_cents,
            "credit_applied_cents": credit_applied,
            "balance_settled_cents": credit.balance_settled_cents,
            "total_paid_cents": breakdown.total_paid_cents,
            "change_due_cents": breakdown.change_due_cents,
            "amount_due_cents": max(0, breakdown.amount_due_cents),
            "stock": {str(pid): qty for pid, qty in requirements.items()},
        },
    )
    return invoice


def commit_sale(draft: CheckoutDraft, *, due_date: datetime | None = None) -> Invoice:
    """
    Commit a checkout draft atomically.

    Raises:
    - ValidationError subclasses for bad input (nothing applied)
    - ConflictError when balance or stock moved since the draft was computed
    - CollaboratorError when persistence fails (rolled back)
    """
    def _op():
        begin_immediate()
        return _commit_sale_locked(draft, due_date=due_date)

    try:
        invoice = run_atomic(_op, operation="Sale commit")
    except SettlementError as exc:
        current_app.logger.warning("Sale commit refused for customer %s: %s", draft.customer.customer_id, exc)
        raise

    current_app.logger.info(
        "Committed %s %s for customer %s: total=%s paid=%s status=%s",
        invoice.sale_type, invoice.document_number, invoice.customer_id,
        invoice.total_cents, invoice.amount_paid_cents, invoice.status,
    )
    return invoice


# =============================================================================
# LATER PAYMENTS / STATUS
# =============================================================================

def refresh_invoice_status(invoice: Invoice, as_of: datetime | None = None) -> str:
    as_of = as_of or utcnow()
    if invoice.amount_paid_cents >= invoice.total_cents:
        invoice.status = INVOICE_STATUS_PAID
        invoice.paid_at = invoice.paid_at or as_of
    elif not is_immediate_payment(invoice.sale_type) and invoice.due_date and invoice.due_date < as_of:
        invoice.status = INVOICE_STATUS_OVERDUE
    elif invoice.amount_paid_cents > 0:
        invoice.status = INVOICE_STATUS_PARTIALLY_PAID
    else:
        invoice.status = INVOICE_STATUS_SENT
    return invoice.status


def record_invoice_payment(invoice_id: int, payments: Sequence[PaymentLine]) -> Invoice:
    """
    Post payments received against an existing invoice.

    Each payment is one credit transaction. What exceeds the invoice's
    outstanding amount stays on the customer's account as credit.
    """
    def _op():
        begin_immediate()
        invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
        if not invoice:
            raise SaleError("Invoice not found", {"invoice_id": invoice_id})
        customer = lock_customer(invoice.customer_id)

        committed = validate_payment_lines(payments, get_configured_payment_methods())
        if not committed:
            raise PaymentError("At least one payment with a positive amount is required")

        received = 0
        for payment in committed:
            post_transaction(
                customer,
                amount_cents=payment.amount_cents,
                type=TRANSACTION_CREDIT,
                kind=KIND_PAYMENT,
                description=f"Payment for {invoice.document_number}",
                payment_method=payment.method,
                cheque_number=payment.cheque_number,
                invoice_id=invoice.id,
            )
            received += payment.amount_cents

        applied = min(received, invoice.outstanding_cents)
        invoice.amount_paid_cents += applied
        refresh_invoice_status(invoice)
        db.session.flush()

        append_domain_event(
            event_type=EVENT_PAYMENT_RECEIVED,
            entity_type="invoice",
            entity_id=invoice.id,
            customer_id=customer.id,
            note=invoice.document_number,
            payload={
                "received_cents": received,
                "applied_cents": applied,
                "credit_cents": received - applied,
                "status": invoice.status,
            },
        )
        return invoice

    invoice = run_atomic(_op, operation="Invoice payment")
    current_app.logger.info("Recorded payment on %s: status=%s", invoice.document_number, invoice.status)
    return invoice


def list_unpaid_invoices(customer_id: int) -> list[Invoice]:
    """Invoices with an amount still due, oldest first."""
    return (
        db.session.query(Invoice)
        .filter(
            Invoice.customer_id == customer_id,
            Invoice.amount_paid_cents < Invoice.total_cents,
        )
        .order_by(Invoice.created_at.asc(), Invoice.id.asc())
        .all()
    )


def receive_customer_payment(
    customer_id: int,
    method: str,
    allocations: Mapping[int, int],
    cheque_number: str | None = None,
) -> list[Invoice]:
    """
    Receive one payment and spread it across several of a customer's invoices.

    allocations maps invoice id -> amount in cents. Each allocation is capped
    at that invoice's outstanding amount as read under lock; zero allocations
    are ignored. One credit transaction is posted per invoice paid.
    """
    requested = {
        require_int(invoice_id, "invoice_id"): require_cents(amount, "amount_cents")
        for invoice_id, amount in allocations.items()
    }
    requested = {invoice_id: amount for invoice_id, amount in requested.items() if amount > 0}
    if not requested:
        raise PaymentError("Allocate a payment amount to at least one invoice")

    def _op():
        begin_immediate()
        customer = lock_customer(customer_id)
        validate_payment_lines(
            [new_payment_line(method, sum(requested.values()), cheque_number)],
            get_configured_payment_methods(),
        )

        invoices = (
            lock_for_update(
                db.session.query(Invoice)
                .filter(Invoice.id.in_(requested))
                .order_by(Invoice.id)
            )
            .all()
        )
        found = {invoice.id for invoice in invoices}
        missing = sorted(set(requested) - found)
        if missing:
            raise SaleError("Invoice not found", {"invoice_ids": missing})

        paid = []
        for invoice in invoices:
            if invoice.customer_id != customer.id:
                raise SaleError(
                    "Invoice belongs to a different customer",
                    {"invoice_id": invoice.id, "customer_id": customer.id},
                )
            applied = min(requested[invoice.id], invoice.outstanding_cents)
            if applied <= 0:
                continue
            post_transaction(
                customer,
                amount_cents=applied,
                type=TRANSACTION_CREDIT,
                kind=KIND_PAYMENT,
                description=f"Payment for {invoice.document_number}",
                payment_method=method,
                cheque_number=cheque_number,
                invoice_id=invoice.id,
            )
            invoice.amount_paid_cents += applied
            refresh_invoice_status(invoice)
            paid.append((invoice, applied))

        if not paid:
            raise ConflictError(
                "Selected invoices have nothing outstanding",
                {"invoice_ids": sorted(requested)},
            )
        db.session.flush()

        for invoice, applied in paid:
            append_domain_event(
                event_type=EVENT_PAYMENT_RECEIVED,
                entity_type="invoice",
                entity_id=invoice.id,
                customer_id=customer.id,
                note=invoice.document_number,
                payload={
                    "received_cents": applied,
                    "applied_cents": applied,
                    "credit_cents": 0,
                    "status": invoice.status,
                    "payment_method": method,
                },
            )
        return [invoice for invoice, _ in paid]

    invoices = run_atomic(_op, operation="Customer payment")
    current_app.logger.info(
        "Received %s payment from customer %s across %s invoice(s)",
        method, customer_id, len(invoices),
    )
    return invoices


def mark_overdue_invoices(as_of: datetime | None = None) -> int:
    """Move unpaid deferred invoices past their due date to Overdue."""
    as_of = as_of or utcnow()

    def _op():
        begin_immediate()
        invoices = (
            db.session.query(Invoice)
            .filter(
                Invoice.sale_type == SALE_TYPE_INVOICE,
                Invoice.status.in_([INVOICE_STATUS_SENT, INVOICE_STATUS_PARTIALLY_PAID]),
                Invoice.due_date.isnot(None),
                Invoice.due_date < as_of,
            )
            .all()
        )
        for invoice in invoices:
            refresh_invoice_status(invoice, as_of)
        return len(invoices)

    count = run_atomic(_op, operation="Overdue refresh")
    current_app.logger.info("Marked %s invoice(s) overdue", count)
    return count
