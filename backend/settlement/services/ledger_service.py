# Overview: Service-layer operations for the customer ledger; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import Customer, CustomerTransaction, PaymentMethod
from ..validation import ValidationError, require_cents, require_int
from .concurrency import lock_for_update, begin_immediate, run_atomic
from .event_service import append_domain_event, EVENT_CREDIT_PAID_OUT, EVENT_CUSTOMER_CREATED
from .payment_service import PaymentError, new_payment_line, validate_payment_lines
"""
Customer Ledger Invariants (authoritative)

- post_transaction is the single authority for balance mutation.
- balance_cents == SUM(signed amount_cents) for the customer, at every
  observable point (i.e. after every commit).
- amount_cents is always > 0; the sign lives in type (credit +, debit -).
- Transactions are never updated. They are deleted only by reverse_transactions,
  as part of the full reversal of the document that posted them.
- The opening balance is the only balance not caused by a document; it is
  posted as the customer's first transaction (kind=opening_balance).
- Callers lock the customer row (lock_customer) before posting.
"""


TRANSACTION_CREDIT = "credit"
TRANSACTION_DEBIT = "debit"
VALID_TRANSACTION_TYPES = {TRANSACTION_CREDIT, TRANSACTION_DEBIT}

KIND_OPENING_BALANCE = "opening_balance"
KIND_CREDIT_APPLIED = "credit_applied"
KIND_SALE = "sale"
KIND_PAYMENT = "payment"
KIND_CHANGE = "change"
KIND_RETURN_VALUE = "return_value"
KIND_REFUND_PAYOUT = "refund_payout"
KIND_STORE_CREDIT = "store_credit"
KIND_CREDIT_PAYOUT = "credit_payout"


class LedgerError(ValidationError):
    """Raised for ledger posting errors and balance/ledger mismatches."""


def _signed_amount():
    return case(
        (CustomerTransaction.type == TRANSACTION_CREDIT, CustomerTransaction.amount_cents),
        else_=-CustomerTransaction.amount_cents,
    )


def lock_customer(customer_id: int) -> Customer:
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if not customer:
        raise LedgerError("Customer not found", {"customer_id": customer_id})
    return customer


def post_transaction(
    customer: Customer,
    *,
    amount_cents: int,
    type: str,
    kind: str,
    description: str,
    payment_method: str | None = None,
    cheque_number: str | None = None,
    invoice_id: int | None = None,
    return_id: int | None = None,
    repair_id: int | None = None,
    occurred_at: Optional[datetime] = None,
) -> CustomerTransaction:
    """
    Post one signed movement and apply it to the customer's balance.

    No commit here; the caller's atomic operation commits the transaction,
    the balance change and the document that caused them together.
    """
    amount_cents = require_cents(amount_cents, "amount_cents", positive=True)
    if type not in VALID_TRANSACTION_TYPES:
        raise LedgerError(f"Invalid transaction type: {type}", {"type": type})
    if not description:
        raise LedgerError("description is required")

    tx = CustomerTransaction(
        customer_id=customer.id,
        amount_cents=amount_cents,
        type=type,
        kind=kind,
        description=description,
        payment_method=payment_method,
        cheque_number=cheque_number,
        invoice_id=invoice_id,
        return_id=return_id,
        repair_id=repair_id,
        occurred_at=occurred_at,  # if None, db default applies
    )
    db.session.add(tx)
    customer.balance_cents = (customer.balance_cents or 0) + tx.signed_amount_cents
    db.session.flush()
    return tx


def reverse_transactions(customer: Customer, transactions: Iterable[CustomerTransaction]) -> int:
    """
    Delete transactions as part of a full document reversal and back their
    effect out of the balance. Returns the signed amount removed.
    """
    removed = 0
    for tx in transactions:
        if tx.customer_id != customer.id:
            raise LedgerError(
                "Transaction belongs to a different customer",
                {"transaction_id": tx.id, "customer_id": customer.id},
            )
        removed += tx.signed_amount_cents
        db.session.delete(tx)
    customer.balance_cents = (customer.balance_cents or 0) - removed
    db.session.flush()
    return removed


def create_customer(
    name: str,
    *,
    opening_balance_cents: int = 0,
    phone: str | None = None,
    is_walk_in: bool = False,
) -> Customer:
    """
    Create a customer, posting any opening balance as the first transaction.

    opening_balance_cents is signed: positive = store credit, negative = owed.
    """
    name = (name or "").strip()
    if not name:
        raise LedgerError("Customer name is required")
    opening = require_int(opening_balance_cents, "opening_balance_cents")

    def _op():
        begin_immediate()
        customer = Customer(name=name, phone=phone, is_walk_in=is_walk_in, balance_cents=0)
        db.session.add(customer)
        db.session.flush()

        if opening:
            post_transaction(
                customer,
                amount_cents=abs(opening),
                type=TRANSACTION_CREDIT if opening > 0 else TRANSACTION_DEBIT,
                kind=KIND_OPENING_BALANCE,
                description="Opening balance",
            )

        append_domain_event(
            event_type=EVENT_CUSTOMER_CREATED,
            entity_type="customer",
            entity_id=customer.id,
            customer_id=customer.id,
            payload={"opening_balance_cents": opening},
        )
        return customer

    customer = run_atomic(_op, operation="Customer creation")
    current_app.logger.info("Created customer %s with opening balance %s", customer.id, opening)
    return customer


def get_configured_payment_methods() -> list[str]:
    rows = (
        db.session.query(PaymentMethod)
        .filter_by(is_active=True)
        .order_by(PaymentMethod.sort_order, PaymentMethod.id)
        .all()
    )
    return [row.name for row in rows]


def send_customer_payment(
    customer_id: int,
    amount_cents: int,
    method: str,
    *,
    cheque_number: str | None = None,
    notes: str | None = None,
) -> CustomerTransaction:
    """
    Pay part or all of a customer's store credit back out to them.

    The amount is bounded by the credit on the locked row, not by any figure
    the caller read earlier. One debit (kind=credit_payout) is posted.
    """
    amount_cents = require_cents(amount_cents, "amount_cents", positive=True)
    if not (method or "").strip():
        raise PaymentError("Payment method is required")

    def _op():
        begin_immediate()
        customer = lock_customer(customer_id)
        validate_payment_lines(
            [new_payment_line(method, amount_cents, cheque_number)],
            get_configured_payment_methods(),
        )
        if amount_cents > customer.available_credit_cents:
            raise LedgerError(
                "Amount exceeds the customer's available credit",
                {
                    "customer_id": customer.id,
                    "amount_cents": amount_cents,
                    "available_credit_cents": customer.available_credit_cents,
                },
            )

        note = (notes or "").strip()
        tx = post_transaction(
            customer,
            amount_cents=amount_cents,
            type=TRANSACTION_DEBIT,
            kind=KIND_CREDIT_PAYOUT,
            description=f"Payment sent: {note}" if note else "Payment sent",
            payment_method=method,
            cheque_number=cheque_number,
        )
        append_domain_event(
            event_type=EVENT_CREDIT_PAID_OUT,
            entity_type="customer",
            entity_id=customer.id,
            customer_id=customer.id,
            payload={
                "amount_cents": amount_cents,
                "payment_method": method,
                "balance_cents": customer.balance_cents,
            },
        )
        return tx

    tx = run_atomic(_op, operation="Credit payout")
    current_app.logger.info("Sent %s to customer %s via %s", amount_cents, customer_id, method)
    return tx


def ensure_internal_customer(name: str) -> Customer:
    """Owner of internal (damage-log) repairs; created on first use. No commit."""
    customer = db.session.query(Customer).filter_by(name=name, is_walk_in=True).first()
    if customer:
        return customer
    customer = Customer(name=name, is_walk_in=True, balance_cents=0)
    db.session.add(customer)
    db.session.flush()
    return customer


def compute_ledger_balance(customer_id: int) -> int:
    """SUM of signed transaction amounts, computed by the database."""
    total = (
        db.session.query(func.coalesce(func.sum(_signed_amount()), 0))
        .filter(CustomerTransaction.customer_id == customer_id)
        .scalar()
    )
    return int(total or 0)


def verify_customer_balance(customer_id: int) -> int:
    """Return the balance, or raise LedgerError when it disagrees with the ledger."""
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise LedgerError("Customer not found", {"customer_id": customer_id})
    ledger_total = compute_ledger_balance(customer_id)
    if customer.balance_cents != ledger_total:
        raise LedgerError(
            "Customer balance does not match ledger",
            {
                "customer_id": customer_id,
                "balance_cents": customer.balance_cents,
                "ledger_cents": ledger_total,
            },
        )
    return ledger_total


def verify_all_balances() -> list[dict]:
    """Every customer whose stored balance disagrees with the ledger."""
    ledger_totals = dict(
        db.session.query(CustomerTransaction.customer_id, func.sum(_signed_amount()))
        .group_by(CustomerTransaction.customer_id)
        .all()
    )
    mismatches = []
    for customer in db.session.query(Customer).order_by(Customer.id).all():
        expected = int(ledger_totals.get(customer.id) or 0)
        if customer.balance_cents != expected:
            mismatches.append({
                "customer_id": customer.id,
                "name": customer.name,
                "balance_cents": customer.balance_cents,
                "ledger_cents": expected,
            })
    return mismatches


def list_transactions(customer_id: int, limit: int = 200) -> list[CustomerTransaction]:
    if limit < 1:
        limit = 1
    if limit > 1000:
        limit = 1000
    return (
        db.session.query(CustomerTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(CustomerTransaction.id.asc())
        .limit(limit)
        .all()
    )
