"""
Tests for sale commit, invoice payments and overdue handling.
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from settlement.extensions import db
from settlement.models import Customer, DocumentSequence, Invoice, CustomerTransaction
from settlement.services import inventory_service, ledger_service, sales_service
from settlement.services.checkout_service import SetCreditToApply, SetSettleBalance, apply_edit
from settlement.services.credit_service import CreditError
from settlement.services.inventory_service import InsufficientStockError
from settlement.services.payment_service import (
    INVOICE_STATUS_OVERDUE,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_PARTIALLY_PAID,
    INVOICE_STATUS_SENT,
    SALE_TYPE_INVOICE,
    PaymentError,
    new_payment_line,
)
from settlement.time_utils import utcnow
from settlement.validation import ConflictError


def _balance(customer_id):
    return db.session.get(Customer, customer_id).balance_cents


def test_receipt_with_store_credit(db_session, make_customer, make_product, checkout):
    customer = make_customer(balance_cents=3000)
    product = make_product(price_cents=10_000, stock=5)

    draft = apply_edit(checkout(customer, [(product, 1)]), SetCreditToApply(3000))
    invoice = sales_service.commit_sale(draft)

    assert invoice.document_number == "INV-0001"
    assert invoice.status == INVOICE_STATUS_PAID
    assert invoice.total_cents == 10_000
    assert invoice.credit_applied_cents == 3000
    assert invoice.amount_paid_cents == 10_000
    assert _balance(customer.id) == 0
    assert inventory_service.get_quantity_on_hand(product.id) == 4
    assert ledger_service.verify_customer_balance(customer.id) == 0


def test_receipt_overpayment_gives_change(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=10_000, stock=1)

    invoice = sales_service.commit_sale(checkout(customer, [(product, 1)], tender_cents=12_000))

    assert invoice.change_given_cents == 2000
    assert invoice.status == INVOICE_STATUS_PAID
    assert _balance(customer.id) == 0
    kinds = [tx.kind for tx in ledger_service.list_transactions(customer.id)]
    assert kinds == ["sale", "payment", "change"]


def test_receipt_underpayment_refused(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=10_000, stock=1)

    with pytest.raises(PaymentError):
        sales_service.commit_sale(checkout(customer, [(product, 1)], tender_cents=9000))

    assert db_session.query(Invoice).count() == 0
    assert inventory_service.get_quantity_on_hand(product.id) == 1


def test_settle_outstanding_balance_with_sale(db_session, make_customer, make_product, checkout):
    customer = make_customer(balance_cents=-2000)
    product = make_product(price_cents=10_000, stock=1)

    draft = apply_edit(checkout(customer, [(product, 1)]), SetSettleBalance(True))
    assert draft.payments[0].amount_cents == 12_000
    invoice = sales_service.commit_sale(draft)

    assert invoice.balance_settled_cents == 2000
    assert invoice.amount_paid_cents == 10_000
    assert _balance(customer.id) == 0


def test_invoice_partial_payment_then_paid(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=10_000, stock=1)

    draft = checkout(customer, [(product, 1)], sale_type=SALE_TYPE_INVOICE, tender_cents=4000)
    invoice = sales_service.commit_sale(draft)

    assert invoice.status == INVOICE_STATUS_PARTIALLY_PAID
    assert invoice.amount_paid_cents == 4000
    assert invoice.due_date is not None
    assert _balance(customer.id) == -6000

    invoice = sales_service.record_invoice_payment(invoice.id, [new_payment_line("Card", 7000)])

    assert invoice.status == INVOICE_STATUS_PAID
    assert invoice.amount_paid_cents == 10_000
    # Overpayment stays on account
    assert _balance(customer.id) == 1000
    assert ledger_service.verify_all_balances() == []


def test_unpaid_invoice_is_sent(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=2500, stock=2)

    invoice = sales_service.commit_sale(
        checkout(customer, [(product, 2)], sale_type=SALE_TYPE_INVOICE, tender_cents=0)
    )

    assert invoice.status == INVOICE_STATUS_SENT
    assert _balance(customer.id) == -5000


def test_credit_spent_elsewhere_conflicts(db_session, make_customer, make_product, checkout):
    customer = make_customer(balance_cents=3000)
    product = make_product(price_cents=10_000, stock=5)

    stale = apply_edit(checkout(customer, [(product, 1)]), SetCreditToApply(3000))
    fresh = apply_edit(checkout(customer, [(product, 1)]), SetCreditToApply(3000))
    sales_service.commit_sale(fresh)

    with pytest.raises(ConflictError) as exc:
        sales_service.commit_sale(stale)

    assert exc.value.details["current_balance_cents"] == 0
    assert db_session.query(Invoice).count() == 1
    assert inventory_service.get_quantity_on_hand(product.id) == 4
    assert ledger_service.verify_customer_balance(customer.id) == 0


def test_credit_above_available_is_a_validation_error(db_session, make_customer, make_product, checkout):
    customer = make_customer(balance_cents=3000)
    product = make_product(price_cents=10_000, stock=5)

    draft = replace(checkout(customer, [(product, 1)]), credit_to_apply_cents=5000)

    with pytest.raises(CreditError):
        sales_service.commit_sale(draft)
    assert _balance(customer.id) == 3000


def test_insufficient_stock_rolls_back_everything(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=1000, stock=1)

    with pytest.raises(InsufficientStockError) as exc:
        sales_service.commit_sale(checkout(customer, [(product, 2)]))

    assert exc.value.details["items"][0]["on_hand"] == 1
    assert db_session.query(Invoice).count() == 0
    assert db_session.query(CustomerTransaction).filter_by(customer_id=customer.id).count() == 0
    assert db_session.query(DocumentSequence).count() == 0

    invoice = sales_service.commit_sale(checkout(customer, [(product, 1)]))
    assert invoice.document_number == "INV-0001"


def test_walk_in_invoice_refused(db_session, make_customer, make_product, checkout):
    customer = make_customer(name="Walk-in", walk_in=True)
    product = make_product(price_cents=1000, stock=1)

    draft = replace(checkout(customer, [(product, 1)]), sale_type=SALE_TYPE_INVOICE)

    with pytest.raises(sales_service.SaleError):
        sales_service.commit_sale(draft)


def test_empty_cart_refused(db_session, make_customer, checkout):
    customer = make_customer()

    with pytest.raises(sales_service.SaleError):
        sales_service.commit_sale(checkout(customer, []))


def test_bundle_sale_draws_components(db_session, make_customer, make_product, make_bundle, checkout):
    customer = make_customer()
    cable = make_product(name="Cable", price_cents=500, stock=10)
    charger = make_product(name="Charger", price_cents=1500, stock=10)
    kit = make_bundle("Starter Kit", 2000, [(cable, 2), (charger, 1)])

    invoice = sales_service.commit_sale(checkout(customer, [(kit, 2)]))

    assert inventory_service.get_quantity_on_hand(cable.id) == 6
    assert inventory_service.get_quantity_on_hand(charger.id) == 8
    assert invoice.lines[0].components == [
        {"product_id": cable.id, "quantity": 2},
        {"product_id": charger.id, "quantity": 1},
    ]


def test_courier_delivery_priced_from_weight(db_session, make_customer, make_product, courier, checkout):
    customer = make_customer()
    product = make_product(price_cents=1000, stock=5, weight_grams=1500)

    delivery = sales_service.courier_delivery(courier.id)
    invoice = sales_service.commit_sale(checkout(customer, [(product, 2)], delivery=delivery))

    assert invoice.delivery_charge_cents == 900
    assert invoice.courier_name == "Express"
    assert invoice.total_cents == 2900


def test_mark_overdue(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=1000, stock=2)
    unpaid = sales_service.commit_sale(
        checkout(customer, [(product, 1)], sale_type=SALE_TYPE_INVOICE, tender_cents=0)
    )
    sales_service.commit_sale(checkout(customer, [(product, 1)]))

    assert sales_service.mark_overdue_invoices(as_of=utcnow()) == 0
    assert sales_service.mark_overdue_invoices(as_of=utcnow() + timedelta(days=31)) == 1
    assert db.session.get(Invoice, unpaid.id).status == INVOICE_STATUS_OVERDUE


# =============================================================================
# ONE PAYMENT ACROSS SEVERAL INVOICES
# =============================================================================

@pytest.fixture
def two_unpaid(db_session, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=3000, stock=3)
    first = sales_service.commit_sale(
        checkout(customer, [(product, 1)], sale_type=SALE_TYPE_INVOICE, tender_cents=0)
    )
    second = sales_service.commit_sale(
        checkout(customer, [(product, 2)], sale_type=SALE_TYPE_INVOICE, tender_cents=0)
    )
    assert _balance(customer.id) == -9000
    return customer, first, second


def test_unpaid_invoices_listed_oldest_first(two_unpaid):
    customer, first, second = two_unpaid

    assert [inv.id for inv in sales_service.list_unpaid_invoices(customer.id)] == [first.id, second.id]


def test_customer_payment_spread_across_invoices(db_session, two_unpaid):
    customer, first, second = two_unpaid

    paid = sales_service.receive_customer_payment(
        customer.id, "Cash", {first.id: 3000, second.id: 2000},
    )

    assert [inv.id for inv in paid] == [first.id, second.id]
    assert db.session.get(Invoice, first.id).status == INVOICE_STATUS_PAID
    assert db.session.get(Invoice, second.id).status == INVOICE_STATUS_PARTIALLY_PAID
    assert db.session.get(Invoice, second.id).amount_paid_cents == 2000
    assert _balance(customer.id) == -4000
    assert [inv.id for inv in sales_service.list_unpaid_invoices(customer.id)] == [second.id]

    payments = (
        db_session.query(CustomerTransaction)
        .filter_by(customer_id=customer.id, kind="payment")
        .order_by(CustomerTransaction.id)
        .all()
    )
    assert [(tx.invoice_id, tx.amount_cents, tx.payment_method) for tx in payments] == [
        (first.id, 3000, "Cash"),
        (second.id, 2000, "Cash"),
    ]
    assert ledger_service.verify_all_balances() == []


def test_customer_payment_capped_at_amount_due(db_session, two_unpaid):
    customer, first, _ = two_unpaid

    sales_service.receive_customer_payment(customer.id, "Card", {first.id: 10_000})

    assert db.session.get(Invoice, first.id).amount_paid_cents == 3000
    assert _balance(customer.id) == -6000


def test_customer_payment_by_cheque_needs_number(db_session, two_unpaid):
    customer, first, _ = two_unpaid

    with pytest.raises(PaymentError):
        sales_service.receive_customer_payment(customer.id, "Cheque", {first.id: 1000})
    assert _balance(customer.id) == -9000

    sales_service.receive_customer_payment(customer.id, "Cheque", {first.id: 1000}, cheque_number="000123")
    tx = db_session.query(CustomerTransaction).filter_by(customer_id=customer.id, kind="payment").one()
    assert tx.cheque_number == "000123"


def test_customer_payment_needs_an_allocation(db_session, two_unpaid):
    customer, first, _ = two_unpaid

    with pytest.raises(PaymentError):
        sales_service.receive_customer_payment(customer.id, "Cash", {first.id: 0})


def test_customer_payment_on_settled_invoice_conflicts(db_session, two_unpaid):
    customer, first, _ = two_unpaid
    sales_service.receive_customer_payment(customer.id, "Cash", {first.id: 3000})

    with pytest.raises(ConflictError):
        sales_service.receive_customer_payment(customer.id, "Cash", {first.id: 500})
    assert _balance(customer.id) == -6000


def test_customer_payment_refuses_other_customers_invoice(db_session, two_unpaid, make_customer):
    _, first, _ = two_unpaid
    other = make_customer(name="Mallory")

    with pytest.raises(sales_service.SaleError):
        sales_service.receive_customer_payment(other.id, "Cash", {first.id: 1000})
    assert db.session.get(Invoice, first.id).amount_paid_cents == 0
