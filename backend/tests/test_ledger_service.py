"""
Tests for the customer ledger and the ledger CLI commands.
"""

import pytest

from settlement.extensions import db
from settlement.models import Customer, PaymentMethod
from settlement.services import ledger_service, sales_service
from settlement.services.ledger_service import (
    KIND_CREDIT_PAYOUT,
    KIND_OPENING_BALANCE,
    TRANSACTION_CREDIT,
    TRANSACTION_DEBIT,
    LedgerError,
)
from settlement.services.payment_service import PaymentError
from settlement.validation import ValidationError


def test_opening_credit_is_first_transaction(db_session):
    customer = ledger_service.create_customer("Alice", opening_balance_cents=5000)

    txs = ledger_service.list_transactions(customer.id)
    assert len(txs) == 1
    assert txs[0].kind == KIND_OPENING_BALANCE
    assert txs[0].type == TRANSACTION_CREDIT
    assert customer.balance_cents == 5000
    assert customer.available_credit_cents == 5000


def test_opening_debt_is_a_debit(db_session):
    customer = ledger_service.create_customer("Bob", opening_balance_cents=-2000)

    txs = ledger_service.list_transactions(customer.id)
    assert txs[0].type == TRANSACTION_DEBIT
    assert txs[0].amount_cents == 2000
    assert customer.outstanding_balance_cents == 2000


def test_zero_opening_balance_posts_nothing(db_session):
    customer = ledger_service.create_customer("Carol")

    assert ledger_service.list_transactions(customer.id) == []
    assert ledger_service.compute_ledger_balance(customer.id) == 0


def test_customer_name_required(db_session):
    with pytest.raises(LedgerError):
        ledger_service.create_customer("   ")


def test_post_transaction_rejects_non_positive_amount(db_session):
    customer = ledger_service.create_customer("Dave")

    with pytest.raises(ValidationError):
        ledger_service.post_transaction(
            ledger_service.lock_customer(customer.id),
            amount_cents=0,
            type=TRANSACTION_CREDIT,
            kind="adjustment",
            description="Nothing",
        )
    db_session.rollback()


def test_post_transaction_rejects_unknown_type(db_session):
    customer = ledger_service.create_customer("Erin")

    with pytest.raises(LedgerError):
        ledger_service.post_transaction(
            ledger_service.lock_customer(customer.id),
            amount_cents=100,
            type="refund",
            kind="adjustment",
            description="Bad type",
        )
    db_session.rollback()


def test_balance_matches_ledger_after_sales(db_session, make_customer, make_product, checkout):
    customer = make_customer(balance_cents=1500)
    product = make_product(price_cents=4000, stock=3)
    for _ in range(3):
        sales_service.commit_sale(checkout(customer, [(product, 1)], tender_cents=5000))

    assert ledger_service.verify_customer_balance(customer.id) == 1500
    assert ledger_service.verify_all_balances() == []


def test_tampered_balance_is_reported(db_session):
    customer = ledger_service.create_customer("Frank", opening_balance_cents=1000)
    db.session.get(Customer, customer.id).balance_cents = 9999
    db_session.commit()

    with pytest.raises(LedgerError) as exc:
        ledger_service.verify_customer_balance(customer.id)
    assert exc.value.details["ledger_cents"] == 1000

    mismatches = ledger_service.verify_all_balances()
    assert [m["customer_id"] for m in mismatches] == [customer.id]


# =============================================================================
# PAYING CREDIT OUT
# =============================================================================

def test_send_payment_debits_credit(db_session, payment_methods):
    customer = ledger_service.create_customer("Heidi", opening_balance_cents=5000)

    tx = ledger_service.send_customer_payment(customer.id, 2000, "Cash", notes="Overpayment on INV-0012")

    assert tx.type == TRANSACTION_DEBIT
    assert tx.kind == KIND_CREDIT_PAYOUT
    assert tx.payment_method == "Cash"
    assert tx.description == "Payment sent: Overpayment on INV-0012"
    assert db.session.get(Customer, customer.id).balance_cents == 3000
    assert ledger_service.verify_customer_balance(customer.id) == 3000


def test_send_payment_bounded_by_available_credit(db_session, payment_methods):
    customer = ledger_service.create_customer("Ivan", opening_balance_cents=1500)

    with pytest.raises(LedgerError) as exc:
        ledger_service.send_customer_payment(customer.id, 1501, "Cash")
    assert exc.value.details["available_credit_cents"] == 1500

    ledger_service.send_customer_payment(customer.id, 1500, "Card")
    assert db.session.get(Customer, customer.id).balance_cents == 0
    assert ledger_service.verify_all_balances() == []


def test_send_payment_refused_for_customer_who_owes(db_session, payment_methods):
    customer = ledger_service.create_customer("Judy", opening_balance_cents=-800)

    with pytest.raises(LedgerError):
        ledger_service.send_customer_payment(customer.id, 100, "Cash")
    assert len(ledger_service.list_transactions(customer.id)) == 1


def test_send_payment_validates_amount_and_method(db_session, payment_methods):
    customer = ledger_service.create_customer("Karl", opening_balance_cents=1000)

    with pytest.raises(ValidationError):
        ledger_service.send_customer_payment(customer.id, 0, "Cash")
    with pytest.raises(PaymentError):
        ledger_service.send_customer_payment(customer.id, 500, "")
    with pytest.raises(PaymentError):
        ledger_service.send_customer_payment(customer.id, 500, "Bitcoin")
    with pytest.raises(PaymentError):
        ledger_service.send_customer_payment(customer.id, 500, "Cheque")

    assert db.session.get(Customer, customer.id).balance_cents == 1000


# =============================================================================
# CLI
# =============================================================================

def test_verify_ledger_command(app, db_session):
    customer = ledger_service.create_customer("Grace", opening_balance_cents=700)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["settlement", "verify-ledger"])
    assert result.exit_code == 0
    assert "PASS" in result.output

    db.session.get(Customer, customer.id).balance_cents = 1
    db_session.commit()

    result = runner.invoke(args=["settlement", "verify-ledger"])
    assert result.exit_code == 1
    assert "FAIL Customer" in result.output


def test_init_db_seeds_payment_methods(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["settlement", "init-db", "--seed-methods"])
    assert result.exit_code == 0

    names = [m.name for m in db_session.query(PaymentMethod).order_by(PaymentMethod.sort_order)]
    assert names == list(app.config["DEFAULT_PAYMENT_METHODS"])

    # Idempotent
    result = runner.invoke(args=["settlement", "init-db", "--seed-methods"])
    assert "Seeded 0" in result.output
