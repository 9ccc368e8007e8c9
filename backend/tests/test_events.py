"""
Tests for post-commit domain event dispatch.
"""

import pytest

from settlement.models import DomainEvent
from settlement.services import event_service, ledger_service, sales_service
from settlement.services.event_service import EVENT_CREDIT_PAID_OUT, EVENT_CUSTOMER_CREATED, EVENT_SALE_COMMITTED
from settlement.services.inventory_service import InsufficientStockError


@pytest.fixture
def received(db_session):
    events = []
    event_service.register_listener(events.append)
    return events


def test_listener_sees_committed_sale(db_session, received, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=1000, stock=2)

    invoice = sales_service.commit_sale(checkout(customer, [(product, 2)]))

    sale_events = [e for e in received if e["event_type"] == EVENT_SALE_COMMITTED]
    assert len(sale_events) == 1
    assert sale_events[0]["entity_id"] == invoice.id
    assert sale_events[0]["payload"]["total_cents"] == 2000
    assert sale_events[0]["payload"]["stock"] == {str(product.id): 2}

    row = db_session.query(DomainEvent).filter_by(event_type=EVENT_SALE_COMMITTED).one()
    assert row.entity_id == invoice.id


def test_refused_commit_emits_nothing(db_session, received, make_customer, make_product, checkout):
    customer = make_customer()
    product = make_product(price_cents=1000, stock=1)
    received.clear()

    with pytest.raises(InsufficientStockError):
        sales_service.commit_sale(checkout(customer, [(product, 5)]))

    assert received == []
    assert db_session.query(DomainEvent).filter_by(event_type=EVENT_SALE_COMMITTED).count() == 0


def test_customer_created_event(db_session, received):
    customer = ledger_service.create_customer("Heidi", opening_balance_cents=-300)

    assert received[-1]["event_type"] == EVENT_CUSTOMER_CREATED
    assert received[-1]["customer_id"] == customer.id
    assert received[-1]["payload"] == {"opening_balance_cents": -300}


def test_failing_listener_does_not_undo_commit(db_session, received):
    def broken(_event):
        raise RuntimeError("listener down")

    event_service.register_listener(broken)

    customer = ledger_service.create_customer("Ivan", opening_balance_cents=100)

    assert customer.balance_cents == 100
    assert received[-1]["event_type"] == EVENT_CUSTOMER_CREATED


def test_unregistered_listener_is_not_called(db_session):
    calls = []
    event_service.register_listener(calls.append)
    event_service.unregister_listener(calls.append)

    ledger_service.create_customer("Judy")

    assert calls == []


def test_credit_paid_out_event(db_session, payment_methods, received):
    customer = ledger_service.create_customer("Kim", opening_balance_cents=900)

    ledger_service.send_customer_payment(customer.id, 400, "Cash")

    assert received[-1]["event_type"] == EVENT_CREDIT_PAID_OUT
    assert received[-1]["payload"] == {"amount_cents": 400, "payment_method": "Cash", "balance_cents": 500}
