"""
Tests for the repair lifecycle and repair billing.
"""

import pytest

from settlement.extensions import db
from settlement.models import Customer, DamageLog, Invoice, Repair
from settlement.services import inventory_service, ledger_service, repair_service
from settlement.services.inventory_service import (
    DAMAGE_STATUS_IN_REPAIR,
    DAMAGE_STATUS_REPAIRED,
    DAMAGE_STATUS_UNREPAIRABLE,
)
from settlement.services.payment_service import INVOICE_STATUS_PAID, INVOICE_STATUS_SENT, new_payment_line
from settlement.services.repair_service import (
    REPAIR_STATUS_COMPLETED,
    REPAIR_STATUS_CREDITED,
    REPAIR_STATUS_IN_PROGRESS,
    REPAIR_STATUS_RECEIVED,
    REPAIR_STATUS_REPAIRED,
    REPAIR_STATUS_REPLACED,
    REPAIR_STATUS_UNREPAIRABLE,
    RepairError,
)


def _balance(customer_id):
    return db.session.get(Customer, customer_id).balance_cents


@pytest.fixture
def customer(db_session, payment_methods, make_customer):
    return make_customer(name="Repair Customer")


def _started(customer, **kwargs):
    repair = repair_service.create_repair(customer.id, product_name="Laptop", **kwargs)
    return repair_service.start_repair(repair.id)


def test_repair_starts_received_and_is_numbered(customer):
    repair = repair_service.create_repair(customer.id, product_name="Laptop", problem_description="No power")

    assert repair.status == REPAIR_STATUS_RECEIVED
    assert repair.document_number == "REP-0001"


def test_cannot_complete_before_starting(customer):
    repair = repair_service.create_repair(customer.id, product_name="Laptop")

    with pytest.raises(RepairError) as exc:
        repair_service.complete_repair(repair.id, repair_fee_cents=1000)
    assert exc.value.details["from_status"] == REPAIR_STATUS_RECEIVED


def test_complete_bills_fee_and_parts(customer, make_product):
    part = make_product(name="Fan", price_cents=1500, stock=3)
    repair = _started(customer)
    repair_service.add_repair_item(repair.id, part.id, 2)
    assert inventory_service.get_quantity_on_hand(part.id) == 1

    repair = repair_service.complete_repair(repair.id, repair_fee_cents=3000)

    assert repair.status == REPAIR_STATUS_COMPLETED
    assert repair.completed_at is not None
    invoice = db.session.get(Invoice, repair.repair_invoice_id)
    assert [line.description for line in invoice.lines] == ["Repair Service for Laptop", "Fan"]
    assert invoice.total_cents == 6000
    assert invoice.status == INVOICE_STATUS_SENT
    assert _balance(customer.id) == -6000
    # Parts left stock when added, not again at billing
    assert inventory_service.get_quantity_on_hand(part.id) == 1


def test_complete_with_payment(customer):
    repair = _started(customer)

    repair = repair_service.complete_repair(
        repair.id, repair_fee_cents=2500, payments=[new_payment_line("Card", 2500)],
    )

    invoice = db.session.get(Invoice, repair.repair_invoice_id)
    assert invoice.status == INVOICE_STATUS_PAID
    assert _balance(customer.id) == 0


def test_warranty_fee_forced_to_zero(customer):
    repair = _started(customer, is_warranty=True)

    repair = repair_service.complete_repair(repair.id, repair_fee_cents=5000)

    assert repair.status == REPAIR_STATUS_COMPLETED
    assert repair.repair_fee_cents == 0
    assert repair.repair_invoice_id is None
    assert _balance(customer.id) == 0


def test_voided_warranty_allows_fee(customer):
    repair = _started(customer, is_warranty=True)

    with pytest.raises(RepairError):
        repair_service.void_warranty(repair.id, "  too short ")

    repair = repair_service.void_warranty(repair.id, "Liquid damage found inside")
    assert repair.is_warranty is False
    assert repair.warranty_void_reason == "Liquid damage found inside"

    repair = repair_service.complete_repair(repair.id, repair_fee_cents=5000)
    assert repair.repair_fee_cents == 5000
    assert _balance(customer.id) == -5000


def test_void_warranty_only_while_in_progress(customer):
    repair = repair_service.create_repair(customer.id, product_name="Laptop", is_warranty=True)

    with pytest.raises(RepairError):
        repair_service.void_warranty(repair.id, "Liquid damage found inside")


def test_parts_cannot_be_added_after_completion(customer, make_product):
    part = make_product(name="Screw", price_cents=10, stock=5)
    repair = _started(customer)
    repair_service.complete_repair(repair.id)

    with pytest.raises(RepairError):
        repair_service.add_repair_item(repair.id, part.id, 1)


def test_completed_is_terminal(customer):
    repair = _started(customer)
    repair_service.complete_repair(repair.id)

    with pytest.raises(RepairError):
        repair_service.start_repair(repair.id)


def test_warranty_replacement_is_free(customer, make_product):
    replacement = make_product(name="Laptop v2", price_cents=90_000, stock=2)
    repair = _started(customer, is_warranty=True)
    repair_service.mark_unrepairable(repair.id)

    repair = repair_service.create_replacement(repair.id, replacement.id)

    assert repair.status == REPAIR_STATUS_REPLACED
    invoice = db.session.get(Invoice, repair.replacement_invoice_id)
    assert invoice.total_cents == 0
    assert invoice.status == INVOICE_STATUS_PAID
    assert inventory_service.get_quantity_on_hand(replacement.id) == 1
    assert _balance(customer.id) == 0


def test_paid_replacement_uses_catalog_price(customer, make_product):
    replacement = make_product(name="Laptop v2", price_cents=90_000, stock=1)
    repair = _started(customer)
    repair_service.mark_unrepairable(repair.id)

    repair = repair_service.create_replacement(repair.id, replacement.id)

    invoice = db.session.get(Invoice, repair.replacement_invoice_id)
    assert invoice.total_cents == 90_000
    assert _balance(customer.id) == -90_000


def test_unrepairable_customer_item_is_logged(customer):
    repair = _started(customer)

    repair = repair_service.mark_unrepairable(repair.id, notes="Board burnt")

    assert repair.status == REPAIR_STATUS_UNREPAIRABLE
    damage = db.session.query(DamageLog).filter_by(source_repair_id=repair.id).one()
    assert damage.status == DAMAGE_STATUS_UNREPAIRABLE
    assert damage.quantity == 1


def test_issue_credit_for_unrepairable(customer):
    repair = _started(customer)
    repair_service.mark_unrepairable(repair.id)

    repair = repair_service.issue_repair_credit(repair.id, 4000)

    assert repair.status == REPAIR_STATUS_CREDITED
    assert _balance(customer.id) == 4000
    txs = ledger_service.list_transactions(customer.id)
    assert txs[-1].description == "Store Credit for Repair REP-0001"
    assert txs[-1].id == repair.credit_transaction_id


def test_credit_requires_unrepairable(customer):
    repair = _started(customer)

    with pytest.raises(RepairError):
        repair_service.issue_repair_credit(repair.id, 4000)


def test_internal_repair_returns_unit_to_stock(db_session, make_product):
    product = make_product(name="Tablet", price_cents=30_000, stock=3)
    damage = inventory_service.log_damage(product.id, 1, notes="Cracked screen")
    assert inventory_service.get_quantity_on_hand(product.id) == 2

    repair = repair_service.create_repair_from_damage(damage.id)
    assert db.session.get(DamageLog, damage.id).status == DAMAGE_STATUS_IN_REPAIR
    owner = db.session.get(Customer, repair.customer_id)
    assert owner.name == "Internal"
    assert owner.is_walk_in is True

    repair_service.start_repair(repair.id)
    with pytest.raises(RepairError):
        repair_service.complete_repair(repair.id, repair_fee_cents=1000)

    repair = repair_service.mark_repaired(repair.id)

    assert repair.status == REPAIR_STATUS_REPAIRED
    assert inventory_service.get_quantity_on_hand(product.id) == 3
    assert db.session.get(DamageLog, damage.id).status == DAMAGE_STATUS_REPAIRED


def test_internal_repair_unrepairable_closes_damage_log(db_session, make_product):
    product = make_product(name="Tablet", price_cents=30_000, stock=1)
    damage = inventory_service.log_damage(product.id)
    repair = repair_service.create_repair_from_damage(damage.id)
    repair_service.start_repair(repair.id)

    repair_service.mark_unrepairable(repair.id)

    assert db.session.get(DamageLog, damage.id).status == DAMAGE_STATUS_UNREPAIRABLE
    assert inventory_service.get_quantity_on_hand(product.id) == 0
    with pytest.raises(RepairError):
        repair_service.issue_repair_credit(repair.id, 1000)


def test_one_repair_per_damage_log(db_session, make_product):
    product = make_product(name="Tablet", price_cents=30_000, stock=1)
    damage = inventory_service.log_damage(product.id)
    repair_service.create_repair_from_damage(damage.id)

    with pytest.raises(RepairError):
        repair_service.create_repair_from_damage(damage.id)
    assert db_session.query(Repair).count() == 1


def test_customer_repair_cannot_be_marked_repaired(customer):
    repair = _started(customer)

    with pytest.raises(RepairError):
        repair_service.mark_repaired(repair.id)
    assert db.session.get(Repair, repair.id).status == REPAIR_STATUS_IN_PROGRESS
