"""
Repair Service - repair lifecycle and billing

WHY: A repair ends in exactly one billing outcome (a repair invoice, a
replacement invoice, store credit, or a unit back in stock), and which
outcomes are reachable depends on where the job is in its lifecycle.
Every status change goes through _transition so an illegal jump is
refused in one place.

LIFECYCLE:
    Received -> In Progress -> Completed          (customer repairs, billed)
                            -> Repaired           (damage-log repairs, +1 stock)
                            -> Unrepairable -> Completed (Replaced)
                                            -> Completed (Credit)

WARRANTY:
- While is_warranty is set the repair fee is forced to 0 and a
  replacement is priced at 0.
- void_warranty is one-way and requires a written reason.

Billing goes through sales_service._commit_sale_locked so repair and
replacement invoices obey the same cart, payment and ledger rules as a
checkout.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from flask import current_app

from ..extensions import db
from ..models import Customer, DamageLog, Invoice, Product, Repair, RepairItem
from ..validation import ValidationError, require_cents, require_quantity
from settlement.time_utils import utcnow
from .cart_service import LineItemDraft
from .checkout_service import CustomerSnapshot, start_checkout
from .concurrency import begin_immediate, lock_for_update, run_atomic
from .document_service import DOCUMENT_TYPE_REPAIR, next_document_number
from .event_service import EVENT_CREDIT_ISSUED, EVENT_REPAIR_TRANSITIONED, append_domain_event
from .inventory_service import (
    DAMAGE_STATUS_DAMAGED,
    DAMAGE_STATUS_IN_REPAIR,
    DAMAGE_STATUS_REPAIRED,
    DAMAGE_STATUS_UNREPAIRABLE,
    MOVEMENT_REPAIR_PART,
    MOVEMENT_REPAIR_RESTOCK,
    MOVEMENT_REPLACEMENT,
    lock_product,
    record_movement,
)
from .ledger_service import (
    KIND_STORE_CREDIT,
    TRANSACTION_CREDIT,
    ensure_internal_customer,
    lock_customer,
    post_transaction,
)
from .payment_service import SALE_TYPE_INVOICE, PaymentLine, require_sale_type
from .sales_service import _commit_sale_locked, get_configured_payment_methods


class RepairError(ValidationError):
    """Raised for repair operation errors."""


# =============================================================================
# REPAIR STATUS CONSTANTS
# =============================================================================

REPAIR_STATUS_RECEIVED = "Received"
REPAIR_STATUS_IN_PROGRESS = "In Progress"
REPAIR_STATUS_COMPLETED = "Completed"
REPAIR_STATUS_REPAIRED = "Repaired"
REPAIR_STATUS_UNREPAIRABLE = "Unrepairable"
REPAIR_STATUS_REPLACED = "Completed (Replaced)"
REPAIR_STATUS_CREDITED = "Completed (Credit)"

ALLOWED_TRANSITIONS = {
    REPAIR_STATUS_RECEIVED: {REPAIR_STATUS_IN_PROGRESS},
    REPAIR_STATUS_IN_PROGRESS: {
        REPAIR_STATUS_COMPLETED,
        REPAIR_STATUS_UNREPAIRABLE,
        REPAIR_STATUS_REPAIRED,
    },
    REPAIR_STATUS_UNREPAIRABLE: {REPAIR_STATUS_REPLACED, REPAIR_STATUS_CREDITED},
}

# Parts may be added until the job is finished
PART_EDITABLE_STATUSES = {REPAIR_STATUS_RECEIVED, REPAIR_STATUS_IN_PROGRESS}

TERMINAL_STATUSES = {
    REPAIR_STATUS_COMPLETED,
    REPAIR_STATUS_REPAIRED,
    REPAIR_STATUS_REPLACED,
    REPAIR_STATUS_CREDITED,
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _lock_repair(repair_id: int) -> Repair:
    repair = lock_for_update(db.session.query(Repair).filter_by(id=repair_id)).first()
    if not repair:
        raise RepairError("Repair not found", {"repair_id": repair_id})
    return repair


def _transition(repair: Repair, to_status: str, *, note: str | None = None, payload: dict | None = None) -> None:
    from_status = repair.status
    if not can_transition(from_status, to_status):
        raise RepairError(
            f"Cannot move repair from {from_status} to {to_status}",
            {
                "repair_id": repair.id,
                "from_status": from_status,
                "to_status": to_status,
                "allowed": sorted(ALLOWED_TRANSITIONS.get(from_status, set())),
            },
        )
    repair.status = to_status
    if to_status in TERMINAL_STATUSES:
        repair.completed_at = utcnow()
    db.session.flush()

    append_domain_event(
        event_type=EVENT_REPAIR_TRANSITIONED,
        entity_type="repair",
        entity_id=repair.id,
        customer_id=repair.customer_id,
        note=note or repair.document_number,
        payload={"from_status": from_status, "to_status": to_status, **(payload or {})},
    )


def _require_customer_repair(repair: Repair, action: str) -> None:
    if repair.is_internal:
        raise RepairError(f"Cannot {action} an internal damage-log repair", {"repair_id": repair.id})


def _require_internal_repair(repair: Repair, action: str) -> None:
    if not repair.is_internal:
        raise RepairError(f"Can only {action} internal damage-log repairs", {"repair_id": repair.id})


def _bill(
    repair: Repair,
    lines: Sequence[LineItemDraft],
    payments: Sequence[PaymentLine],
    sale_type: str,
    *,
    movement_type: str | None = None,
    notes: str | None = None,
) -> Invoice:
    """Commit an invoice for the repair's customer inside the caller's transaction."""
    customer = lock_customer(repair.customer_id)
    draft = start_checkout(
        CustomerSnapshot.from_customer(customer),
        get_configured_payment_methods(),
        lines,
        sale_type=sale_type,
        notes=notes,
    )
    if payments:
        draft = replace(draft, payments=tuple(payments))
    else:
        # Nothing tendered now; the full amount stays due on the invoice
        draft = replace(draft, payments=tuple(replace(p, amount_cents=0) for p in draft.payments))

    options = {"description_prefix": f"Repair {repair.document_number}"}
    if movement_type:
        options["movement_type"] = movement_type
    return _commit_sale_locked(draft, **options)


# =============================================================================
# INTAKE
# =============================================================================

def create_repair(
    customer_id: int,
    *,
    product_name: str | None = None,
    product_id: int | None = None,
    problem_description: str | None = None,
    is_warranty: bool = False,
    original_invoice_id: int | None = None,
    notes: str | None = None,
) -> Repair:
    """Book in a customer's item. Starts at Received."""
    def _op():
        begin_immediate()
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise RepairError("Customer not found", {"customer_id": customer_id})

        name = (product_name or "").strip()
        if product_id is not None:
            product = db.session.get(Product, product_id)
            if not product:
                raise RepairError("Product not found", {"product_id": product_id})
            name = name or product.name
        if not name:
            raise RepairError("Product name is required")

        if original_invoice_id is not None and not db.session.get(Invoice, original_invoice_id):
            raise RepairError("Original invoice not found", {"original_invoice_id": original_invoice_id})

        repair = Repair(
            document_number=next_document_number(
                document_type=DOCUMENT_TYPE_REPAIR,
                prefix=current_app.config["REPAIR_PREFIX"],
            ),
            customer_id=customer.id,
            product_id=product_id,
            product_name=name,
            problem_description=problem_description,
            status=REPAIR_STATUS_RECEIVED,
            is_warranty=bool(is_warranty),
            original_invoice_id=original_invoice_id,
            notes=notes,
        )
        db.session.add(repair)
        db.session.flush()
        return repair

    repair = run_atomic(_op, operation="Repair intake")
    current_app.logger.info("Received repair %s for customer %s", repair.document_number, repair.customer_id)
    return repair


def create_repair_from_damage(damage_log_id: int, problem_description: str | None = None) -> Repair:
    """
    Send a damaged stock unit to repair.

    The repair belongs to the internal walk-in customer and can only end
    as Repaired (back to stock) or Unrepairable.
    """
    def _op():
        begin_immediate()
        damage = lock_for_update(db.session.query(DamageLog).filter_by(id=damage_log_id)).first()
        if not damage:
            raise RepairError("Damage log not found", {"damage_log_id": damage_log_id})
        if db.session.query(Repair).filter_by(damage_log_id=damage.id).first():
            raise RepairError("A repair already exists for this damage log", {"damage_log_id": damage.id})
        if damage.status != DAMAGE_STATUS_DAMAGED:
            raise RepairError(
                f"Damage log is {damage.status}; only damaged units can be sent to repair",
                {"damage_log_id": damage.id, "status": damage.status},
            )

        internal = ensure_internal_customer(current_app.config["INTERNAL_CUSTOMER_NAME"])
        repair = Repair(
            document_number=next_document_number(
                document_type=DOCUMENT_TYPE_REPAIR,
                prefix=current_app.config["REPAIR_PREFIX"],
            ),
            customer_id=internal.id,
            product_id=damage.product_id,
            product_name=damage.product_name,
            problem_description=problem_description or damage.notes,
            status=REPAIR_STATUS_RECEIVED,
            damage_log_id=damage.id,
        )
        damage.status = DAMAGE_STATUS_IN_REPAIR
        db.session.add(repair)
        db.session.flush()
        return repair

    repair = run_atomic(_op, operation="Damage repair intake")
    current_app.logger.info("Damage log %s sent to repair %s", damage_log_id, repair.document_number)
    return repair


def start_repair(repair_id: int) -> Repair:
    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _transition(repair, REPAIR_STATUS_IN_PROGRESS)
        return repair

    return run_atomic(_op, operation="Repair start")


def add_repair_item(repair_id: int, product_id: int, quantity: int = 1) -> RepairItem:
    """Consume a part. Stock leaves now; billing happens at completion."""
    quantity = require_quantity(quantity, positive=True)

    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        if repair.status not in PART_EDITABLE_STATUSES:
            raise RepairError(
                f"Cannot add parts to a repair that is {repair.status}",
                {"repair_id": repair.id, "status": repair.status},
            )
        product = lock_product(product_id)
        record_movement(
            product_id=product.id,
            quantity_delta=-quantity,
            movement_type=MOVEMENT_REPAIR_PART,
            note=repair.document_number,
            repair_id=repair.id,
        )
        item = RepairItem(
            repair_id=repair.id,
            product_id=product.id,
            quantity=quantity,
            unit_price_cents=product.price_cents,
        )
        db.session.add(item)
        db.session.flush()
        return item

    return run_atomic(_op, operation="Repair part")


def void_warranty(repair_id: int, reason: str) -> Repair:
    """Remove warranty cover so the repair can be charged. Cannot be undone."""
    min_length = current_app.config["WARRANTY_VOID_REASON_MIN_LENGTH"]
    reason = (reason or "").strip()
    if len(reason) < min_length:
        raise RepairError(
            f"Warranty void reason must be at least {min_length} characters",
            {"min_length": min_length, "length": len(reason)},
        )

    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        if repair.status != REPAIR_STATUS_IN_PROGRESS:
            raise RepairError(
                "Warranty can only be voided while the repair is In Progress",
                {"repair_id": repair.id, "status": repair.status},
            )
        if not repair.is_warranty:
            raise RepairError("Repair is not under warranty", {"repair_id": repair.id})
        repair.is_warranty = False
        repair.warranty_void_reason = reason
        db.session.flush()
        return repair

    repair = run_atomic(_op, operation="Warranty void")
    current_app.logger.warning("Warranty voided on repair %s: %s", repair.document_number, reason)
    return repair


# =============================================================================
# OUTCOMES
# =============================================================================

def complete_repair(
    repair_id: int,
    repair_fee_cents: int = 0,
    payments: Sequence[PaymentLine] = (),
    sale_type: str = SALE_TYPE_INVOICE,
) -> Repair:
    """
    In Progress -> Completed, billing the fee and the parts on a new invoice.

    A warranty repair is never charged a fee. With no fee and no parts the
    repair completes without an invoice.
    """
    repair_fee_cents = require_cents(repair_fee_cents, "repair_fee_cents")
    require_sale_type(sale_type)

    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _require_customer_repair(repair, "bill")

        fee = repair_fee_cents
        if repair.is_warranty and fee:
            current_app.logger.warning(
                "Repair %s is under warranty; fee of %s cents ignored", repair.document_number, fee,
            )
            fee = 0

        lines = []
        if fee > 0:
            lines.append(LineItemDraft(
                description=f"Repair Service for {repair.product_name}",
                quantity=1,
                unit_price_cents=fee,
            ))
        for item in repair.items:
            lines.append(LineItemDraft(
                description=item.product.name,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                product_id=item.product_id,
                stock_tracked=False,
            ))

        repair.repair_fee_cents = fee
        invoice = None
        if lines:
            invoice = _bill(repair, lines, payments, sale_type, notes=f"Repair {repair.document_number}")
            repair.repair_invoice_id = invoice.id

        _transition(
            repair,
            REPAIR_STATUS_COMPLETED,
            payload={
                "repair_fee_cents": fee,
                "parts_total_cents": repair.parts_total_cents,
                "invoice_id": invoice.id if invoice else None,
            },
        )
        return repair

    repair = run_atomic(_op, operation="Repair completion")
    current_app.logger.info("Completed repair %s (invoice %s)", repair.document_number, repair.repair_invoice_id)
    return repair


def mark_unrepairable(repair_id: int, notes: str | None = None) -> Repair:
    """
    In Progress -> Unrepairable.

    Internal repair: the damage log is closed as Unrepairable.
    Customer repair: the dead unit is logged as damage (no stock movement,
    it was never ours) and the repair waits for a replacement or credit.
    """
    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _transition(repair, REPAIR_STATUS_UNREPAIRABLE, note=notes)

        if repair.is_internal:
            damage = repair.damage_log
            damage.status = DAMAGE_STATUS_UNREPAIRABLE
        else:
            db.session.add(DamageLog(
                product_id=repair.product_id,
                product_name=repair.product_name,
                quantity=1,
                notes=notes or f"Unrepairable item from repair {repair.document_number}",
                status=DAMAGE_STATUS_UNREPAIRABLE,
                source_repair_id=repair.id,
            ))
        db.session.flush()
        return repair

    return run_atomic(_op, operation="Repair unrepairable")


def create_replacement(
    repair_id: int,
    product_id: int,
    quantity: int = 1,
    price_cents: int | None = None,
    payments: Sequence[PaymentLine] = (),
    sale_type: str = SALE_TYPE_INVOICE,
) -> Repair:
    """
    Unrepairable -> Completed (Replaced), invoicing the replacement unit.

    Priced at 0 under warranty; otherwise price_cents or the catalog price.
    """
    quantity = require_quantity(quantity, positive=True)
    if price_cents is not None:
        price_cents = require_cents(price_cents, "price_cents")
    require_sale_type(sale_type)

    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _require_customer_repair(repair, "replace")
        if repair.status != REPAIR_STATUS_UNREPAIRABLE:
            raise RepairError(
                "Only unrepairable repairs can be replaced",
                {"repair_id": repair.id, "status": repair.status},
            )
        product = db.session.get(Product, product_id)
        if not product:
            raise RepairError("Product not found", {"product_id": product_id})

        if repair.is_warranty:
            unit_price = 0
        elif price_cents is not None:
            unit_price = price_cents
        else:
            unit_price = product.price_cents

        line = LineItemDraft(
            description=f"Replacement: {product.name}",
            quantity=quantity,
            unit_price_cents=unit_price,
            product_id=product.id,
            warranty_period=product.warranty_period,
            warranty_unit=product.warranty_unit,
            weight_grams=product.weight_grams or 0,
        )
        invoice = _bill(
            repair,
            [line],
            payments,
            sale_type,
            movement_type=MOVEMENT_REPLACEMENT,
            notes=f"Replacement for repair {repair.document_number}",
        )
        repair.replacement_invoice_id = invoice.id
        _transition(
            repair,
            REPAIR_STATUS_REPLACED,
            payload={"invoice_id": invoice.id, "product_id": product.id, "unit_price_cents": unit_price},
        )
        return repair

    repair = run_atomic(_op, operation="Repair replacement")
    current_app.logger.info("Repair %s replaced (invoice %s)", repair.document_number, repair.replacement_invoice_id)
    return repair


def issue_repair_credit(repair_id: int, amount_cents: int, notes: str | None = None) -> Repair:
    """Unrepairable -> Completed (Credit), posting one store credit transaction."""
    amount_cents = require_cents(amount_cents, "amount_cents", positive=True)

    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _require_customer_repair(repair, "credit")
        if repair.status != REPAIR_STATUS_UNREPAIRABLE:
            raise RepairError(
                "Store credit can only be issued for unrepairable repairs",
                {"repair_id": repair.id, "status": repair.status},
            )
        customer = lock_customer(repair.customer_id)
        description = f"Store Credit: {notes.strip()}" if notes and notes.strip() else (
            f"Store Credit for Repair {repair.document_number}"
        )
        tx = post_transaction(
            customer,
            amount_cents=amount_cents,
            type=TRANSACTION_CREDIT,
            kind=KIND_STORE_CREDIT,
            description=description,
            repair_id=repair.id,
        )
        repair.credit_transaction_id = tx.id
        _transition(repair, REPAIR_STATUS_CREDITED, payload={"amount_cents": amount_cents})

        append_domain_event(
            event_type=EVENT_CREDIT_ISSUED,
            entity_type="customer",
            entity_id=customer.id,
            customer_id=customer.id,
            note=description,
            payload={"repair_id": repair.id, "amount_cents": amount_cents, "transaction_id": tx.id},
        )
        return repair

    repair = run_atomic(_op, operation="Repair credit")
    current_app.logger.info("Issued %s cents store credit for repair %s", amount_cents, repair.document_number)
    return repair


def mark_repaired(repair_id: int) -> Repair:
    """Internal repair fixed: the unit goes back into saleable stock."""
    def _op():
        begin_immediate()
        repair = _lock_repair(repair_id)
        _require_internal_repair(repair, "mark repaired")
        _transition(repair, REPAIR_STATUS_REPAIRED)

        damage = repair.damage_log
        if damage.product_id is not None:
            record_movement(
                product_id=damage.product_id,
                quantity_delta=1,
                movement_type=MOVEMENT_REPAIR_RESTOCK,
                note=repair.document_number,
                repair_id=repair.id,
                damage_log_id=damage.id,
            )
        damage.status = DAMAGE_STATUS_REPAIRED
        db.session.flush()
        return repair

    repair = run_atomic(_op, operation="Repair restock")
    current_app.logger.info("Repair %s returned 1 unit to stock", repair.document_number)
    return repair
