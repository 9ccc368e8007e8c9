# Overview: Service-layer operations for stock; encapsulates business logic and database work.

# backend/settlement/services/inventory_service.py

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, BundleComponent, StockMovement, DamageLog
from ..validation import ValidationError, ConflictError, require_quantity
from .concurrency import lock_for_update, begin_immediate, run_atomic
"""
Stock Invariants (authoritative)

- Stock is ledger-derived from StockMovement rows; never stored as a mutable quantity field.
- Quantity on hand is SUM(quantity_delta) over movements (optionally as-of).
- On-hand may never go negative: every outgoing movement re-reads on-hand
  under the commit's lock and refuses with InsufficientStockError.
- Bundles hold no stock of their own; selling one draws its components.
- Movements are only deleted by the full reversal of the document that
  created them (return deletion).
"""


MOVEMENT_RECEIVE = "RECEIVE"
MOVEMENT_SALE = "SALE"
MOVEMENT_REPLACEMENT = "REPLACEMENT"
MOVEMENT_RETURN_RESTOCK = "RETURN_RESTOCK"
MOVEMENT_REPAIR_PART = "REPAIR_PART"
MOVEMENT_REPAIR_RESTOCK = "REPAIR_RESTOCK"
MOVEMENT_DAMAGE = "DAMAGE"

DAMAGE_STATUS_DAMAGED = "Damaged"
DAMAGE_STATUS_IN_REPAIR = "In Repair"
DAMAGE_STATUS_REPAIRED = "Repaired"
DAMAGE_STATUS_UNREPAIRABLE = "Unrepairable"


class InventoryError(ValidationError):
    """Raised for malformed stock operations (unknown product, bad quantity)."""


class InsufficientStockError(ConflictError):
    """Authoritative on-hand is below what the commit needs."""


def get_quantity_on_hand(product_id: int, as_of: datetime | None = None) -> int:
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity_delta), 0)
    ).filter(StockMovement.product_id == product_id)
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)
    return int(q.scalar() or 0)


def lock_product(product_id: int, *, require_active: bool = True) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if not product:
        raise InventoryError("Product not found", {"product_id": product_id})
    if require_active and not product.is_active:
        raise InventoryError("Product is inactive", {"product_id": product_id})
    return product


def bundle_components_for(product_id: int) -> list[tuple[int, int]]:
    """(component_product_id, quantity per bundle unit) for a bundle product."""
    rows = (
        db.session.query(BundleComponent)
        .filter_by(bundle_product_id=product_id)
        .order_by(BundleComponent.id)
        .all()
    )
    return [(row.component_product_id, row.quantity) for row in rows]


def expand_stock_requirements(items: Iterable[tuple[int, int, list | tuple | None]]) -> dict[int, int]:
    """
    Collapse (product_id, quantity, components) tuples into per-product
    stock requirements.

    components is a list of (product_id, qty_per_unit) pairs. When it is
    empty and the product is a bundle, the catalog components are used.
    """
    totals: dict[int, int] = {}
    for product_id, quantity, components in items:
        if product_id is None or quantity <= 0:
            continue
        parts = list(components or [])
        if not parts:
            product = db.session.get(Product, product_id)
            if product is not None and product.is_bundle:
                parts = bundle_components_for(product_id)
        if parts:
            for component_id, per_unit in parts:
                totals[component_id] = totals.get(component_id, 0) + per_unit * quantity
        else:
            totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


def ensure_stock_available(requirements: dict[int, int]) -> dict[int, Product]:
    """
    Lock every required product and re-read on-hand.

    Raises InsufficientStockError listing every short product, so the
    caller can report them all at once.
    """
    locked: dict[int, Product] = {}
    insufficient = []
    for product_id in sorted(requirements):
        locked[product_id] = lock_product(product_id)
        on_hand = get_quantity_on_hand(product_id)
        if on_hand < requirements[product_id]:
            insufficient.append({
                "product_id": product_id,
                "product_name": locked[product_id].name,
                "requested_quantity": requirements[product_id],
                "on_hand": on_hand,
            })
    if insufficient:
        raise InsufficientStockError("Insufficient stock", {"items": insufficient})
    return locked


def record_movement(
    *,
    product_id: int,
    quantity_delta: int,
    movement_type: str,
    note: str | None = None,
    invoice_id: int | None = None,
    return_id: int | None = None,
    repair_id: int | None = None,
    damage_log_id: int | None = None,
) -> StockMovement:
    """Core movement logic without locking or commit; caller holds the lock."""
    if quantity_delta == 0:
        raise InventoryError("quantity_delta cannot be zero")
    if quantity_delta < 0:
        on_hand = get_quantity_on_hand(product_id)
        if on_hand + quantity_delta < 0:
            raise InsufficientStockError(
                "Insufficient stock",
                {"items": [{"product_id": product_id, "requested_quantity": -quantity_delta, "on_hand": on_hand}]},
            )

    movement = StockMovement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        note=note,
        invoice_id=invoice_id,
        return_id=return_id,
        repair_id=repair_id,
        damage_log_id=damage_log_id,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def receive_stock(product_id: int, quantity: int, note: str | None = None) -> StockMovement:
    """Goods in. Used for opening stock and purchasing."""
    quantity = require_quantity(quantity, positive=True)

    def _op():
        begin_immediate()
        lock_product(product_id)
        return record_movement(
            product_id=product_id,
            quantity_delta=quantity,
            movement_type=MOVEMENT_RECEIVE,
            note=note,
        )

    movement = run_atomic(_op, operation="Stock receive")
    current_app.logger.info("Received %s unit(s) of product %s", quantity, product_id)
    return movement


def log_damage(product_id: int, quantity: int = 1, notes: str | None = None) -> DamageLog:
    """
    Write damaged units off saleable stock.

    The damage log can later be sent for internal repair
    (repair_service.create_repair_from_damage).
    """
    quantity = require_quantity(quantity, positive=True)

    def _op():
        begin_immediate()
        product = lock_product(product_id, require_active=False)
        damage = DamageLog(
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            notes=notes,
            status=DAMAGE_STATUS_DAMAGED,
        )
        db.session.add(damage)
        db.session.flush()
        record_movement(
            product_id=product.id,
            quantity_delta=-quantity,
            movement_type=MOVEMENT_DAMAGE,
            note=notes,
            damage_log_id=damage.id,
        )
        return damage

    return run_atomic(_op, operation="Damage log")
