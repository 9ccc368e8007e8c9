from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from settlement.time_utils import to_utc_z


class Product(db.Model):
    """
    Saleable product.

    WHY: Supplies price and weight to the cart. Stock is NOT a column here;
    on-hand is derived from stock_movements (see inventory_service).

    product_type:
    - standard: sold and stocked as itself
    - bundle: sold as itself, stock drawn from its BundleComponent rows
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.Integer, nullable=False, default=0)
    weight_grams = db.Column(db.Integer, nullable=False, default=0)
    product_type = db.Column(db.String(16), nullable=False, default="standard")

    warranty_period = db.Column(db.Integer, nullable=True)
    warranty_unit = db.Column(db.String(16), nullable=True)  # days, months, years

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def weight_kg(self) -> Decimal:
        return Decimal(self.weight_grams or 0) / Decimal(1000)

    @property
    def is_bundle(self) -> bool:
        return self.product_type == "bundle"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "weight_grams": self.weight_grams,
            "product_type": self.product_type,
            "warranty_period": self.warranty_period,
            "warranty_unit": self.warranty_unit,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class BundleComponent(db.Model):
    """A sub-product and the quantity of it consumed per unit of a bundle."""
    __tablename__ = "bundle_components"
    __table_args__ = (
        db.UniqueConstraint("bundle_product_id", "component_product_id", name="uq_bundle_components_pair"),
        db.CheckConstraint("quantity > 0", name="ck_bundle_components_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bundle_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    component_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    bundle = db.relationship("Product", foreign_keys=[bundle_product_id], backref=db.backref("components", lazy=True))
    component = db.relationship("Product", foreign_keys=[component_product_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bundle_product_id": self.bundle_product_id,
            "component_product_id": self.component_product_id,
            "quantity": self.quantity,
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger.

    WHY: Same reasoning as the customer ledger. On-hand is SUM(quantity_delta)
    per product, so every stock change is traceable to the document that
    caused it and can be reversed exactly.

    movement_type:
    - RECEIVE: goods in (seeding, purchasing)
    - SALE / REPLACEMENT: goods out on an invoice
    - RETURN_RESTOCK: returned goods back to saleable stock
    - REPAIR_PART: part consumed by a repair
    - REPAIR_RESTOCK: internally repaired item back to stock
    - DAMAGE: damaged stock written off
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity_delta <> 0", name="ck_stock_movements_nonzero"),
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    movement_type = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("return_records.id"), nullable=True, index=True)
    repair_id = db.Column(db.Integer, db.ForeignKey("repairs.id"), nullable=True, index=True)
    damage_log_id = db.Column(db.Integer, db.ForeignKey("damage_logs.id"), nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity_delta": self.quantity_delta,
            "note": self.note,
            "invoice_id": self.invoice_id,
            "return_id": self.return_id,
            "repair_id": self.repair_id,
            "damage_log_id": self.damage_log_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class DamageLog(db.Model):
    """
    Damaged or unrepairable units.

    Either written off from our own stock (internal, may be sent for repair)
    or recorded when a customer's item is declared unrepairable.
    """
    __tablename__ = "damage_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    notes = db.Column(db.Text, nullable=True)

    # Damaged, In Repair, Repaired, Unrepairable
    status = db.Column(db.String(32), nullable=False, default="Damaged", index=True)

    # Repair that produced this entry (customer item declared unrepairable).
    # No FK: repairs.damage_log_id already points the other way.
    source_repair_id = db.Column(db.Integer, nullable=True, index=True)

    logged_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "notes": self.notes,
            "status": self.status,
            "source_repair_id": self.source_repair_id,
            "logged_at": to_utc_z(self.logged_at),
        }
