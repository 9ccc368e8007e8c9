from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class Repair(db.Model):
    """
    Repair job for a customer's item or an internally damaged unit.

    LIFECYCLE (see repair_service.ALLOWED_TRANSITIONS):
    Received -> In Progress -> Completed                      (billed on new invoice)
                            -> Repaired                       (damage-log repairs, back to stock)
                            -> Unrepairable -> Completed (Replaced)
                                            -> Completed (Credit)

    WARRANTY: while is_warranty is set the repair fee is forced to 0.
    Voiding the warranty is one-way and needs a written reason.
    """
    __tablename__ = "repairs"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_repairs_document_number"),
        db.UniqueConstraint("damage_log_id", name="uq_repairs_damage_log"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    product_name = db.Column(db.String(255), nullable=False)
    problem_description = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="Received", index=True)

    is_warranty = db.Column(db.Boolean, nullable=False, default=False)
    warranty_void_reason = db.Column(db.Text, nullable=True)

    repair_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    # Set when the repair is for one of our own damaged units
    damage_log_id = db.Column(db.Integer, db.ForeignKey("damage_logs.id"), nullable=True)
    original_invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)

    # Billing outcomes (at most one is set)
    repair_invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    replacement_invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    # No FK: customer_transactions.repair_id already points the other way.
    credit_transaction_id = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("repairs", lazy=True))
    items = db.relationship("RepairItem", backref="repair", lazy=True, order_by="RepairItem.id")
    damage_log = db.relationship("DamageLog", foreign_keys=[damage_log_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_internal(self) -> bool:
        return self.damage_log_id is not None

    @property
    def parts_total_cents(self) -> int:
        return sum(item.quantity * item.unit_price_cents for item in self.items)

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "customer_id": self.customer_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "problem_description": self.problem_description,
            "status": self.status,
            "is_warranty": self.is_warranty,
            "warranty_void_reason": self.warranty_void_reason,
            "repair_fee_cents": self.repair_fee_cents,
            "damage_log_id": self.damage_log_id,
            "original_invoice_id": self.original_invoice_id,
            "repair_invoice_id": self.repair_invoice_id,
            "replacement_invoice_id": self.replacement_invoice_id,
            "credit_transaction_id": self.credit_transaction_id,
            "notes": self.notes,
            "received_at": to_utc_z(self.received_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class RepairItem(db.Model):
    """
    Part consumed by a repair.

    Stock is deducted when the part is added, not when the repair is billed,
    so the invoice line later created for it is marked stock_deducted=False.
    """
    __tablename__ = "repair_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_repair_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    repair_id = db.Column(db.Integer, db.ForeignKey("repairs.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repair_id": self.repair_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "created_at": to_utc_z(self.created_at),
        }
