from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Committed sale document (receipt or invoice).

    WHY: Created only at checkout commit, never as a mutable draft row.
    Drafts live in memory (checkout_service.CheckoutDraft) so nothing
    financial is written ahead of the authoritative commit.

    TOTALS (all cents, fixed at commit):
    - total_cents = subtotal - item_discount - discount + delivery_charge
    - credit_applied_cents: store credit consumed by this sale
    - balance_settled_cents: prior outstanding balance paid off at this sale
    - amount_paid_cents: portion of total_cents covered so far (credit + payments)
    - refunded_cents: running sum of committed returns against this invoice

    STATUS:
    - Sent: nothing paid yet
    - Partially Paid: 0 < amount_paid < total
    - Paid: amount_paid >= total
    - Overdue: unpaid past due_date
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_invoices_document_number"),
        db.Index("ix_invoices_customer_created", "customer_id", "created_at"),
        db.Index("ix_invoices_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    sale_type = db.Column(db.String(16), nullable=False, default="receipt")  # receipt, invoice
    status = db.Column(db.String(32), nullable=False, default="Draft", index=True)
    return_status = db.Column(db.String(32), nullable=True)  # None, Partially Returned, Fully Returned

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    item_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_charge_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    credit_applied_cents = db.Column(db.Integer, nullable=False, default=0)
    balance_settled_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    change_given_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    courier_name = db.Column(db.String(128), nullable=True)
    free_shipping = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("invoices", lazy=True))
    lines = db.relationship("InvoiceLine", backref="invoice", lazy=True, order_by="InvoiceLine.id")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def outstanding_cents(self) -> int:
        return max(0, self.total_cents - self.amount_paid_cents)

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "customer_id": self.customer_id,
            "sale_type": self.sale_type,
            "status": self.status,
            "return_status": self.return_status,
            "subtotal_cents": self.subtotal_cents,
            "item_discount_cents": self.item_discount_cents,
            "discount_cents": self.discount_cents,
            "delivery_charge_cents": self.delivery_charge_cents,
            "total_cents": self.total_cents,
            "credit_applied_cents": self.credit_applied_cents,
            "balance_settled_cents": self.balance_settled_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "outstanding_cents": self.outstanding_cents,
            "change_given_cents": self.change_given_cents,
            "refunded_cents": self.refunded_cents,
            "courier_name": self.courier_name,
            "free_shipping": self.free_shipping,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "due_date": to_utc_z(self.due_date) if self.due_date else None,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class InvoiceLine(db.Model):
    """
    Line item on a committed invoice.

    unit_price_cents and discount_cents are frozen at sale time; refunds are
    computed from these, never from the product's current price.

    components: bundle breakdown as a JSON list of
    {"product_id": int, "quantity": int} per unit of this line.
    """
    __tablename__ = "invoice_lines"
    __table_args__ = (
        db.CheckConstraint("quantity_returned <= quantity", name="ck_invoice_lines_returned_le_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    # NULL for custom (non-catalog) items
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)
    unit = db.Column(db.String(32), nullable=True)

    warranty_period = db.Column(db.Integer, nullable=True)
    warranty_unit = db.Column(db.String(16), nullable=True)

    components = db.Column(db.JSON, nullable=True)

    # False when the goods already left stock elsewhere (repair parts)
    stock_deducted = db.Column(db.Boolean, nullable=False, default=True)

    quantity_returned = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    @property
    def max_returnable(self) -> int:
        return self.quantity - (self.quantity_returned or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
            "unit": self.unit,
            "warranty_period": self.warranty_period,
            "warranty_unit": self.warranty_unit,
            "components": self.components,
            "stock_deducted": self.stock_deducted,
            "quantity_returned": self.quantity_returned,
        }
