from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class ReturnRecord(db.Model):
    """
    Committed return against an invoice.

    WHY: Refunds must be bounded by what was actually paid and must be
    reversible as a unit. Every ledger transaction and stock movement the
    return creates carries return_id so deletion can undo exactly those.

    MONEY (cents):
    - total_refund_cents = items_refund_cents + delivery_refund_cents
    - payout_cents: disbursed through real methods (cash, card, ...)
    - store_credit_cents = total_refund_cents - payout_cents (stays on account)
    - total_expense_cents: reporting only, never bounds the refund
    """
    __tablename__ = "return_records"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_return_records_document_number"),
        db.Index("ix_return_records_invoice_created", "original_invoice_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    original_invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    items_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    total_refund_cents = db.Column(db.Integer, nullable=False, default=0)
    payout_cents = db.Column(db.Integer, nullable=False, default=0)
    store_credit_cents = db.Column(db.Integer, nullable=False, default=0)
    total_expense_cents = db.Column(db.Integer, nullable=False, default=0)

    restock_items = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    original_invoice = db.relationship("Invoice", backref=db.backref("returns", lazy=True))
    customer = db.relationship("Customer")
    items = db.relationship("ReturnItem", backref="return_record", lazy=True, order_by="ReturnItem.id")
    expenses = db.relationship("ReturnExpense", backref="return_record", lazy=True, order_by="ReturnExpense.id")
    payouts = db.relationship("ReturnPayout", backref="return_record", lazy=True, order_by="ReturnPayout.id")

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "original_invoice_id": self.original_invoice_id,
            "customer_id": self.customer_id,
            "items_refund_cents": self.items_refund_cents,
            "delivery_refund_cents": self.delivery_refund_cents,
            "total_refund_cents": self.total_refund_cents,
            "payout_cents": self.payout_cents,
            "store_credit_cents": self.store_credit_cents,
            "total_expense_cents": self.total_expense_cents,
            "restock_items": self.restock_items,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["items"] = [i.to_dict() for i in self.items]
            data["expenses"] = [e.to_dict() for e in self.expenses]
            data["payouts"] = [p.to_dict() for p in self.payouts]
        return data


class ReturnItem(db.Model):
    """Quantity returned from one original invoice line, at the original unit price."""
    __tablename__ = "return_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("return_records.id"), nullable=False, index=True)
    invoice_line_id = db.Column(db.Integer, db.ForeignKey("invoice_lines.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_refund_cents = db.Column(db.Integer, nullable=False)

    invoice_line = db.relationship("InvoiceLine")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "invoice_line_id": self.invoice_line_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_refund_cents": self.line_refund_cents,
        }


class ReturnExpense(db.Model):
    """Cost incurred handling a return (courier pickup, inspection). Reporting only."""
    __tablename__ = "return_expenses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("return_records.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "description": self.description,
            "amount_cents": self.amount_cents,
        }


class ReturnPayout(db.Model):
    """
    One refund disbursement line.

    method "Credits" means the amount stays on the customer's account and
    produces no debit; any other method is money leaving the store.
    """
    __tablename__ = "return_payouts"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_return_payouts_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("return_records.id"), nullable=False, index=True)
    method = db.Column(db.String(64), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    cheque_number = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "cheque_number": self.cheque_number,
        }
