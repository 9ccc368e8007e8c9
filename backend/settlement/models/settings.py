from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class PaymentMethod(db.Model):
    """
    Configured payment method.

    WHY: The set of methods a payment line may use comes from here, not
    from a hardcoded list. Names are compared exactly; "cheque" (any case)
    additionally requires a cheque number.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_payment_methods_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }


class Courier(db.Model):
    """Courier pricing: first kilogram flat, each additional kilogram pro rata."""
    __tablename__ = "couriers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    first_kg_price_cents = db.Column(db.Integer, nullable=False, default=0)
    additional_kg_price_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "first_kg_price_cents": self.first_kg_price_cents,
            "additional_kg_price_cents": self.additional_kg_price_cents,
            "is_active": self.is_active,
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: Prevent race conditions when generating document numbers
    (invoices, returns, repairs).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
