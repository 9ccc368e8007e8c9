from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer account with a running signed balance.

    WHY: The balance is how store credit and amounts owed survive between
    visits. Positive = store credit owed TO the customer; negative = amount
    the customer owes.

    INVARIANT: balance_cents == SUM(signed customer_transactions.amount_cents)
    at every observable point. Only ledger_service.post_transaction (and the
    full-reversal path) may change balance_cents.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    # Walk-in customers may only buy on immediate-payment receipts
    is_walk_in = db.Column(db.Boolean, nullable=False, default=False)

    balance_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_credit_cents(self) -> int:
        return max(0, self.balance_cents)

    @property
    def outstanding_balance_cents(self) -> int:
        return max(0, -self.balance_cents)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "is_walk_in": self.is_walk_in,
            "balance_cents": self.balance_cents,
            "available_credit_cents": self.available_credit_cents,
            "outstanding_balance_cents": self.outstanding_balance_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class CustomerTransaction(db.Model):
    """
    One signed movement on a customer's account.

    WHY: The ledger is the source of truth for the balance. Rows are
    never updated; they are deleted only when the document that created
    them is fully reversed (return deletion).

    SIGN: credit raises the balance (toward customer-owed), debit lowers it.
    amount_cents is always positive; the sign lives in `type`.
    """
    __tablename__ = "customer_transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_customer_transactions_amount_positive"),
        db.CheckConstraint("type IN ('credit', 'debit')", name="ck_customer_transactions_type"),
        db.Index("ix_customer_transactions_customer_occurred", "customer_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(8), nullable=False)  # credit, debit
    kind = db.Column(db.String(32), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)

    payment_method = db.Column(db.String(64), nullable=True)
    cheque_number = db.Column(db.String(64), nullable=True)

    # Provenance (whichever document posted this row)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("return_records.id"), nullable=True, index=True)
    repair_id = db.Column(db.Integer, db.ForeignKey("repairs.id"), nullable=True, index=True)

    # Business time vs system time
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("transactions", lazy=True))

    @property
    def signed_amount_cents(self) -> int:
        return self.amount_cents if self.type == "credit" else -self.amount_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "amount_cents": self.amount_cents,
            "signed_amount_cents": self.signed_amount_cents,
            "type": self.type,
            "kind": self.kind,
            "description": self.description,
            "payment_method": self.payment_method,
            "cheque_number": self.cheque_number,
            "invoice_id": self.invoice_id,
            "return_id": self.return_id,
            "repair_id": self.repair_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
