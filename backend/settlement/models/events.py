from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class DomainEvent(db.Model):
    """
    Append-only record of committed settlement activity.

    WHY: Caches and downstream consumers subscribe to domain events
    (sale.committed, return.committed, repair.transitioned, ...) instead of
    guessing from table-level changes. Rows are written inside the same DB
    transaction as the effect they describe, so an event exists iff its
    effect committed.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_type_occurred", "event_type", "occurred_at"),
        db.Index("ix_domain_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "customer_id": self.customer_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
