"""
Domain Events

WHY: Consumers (caches, notifications, reporting) need to know that money
or stock moved. They get explicit domain events emitted after the commit
succeeds, never hints emitted ahead of it.

Invariants:
- append_domain_event writes the DomainEvent row in the SAME DB transaction
  as the effect it records.
- Listeners are called only after that transaction commits. A rollback
  discards the queued events; listeners never see an effect that did not
  persist.
- Listeners receive plain dicts and must not use the session; a listener
  failure is logged and does not affect the committed effect.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import event
from sqlalchemy.orm import Session

from ..extensions import db
from ..models import DomainEvent


EVENT_CUSTOMER_CREATED = "customer.created"
EVENT_SALE_COMMITTED = "sale.committed"
EVENT_PAYMENT_RECEIVED = "payment.received"
EVENT_RETURN_COMMITTED = "return.committed"
EVENT_RETURN_REVERSED = "return.reversed"
EVENT_REPAIR_TRANSITIONED = "repair.transitioned"
EVENT_CREDIT_ISSUED = "credit.issued"
EVENT_CREDIT_PAID_OUT = "credit.paid_out"

_PENDING_KEY = "settlement.pending_events"

_listeners: list[Callable[[dict], None]] = []
_hooks_installed = False


def register_listener(listener: Callable[[dict], None]) -> Callable[[dict], None]:
    """Subscribe to committed domain events. Usable as a decorator."""
    if listener not in _listeners:
        _listeners.append(listener)
    return listener


def unregister_listener(listener: Callable[[dict], None]) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def append_domain_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    customer_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> DomainEvent:
    """
    Append-only domain event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - occurred_at is business time; created_at is system time (db default).
    """
    ev = DomainEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        customer_id=customer_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing

    session = db.session()
    session.info.setdefault(_PENDING_KEY, []).append({
        "id": ev.id,
        "event_type": event_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "customer_id": customer_id,
        "note": note,
        "payload": dict(payload or {}),
    })
    return ev


def _dispatch_after_commit(session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for payload in pending:
        for listener in list(_listeners):
            try:
                listener(payload)
            except Exception:
                current_app.logger.exception(
                    "Domain event listener failed for %s #%s", payload["event_type"], payload["id"]
                )


def _discard_after_rollback(session, previous_transaction) -> None:
    session.info.pop(_PENDING_KEY, None)


def install_session_hooks() -> None:
    """Attach dispatch/discard hooks to every SQLAlchemy session (idempotent)."""
    global _hooks_installed
    if _hooks_installed:
        return
    event.listen(Session, "after_commit", _dispatch_after_commit)
    event.listen(Session, "after_soft_rollback", _discard_after_rollback)
    _hooks_installed = True
