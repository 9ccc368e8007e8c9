# Overview: Service-layer helpers for atomic commits and row locking.

from __future__ import annotations

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import SettlementError, ConflictError, CollaboratorError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite, begin_immediate() gives the equivalent serialization.
    """
    return query.with_for_update().populate_existing()


def begin_immediate() -> None:
    """
    Take SQLite's write lock before the first read of a commit.

    Concurrent writers queue on the lock instead of both reading the same
    balance/stock and racing to write. No-op on other dialects and when
    the connection is already inside a transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    connection = db.session.connection()
    if connection.connection.dbapi_connection.in_transaction:
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "locked" in message or "deadlock" in message or "could not serialize" in message


def run_atomic(func, *, operation: str = "operation"):
    """
    Run func() and commit once, or roll back everything.

    - SettlementError from func: rollback, re-raised unchanged
    - StaleDataError / lock errors: rollback, ConflictError (caller re-fetches)
    - any other DB failure: rollback, CollaboratorError

    No automatic retry: failures are reported immediately.
    """
    try:
        result = func()
        db.session.commit()
        return result
    except SettlementError:
        db.session.rollback()
        raise
    except StaleDataError as exc:
        db.session.rollback()
        current_app.logger.warning("%s conflicted with a concurrent update", operation)
        raise ConflictError(
            f"{operation} conflicted with a concurrent update; re-fetch and retry",
        ) from exc
    except OperationalError as exc:
        db.session.rollback()
        if _is_lock_error(exc):
            current_app.logger.warning("%s could not acquire a lock: %s", operation, exc.orig)
            raise ConflictError(
                f"{operation} could not acquire a lock; re-fetch and retry",
            ) from exc
        current_app.logger.exception("%s failed in the persistence layer", operation)
        raise CollaboratorError(f"{operation} failed; nothing was applied") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("%s failed in the persistence layer", operation)
        raise CollaboratorError(f"{operation} failed; nothing was applied") from exc
    except Exception:
        db.session.rollback()
        raise
