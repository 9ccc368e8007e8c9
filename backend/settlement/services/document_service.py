# Overview: Service-layer operations for document numbering.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import DocumentSequence
from ..validation import SettlementError


DOCUMENT_TYPE_INVOICE = "INVOICE"
DOCUMENT_TYPE_RETURN = "RETURN"
DOCUMENT_TYPE_REPAIR = "REPAIR"


class DocumentSequenceError(SettlementError):
    """Raised when document sequence operations fail."""
    pass


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a type ("INV-0001", "RTN-0042").

    Must run inside the caller's atomic operation: the increment commits or
    rolls back together with the document that consumes the number, so
    numbers are never burned by a refused commit.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    if not prefix:
        raise DocumentSequenceError("prefix is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )
        next_num = current - 1
    else:
        seq = DocumentSequence(document_type=document_type, next_number=2)
        db.session.add(seq)
        db.session.flush()
        next_num = 1

    return f"{prefix}-{next_num:0{pad}d}"
