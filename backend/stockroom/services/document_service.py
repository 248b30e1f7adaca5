# Overview: Service-layer operations for document numbering; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


ORDER_DOCUMENT = "ORDER"
PURCHASE_ORDER_DOCUMENT = "PURCHASE_ORDER"

DOCUMENT_PREFIXES = {
    ORDER_DOCUMENT: "SO",
    PURCHASE_ORDER_DOCUMENT: "PO",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(*, document_type: str, pad: int = 4) -> str:
    """
    Allocate the next document number for a type (e.g. "SO-0042").

    Runs inside the caller's transaction, so a rolled-back command does not
    consume a number. The first allocation for a type races on a unique
    constraint; the loser retries the increment inside a savepoint.
    """
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if prefix is None:
        raise DocumentSequenceError(f"Unknown document_type {document_type!r}")

    next_num = _bump(document_type)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            next_num = _bump(document_type)
            if next_num is None:
                raise DocumentSequenceError(f"Could not allocate {document_type} number")

    return f"{prefix}-{next_num:0{pad}d}"
