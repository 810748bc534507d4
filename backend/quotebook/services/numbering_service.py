# Overview: Service-layer operations for document numbering; race-safe sequential numbers.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import AllocationFailed, ValidationError
from ..extensions import db
from ..models import DocumentCounter
from ..time_utils import today, utcnow
from .concurrency import run_with_retry


"""
Document Numbering Invariants

- Numbers are {PREFIX}-{YEAR}-{sequence:06d}, sequence starting at 1 per
  (business_id, year, document_type).
- Increment-and-read is ONE statement against the counter row; application
  code never reads the counter and writes it back.
- Allocation joins the caller's transaction. A document that rolls back
  releases its number, so committed numbers stay contiguous. Callers
  allocate before any other write in their unit of work.
"""

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def format_document_number(*, prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:06d}"


def document_prefix(document_type: str) -> str:
    prefixes = current_app.config["DOCUMENT_NUMBER_PREFIXES"]
    if not document_type:
        raise ValidationError("document_type is required")
    if document_type not in prefixes:
        raise ValidationError(
            f"Unknown document_type '{document_type}'",
            allowed=sorted(prefixes),
        )
    return prefixes[document_type]


def _upsert_sequence(*, business_id: int, year: int, document_type: str) -> int:
    """INSERT ... ON CONFLICT DO UPDATE ... RETURNING; first row stores 2."""
    insert = _UPSERT_DIALECTS[db.session.get_bind().dialect.name]
    stmt = (
        insert(DocumentCounter)
        .values(
            business_id=business_id,
            year=year,
            document_type=document_type,
            next_number=2,
            updated_at=utcnow(),
        )
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["business_id", "year", "document_type"],
        set_={
            "next_number": DocumentCounter.next_number + 1,
            "updated_at": utcnow(),
        },
    ).returning(DocumentCounter.next_number)
    return db.session.execute(stmt).scalar_one() - 1


def _update_then_insert(*, business_id: int, year: int, document_type: str) -> int:
    """Portable path: UPDATE, INSERT on miss, UPDATE again if the INSERT lost."""
    stmt = (
        update(DocumentCounter)
        .where(
            DocumentCounter.business_id == business_id,
            DocumentCounter.year == year,
            DocumentCounter.document_type == document_type,
        )
        .values(next_number=DocumentCounter.next_number + 1, updated_at=utcnow())
    )

    def _read_allocated() -> int:
        current = (
            db.session.query(DocumentCounter.next_number)
            .filter_by(business_id=business_id, year=year, document_type=document_type)
            .scalar()
        )
        return current - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        return _read_allocated()

    try:
        with db.session.begin_nested():
            db.session.add(DocumentCounter(
                business_id=business_id,
                year=year,
                document_type=document_type,
                next_number=2,
            ))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _read_allocated()


def next_document_number(*, business_id: int, document_type: str, year: int | None = None) -> str:
    """
    Atomically allocate the next document number for a business/year/type.

    Transient store conflicts are retried with exponential backoff; when
    the attempts run out AllocationFailed is raised and nothing is kept.
    """
    if not business_id:
        raise ValidationError("business_id is required")
    prefix = document_prefix(document_type)
    year = year or today().year

    def _op() -> str:
        if db.session.get_bind().dialect.name in _UPSERT_DIALECTS:
            sequence = _upsert_sequence(business_id=business_id, year=year, document_type=document_type)
        else:
            sequence = _update_then_insert(business_id=business_id, year=year, document_type=document_type)
        return format_document_number(prefix=prefix, year=year, sequence=sequence)

    attempts = current_app.config["NUMBERING_MAX_ATTEMPTS"]
    try:
        return run_with_retry(
            _op,
            attempts=attempts,
            backoff_base=current_app.config["NUMBERING_BACKOFF_BASE"],
        )
    except (OperationalError, StaleDataError) as exc:
        current_app.logger.error(
            "Document number allocation failed for business=%s type=%s year=%s after %s attempts",
            business_id, document_type, year, attempts,
        )
        raise AllocationFailed(
            "Could not allocate a document number, please retry",
            document_type=document_type,
        ) from exc


def peek_next_document_number(*, business_id: int, document_type: str, year: int | None = None) -> dict:
    """Read-only preview of the number the next allocation would return."""
    if not business_id:
        raise ValidationError("business_id is required")
    prefix = document_prefix(document_type)
    year = year or today().year

    next_number = (
        db.session.query(DocumentCounter.next_number)
        .filter_by(business_id=business_id, year=year, document_type=document_type)
        .scalar()
    ) or 1

    return {
        "business_id": business_id,
        "document_type": document_type,
        "year": year,
        "next_sequence": next_number,
        "next_number": format_document_number(prefix=prefix, year=year, sequence=next_number),
    }
