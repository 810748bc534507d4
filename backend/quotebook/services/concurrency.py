# Overview: Service-layer helpers for concurrency; row locks, retries and compare-and-swap writes.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentModification, QuotebookError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Domain errors are never retried; the
    session is rolled back so the failed unit of work leaves nothing behind.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except QuotebookError:
            db.session.rollback()
            raise
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying after transient store conflict (attempt %s/%s): %s",
                attempt + 1, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)


def compare_and_swap(model, entity_id: int, *, expected: dict, values: dict, state_field: str = "state") -> None:
    """
    Conditional write: UPDATE model SET values WHERE id = entity_id AND expected.

    Zero rows updated means another writer moved the row first; the current
    state is re-read and reported so the caller can re-fetch and retry.
    """
    criteria = [getattr(model, name) == value for name, value in expected.items()]
    stmt = (
        update(model)
        .where(model.id == entity_id, *criteria)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    result = db.session.execute(stmt)
    if result.rowcount == 1:
        return

    current_state = (
        db.session.query(getattr(model, state_field))
        .filter(model.id == entity_id)
        .scalar()
    )
    current_app.logger.warning(
        "Conditional update of %s %s lost the race (expected %s, found %s)",
        model.__tablename__, entity_id, expected, current_state,
    )
    raise ConcurrentModification(
        f"{model.__tablename__} {entity_id} was modified concurrently",
        current_state=current_state,
    )
