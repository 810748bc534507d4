# Overview: Service-layer operations for the audit trail; append-only transition records.

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEvent
from ..time_utils import utcnow

"""
Audit Trail Invariants

- Append-only: no updates or deletes of existing events.
- Entries are written inside the same transaction as the transition they
  record, in a SAVEPOINT so a failed audit write never fails the business
  operation.
- A failed entry is queued in-process and retried after the business
  commit, inline or on a background thread (AUDIT_RETRY_ASYNC).
- occurred_at is business time; created_at is system time (db default).
"""


_pending: list[dict] = []
_pending_lock = threading.Lock()


def _insert_event(entry: dict) -> AuditEvent:
    ev = AuditEvent(**entry)
    db.session.add(ev)
    db.session.flush()
    return ev


def record_event(
    *,
    business_id: int,
    entity_type: str,
    entity_id: int,
    action: str,
    actor_id: int | None = None,
    prior_state: str | None = None,
    new_state: str | None = None,
    note: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> AuditEvent | None:
    """
    Append an audit event to the caller's transaction.

    Returns None when the write failed and the entry was queued for retry.
    """
    entry = {
        "business_id": business_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "actor_id": actor_id,
        "prior_state": prior_state,
        "new_state": new_state,
        "note": note,
        "occurred_at": occurred_at or utcnow(),
    }
    try:
        with db.session.begin_nested():
            return _insert_event(entry)
    except SQLAlchemyError:
        current_app.logger.warning(
            "Audit write failed for %s %s (%s); queued for retry",
            entity_type, entity_id, action,
            exc_info=True,
        )
        with _pending_lock:
            _pending.append(entry)
        return None


def pending_count() -> int:
    with _pending_lock:
        return len(_pending)


def retry_pending() -> int:
    """
    Write queued entries, each in its own transaction.

    Entries that fail again go back on the queue. Returns the number written.
    """
    with _pending_lock:
        batch = list(_pending)
        _pending.clear()

    written = 0
    failed = []
    for entry in batch:
        try:
            _insert_event(entry)
            db.session.commit()
            written += 1
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "Audit retry failed for %s %s (%s)",
                entry["entity_type"], entry["entity_id"], entry["action"],
            )
            failed.append(entry)

    if failed:
        with _pending_lock:
            _pending.extend(failed)
    if written:
        current_app.logger.info("Wrote %s queued audit events", written)
    return written


def dispatch_pending() -> None:
    """
    Called after a business commit. Hands queued entries to a background
    retry when AUDIT_RETRY_ASYNC is on, otherwise retries them inline.
    """
    if not pending_count():
        return
    if not current_app.config["AUDIT_RETRY_ASYNC"]:
        retry_pending()
        return

    app = current_app._get_current_object()
    delay = app.config["AUDIT_RETRY_DELAY_SECONDS"]

    def _worker():
        time.sleep(delay)
        with app.app_context():
            try:
                retry_pending()
            finally:
                db.session.remove()

    threading.Thread(target=_worker, name="audit-retry", daemon=True).start()


def list_events(*, entity_type: str, entity_id: int, business_id: int | None = None) -> list[AuditEvent]:
    query = db.session.query(AuditEvent).filter_by(entity_type=entity_type, entity_id=entity_id)
    if business_id is not None:
        query = query.filter_by(business_id=business_id)
    return query.order_by(AuditEvent.occurred_at.asc(), AuditEvent.id.asc()).all()
