# Overview: Pytest coverage for the audit trail and its failure queue.

"""
Audit Trail Tests

A failed audit write must never fail the business operation. The entry is
queued and written after the commit, inline or on a background thread.
"""

import pytest
from sqlalchemy.exc import OperationalError

from quotebook.models import AuditEvent, Quote
from quotebook.services import audit_service, quote_service

from conftest import BUSINESS_A, caller_headers


def _locked(entry):
    raise OperationalError("INSERT INTO audit_events", {}, Exception("database is locked"))


@pytest.fixture
def failing_audit(monkeypatch):
    """Every audit insert fails until the fixture is undone."""
    monkeypatch.setattr(audit_service, "_insert_event", _locked)
    return monkeypatch


def test_record_event_appends(db_session):
    ev = audit_service.record_event(
        business_id=BUSINESS_A,
        entity_type="quote",
        entity_id=42,
        action="quote.sent",
        actor_id=7,
        prior_state="draft",
        new_state="sent",
    )
    db_session.commit()

    assert ev is not None
    stored = db_session.query(AuditEvent).one()
    assert stored.action == "quote.sent"
    assert stored.occurred_at is not None


def test_failed_audit_write_does_not_fail_operation(db_session, make_quote, failing_audit):
    quote = make_quote()

    assert db_session.query(Quote).filter_by(id=quote.id).count() == 1
    assert db_session.query(AuditEvent).count() == 0
    assert audit_service.pending_count() == 1


def test_queued_entry_written_on_retry(db_session, make_quote, failing_audit):
    quote = make_quote()
    failing_audit.undo()

    written = audit_service.retry_pending()

    assert written == 1
    assert audit_service.pending_count() == 0
    events = audit_service.list_events(entity_type="quote", entity_id=quote.id)
    assert [e.action for e in events] == ["quote.created"]


def test_retry_requeues_entries_that_fail_again(db_session, make_quote, failing_audit):
    make_quote()

    assert audit_service.retry_pending() == 0
    assert audit_service.pending_count() == 1


def test_inline_retry_after_commit(db_session, make_quote, monkeypatch):
    original = audit_service._insert_event
    calls = []

    def flaky(entry):
        calls.append(entry["action"])
        if len(calls) == 1:
            _locked(entry)
        return original(entry)

    monkeypatch.setattr(audit_service, "_insert_event", flaky)
    quote = make_quote()

    assert calls == ["quote.created", "quote.created"]
    assert audit_service.pending_count() == 0
    assert len(audit_service.list_events(entity_type="quote", entity_id=quote.id)) == 1


def test_async_retry_runs_on_worker_thread(app, db_session, make_quote, monkeypatch):
    original = audit_service._insert_event
    started = []

    class ImmediateThread:
        def __init__(self, target, name=None, daemon=None):
            self.target = target
            self.name = name

        def start(self):
            started.append(self.name)
            self.target()

    def flaky(entry):
        if not started:
            _locked(entry)
        return original(entry)

    monkeypatch.setitem(app.config, "AUDIT_RETRY_ASYNC", True)
    monkeypatch.setitem(app.config, "AUDIT_RETRY_DELAY_SECONDS", 0)
    monkeypatch.setattr(audit_service.threading, "Thread", ImmediateThread)
    monkeypatch.setattr(audit_service, "_insert_event", flaky)

    quote = make_quote()

    assert started == ["audit-retry"]
    assert audit_service.pending_count() == 0
    assert len(audit_service.list_events(entity_type="quote", entity_id=quote.id)) == 1


def test_list_events_scoped_by_business(db_session):
    for business_id in (1, 2):
        audit_service.record_event(
            business_id=business_id, entity_type="invoice", entity_id=9, action="invoice.sent",
        )
    db_session.commit()

    assert len(audit_service.list_events(entity_type="invoice", entity_id=9)) == 2
    assert len(audit_service.list_events(entity_type="invoice", entity_id=9, business_id=1)) == 1


def test_health_reports_audit_backlog(client, make_quote, failing_audit):
    make_quote()

    response = client.get("/health", headers=caller_headers())

    assert response.status_code == 200
    assert response.json["status"] == "degraded"
    assert response.json["checks"]["audit"]["details"]["pending"] == 1
