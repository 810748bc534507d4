# Overview: Pytest coverage for document numbering.

"""
Document Numbering Tests

Numbers are {PREFIX}-{YEAR}-{sequence:06d} with an independent sequence per
(business, year, document type). A rolled-back allocation releases its number.
"""

import pytest
from sqlalchemy.exc import OperationalError

from quotebook.errors import AllocationFailed, ValidationError
from quotebook.models import DocumentCounter, Invoice
from quotebook.services import invoice_service, numbering_service
from quotebook.services.numbering_service import (
    format_document_number,
    next_document_number,
    peek_next_document_number,
)

from conftest import BUSINESS_A, BUSINESS_B, CLIENT_ID, item_payload


def allocate(db_session, business_id=BUSINESS_A, document_type="invoice", year=2026):
    number = next_document_number(business_id=business_id, document_type=document_type, year=year)
    db_session.commit()
    return number


class TestAllocation:
    def test_first_numbers_are_sequential(self, db_session):
        assert allocate(db_session) == "INV-2026-000001"
        assert allocate(db_session) == "INV-2026-000002"

    def test_quote_prefix(self, db_session):
        assert allocate(db_session, document_type="quote") == "Q-2026-000001"

    def test_sequences_are_per_business(self, db_session):
        allocate(db_session, business_id=BUSINESS_A)
        allocate(db_session, business_id=BUSINESS_A)

        assert allocate(db_session, business_id=BUSINESS_B) == "INV-2026-000001"

    def test_sequences_are_per_document_type(self, db_session):
        allocate(db_session, document_type="quote")
        allocate(db_session, document_type="quote")

        assert allocate(db_session, document_type="invoice") == "INV-2026-000001"

    def test_sequences_restart_each_year(self, db_session):
        allocate(db_session, year=2026)

        assert allocate(db_session, year=2027) == "INV-2027-000001"

    def test_rolled_back_allocation_releases_number(self, db_session):
        allocate(db_session)
        next_document_number(business_id=BUSINESS_A, document_type="invoice", year=2026)
        db_session.rollback()

        assert allocate(db_session) == "INV-2026-000002"

    def test_counter_row_holds_next_sequence(self, db_session):
        allocate(db_session)
        allocate(db_session)

        counter = db_session.query(DocumentCounter).filter_by(
            business_id=BUSINESS_A, year=2026, document_type="invoice"
        ).one()
        assert counter.next_number == 3

    def test_unknown_document_type_rejected(self, db_session):
        with pytest.raises(ValidationError):
            next_document_number(business_id=BUSINESS_A, document_type="receipt", year=2026)

    def test_missing_business_rejected(self, db_session):
        with pytest.raises(ValidationError):
            next_document_number(business_id=None, document_type="invoice", year=2026)


@pytest.fixture
def locked_counter(app, monkeypatch):
    """Every counter write fails as if the row were locked; returns the attempt log."""
    attempts = []

    def _locked(**kwargs):
        attempts.append(kwargs)
        raise OperationalError("UPDATE document_counters", {}, Exception("database is locked"))

    monkeypatch.setattr(numbering_service, "_upsert_sequence", _locked)
    monkeypatch.setattr(numbering_service, "_update_then_insert", _locked)
    monkeypatch.setitem(app.config, "NUMBERING_MAX_ATTEMPTS", 3)
    monkeypatch.setitem(app.config, "NUMBERING_BACKOFF_BASE", 0)
    return attempts


class TestAllocationFailure:
    def test_exhausted_retries_raise_allocation_failed(self, db_session, locked_counter):
        with pytest.raises(AllocationFailed) as exc_info:
            next_document_number(business_id=BUSINESS_A, document_type="invoice", year=2026)

        assert len(locked_counter) == 3
        assert exc_info.value.http_status == 503
        assert exc_info.value.details["document_type"] == "invoice"
        assert db_session.query(DocumentCounter).count() == 0

    def test_failed_allocation_creates_no_document(self, db_session, locked_counter):
        with pytest.raises(AllocationFailed):
            invoice_service.create_invoice(
                business_id=BUSINESS_A,
                payload={"client_id": CLIENT_ID, "items": [item_payload()]},
            )

        assert len(locked_counter) == 3
        assert db_session.query(Invoice).count() == 0
        assert db_session.query(DocumentCounter).count() == 0

    def test_allocation_recovers_after_transient_lock(self, app, db_session, monkeypatch):
        original = numbering_service._upsert_sequence
        calls = []

        def flaky(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise OperationalError("UPDATE document_counters", {}, Exception("database is locked"))
            return original(**kwargs)

        monkeypatch.setattr(numbering_service, "_upsert_sequence", flaky)
        monkeypatch.setitem(app.config, "NUMBERING_BACKOFF_BASE", 0)

        assert allocate(db_session) == "INV-2026-000001"
        assert len(calls) == 2


class TestPeek:
    def test_peek_before_any_allocation(self, db_session):
        preview = peek_next_document_number(business_id=BUSINESS_A, document_type="quote", year=2026)

        assert preview["next_sequence"] == 1
        assert preview["next_number"] == "Q-2026-000001"

    def test_peek_does_not_allocate(self, db_session):
        allocate(db_session)
        first = peek_next_document_number(business_id=BUSINESS_A, document_type="invoice", year=2026)
        second = peek_next_document_number(business_id=BUSINESS_A, document_type="invoice", year=2026)

        assert first == second
        assert first["next_number"] == "INV-2026-000002"
        assert allocate(db_session) == "INV-2026-000002"


def test_format_pads_to_six_digits():
    assert format_document_number(prefix="Q", year=2026, sequence=42) == "Q-2026-000042"
    assert format_document_number(prefix="INV", year=2026, sequence=1234567) == "INV-2026-1234567"
