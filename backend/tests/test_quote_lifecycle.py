# Overview: Pytest coverage for the quote state machine, locking and revisions.

"""
Quote Lifecycle Tests

draft -> sent -> accepted (locked) | rejected | expired, and the
accepted -> revising -> accepted loop. Acceptance freezes a snapshot; a
locked quote refuses edits; every transition leaves an audit event.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from quotebook.errors import ConcurrentModification, Expired, InvalidTransition, NotFound, ValidationError
from quotebook.extensions import db
from quotebook.models import Quote, QuoteAcceptance, QuoteRevision
from quotebook.services import audit_service, quote_service
from quotebook.time_utils import today

from conftest import ACTOR_ID, BUSINESS_A, BUSINESS_B, CLIENT_ID, item_payload


class TestCreateAndEdit:
    def test_create_allocates_number_and_starts_draft(self, make_quote):
        quote = make_quote()

        assert quote.number == f"Q-{today().year}-000001"
        assert quote.state == "draft"
        assert quote.status == "draft"
        assert quote.is_locked is False
        assert quote.revision_number == 0
        assert len(quote.items) == 1

    def test_create_requires_client(self, db_session):
        with pytest.raises(ValidationError):
            quote_service.create_quote(business_id=BUSINESS_A, payload={"title": "No client"})

    def test_create_rejects_unknown_fields(self, db_session):
        with pytest.raises(ValidationError):
            quote_service.create_quote(
                business_id=BUSINESS_A,
                payload={"client_id": CLIENT_ID, "total": "5.00"},
            )

    def test_failed_create_does_not_consume_a_number(self, make_quote):
        with pytest.raises(ValidationError):
            make_quote(items=[item_payload(quantity="-1")])

        assert make_quote().number == f"Q-{today().year}-000001"

    def test_detail_recomputes_totals(self, make_quote):
        quote = make_quote(deposit_type="percent", deposit_value="30")

        detail = quote_service.get_quote_detail(quote_id=quote.id, business_id=BUSINESS_A)

        assert detail["totals"]["subtotal"] == "1000.00"
        assert detail["totals"]["vat_amount"] == "200.00"
        assert detail["totals"]["total"] == "1200.00"
        assert detail["totals"]["deposit_amount"] == "360.00"
        assert detail["invoice_id"] is None

    def test_percent_adjustment_over_100_rejected(self, make_quote):
        with pytest.raises(ValidationError):
            make_quote(discount_type="percent", discount_value="150")

    def test_update_replaces_items(self, make_quote):
        quote = make_quote()

        quote_service.update_quote(
            quote_id=quote.id,
            payload={"title": "Bathroom", "items": [item_payload(unit_price="10.00"), item_payload(unit_price="5.00")]},
            business_id=BUSINESS_A,
        )

        detail = quote_service.get_quote_detail(quote_id=quote.id)
        assert detail["title"] == "Bathroom"
        assert len(detail["items"]) == 2
        assert detail["totals"]["subtotal"] == "15.00"

    def test_item_add_update_remove(self, make_quote):
        quote = make_quote()

        item = quote_service.add_item(quote_id=quote.id, payload=item_payload("Tiles", quantity="4", unit_price="25.00"))
        assert item.sort_order == 1

        quote_service.update_item(quote_id=quote.id, item_id=item.id, payload={"quantity": "2"})
        assert quote_service.get_quote_detail(quote_id=quote.id)["totals"]["subtotal"] == "1050.00"

        quote_service.remove_item(quote_id=quote.id, item_id=item.id)
        assert quote_service.get_quote_detail(quote_id=quote.id)["totals"]["subtotal"] == "1000.00"

    def test_other_business_sees_not_found(self, make_quote):
        quote = make_quote()

        with pytest.raises(NotFound):
            quote_service.get_quote(quote_id=quote.id, business_id=BUSINESS_B)
        with pytest.raises(NotFound):
            quote_service.send_quote(quote_id=quote.id, business_id=BUSINESS_B)


class TestTransitions:
    def test_send(self, make_quote):
        quote = make_quote()

        quote_service.send_quote(quote_id=quote.id, actor_id=ACTOR_ID)

        quote = quote_service.get_quote(quote_id=quote.id)
        assert quote.status == "sent"
        assert quote.sent_at is not None

    def test_send_without_items_rejected(self, make_quote):
        quote = make_quote(items=[])

        with pytest.raises(InvalidTransition):
            quote_service.send_quote(quote_id=quote.id)

    def test_send_twice_rejected(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(InvalidTransition) as exc_info:
            quote_service.send_quote(quote_id=quote.id)
        assert exc_info.value.details["current_state"] == "sent"

    def test_accept_locks_and_snapshots(self, db_session, accepted_quote):
        quote = quote_service.get_quote(quote_id=accepted_quote.id)

        assert quote.status == "accepted"
        assert quote.is_locked is True
        assert quote.accepted_by == ACTOR_ID

        acceptance = db_session.query(QuoteAcceptance).filter_by(quote_id=quote.id).one()
        assert acceptance.revision_number == 0
        assert acceptance.totals_snapshot["total"] == "1200.00"
        assert acceptance.items_snapshot[0]["unit_price"] == "1000.00"

    def test_accept_again_is_a_noop(self, db_session, accepted_quote):
        quote = quote_service.accept_quote(quote_id=accepted_quote.id)

        assert quote.is_locked is True
        assert db_session.query(QuoteAcceptance).filter_by(quote_id=quote.id).count() == 1

    def test_accept_draft_rejected(self, make_quote):
        quote = make_quote()

        with pytest.raises(InvalidTransition):
            quote_service.accept_quote(quote_id=quote.id)

    def test_accept_after_validity_raises_expired(self, make_quote):
        quote = make_quote(valid_until=(today() - timedelta(days=1)).isoformat())
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(Expired):
            quote_service.accept_quote(quote_id=quote.id)
        assert quote_service.get_quote(quote_id=quote.id).status == "sent"

    def test_accept_on_last_valid_day(self, make_quote):
        quote = make_quote(valid_until=today().isoformat())
        quote_service.send_quote(quote_id=quote.id)

        assert quote_service.accept_quote(quote_id=quote.id).status == "accepted"

    def test_reject_records_reason(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)

        quote_service.reject_quote(quote_id=quote.id, reason="Too expensive", actor_id=ACTOR_ID)

        quote = quote_service.get_quote(quote_id=quote.id)
        assert quote.status == "rejected"
        assert quote.rejection_reason == "Too expensive"

    def test_reject_requires_reason(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(ValidationError):
            quote_service.reject_quote(quote_id=quote.id, reason="   ")

    def test_rejected_is_terminal(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)
        quote_service.reject_quote(quote_id=quote.id, reason="No")

        with pytest.raises(InvalidTransition):
            quote_service.accept_quote(quote_id=quote.id)

    def test_accepted_quote_refuses_edits(self, accepted_quote):
        with pytest.raises(InvalidTransition):
            quote_service.update_quote(quote_id=accepted_quote.id, payload={"title": "Changed"})
        with pytest.raises(InvalidTransition):
            quote_service.add_item(quote_id=accepted_quote.id, payload=item_payload())

        detail = quote_service.get_quote_detail(quote_id=accepted_quote.id)
        assert detail["totals"]["total"] == "1200.00"


class TestRevisions:
    def test_revision_unlocks_and_reaccept_relocks(self, db_session, accepted_quote):
        revision = quote_service.create_revision(
            quote_id=accepted_quote.id, reason="Client added a room", actor_id=ACTOR_ID,
        )

        assert revision.revision_number == 1
        assert revision.totals_snapshot["total"] == "1200.00"

        quote = quote_service.get_quote(quote_id=accepted_quote.id)
        assert quote.revision_number == 1
        assert quote.status == "accepted"
        assert quote.is_locked is False

        quote_service.add_item(quote_id=quote.id, payload=item_payload("Extra room", unit_price="500.00"))
        quote_service.accept_quote(quote_id=quote.id)

        quote = quote_service.get_quote(quote_id=quote.id)
        assert quote.is_locked is True
        assert db_session.query(QuoteRevision).filter_by(quote_id=quote.id).count() == 1

        acceptances = quote_service.list_acceptances(quote_id=quote.id)
        assert [a.revision_number for a in acceptances] == [0, 1]
        assert acceptances[1].totals_snapshot["total"] == "1800.00"

    def test_revision_requires_reason(self, accepted_quote):
        with pytest.raises(ValidationError):
            quote_service.create_revision(quote_id=accepted_quote.id, reason="")

    def test_revision_only_from_accepted_and_locked(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(InvalidTransition):
            quote_service.create_revision(quote_id=quote.id, reason="Too early")

    def test_revision_while_revising_rejected(self, accepted_quote):
        quote_service.create_revision(quote_id=accepted_quote.id, reason="First")

        with pytest.raises(InvalidTransition):
            quote_service.create_revision(quote_id=accepted_quote.id, reason="Second")


@pytest.fixture
def moved_underneath(monkeypatch):
    """
    Make the next quote load return a stale copy.

    The row is loaded, detached, then changed and committed by a plain
    UPDATE, so the service validates against the old state and only the
    conditional write sees the new one.
    """
    original = quote_service._get_quote

    def arm(**values):
        fired = []

        def _stale_get(quote_id, **kwargs):
            quote = original(quote_id, **kwargs)
            if fired:
                return quote
            fired.append(quote_id)
            list(quote.items)
            db.session.expunge(quote)
            db.session.execute(
                update(Quote)
                .where(Quote.id == quote_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            return quote

        monkeypatch.setattr(quote_service, "_get_quote", _stale_get)

    return arm


class TestConcurrentTransitions:
    def test_send_after_concurrent_send(self, make_quote, moved_underneath):
        quote = make_quote()
        moved_underneath(state="sent")

        with pytest.raises(ConcurrentModification) as exc_info:
            quote_service.send_quote(quote_id=quote.id)

        assert exc_info.value.http_status == 409
        assert exc_info.value.details["current_state"] == "sent"

    def test_accept_after_concurrent_expiry(self, db_session, make_quote, moved_underneath):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)
        moved_underneath(state="expired")

        with pytest.raises(ConcurrentModification) as exc_info:
            quote_service.accept_quote(quote_id=quote.id)

        assert exc_info.value.details["current_state"] == "expired"
        assert db_session.query(QuoteAcceptance).filter_by(quote_id=quote.id).count() == 0

    def test_accept_losing_to_concurrent_accept_succeeds(self, db_session, make_quote, moved_underneath):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)
        moved_underneath(state="accepted")

        result = quote_service.accept_quote(quote_id=quote.id)

        assert result.state == "accepted"
        assert result.is_locked is True
        # The winning writer owns the acceptance record
        assert db_session.query(QuoteAcceptance).filter_by(quote_id=quote.id).count() == 0

    def test_revision_after_concurrent_revision(self, db_session, accepted_quote, moved_underneath):
        moved_underneath(state="revising", revision_number=1)

        with pytest.raises(ConcurrentModification) as exc_info:
            quote_service.create_revision(quote_id=accepted_quote.id, reason="Extra socket")

        assert exc_info.value.details["current_state"] == "revising"
        assert db_session.query(QuoteRevision).filter_by(quote_id=accepted_quote.id).count() == 0


class TestDeleteAndDuplicate:
    def test_delete_draft(self, db_session, make_quote):
        quote = make_quote()
        quote_id = quote.id

        quote_service.delete_quote(quote_id=quote_id, actor_id=ACTOR_ID)

        assert db_session.get(Quote, quote_id) is None

    def test_delete_sent_rejected(self, make_quote):
        quote = make_quote()
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(InvalidTransition):
            quote_service.delete_quote(quote_id=quote.id)

    def test_duplicate_copies_into_new_draft(self, accepted_quote):
        copy = quote_service.duplicate_quote(quote_id=accepted_quote.id, actor_id=ACTOR_ID)

        assert copy.id != accepted_quote.id
        assert copy.state == "draft"
        assert copy.parent_quote_id == accepted_quote.id
        assert copy.number == f"Q-{today().year}-000002"
        assert quote_service.get_quote_detail(quote_id=copy.id)["totals"]["total"] == "1200.00"

    def test_deleting_parent_keeps_duplicate(self, make_quote):
        original = make_quote()
        copy = quote_service.duplicate_quote(quote_id=original.id)

        quote_service.delete_quote(quote_id=original.id)

        assert quote_service.get_quote(quote_id=copy.id).parent_quote_id is None


class TestExpiryAndListing:
    def test_expire_stale_only_touches_past_validity(self, make_quote):
        yesterday = (today() - timedelta(days=1)).isoformat()
        stale = make_quote(valid_until=yesterday)
        fresh = make_quote(valid_until=(today() + timedelta(days=10)).isoformat())
        draft = make_quote(valid_until=yesterday)
        for quote in (stale, fresh):
            quote_service.send_quote(quote_id=quote.id)

        expired = quote_service.expire_stale_quotes(business_id=BUSINESS_A)

        assert expired == [stale.id]
        assert quote_service.get_quote(quote_id=stale.id).status == "expired"
        assert quote_service.get_quote(quote_id=fresh.id).status == "sent"
        assert quote_service.get_quote(quote_id=draft.id).status == "draft"

    def test_expire_within_validity_rejected(self, make_quote):
        quote = make_quote(valid_until=today().isoformat())
        quote_service.send_quote(quote_id=quote.id)

        with pytest.raises(InvalidTransition):
            quote_service.expire_quote(quote_id=quote.id)

    def test_accepted_filter_includes_revising(self, accepted_quote, make_quote):
        make_quote()
        quote_service.create_revision(quote_id=accepted_quote.id, reason="Change")

        quotes = quote_service.list_quotes(business_id=BUSINESS_A, status="accepted")

        assert [q.id for q in quotes] == [accepted_quote.id]

    def test_list_is_scoped_to_business(self, make_quote):
        make_quote(business_id=BUSINESS_A)
        make_quote(business_id=BUSINESS_B)

        assert len(quote_service.list_quotes(business_id=BUSINESS_A)) == 1

    def test_unknown_status_filter_rejected(self, db_session):
        with pytest.raises(ValidationError):
            quote_service.list_quotes(business_id=BUSINESS_A, status="archived")


def test_transitions_are_audited(accepted_quote):
    quote_service.create_revision(quote_id=accepted_quote.id, reason="Scope change")

    events = audit_service.list_events(entity_type="quote", entity_id=accepted_quote.id)

    assert [e.action for e in events] == [
        "quote.created",
        "quote.sent",
        "quote.accepted",
        "quote.revision_created",
    ]
    assert events[2].prior_state == "sent"
    assert events[2].new_state == "accepted"
    assert events[3].note == "Scope change"
