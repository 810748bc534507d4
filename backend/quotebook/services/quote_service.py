# Overview: Service-layer operations for quotes; state machine, acceptance lock and revisions.

"""
Quote Lifecycle Service

WHY: A quote is the priced promise a contractor makes before work starts.
Once the client accepts it the numbers must not move underneath either party,
so acceptance freezes a snapshot and locks the quote. Later changes go
through an explicit revision that records what the quote looked like before.

STATE MACHINE (persisted `state` column):
    draft ----send----> sent ----accept----> accepted (locked)
                          |                      |
                          +--reject--> rejected  +--create_revision--> revising
                          +--expire--> expired                             |
                                                 accepted <----accept------+

DESIGN PRINCIPLES:
- Every transition is a compare-and-swap on `state`; losing a race raises
  ConcurrentModification carrying the current state
- Items and pricing are editable only in draft and revising
- Totals are recomputed on every read; acceptance and revision snapshots are
  the historical record
- Every transition appends an audit event in the same transaction
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy import delete, func, update

from ..errors import ConcurrentModification, Expired, InvalidTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Invoice, Quote, QuoteAcceptance, QuoteItem, QuoteRevision
from ..models.quotes import (
    QUOTE_ACCEPTED,
    QUOTE_DRAFT,
    QUOTE_EXPIRED,
    QUOTE_REJECTED,
    QUOTE_REVISING,
    QUOTE_SENT,
    QUOTE_STATES,
)
from ..time_utils import today, utcnow
from ..validation import (
    QUOTE_POLICY,
    parse_text,
    require_reason,
    validate_document,
    validate_item,
    validate_pricing,
)
from . import audit_service
from .concurrency import compare_and_swap, lock_for_update, run_with_retry
from .numbering_service import next_document_number
from .totals_service import compute_quote_totals


ACCEPTABLE_FROM = (QUOTE_SENT, QUOTE_REVISING)


# =============================================================================
# HELPERS
# =============================================================================

def _get_quote(quote_id: int, *, business_id: int | None = None, lock: bool = False) -> Quote:
    query = db.session.query(Quote).filter_by(id=quote_id)
    if lock:
        query = lock_for_update(query)
    quote = query.first()
    # Another business's quote is reported as missing, never as forbidden
    if not quote or (business_id is not None and quote.business_id != business_id):
        raise NotFound(f"Quote {quote_id} not found", quote_id=quote_id)
    return quote


def _require_editable(quote: Quote) -> None:
    if not quote.is_editable:
        raise InvalidTransition(
            f"Quote {quote.number} cannot be edited while {quote.state}",
            current_state=quote.state,
        )


def _touch(quote: Quote, **values) -> None:
    """Write edits only if the quote is still in the state we validated against."""
    values["updated_at"] = utcnow()
    compare_and_swap(Quote, quote.id, expected={"state": quote.state}, values=values)


def _audit(quote: Quote, action: str, *, actor_id: int | None, prior_state: str | None, new_state: str | None, note: str | None = None):
    audit_service.record_event(
        business_id=quote.business_id,
        entity_type="quote",
        entity_id=quote.id,
        action=action,
        actor_id=actor_id,
        prior_state=prior_state,
        new_state=new_state,
        note=note,
    )


def _commit() -> None:
    db.session.commit()
    audit_service.dispatch_pending()


def _next_sort_order(quote_id: int) -> int:
    current = (
        db.session.query(func.max(QuoteItem.sort_order))
        .filter(QuoteItem.quote_id == quote_id)
        .scalar()
    )
    return 0 if current is None else current + 1


def _snapshot(quote: Quote) -> tuple[list[dict], dict, dict]:
    items = list(quote.items)
    totals = compute_quote_totals(items, quote)
    return [item.snapshot() for item in items], quote.pricing_snapshot(), totals.to_dict()


def _default_vat_rate() -> Decimal:
    return Decimal(str(current_app.config["DEFAULT_VAT_RATE"]))


# =============================================================================
# CREATION & EDITING
# =============================================================================

def create_quote(*, business_id: int, payload: dict | None = None, actor_id: int | None = None) -> Quote:
    """
    Create a draft quote with a freshly allocated number.

    Body may carry header fields, pricing fields and an "items" list.
    """
    fields, pricing, items = validate_document(payload, policy=QUOTE_POLICY, partial=False)

    def _op() -> Quote:
        # Number first: it must be the first write of the unit of work
        number = next_document_number(business_id=business_id, document_type="quote")
        now = utcnow()

        quote = Quote(
            business_id=business_id,
            number=number,
            state=QUOTE_DRAFT,
            revision_number=0,
            vat_rate=_default_vat_rate(),
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            **fields,
        )
        for key, value in pricing.items():
            setattr(quote, key, value)
        for index, data in enumerate(items or []):
            quote.items.append(QuoteItem(**{"sort_order": index, **data}))

        db.session.add(quote)
        db.session.flush()

        _audit(quote, "quote.created", actor_id=actor_id, prior_state=None, new_state=QUOTE_DRAFT)
        _commit()
        current_app.logger.info("Created quote %s for business %s", quote.number, business_id)
        return quote

    return run_with_retry(_op)


def update_quote(*, quote_id: int, payload: dict, business_id: int | None = None, actor_id: int | None = None) -> Quote:
    """
    Patch header fields, pricing and (optionally) replace the item list.

    Allowed only while the quote is editable (draft or revising).
    """
    fields, pricing, items = validate_document(payload, policy=QUOTE_POLICY, partial=True)

    def _op() -> Quote:
        quote = _get_quote(quote_id, business_id=business_id, lock=True)
        _require_editable(quote)
        validate_pricing(pricing, current=quote.pricing_values())

        _touch(quote, **fields, **pricing)
        if items is not None:
            quote.items.clear()
            db.session.flush()
            for index, data in enumerate(items):
                quote.items.append(QuoteItem(**{"sort_order": index, **data}))
        _commit()
        return quote

    return run_with_retry(_op)


def add_item(*, quote_id: int, payload: dict, business_id: int | None = None) -> QuoteItem:
    data = validate_item(payload)

    def _op() -> QuoteItem:
        quote = _get_quote(quote_id, business_id=business_id, lock=True)
        _require_editable(quote)
        _touch(quote)

        values = dict(data)
        values.setdefault("sort_order", _next_sort_order(quote.id))
        item = QuoteItem(quote_id=quote.id, **values)
        db.session.add(item)
        _commit()
        return item

    return run_with_retry(_op)


def _get_item(quote: Quote, item_id: int) -> QuoteItem:
    item = db.session.query(QuoteItem).filter_by(id=item_id, quote_id=quote.id).first()
    if not item:
        raise NotFound(f"Item {item_id} not found on quote {quote.number}", item_id=item_id)
    return item


def update_item(*, quote_id: int, item_id: int, payload: dict, business_id: int | None = None) -> QuoteItem:
    patch = validate_item(payload, partial=True)

    def _op() -> QuoteItem:
        quote = _get_quote(quote_id, business_id=business_id, lock=True)
        _require_editable(quote)
        item = _get_item(quote, item_id)
        _touch(quote)

        for key, value in patch.items():
            setattr(item, key, value)
        _commit()
        return item

    return run_with_retry(_op)


def remove_item(*, quote_id: int, item_id: int, business_id: int | None = None) -> None:
    def _op() -> None:
        quote = _get_quote(quote_id, business_id=business_id, lock=True)
        _require_editable(quote)
        item = _get_item(quote, item_id)
        _touch(quote)

        db.session.delete(item)
        _commit()

    return run_with_retry(_op)


def delete_quote(*, quote_id: int, business_id: int | None = None, actor_id: int | None = None) -> None:
    """Hard delete. Draft quotes only; anything sent is part of the record."""
    def _op() -> None:
        quote = _get_quote(quote_id, business_id=business_id, lock=True)
        if quote.state != QUOTE_DRAFT:
            raise InvalidTransition(
                f"Cannot delete quote with status: {quote.status}",
                current_state=quote.state,
            )

        snapshot = {"business_id": quote.business_id, "id": quote.id, "number": quote.number}

        # Duplicates outlive their source
        db.session.execute(
            update(Quote)
            .where(Quote.parent_quote_id == snapshot["id"])
            .values(parent_quote_id=None)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(delete(QuoteItem).where(QuoteItem.quote_id == quote.id))
        result = db.session.execute(
            delete(Quote).where(Quote.id == quote.id, Quote.state == QUOTE_DRAFT)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Quote {snapshot['number']} was modified concurrently",
                current_state=db.session.query(Quote.state).filter_by(id=snapshot["id"]).scalar(),
            )

        audit_service.record_event(
            business_id=snapshot["business_id"],
            entity_type="quote",
            entity_id=snapshot["id"],
            action="quote.deleted",
            actor_id=actor_id,
            prior_state=QUOTE_DRAFT,
            new_state=None,
            note=snapshot["number"],
        )
        _commit()

    return run_with_retry(_op)


def duplicate_quote(*, quote_id: int, business_id: int | None = None, actor_id: int | None = None) -> Quote:
    """
    Copy any quote into a new draft linked back through parent_quote_id.

    Items and pricing are copied; lifecycle stamps and revision history are not.
    """
    def _op() -> Quote:
        source = _get_quote(quote_id, business_id=business_id)
        source_items = [item.snapshot() for item in source.items]
        source_pricing = source.pricing_values()

        number = next_document_number(business_id=source.business_id, document_type="quote")
        now = utcnow()
        quote = Quote(
            business_id=source.business_id,
            client_id=source.client_id,
            number=number,
            state=QUOTE_DRAFT,
            revision_number=0,
            parent_quote_id=source.id,
            title=source.title,
            notes=source.notes,
            terms=source.terms,
            valid_until=source.valid_until,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            **source_pricing,
        )
        for snap in source_items:
            quote.items.append(QuoteItem(
                item_type=snap["item_type"],
                description=snap["description"],
                quantity=Decimal(snap["quantity"]),
                unit=snap["unit"],
                unit_price=Decimal(snap["unit_price"]),
                vat_rate=None if snap["vat_rate"] is None else Decimal(snap["vat_rate"]),
                sort_order=snap["sort_order"],
            ))
        db.session.add(quote)
        db.session.flush()

        _audit(quote, "quote.duplicated", actor_id=actor_id, prior_state=None, new_state=QUOTE_DRAFT, note=source.number)
        _commit()
        return quote

    return run_with_retry(_op)


# =============================================================================
# TRANSITIONS
# =============================================================================

def send_quote(*, quote_id: int, business_id: int | None = None, actor_id: int | None = None) -> Quote:
    """draft -> sent. A quote with no items can't be sent."""
    def _op() -> Quote:
        quote = _get_quote(quote_id, business_id=business_id)
        if quote.state != QUOTE_DRAFT:
            raise InvalidTransition(
                f"Cannot send quote with status: {quote.status}",
                current_state=quote.state,
            )
        if not quote.items:
            raise InvalidTransition("Cannot send a quote with no items", current_state=quote.state)

        now = utcnow()
        compare_and_swap(
            Quote, quote.id,
            expected={"state": QUOTE_DRAFT},
            values={"state": QUOTE_SENT, "sent_at": now, "updated_at": now},
        )
        # Items are re-counted under the write so a concurrent removal can't slip through
        item_count = db.session.query(func.count(QuoteItem.id)).filter_by(quote_id=quote.id).scalar()
        if not item_count:
            raise InvalidTransition("Cannot send a quote with no items", current_state=QUOTE_DRAFT)

        _audit(quote, "quote.sent", actor_id=actor_id, prior_state=QUOTE_DRAFT, new_state=QUOTE_SENT)
        _commit()
        return quote

    return run_with_retry(_op)


def accept_quote(
    *,
    quote_id: int,
    business_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
) -> Quote:
    """
    sent | revising -> accepted (locked).

    Freezes items, pricing and totals into a QuoteAcceptance. Accepting a
    quote that is already accepted and locked is a no-op success.
    """
    note = parse_text(note, "note", max_length=1000)

    def _op() -> Quote:
        quote = _get_quote(quote_id, business_id=business_id)
        if quote.state == QUOTE_ACCEPTED:
            return quote
        if quote.state not in ACCEPTABLE_FROM:
            raise InvalidTransition(
                f"Cannot accept quote with status: {quote.state}",
                current_state=quote.state,
            )
        if quote.valid_until is not None and quote.valid_until < today():
            raise Expired(
                f"Quote {quote.number} expired on {quote.valid_until.isoformat()}",
                valid_until=quote.valid_until.isoformat(),
            )

        items_snapshot, pricing_snapshot, totals_snapshot = _snapshot(quote)
        prior_state = quote.state
        revision_number = quote.revision_number
        now = utcnow()

        try:
            compare_and_swap(
                Quote, quote.id,
                expected={"state": prior_state, "revision_number": revision_number},
                values={
                    "state": QUOTE_ACCEPTED,
                    "accepted_at": now,
                    "accepted_by": actor_id,
                    "acceptance_note": note,
                    "updated_at": now,
                },
            )
        except ConcurrentModification as exc:
            # Lost to a concurrent accept: same outcome, report success
            if exc.details.get("current_state") == QUOTE_ACCEPTED:
                db.session.rollback()
                return _get_quote(quote_id, business_id=business_id)
            raise

        db.session.add(QuoteAcceptance(
            quote_id=quote.id,
            revision_number=revision_number,
            items_snapshot=items_snapshot,
            pricing_snapshot=pricing_snapshot,
            totals_snapshot=totals_snapshot,
            accepted_by=actor_id,
            note=note,
            accepted_at=now,
        ))
        db.session.flush()

        _audit(quote, "quote.accepted", actor_id=actor_id, prior_state=prior_state, new_state=QUOTE_ACCEPTED, note=note)
        _commit()
        current_app.logger.info("Quote %s accepted at revision %s", quote.number, revision_number)
        return quote

    return run_with_retry(_op)


def reject_quote(*, quote_id: int, reason: str, business_id: int | None = None, actor_id: int | None = None) -> Quote:
    """sent -> rejected. Terminal; a reason is mandatory."""
    reason = require_reason(reason)

    def _op() -> Quote:
        quote = _get_quote(quote_id, business_id=business_id)
        if quote.state != QUOTE_SENT:
            raise InvalidTransition(
                f"Cannot reject quote with status: {quote.state}",
                current_state=quote.state,
            )

        now = utcnow()
        compare_and_swap(
            Quote, quote.id,
            expected={"state": QUOTE_SENT},
            values={
                "state": QUOTE_REJECTED,
                "rejected_at": now,
                "rejected_by": actor_id,
                "rejection_reason": reason,
                "updated_at": now,
            },
        )
        _audit(quote, "quote.rejected", actor_id=actor_id, prior_state=QUOTE_SENT, new_state=QUOTE_REJECTED, note=reason)
        _commit()
        return quote

    return run_with_retry(_op)


def create_revision(*, quote_id: int, reason: str, business_id: int | None = None, actor_id: int | None = None) -> QuoteRevision:
    """
    accepted (locked) -> revising (unlocked).

    Writes a QuoteRevision holding the pre-change items, pricing and totals,
    and bumps revision_number. Status stays accepted until re-acceptance.
    """
    reason = require_reason(reason)

    def _op() -> QuoteRevision:
        quote = _get_quote(quote_id, business_id=business_id)
        if quote.state != QUOTE_ACCEPTED:
            raise InvalidTransition(
                "Only accepted and locked quotes can be revised",
                current_state=quote.state,
            )

        items_snapshot, pricing_snapshot, totals_snapshot = _snapshot(quote)
        revision_number = quote.revision_number + 1
        now = utcnow()

        compare_and_swap(
            Quote, quote.id,
            expected={"state": QUOTE_ACCEPTED, "revision_number": quote.revision_number},
            values={"state": QUOTE_REVISING, "revision_number": revision_number, "updated_at": now},
        )

        revision = QuoteRevision(
            quote_id=quote.id,
            revision_number=revision_number,
            reason=reason,
            items_snapshot=items_snapshot,
            pricing_snapshot=pricing_snapshot,
            totals_snapshot=totals_snapshot,
            changed_by=actor_id,
            created_at=now,
        )
        db.session.add(revision)
        db.session.flush()

        _audit(quote, "quote.revision_created", actor_id=actor_id, prior_state=QUOTE_ACCEPTED, new_state=QUOTE_REVISING, note=reason)
        _commit()
        return revision

    return run_with_retry(_op)


def expire_quote(*, quote_id: int, business_id: int | None = None, actor_id: int | None = None, as_of: date | None = None) -> Quote:
    """sent -> expired, once valid_until has passed."""
    as_of = as_of or today()

    def _op() -> Quote:
        quote = _get_quote(quote_id, business_id=business_id)
        if quote.state != QUOTE_SENT:
            raise InvalidTransition(
                f"Cannot expire quote with status: {quote.state}",
                current_state=quote.state,
            )
        if quote.valid_until is None or quote.valid_until >= as_of:
            raise InvalidTransition(
                f"Quote {quote.number} is still within its validity period",
                current_state=quote.state,
            )

        compare_and_swap(
            Quote, quote.id,
            expected={"state": QUOTE_SENT},
            values={"state": QUOTE_EXPIRED, "updated_at": utcnow()},
        )
        _audit(quote, "quote.expired", actor_id=actor_id, prior_state=QUOTE_SENT, new_state=QUOTE_EXPIRED)
        _commit()
        return quote

    return run_with_retry(_op)


def expire_stale_quotes(*, business_id: int | None = None, as_of: date | None = None) -> list[int]:
    """
    Expire every sent quote whose validity has passed.

    Quotes that move concurrently (accepted, rejected) are skipped.
    Returns the ids that were expired.
    """
    as_of = as_of or today()
    query = db.session.query(Quote.id).filter(
        Quote.state == QUOTE_SENT,
        Quote.valid_until.isnot(None),
        Quote.valid_until < as_of,
    )
    if business_id is not None:
        query = query.filter(Quote.business_id == business_id)
    candidate_ids = [row.id for row in query.order_by(Quote.id).all()]

    expired = []
    for quote_id in candidate_ids:
        try:
            expire_quote(quote_id=quote_id, as_of=as_of)
        except (ConcurrentModification, InvalidTransition) as exc:
            current_app.logger.info("Skipped expiring quote %s: %s", quote_id, exc)
            continue
        expired.append(quote_id)
    return expired


# =============================================================================
# READS
# =============================================================================

def get_quote(*, quote_id: int, business_id: int | None = None) -> Quote:
    return _get_quote(quote_id, business_id=business_id)


def get_quote_detail(*, quote_id: int, business_id: int | None = None) -> dict:
    """Quote with items and freshly recomputed totals."""
    quote = _get_quote(quote_id, business_id=business_id)
    items = list(quote.items)
    invoice_id = db.session.query(Invoice.id).filter_by(quote_id=quote.id).scalar()

    data = quote.to_dict()
    data["items"] = [item.to_dict() for item in items]
    data["totals"] = compute_quote_totals(items, quote).to_dict()
    data["invoice_id"] = invoice_id
    return data


def list_quotes(
    *,
    business_id: int,
    status: str | None = None,
    client_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Quote]:
    query = db.session.query(Quote).filter(Quote.business_id == business_id)
    if status:
        if status == "accepted":
            # Public status "accepted" covers the locked and revising variants
            query = query.filter(Quote.state.in_((QUOTE_ACCEPTED, QUOTE_REVISING)))
        elif status in QUOTE_STATES:
            query = query.filter(Quote.state == status)
        else:
            raise ValidationError(f"status must be one of: {', '.join(QUOTE_STATES)}")
    if client_id is not None:
        query = query.filter(Quote.client_id == client_id)
    return query.order_by(Quote.created_at.desc(), Quote.id.desc()).offset(offset).limit(limit).all()


def list_revisions(*, quote_id: int, business_id: int | None = None) -> list[QuoteRevision]:
    quote = _get_quote(quote_id, business_id=business_id)
    return (
        db.session.query(QuoteRevision)
        .filter_by(quote_id=quote.id)
        .order_by(QuoteRevision.revision_number.asc())
        .all()
    )


def list_acceptances(*, quote_id: int, business_id: int | None = None) -> list[QuoteAcceptance]:
    quote = _get_quote(quote_id, business_id=business_id)
    return (
        db.session.query(QuoteAcceptance)
        .filter_by(quote_id=quote.id)
        .order_by(QuoteAcceptance.revision_number.asc())
        .all()
    )
