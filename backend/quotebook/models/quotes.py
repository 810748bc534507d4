from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..money import format_money, quantize_money
from ..time_utils import to_utc_z, to_iso_date
from .pricing import PricingColumnsMixin


# =============================================================================
# QUOTE STATE (tagged variant)
# =============================================================================

QUOTE_DRAFT = "draft"
QUOTE_SENT = "sent"
QUOTE_ACCEPTED = "accepted"      # accepted + locked
QUOTE_REVISING = "revising"      # accepted + unlocked (amendment in progress)
QUOTE_REJECTED = "rejected"
QUOTE_EXPIRED = "expired"

QUOTE_STATES = (
    QUOTE_DRAFT,
    QUOTE_SENT,
    QUOTE_ACCEPTED,
    QUOTE_REVISING,
    QUOTE_REJECTED,
    QUOTE_EXPIRED,
)

# States whose items and pricing may change
EDITABLE_QUOTE_STATES = (QUOTE_DRAFT, QUOTE_REVISING)


@dataclass(frozen=True)
class QuoteState:
    """
    Public view of the persisted `state` column.

    Draft | Sent | Accepted(locked) | Rejected | Expired. Only the
    accepted variant carries a lock flag, so Draft-and-locked has no
    encoding at all.
    """
    status: str
    is_locked: bool

    @classmethod
    def from_code(cls, code: str) -> "QuoteState":
        if code not in QUOTE_STATES:
            raise ValueError(f"Unknown quote state '{code}'")
        if code == QUOTE_ACCEPTED:
            return cls(status="accepted", is_locked=True)
        if code == QUOTE_REVISING:
            return cls(status="accepted", is_locked=False)
        return cls(status=code, is_locked=False)


class Quote(PricingColumnsMixin, db.Model):
    """
    Priced, revisable proposal sent to a client before work starts.

    LIFECYCLE:
        draft -> sent -> accepted (locked) | rejected | expired
        accepted (locked) -> revising (unlocked) -> accepted (locked)

    Items and pricing are editable only in draft and revising.
    """
    __tablename__ = "quotes"
    __table_args__ = (
        db.UniqueConstraint("business_id", "number", name="uq_quotes_business_number"),
        db.CheckConstraint(
            "state IN ('draft', 'sent', 'accepted', 'revising', 'rejected', 'expired')",
            name="ck_quotes_state",
        ),
        db.Index("ix_quotes_business_state_created", "business_id", "state", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, nullable=False, index=True)
    client_id = db.Column(db.Integer, nullable=False, index=True)

    # Human-readable document number (e.g., "Q-2026-000001")
    number = db.Column(db.String(32), nullable=False)

    state = db.Column(db.String(16), nullable=False, default=QUOTE_DRAFT, index=True)
    revision_number = db.Column(db.Integer, nullable=False, default=0)
    parent_quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=True, index=True)

    title = db.Column(db.String(200), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    terms = db.Column(db.Text, nullable=True)
    valid_until = db.Column(db.Date, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Acceptance audit trail
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_by = db.Column(db.Integer, nullable=True)
    acceptance_note = db.Column(db.Text, nullable=True)

    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    items = db.relationship(
        "QuoteItem",
        back_populates="quote",
        order_by="[QuoteItem.sort_order, QuoteItem.id]",
        cascade="all, delete-orphan",
    )
    parent_quote = db.relationship("Quote", remote_side=[id])

    @property
    def quote_state(self) -> QuoteState:
        return QuoteState.from_code(self.state)

    @property
    def status(self) -> str:
        return self.quote_state.status

    @property
    def is_locked(self) -> bool:
        return self.quote_state.is_locked

    @property
    def is_editable(self) -> bool:
        return self.state in EDITABLE_QUOTE_STATES

    def __repr__(self) -> str:
        return f"<Quote id={self.id} number={self.number!r} state={self.state}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "number": self.number,
            "status": self.status,
            "is_locked": self.is_locked,
            "revision_number": self.revision_number,
            "parent_quote_id": self.parent_quote_id,
            "title": self.title,
            "notes": self.notes,
            "terms": self.terms,
            "valid_until": to_iso_date(self.valid_until),
            "pricing": self.pricing_snapshot(),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "sent_at": to_utc_z(self.sent_at),
            "accepted_at": to_utc_z(self.accepted_at),
            "accepted_by": self.accepted_by,
            "acceptance_note": self.acceptance_note,
            "rejected_at": to_utc_z(self.rejected_at),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
        }


class QuoteItem(db.Model):
    """Line item on a quote. VAT is priced at document level on quotes."""
    __tablename__ = "quote_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)

    item_type = db.Column(db.String(16), nullable=False, default="material")  # material, labour, custom
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    unit = db.Column(db.String(20), nullable=True)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)

    # Optional per-line rate, carried onto the invoice when converted
    vat_rate = db.Column(db.Numeric(5, 2), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    quote = db.relationship("Quote", back_populates="items")

    @property
    def line_subtotal(self):
        return quantize_money(self.quantity * self.unit_price)

    def snapshot(self) -> dict:
        """JSON-safe immutable copy used by revisions and acceptances."""
        return {
            "id": self.id,
            "item_type": self.item_type,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "unit_price": format_money(self.unit_price),
            "vat_rate": format_money(self.vat_rate),
            "sort_order": self.sort_order,
        }

    def to_dict(self) -> dict:
        data = self.snapshot()
        data.update({
            "quote_id": self.quote_id,
            "line_subtotal": format_money(self.line_subtotal),
            "created_at": to_utc_z(self.created_at),
        })
        return data


class QuoteRevision(db.Model):
    """
    Immutable snapshot written when an accepted, locked quote is reopened.

    WHY: Revisions are historical records, never retroactive mutation.
    The snapshot holds the pre-change items, pricing and totals.
    """
    __tablename__ = "quote_revisions"
    __table_args__ = (
        db.UniqueConstraint("quote_id", "revision_number", name="uq_quote_revisions_quote_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)
    revision_number = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)

    items_snapshot = db.Column(db.JSON, nullable=False)
    pricing_snapshot = db.Column(db.JSON, nullable=False)
    totals_snapshot = db.Column(db.JSON, nullable=False)

    changed_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    quote = db.relationship("Quote", backref=db.backref("revisions", lazy=True, order_by="QuoteRevision.revision_number"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "revision_number": self.revision_number,
            "reason": self.reason,
            "items_snapshot": self.items_snapshot,
            "pricing_snapshot": self.pricing_snapshot,
            "totals_snapshot": self.totals_snapshot,
            "changed_by": self.changed_by,
            "created_at": to_utc_z(self.created_at),
        }


class QuoteAcceptance(db.Model):
    """
    Totals frozen at the moment a quote was accepted.

    One row per (quote, revision_number): a duplicate accept is a no-op and
    a re-acceptance after revision gets its own row.
    """
    __tablename__ = "quote_acceptances"
    __table_args__ = (
        db.UniqueConstraint("quote_id", "revision_number", name="uq_quote_acceptances_quote_revision"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=False, index=True)
    revision_number = db.Column(db.Integer, nullable=False)

    items_snapshot = db.Column(db.JSON, nullable=False)
    pricing_snapshot = db.Column(db.JSON, nullable=False)
    totals_snapshot = db.Column(db.JSON, nullable=False)

    accepted_by = db.Column(db.Integer, nullable=True)
    note = db.Column(db.Text, nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=False)

    quote = db.relationship("Quote", backref=db.backref("acceptances", lazy=True, order_by="QuoteAcceptance.revision_number"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "revision_number": self.revision_number,
            "items_snapshot": self.items_snapshot,
            "pricing_snapshot": self.pricing_snapshot,
            "totals_snapshot": self.totals_snapshot,
            "accepted_by": self.accepted_by,
            "note": self.note,
            "accepted_at": to_utc_z(self.accepted_at),
        }
