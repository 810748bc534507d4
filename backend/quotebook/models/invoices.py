from __future__ import annotations

from ..extensions import db
from ..money import format_money, quantize_money
from ..time_utils import to_utc_z, to_iso_date
from .pricing import PricingColumnsMixin


# =============================================================================
# INVOICE STATUS (CONSTANTS)
# =============================================================================

INVOICE_DRAFT = "draft"
INVOICE_SENT = "sent"
INVOICE_PARTIALLY_PAID = "partially_paid"
INVOICE_PAID = "paid"
INVOICE_CANCELLED = "cancelled"

# Derived at read time only, never persisted
INVOICE_OVERDUE = "overdue"

INVOICE_STATUSES = (
    INVOICE_DRAFT,
    INVOICE_SENT,
    INVOICE_PARTIALLY_PAID,
    INVOICE_PAID,
    INVOICE_CANCELLED,
)


class Invoice(PricingColumnsMixin, db.Model):
    """
    Billing document, optionally derived from an accepted quote.

    LIFECYCLE:
        draft -> sent -> partially_paid -> paid
        any non-paid state -> cancelled

    Items and pricing are frozen once the invoice leaves draft. Totals are
    never stored; they are recomputed from items and payments on read.

    quote_id is UNIQUE so the store itself refuses a second conversion of
    the same quote.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("business_id", "number", name="uq_invoices_business_number"),
        db.UniqueConstraint("quote_id", name="uq_invoices_quote_id"),
        db.CheckConstraint(
            "status IN ('draft', 'sent', 'partially_paid', 'paid', 'cancelled')",
            name="ck_invoices_status",
        ),
        db.Index("ix_invoices_business_status_due", "business_id", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, nullable=False, index=True)
    client_id = db.Column(db.Integer, nullable=False, index=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=True)

    # Human-readable document number (e.g., "INV-2026-000001")
    number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=INVOICE_DRAFT, index=True)

    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    terms = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        order_by="[InvoiceItem.sort_order, InvoiceItem.id]",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "InvoicePayment",
        back_populates="invoice",
        order_by="[InvoicePayment.paid_at, InvoicePayment.id]",
    )
    quote = db.relationship("Quote", backref=db.backref("invoice", uselist=False, lazy=True))

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "client_id": self.client_id,
            "quote_id": self.quote_id,
            "number": self.number,
            "status": self.status,
            "issue_date": to_iso_date(self.issue_date),
            "due_date": to_iso_date(self.due_date),
            "notes": self.notes,
            "terms": self.terms,
            "pricing": self.pricing_snapshot(),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "sent_at": to_utc_z(self.sent_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }


class InvoiceItem(db.Model):
    """Line item on an invoice. Each line carries its own VAT rate."""
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    item_type = db.Column(db.String(16), nullable=False, default="material")  # material, labour, custom
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    unit = db.Column(db.String(20), nullable=True)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    vat_rate = db.Column(db.Numeric(5, 2), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    # Provenance when copied from a quote
    source_quote_item_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", back_populates="items")

    @property
    def line_subtotal(self):
        return quantize_money(self.quantity * self.unit_price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "item_type": self.item_type,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "unit_price": format_money(self.unit_price),
            "vat_rate": format_money(self.vat_rate),
            "sort_order": self.sort_order,
            "line_subtotal": format_money(self.line_subtotal),
            "source_quote_item_id": self.source_quote_item_id,
            "created_at": to_utc_z(self.created_at),
        }


class InvoicePayment(db.Model):
    """
    Payment applied to an invoice.

    Append-only: rows are never updated or deleted. amount_paid and
    balance_due are always derived from SUM(amount), never cached.
    """
    __tablename__ = "invoice_payments"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_invoice_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    method = db.Column(db.String(16), nullable=False)  # bank, cash, card, other
    reference = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False)
    recorded_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount": format_money(self.amount),
            "method": self.method,
            "reference": self.reference,
            "notes": self.notes,
            "paid_at": to_utc_z(self.paid_at),
            "recorded_by": self.recorded_by,
            "created_at": to_utc_z(self.created_at),
        }
