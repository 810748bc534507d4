# Overview: Service-layer operations for invoices; state machine, editing and derived overdue status.

"""
Invoice Lifecycle Service

WHY: An invoice is what the client actually owes. It is either raised
standalone or derived from an accepted quote (see conversion_service), and
its balance is always reconciled against the payment ledger.

STATE MACHINE (persisted `status` column):
    draft --send--> sent --payment--> partially_paid --payment--> paid
    draft | sent | partially_paid --cancel--> cancelled

Overdue is never stored. effective_status() derives it at read time from
due_date, balance_due and status.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import delete, func

from ..errors import InvalidTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Invoice, InvoiceItem, InvoicePayment
from ..models.invoices import (
    INVOICE_CANCELLED,
    INVOICE_DRAFT,
    INVOICE_OVERDUE,
    INVOICE_PAID,
    INVOICE_PARTIALLY_PAID,
    INVOICE_SENT,
    INVOICE_STATUSES,
)
from ..money import ZERO
from ..time_utils import today, utcnow
from ..validation import (
    INVOICE_POLICY,
    parse_text,
    validate_document,
    validate_item,
    validate_pricing,
)
from . import audit_service
from .concurrency import compare_and_swap, lock_for_update, run_with_retry
from .numbering_service import next_document_number
from .totals_service import Totals, compute_invoice_totals


# Statuses that can carry an outstanding balance past its due date
OPEN_STATUSES = (INVOICE_SENT, INVOICE_PARTIALLY_PAID)


# =============================================================================
# HELPERS
# =============================================================================

def get_invoice(invoice_id: int, *, business_id: int | None = None, lock: bool = False) -> Invoice:
    query = db.session.query(Invoice).filter_by(id=invoice_id)
    if lock:
        query = lock_for_update(query)
    invoice = query.first()
    if not invoice or (business_id is not None and invoice.business_id != business_id):
        raise NotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return invoice


def _require_draft(invoice: Invoice) -> None:
    if invoice.status != INVOICE_DRAFT:
        raise InvalidTransition(
            f"Invoice {invoice.number} cannot be edited while {invoice.status}",
            current_status=invoice.status,
        )


def _touch(invoice: Invoice, **values) -> None:
    values["updated_at"] = utcnow()
    compare_and_swap(
        Invoice, invoice.id,
        expected={"status": invoice.status},
        values=values,
        state_field="status",
    )


def _audit(invoice: Invoice, action: str, *, actor_id: int | None, prior_state: str | None, new_state: str | None, note: str | None = None):
    audit_service.record_event(
        business_id=invoice.business_id,
        entity_type="invoice",
        entity_id=invoice.id,
        action=action,
        actor_id=actor_id,
        prior_state=prior_state,
        new_state=new_state,
        note=note,
    )


def _commit() -> None:
    db.session.commit()
    audit_service.dispatch_pending()


def payments_total(invoice_id: int) -> Decimal:
    """Fresh SQL SUM of the payment ledger; never a cached column."""
    total = (
        db.session.query(func.coalesce(func.sum(InvoicePayment.amount), 0))
        .filter(InvoicePayment.invoice_id == invoice_id)
        .scalar()
    )
    return Decimal(str(total or 0)).quantize(Decimal("0.01"))


def payment_terms_due_date(issue_date: date) -> date:
    return issue_date + timedelta(days=int(current_app.config["INVOICE_PAYMENT_TERMS_DAYS"]))


def default_vat_rate() -> Decimal:
    return Decimal(str(current_app.config["DEFAULT_VAT_RATE"]))


# =============================================================================
# TOTALS & DERIVED STATUS
# =============================================================================

def invoice_totals(invoice: Invoice) -> Totals:
    return compute_invoice_totals(invoice.items, invoice, [payments_total(invoice.id)])


def effective_status(invoice: Invoice, totals: Totals, *, as_of: date | None = None) -> str:
    """
    Persisted status, or "overdue" when an open invoice is past its due
    date with money still owed.
    """
    as_of = as_of or today()
    if (
        invoice.status in OPEN_STATUSES
        and invoice.due_date is not None
        and invoice.due_date < as_of
        and totals.balance_due > ZERO
    ):
        return INVOICE_OVERDUE
    return invoice.status


# =============================================================================
# CREATION & EDITING
# =============================================================================

def create_invoice(*, business_id: int, payload: dict | None = None, actor_id: int | None = None) -> Invoice:
    """
    Create a standalone draft invoice.

    issue_date defaults to today and due_date to issue_date plus the
    configured payment terms.
    """
    fields, pricing, items = validate_document(payload, policy=INVOICE_POLICY, partial=False)

    values = dict(fields)
    values["issue_date"] = values.get("issue_date") or today()
    if values.get("due_date") is None:
        values["due_date"] = payment_terms_due_date(values["issue_date"])
    if values["due_date"] < values["issue_date"]:
        raise ValidationError("due_date cannot be before issue_date")

    def _op() -> Invoice:
        number = next_document_number(business_id=business_id, document_type="invoice")
        now = utcnow()

        invoice = Invoice(
            business_id=business_id,
            number=number,
            status=INVOICE_DRAFT,
            vat_rate=default_vat_rate(),
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        for key, value in pricing.items():
            setattr(invoice, key, value)
        for index, data in enumerate(items or []):
            invoice.items.append(InvoiceItem(**{"sort_order": index, **data}))

        db.session.add(invoice)
        db.session.flush()

        _audit(invoice, "invoice.created", actor_id=actor_id, prior_state=None, new_state=INVOICE_DRAFT)
        _commit()
        current_app.logger.info("Created invoice %s for business %s", invoice.number, business_id)
        return invoice

    return run_with_retry(_op)


def update_invoice(*, invoice_id: int, payload: dict, business_id: int | None = None, actor_id: int | None = None) -> Invoice:
    """
    Patch a draft invoice. Once sent, only notes may change; items and
    pricing are frozen.
    """
    fields, pricing, items = validate_document(payload, policy=INVOICE_POLICY, partial=True)

    def _op() -> Invoice:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        if set(fields) - {"notes"} or pricing or items is not None:
            _require_draft(invoice)
        elif invoice.status == INVOICE_CANCELLED:
            raise InvalidTransition(
                f"Invoice {invoice.number} is cancelled",
                current_status=invoice.status,
            )
        validate_pricing(pricing, current=invoice.pricing_values())

        issue_date = fields.get("issue_date") or invoice.issue_date
        due_date = fields.get("due_date", invoice.due_date)
        if due_date is not None and due_date < issue_date:
            raise ValidationError("due_date cannot be before issue_date")

        _touch(invoice, **fields, **pricing)
        if items is not None:
            invoice.items.clear()
            db.session.flush()
            for index, data in enumerate(items):
                invoice.items.append(InvoiceItem(**{"sort_order": index, **data}))
        _commit()
        return invoice

    return run_with_retry(_op)


def _get_item(invoice: Invoice, item_id: int) -> InvoiceItem:
    item = db.session.query(InvoiceItem).filter_by(id=item_id, invoice_id=invoice.id).first()
    if not item:
        raise NotFound(f"Item {item_id} not found on invoice {invoice.number}", item_id=item_id)
    return item


def add_item(*, invoice_id: int, payload: dict, business_id: int | None = None) -> InvoiceItem:
    data = validate_item(payload)

    def _op() -> InvoiceItem:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        _require_draft(invoice)
        _touch(invoice)

        values = dict(data)
        if "sort_order" not in values:
            current = (
                db.session.query(func.max(InvoiceItem.sort_order))
                .filter(InvoiceItem.invoice_id == invoice.id)
                .scalar()
            )
            values["sort_order"] = 0 if current is None else current + 1
        item = InvoiceItem(invoice_id=invoice.id, **values)
        db.session.add(item)
        _commit()
        return item

    return run_with_retry(_op)


def update_item(*, invoice_id: int, item_id: int, payload: dict, business_id: int | None = None) -> InvoiceItem:
    patch = validate_item(payload, partial=True)

    def _op() -> InvoiceItem:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        _require_draft(invoice)
        item = _get_item(invoice, item_id)
        _touch(invoice)

        for key, value in patch.items():
            setattr(item, key, value)
        _commit()
        return item

    return run_with_retry(_op)


def remove_item(*, invoice_id: int, item_id: int, business_id: int | None = None) -> None:
    def _op() -> None:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        _require_draft(invoice)
        item = _get_item(invoice, item_id)
        _touch(invoice)

        db.session.delete(item)
        _commit()

    return run_with_retry(_op)


def delete_invoice(*, invoice_id: int, business_id: int | None = None, actor_id: int | None = None) -> None:
    """Hard delete. Draft invoices with no payments only."""
    def _op() -> None:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        _require_draft(invoice)
        payment_count = (
            db.session.query(func.count(InvoicePayment.id))
            .filter(InvoicePayment.invoice_id == invoice.id)
            .scalar()
        )
        if payment_count:
            raise InvalidTransition(
                f"Invoice {invoice.number} has payments and cannot be deleted",
                current_status=invoice.status,
            )

        business, entity_id, number = invoice.business_id, invoice.id, invoice.number
        db.session.execute(delete(InvoiceItem).where(InvoiceItem.invoice_id == entity_id))
        result = db.session.execute(
            delete(Invoice).where(Invoice.id == entity_id, Invoice.status == INVOICE_DRAFT)
        )
        if result.rowcount != 1:
            raise InvalidTransition(
                f"Invoice {number} changed status and cannot be deleted",
                current_status=db.session.query(Invoice.status).filter_by(id=entity_id).scalar(),
            )

        audit_service.record_event(
            business_id=business,
            entity_type="invoice",
            entity_id=entity_id,
            action="invoice.deleted",
            actor_id=actor_id,
            prior_state=INVOICE_DRAFT,
            new_state=None,
            note=number,
        )
        _commit()

    return run_with_retry(_op)


# =============================================================================
# TRANSITIONS
# =============================================================================

def send_invoice(*, invoice_id: int, business_id: int | None = None, actor_id: int | None = None) -> Invoice:
    """draft -> sent. Items and pricing are frozen from here on."""
    def _op() -> Invoice:
        invoice = get_invoice(invoice_id, business_id=business_id)
        if invoice.status != INVOICE_DRAFT:
            raise InvalidTransition(
                f"Cannot send invoice with status: {invoice.status}",
                current_status=invoice.status,
            )
        if not invoice.items:
            raise InvalidTransition("Cannot send an invoice with no items", current_status=invoice.status)

        now = utcnow()
        compare_and_swap(
            Invoice, invoice.id,
            expected={"status": INVOICE_DRAFT},
            values={"status": INVOICE_SENT, "sent_at": now, "updated_at": now},
            state_field="status",
        )
        _audit(invoice, "invoice.sent", actor_id=actor_id, prior_state=INVOICE_DRAFT, new_state=INVOICE_SENT)
        _commit()
        return invoice

    return run_with_retry(_op)


def cancel_invoice(
    *,
    invoice_id: int,
    business_id: int | None = None,
    actor_id: int | None = None,
    reason: str | None = None,
) -> Invoice:
    """
    Any non-paid status -> cancelled. Cancelling twice is a no-op.

    Recorded payments stay on the ledger.
    """
    reason = parse_text(reason, "reason", max_length=1000)

    def _op() -> Invoice:
        invoice = get_invoice(invoice_id, business_id=business_id)
        if invoice.status == INVOICE_CANCELLED:
            return invoice
        if invoice.status == INVOICE_PAID:
            raise InvalidTransition(
                "Cannot cancel a paid invoice",
                current_status=invoice.status,
            )

        prior_status = invoice.status
        now = utcnow()
        compare_and_swap(
            Invoice, invoice.id,
            expected={"status": prior_status},
            values={
                "status": INVOICE_CANCELLED,
                "cancelled_at": now,
                "cancel_reason": reason,
                "updated_at": now,
            },
            state_field="status",
        )
        _audit(invoice, "invoice.cancelled", actor_id=actor_id, prior_state=prior_status, new_state=INVOICE_CANCELLED, note=reason)
        _commit()
        return invoice

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_invoice_detail(*, invoice_id: int, business_id: int | None = None, as_of: date | None = None) -> dict:
    """Invoice with items, payments and totals recomputed from the ledger."""
    invoice = get_invoice(invoice_id, business_id=business_id)
    totals = invoice_totals(invoice)

    data = invoice.to_dict()
    data["items"] = [item.to_dict() for item in invoice.items]
    data["payments"] = [payment.to_dict() for payment in invoice.payments]
    data["totals"] = totals.to_dict()
    data["effective_status"] = effective_status(invoice, totals, as_of=as_of)
    return data


def list_invoices(
    *,
    business_id: int,
    status: str | None = None,
    client_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Invoice]:
    query = db.session.query(Invoice).filter(Invoice.business_id == business_id)
    if status == INVOICE_OVERDUE:
        return list_overdue_invoices(business_id=business_id)[offset:offset + limit]
    if status:
        if status not in INVOICE_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(INVOICE_STATUSES + (INVOICE_OVERDUE,))}"
            )
        query = query.filter(Invoice.status == status)
    if client_id is not None:
        query = query.filter(Invoice.client_id == client_id)
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset(offset).limit(limit).all()


def list_overdue_invoices(*, business_id: int | None = None, as_of: date | None = None) -> list[Invoice]:
    """Open invoices past due with a positive balance, oldest due first."""
    as_of = as_of or today()
    query = db.session.query(Invoice).filter(
        Invoice.status.in_(OPEN_STATUSES),
        Invoice.due_date.isnot(None),
        Invoice.due_date < as_of,
    )
    if business_id is not None:
        query = query.filter(Invoice.business_id == business_id)

    overdue = []
    for invoice in query.order_by(Invoice.due_date.asc(), Invoice.id.asc()).all():
        if effective_status(invoice, invoice_totals(invoice), as_of=as_of) == INVOICE_OVERDUE:
            overdue.append(invoice)
    return overdue
