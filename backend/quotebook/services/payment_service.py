# Overview: Service-layer operations for payments; append-only ledger reconciled against invoice totals.

"""
Payment Ledger Service

WHY: Record money received against an invoice without ever letting the
ledger exceed what is owed, even when two payments land at once.

DESIGN PRINCIPLES:
- Payments are append-only; nothing here updates or deletes a payment
- amount_paid and balance_due are always a fresh SQL SUM, never a cached column
- The invoice row is locked for the payment, and the balance is re-checked
  after the insert so a concurrent payment that slipped in is rejected
- Status after a payment: paid at exactly zero balance, else partially_paid
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..errors import InvalidTransition, OverpaymentRejected
from ..extensions import db
from ..models import Invoice, InvoicePayment
from ..models.invoices import INVOICE_PAID, INVOICE_PARTIALLY_PAID, INVOICE_SENT
from ..money import ZERO
from ..time_utils import utcnow
from ..validation import PAYMENT_POLICY, validate_payload
from . import audit_service
from .concurrency import compare_and_swap, lock_for_update, run_with_retry
from .invoice_service import effective_status, get_invoice, payments_total
from .totals_service import compute_invoice_totals


# A paid invoice still accepts the call so the caller learns its balance is zero
PAYABLE_STATUSES = (INVOICE_SENT, INVOICE_PARTIALLY_PAID, INVOICE_PAID)


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def record_payment(
    *,
    invoice_id: int,
    amount,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
    paid_at: datetime | str | None = None,
    business_id: int | None = None,
    actor_id: int | None = None,
) -> InvoicePayment:
    """
    Record a payment against an invoice.

    Args:
        invoice_id: Invoice being paid
        amount: Amount received, > 0, at most the current balance due
        method: bank, cash, card, other
        reference: Bank reference, card auth code (optional)
        notes: Free text (optional)
        paid_at: When the money was received (defaults to now)

    Returns:
        InvoicePayment record

    Raises:
        ValidationError: amount <= 0 or malformed input
        InvalidTransition: invoice is draft or cancelled
        OverpaymentRejected: amount exceeds balance due (carries balance_due)
    """
    raw = {"amount": amount, "method": method}
    if reference is not None:
        raw["reference"] = reference
    if notes is not None:
        raw["notes"] = notes
    if paid_at is not None:
        raw["paid_at"] = paid_at
    data = validate_payload(payload=raw, policy=PAYMENT_POLICY, partial=False)
    amount = data["amount"]

    def _op() -> InvoicePayment:
        invoice = get_invoice(invoice_id, business_id=business_id, lock=True)
        if invoice.status not in PAYABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot record payment on invoice with status: {invoice.status}",
                current_status=invoice.status,
            )

        items = list(invoice.items)
        paid_before = payments_total(invoice.id)
        totals = compute_invoice_totals(items, invoice, [paid_before])
        if amount > totals.unfloored_balance:
            raise OverpaymentRejected(
                f"Payment of {amount:.2f} exceeds balance due of {totals.balance_due:.2f}",
                balance_due=totals.balance_due,
            )

        payment = InvoicePayment(
            invoice_id=invoice.id,
            amount=amount,
            method=data["method"],
            reference=data.get("reference"),
            notes=data.get("notes"),
            paid_at=data.get("paid_at") or utcnow(),
            recorded_by=actor_id,
            created_at=utcnow(),
        )
        db.session.add(payment)
        db.session.flush()

        # Re-check under the write: a concurrent payment may have landed
        # between the first SUM and this insert
        paid_after = payments_total(invoice.id)
        totals = compute_invoice_totals(items, invoice, [paid_after])
        if totals.unfloored_balance < ZERO:
            db.session.rollback()
            fresh = compute_invoice_totals(items, invoice, [payments_total(invoice_id)])
            current_app.logger.warning(
                "Rejected concurrent overpayment on invoice %s (amount %s)",
                invoice_id, amount,
            )
            raise OverpaymentRejected(
                f"Payment of {amount:.2f} exceeds balance due of {fresh.balance_due:.2f}",
                balance_due=fresh.balance_due,
            )

        prior_status = invoice.status
        new_status = INVOICE_PAID if totals.unfloored_balance == ZERO else INVOICE_PARTIALLY_PAID
        compare_and_swap(
            Invoice, invoice.id,
            expected={"status": prior_status},
            values={"status": new_status, "updated_at": utcnow()},
            state_field="status",
        )

        audit_service.record_event(
            business_id=invoice.business_id,
            entity_type="invoice",
            entity_id=invoice.id,
            action="invoice.payment_recorded",
            actor_id=actor_id,
            prior_state=prior_status,
            new_state=new_status,
            note=f"{payment.method} {amount:.2f}",
        )
        db.session.commit()
        audit_service.dispatch_pending()

        current_app.logger.info(
            "Recorded payment %s of %s on invoice %s (%s -> %s)",
            payment.id, amount, invoice_id, prior_status, new_status,
        )
        return payment

    return run_with_retry(_op)


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

def list_payments(*, invoice_id: int, business_id: int | None = None) -> list[InvoicePayment]:
    invoice = get_invoice(invoice_id, business_id=business_id)
    return (
        db.session.query(InvoicePayment)
        .filter_by(invoice_id=invoice.id)
        .order_by(InvoicePayment.paid_at.asc(), InvoicePayment.id.asc())
        .all()
    )


def get_payment_summary(*, invoice_id: int, business_id: int | None = None) -> dict:
    """
    Payment summary for an invoice.

    Returns:
        Dict with total, amount_paid, balance_due, status, effective_status
    """
    invoice = get_invoice(invoice_id, business_id=business_id)
    amount_paid: Decimal = payments_total(invoice.id)
    totals = compute_invoice_totals(invoice.items, invoice, [amount_paid])

    return {
        "invoice_id": invoice.id,
        "number": invoice.number,
        "total": f"{totals.total:.2f}",
        "amount_paid": f"{totals.amount_paid:.2f}",
        "balance_due": f"{totals.balance_due:.2f}",
        "status": invoice.status,
        "effective_status": effective_status(invoice, totals),
    }
