# Overview: Pytest coverage for the payment ledger and overpayment protection.

"""
Payment Ledger Tests

Payments are append-only and never push the balance below zero. The
invoice status follows the ledger: partially_paid while money is owed,
paid at exactly zero.
"""

from decimal import Decimal

import pytest

from quotebook.errors import InvalidTransition, NotFound, OverpaymentRejected, ValidationError
from quotebook.models import InvoicePayment
from quotebook.services import audit_service, invoice_service, payment_service

from conftest import ACTOR_ID, BUSINESS_A, BUSINESS_B


def pay(invoice, amount, method="bank", **kwargs):
    return payment_service.record_payment(
        invoice_id=invoice.id, amount=amount, method=method, actor_id=ACTOR_ID, **kwargs,
    )


class TestRecordPayment:
    def test_partial_then_full(self, make_invoice):
        invoice = make_invoice(send=True)

        pay(invoice, "500.00")
        summary = payment_service.get_payment_summary(invoice_id=invoice.id)
        assert summary["status"] == "partially_paid"
        assert summary["amount_paid"] == "500.00"
        assert summary["balance_due"] == "700.00"

        pay(invoice, "700.00", method="card", reference="AUTH-991")
        summary = payment_service.get_payment_summary(invoice_id=invoice.id)
        assert summary["status"] == "paid"
        assert summary["balance_due"] == "0.00"

    def test_payment_fields_persist(self, make_invoice):
        invoice = make_invoice(send=True)

        payment = pay(invoice, "100.00", reference="BACS-1", notes="First instalment", paid_at="2026-03-02T10:00:00Z")

        assert payment.amount == Decimal("100.00")
        assert payment.reference == "BACS-1"
        assert payment.paid_at.isoformat() == "2026-03-02T10:00:00"
        assert payment.recorded_by == ACTOR_ID

    def test_overpayment_carries_balance(self, db_session, make_invoice):
        invoice = make_invoice(send=True)
        pay(invoice, "1000.00")

        with pytest.raises(OverpaymentRejected) as exc_info:
            pay(invoice, "200.01")

        assert exc_info.value.balance_due == Decimal("200.00")
        assert exc_info.value.to_dict()["balance_due"] == "200.00"
        assert db_session.query(InvoicePayment).filter_by(invoice_id=invoice.id).count() == 1

    def test_payment_on_paid_invoice_reports_zero_balance(self, make_invoice):
        invoice = make_invoice(send=True)
        pay(invoice, "1200.00")

        with pytest.raises(OverpaymentRejected) as exc_info:
            pay(invoice, "0.01")

        assert exc_info.value.balance_due == Decimal("0.00")

    def test_exact_balance_accepted(self, make_invoice):
        invoice = make_invoice(send=True)

        pay(invoice, "1200.00")

        assert invoice_service.get_invoice(invoice.id).status == "paid"

    def test_draft_invoice_rejected(self, make_invoice):
        invoice = make_invoice()

        with pytest.raises(InvalidTransition):
            pay(invoice, "10.00")

    def test_cancelled_invoice_rejected(self, make_invoice):
        invoice = make_invoice(send=True)
        invoice_service.cancel_invoice(invoice_id=invoice.id)

        with pytest.raises(InvalidTransition):
            pay(invoice, "10.00")

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc", "1.001", None])
    def test_invalid_amount_rejected(self, make_invoice, amount):
        invoice = make_invoice(send=True)

        with pytest.raises(ValidationError):
            pay(invoice, amount)

    def test_unknown_method_rejected(self, make_invoice):
        invoice = make_invoice(send=True)

        with pytest.raises(ValidationError):
            pay(invoice, "10.00", method="cheque")

    def test_other_business_sees_not_found(self, make_invoice):
        invoice = make_invoice(send=True)

        with pytest.raises(NotFound):
            payment_service.record_payment(
                invoice_id=invoice.id, amount="10.00", method="bank", business_id=BUSINESS_B,
            )


class TestLedgerReads:
    def test_payments_listed_in_order(self, make_invoice):
        invoice = make_invoice(send=True)
        pay(invoice, "100.00", paid_at="2026-03-05T09:00:00Z")
        pay(invoice, "50.00", paid_at="2026-03-01T09:00:00Z")

        payments = payment_service.list_payments(invoice_id=invoice.id, business_id=BUSINESS_A)

        assert [p.amount for p in payments] == [Decimal("50.00"), Decimal("100.00")]

    def test_totals_follow_ledger(self, make_invoice):
        invoice = make_invoice(send=True)
        pay(invoice, "300.00")
        pay(invoice, "200.00")

        totals = invoice_service.invoice_totals(invoice_service.get_invoice(invoice.id))

        assert totals.amount_paid == Decimal("500.00")
        assert totals.balance_due == Decimal("700.00")

    def test_payment_is_audited(self, make_invoice):
        invoice = make_invoice(send=True)
        pay(invoice, "1200.00")

        events = audit_service.list_events(entity_type="invoice", entity_id=invoice.id)
        payment_event = events[-1]

        assert payment_event.action == "invoice.payment_recorded"
        assert payment_event.prior_state == "sent"
        assert payment_event.new_state == "paid"
        assert payment_event.actor_id == ACTOR_ID
