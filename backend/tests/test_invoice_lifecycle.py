# Overview: Pytest coverage for invoice creation, editing, transitions and derived overdue status.

from datetime import timedelta

import pytest

from quotebook.errors import InvalidTransition, NotFound, ValidationError
from quotebook.models import Invoice
from quotebook.services import audit_service, invoice_service, payment_service
from quotebook.time_utils import today

from conftest import ACTOR_ID, BUSINESS_A, BUSINESS_B, item_payload


def days_ago(n):
    return (today() - timedelta(days=n)).isoformat()


class TestCreate:
    def test_defaults(self, make_invoice):
        invoice = make_invoice()

        assert invoice.number == f"INV-{today().year}-000001"
        assert invoice.status == "draft"
        assert invoice.issue_date == today()
        assert invoice.due_date == today() + timedelta(days=30)

    def test_explicit_dates(self, make_invoice):
        invoice = make_invoice(issue_date="2026-03-01", due_date="2026-03-15")

        assert invoice.issue_date.isoformat() == "2026-03-01"
        assert invoice.due_date.isoformat() == "2026-03-15"

    def test_due_before_issue_rejected(self, make_invoice):
        with pytest.raises(ValidationError):
            make_invoice(issue_date="2026-03-10", due_date="2026-03-01")

    def test_per_line_vat_in_detail(self, make_invoice):
        invoice = make_invoice(items=[
            item_payload("Labour", unit_price="100.00"),
            item_payload("Childcare seat", unit_price="100.00", vat_rate="5"),
        ])

        totals = invoice_service.get_invoice_detail(invoice_id=invoice.id)["totals"]

        assert totals["subtotal"] == "200.00"
        assert totals["vat_amount"] == "25.00"
        assert totals["total"] == "225.00"
        assert totals["amount_paid"] == "0.00"
        assert totals["balance_due"] == "225.00"

    def test_other_business_sees_not_found(self, make_invoice):
        invoice = make_invoice()

        with pytest.raises(NotFound):
            invoice_service.get_invoice_detail(invoice_id=invoice.id, business_id=BUSINESS_B)


class TestEditing:
    def test_draft_items_editable(self, make_invoice):
        invoice = make_invoice()

        item = invoice_service.add_item(invoice_id=invoice.id, payload=item_payload("Skip hire", unit_price="250.00"))
        invoice_service.update_item(invoice_id=invoice.id, item_id=item.id, payload={"unit_price": "200.00"})

        totals = invoice_service.get_invoice_detail(invoice_id=invoice.id)["totals"]
        assert totals["subtotal"] == "1200.00"

        invoice_service.remove_item(invoice_id=invoice.id, item_id=item.id)
        totals = invoice_service.get_invoice_detail(invoice_id=invoice.id)["totals"]
        assert totals["subtotal"] == "1000.00"

    def test_sent_invoice_freezes_items_and_pricing(self, make_invoice):
        invoice = make_invoice(send=True)

        with pytest.raises(InvalidTransition):
            invoice_service.add_item(invoice_id=invoice.id, payload=item_payload())
        with pytest.raises(InvalidTransition):
            invoice_service.update_invoice(invoice_id=invoice.id, payload={"vat_rate": "0"})

    def test_sent_invoice_notes_still_editable(self, make_invoice):
        invoice = make_invoice(send=True)

        invoice_service.update_invoice(invoice_id=invoice.id, payload={"notes": "Paid by BACS please"})

        assert invoice_service.get_invoice(invoice.id).notes == "Paid by BACS please"

    def test_delete_draft(self, db_session, make_invoice):
        invoice = make_invoice()
        invoice_id = invoice.id

        invoice_service.delete_invoice(invoice_id=invoice_id, actor_id=ACTOR_ID)

        assert db_session.get(Invoice, invoice_id) is None

    def test_delete_sent_rejected(self, make_invoice):
        invoice = make_invoice(send=True)

        with pytest.raises(InvalidTransition):
            invoice_service.delete_invoice(invoice_id=invoice.id)


class TestTransitions:
    def test_send(self, make_invoice):
        invoice = make_invoice(send=True)

        invoice = invoice_service.get_invoice(invoice.id)
        assert invoice.status == "sent"
        assert invoice.sent_at is not None

    def test_send_without_items_rejected(self, make_invoice):
        invoice = make_invoice(items=[])

        with pytest.raises(InvalidTransition):
            invoice_service.send_invoice(invoice_id=invoice.id)

    def test_cancel_is_idempotent(self, make_invoice):
        invoice = make_invoice(send=True)

        invoice_service.cancel_invoice(invoice_id=invoice.id, reason="Raised in error")
        invoice_service.cancel_invoice(invoice_id=invoice.id)

        invoice = invoice_service.get_invoice(invoice.id)
        assert invoice.status == "cancelled"
        assert invoice.cancel_reason == "Raised in error"
        actions = [e.action for e in audit_service.list_events(entity_type="invoice", entity_id=invoice.id)]
        assert actions.count("invoice.cancelled") == 1

    def test_cancel_paid_rejected(self, make_invoice):
        invoice = make_invoice(send=True)
        payment_service.record_payment(invoice_id=invoice.id, amount="1200.00", method="bank")

        with pytest.raises(InvalidTransition):
            invoice_service.cancel_invoice(invoice_id=invoice.id)

    def test_cancelled_invoice_refuses_note_edits(self, make_invoice):
        invoice = make_invoice(send=True)
        invoice_service.cancel_invoice(invoice_id=invoice.id)

        with pytest.raises(InvalidTransition):
            invoice_service.update_invoice(invoice_id=invoice.id, payload={"notes": "Too late"})


class TestOverdue:
    def test_past_due_sent_invoice_is_overdue(self, make_invoice):
        invoice = make_invoice(send=True, issue_date=days_ago(40), due_date=days_ago(10))

        detail = invoice_service.get_invoice_detail(invoice_id=invoice.id)

        assert detail["status"] == "sent"
        assert detail["effective_status"] == "overdue"

    def test_partially_paid_past_due_is_overdue(self, make_invoice):
        invoice = make_invoice(send=True, issue_date=days_ago(40), due_date=days_ago(10))
        payment_service.record_payment(invoice_id=invoice.id, amount="200.00", method="cash")

        detail = invoice_service.get_invoice_detail(invoice_id=invoice.id)

        assert detail["status"] == "partially_paid"
        assert detail["effective_status"] == "overdue"

    def test_paid_invoice_never_overdue(self, make_invoice):
        invoice = make_invoice(send=True, issue_date=days_ago(40), due_date=days_ago(10))
        payment_service.record_payment(invoice_id=invoice.id, amount="1200.00", method="bank")

        assert invoice_service.get_invoice_detail(invoice_id=invoice.id)["effective_status"] == "paid"

    def test_draft_past_due_is_not_overdue(self, make_invoice):
        invoice = make_invoice(issue_date=days_ago(40), due_date=days_ago(10))

        assert invoice_service.get_invoice_detail(invoice_id=invoice.id)["effective_status"] == "draft"

    def test_due_today_is_not_overdue(self, make_invoice):
        invoice = make_invoice(send=True, due_date=today().isoformat())

        assert invoice_service.get_invoice_detail(invoice_id=invoice.id)["effective_status"] == "sent"

    def test_list_overdue(self, make_invoice):
        overdue = make_invoice(send=True, issue_date=days_ago(40), due_date=days_ago(10))
        make_invoice(send=True)
        make_invoice(business_id=BUSINESS_B, send=True, issue_date=days_ago(40), due_date=days_ago(10))

        by_service = invoice_service.list_overdue_invoices(business_id=BUSINESS_A)
        by_filter = invoice_service.list_invoices(business_id=BUSINESS_A, status="overdue")

        assert [i.id for i in by_service] == [overdue.id]
        assert [i.id for i in by_filter] == [overdue.id]
