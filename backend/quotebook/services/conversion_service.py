# Overview: Service-layer operations for quote-to-invoice conversion; one invoice per quote.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import AlreadyConverted, InvalidTransition, NotFound
from ..extensions import db
from ..models import Invoice, InvoiceItem, Quote
from ..models.invoices import INVOICE_DRAFT
from ..models.quotes import QUOTE_ACCEPTED
from ..time_utils import today, utcnow
from . import audit_service
from .concurrency import compare_and_swap, run_with_retry
from .invoice_service import payment_terms_due_date
from .numbering_service import next_document_number


def _existing_invoice_id(quote_id: int) -> int | None:
    return db.session.query(Invoice.id).filter_by(quote_id=quote_id).scalar()


def convert_quote(*, quote_id: int, business_id: int | None = None, actor_id: int | None = None) -> Invoice:
    """
    Convert an accepted, locked quote into a draft invoice.

    WHY: The invoice must bill exactly what the client accepted, once.
    invoices.quote_id is UNIQUE, so even two simultaneous conversions can
    only ever produce one invoice; the loser gets AlreadyConverted with the
    winner's id.

    Items are copied with their own VAT rate, falling back to the quote's
    document rate. Pricing is copied verbatim.
    """
    def _op() -> Invoice:
        quote = db.session.query(Quote).filter_by(id=quote_id).first()
        if not quote or (business_id is not None and quote.business_id != business_id):
            raise NotFound(f"Quote {quote_id} not found", quote_id=quote_id)

        existing_id = _existing_invoice_id(quote.id)
        if existing_id is not None:
            raise AlreadyConverted(
                f"Quote {quote.number} was already converted",
                invoice_id=existing_id,
            )
        if quote.state != QUOTE_ACCEPTED:
            raise InvalidTransition(
                "Only accepted and locked quotes can be converted to an invoice",
                current_state=quote.state,
            )

        items = list(quote.items)
        pricing = quote.pricing_values()

        number = next_document_number(business_id=quote.business_id, document_type="invoice")
        # Holds the quote in accepted+locked for the rest of this unit of work
        compare_and_swap(
            Quote, quote.id,
            expected={"state": QUOTE_ACCEPTED},
            values={"updated_at": utcnow()},
        )

        issue_date = today()
        now = utcnow()
        invoice = Invoice(
            business_id=quote.business_id,
            client_id=quote.client_id,
            quote_id=quote.id,
            number=number,
            status=INVOICE_DRAFT,
            issue_date=issue_date,
            due_date=payment_terms_due_date(issue_date),
            notes=f"Created from accepted quote #{quote.number}",
            terms=quote.terms,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            **pricing,
        )
        for item in items:
            invoice.items.append(InvoiceItem(
                item_type=item.item_type,
                description=item.description,
                quantity=item.quantity,
                unit=item.unit,
                unit_price=item.unit_price,
                vat_rate=item.vat_rate if item.vat_rate is not None else quote.vat_rate,
                sort_order=item.sort_order,
                source_quote_item_id=item.id,
            ))
        db.session.add(invoice)

        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            winner_id = _existing_invoice_id(quote_id)
            if winner_id is None:
                raise
            current_app.logger.info("Conversion race on quote %s lost to invoice %s", quote_id, winner_id)
            raise AlreadyConverted(
                f"Quote {quote_id} was already converted",
                invoice_id=winner_id,
            )

        audit_service.record_event(
            business_id=quote.business_id,
            entity_type="invoice",
            entity_id=invoice.id,
            action="invoice.created_from_quote",
            actor_id=actor_id,
            prior_state=None,
            new_state=INVOICE_DRAFT,
            note=quote.number,
        )
        audit_service.record_event(
            business_id=quote.business_id,
            entity_type="quote",
            entity_id=quote.id,
            action="quote.converted",
            actor_id=actor_id,
            prior_state=QUOTE_ACCEPTED,
            new_state=QUOTE_ACCEPTED,
            note=invoice.number,
        )
        db.session.commit()
        audit_service.dispatch_pending()

        current_app.logger.info("Converted quote %s into invoice %s", quote.number, invoice.number)
        return invoice

    return run_with_retry(_op)
