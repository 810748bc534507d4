# Overview: Flask API routes for invoice operations; parses input and returns JSON responses.

# backend/quotebook/routes/invoices.py
"""
Invoice Lifecycle & Payment API Routes

DESIGN:
- Standalone invoices, editable while draft
- Send, cancel and record payments
- Overdue is derived on read (effective_status), never stored

SECURITY:
- Staff and admin callers only
- Invoices of another business respond 404
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import ROLE_ADMIN, ROLE_STAFF, require_caller, require_role
from ..errors import QuotebookError, ValidationError
from ..services import invoice_service, payment_service
from ..validation import parse_int


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")

STAFF_ROLES = (ROLE_ADMIN, ROLE_STAFF)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload: expected an object")
    return data


def _detail(invoice_id: int) -> dict:
    return invoice_service.get_invoice_detail(invoice_id=invoice_id, business_id=g.caller.business_id)


# =============================================================================
# INVOICE CRUD
# =============================================================================

@invoices_bp.post("")
@require_caller
@require_role(*STAFF_ROLES)
def create_invoice_route():
    """
    Create a standalone draft invoice.

    Request body:
    {
        "client_id": 12,
        "issue_date": "2026-03-01",   (optional, default today)
        "due_date": "2026-03-31",     (optional, default issue_date + terms)
        "vat_rate": "20",             (optional)
        "items": [{"description": "...", "quantity": "1", "unit_price": "500.00", "vat_rate": "5"}]
    }
    """
    try:
        invoice = invoice_service.create_invoice(
            business_id=g.caller.business_id,
            payload=_json_body(),
            actor_id=g.caller.actor_id,
        )
        return jsonify({"invoice": _detail(invoice.id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("")
@require_caller
@require_role(*STAFF_ROLES)
def list_invoices_route():
    """
    List invoices for the caller's business.

    Query params: status (including "overdue"), client_id, limit, offset
    """
    try:
        client_id = request.args.get("client_id")
        invoices = invoice_service.list_invoices(
            business_id=g.caller.business_id,
            status=request.args.get("status"),
            client_id=parse_int(client_id, "client_id") if client_id else None,
            limit=min(parse_int(request.args.get("limit", "100"), "limit"), 500),
            offset=parse_int(request.args.get("offset", "0"), "offset"),
        )
        results = []
        for invoice in invoices:
            totals = invoice_service.invoice_totals(invoice)
            data = invoice.to_dict()
            data["totals"] = totals.to_dict()
            data["effective_status"] = invoice_service.effective_status(invoice, totals)
            results.append(data)
        return jsonify({"invoices": results, "count": len(results)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list invoices")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:invoice_id>")
@require_caller
@require_role(*STAFF_ROLES)
def get_invoice_route(invoice_id: int):
    try:
        return jsonify({"invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.patch("/<int:invoice_id>")
@require_caller
@require_role(*STAFF_ROLES)
def update_invoice_route(invoice_id: int):
    """Draft invoices accept any patch; sent invoices accept notes only."""
    try:
        invoice_service.update_invoice(
            invoice_id=invoice_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:invoice_id>")
@require_caller
@require_role(*STAFF_ROLES)
def delete_invoice_route(invoice_id: int):
    try:
        invoice_service.delete_invoice(
            invoice_id=invoice_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"deleted": True, "invoice_id": invoice_id}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ITEMS
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/items")
@require_caller
@require_role(*STAFF_ROLES)
def add_item_route(invoice_id: int):
    try:
        item = invoice_service.add_item(
            invoice_id=invoice_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
        )
        return jsonify({"item": item.to_dict(), "invoice": _detail(invoice_id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add invoice item")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.patch("/<int:invoice_id>/items/<int:item_id>")
@require_caller
@require_role(*STAFF_ROLES)
def update_item_route(invoice_id: int, item_id: int):
    try:
        item = invoice_service.update_item(
            invoice_id=invoice_id,
            item_id=item_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
        )
        return jsonify({"item": item.to_dict(), "invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update invoice item")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.delete("/<int:invoice_id>/items/<int:item_id>")
@require_caller
@require_role(*STAFF_ROLES)
def remove_item_route(invoice_id: int, item_id: int):
    try:
        invoice_service.remove_item(
            invoice_id=invoice_id,
            item_id=item_id,
            business_id=g.caller.business_id,
        )
        return jsonify({"invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to remove invoice item")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSITIONS
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/send")
@require_caller
@require_role(*STAFF_ROLES)
def send_invoice_route(invoice_id: int):
    try:
        invoice_service.send_invoice(
            invoice_id=invoice_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to send invoice")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.post("/<int:invoice_id>/cancel")
@require_caller
@require_role(*STAFF_ROLES)
def cancel_invoice_route(invoice_id: int):
    """Request body: {"reason": "..."}  (optional)"""
    try:
        invoice_service.cancel_invoice(
            invoice_id=invoice_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
            reason=_json_body().get("reason"),
        )
        return jsonify({"invoice": _detail(invoice_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel invoice")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENTS
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/record-payment")
@require_caller
@require_role(*STAFF_ROLES)
def record_payment_route(invoice_id: int):
    """
    Record a payment against a sent invoice.

    Request body:
    {
        "amount": "250.00",
        "method": "bank",              (bank, cash, card, other)
        "reference": "BACS-1234",      (optional)
        "notes": "...",                (optional)
        "paid_at": "2026-03-02T10:00:00Z"  (optional)
    }

    Returns:
        201: Payment plus refreshed summary
        400: Invalid amount or method
        409: Invoice is draft or cancelled
        422: OverpaymentRejected (carries balance_due)
    """
    try:
        data = _json_body()
        payment = payment_service.record_payment(
            invoice_id=invoice_id,
            amount=data.get("amount"),
            method=data.get("method"),
            reference=data.get("reference"),
            notes=data.get("notes"),
            paid_at=data.get("paid_at"),
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        summary = payment_service.get_payment_summary(invoice_id=invoice_id, business_id=g.caller.business_id)
        return jsonify({"payment": payment.to_dict(), "summary": summary}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<int:invoice_id>/payments")
@require_caller
@require_role(*STAFF_ROLES)
def list_payments_route(invoice_id: int):
    try:
        payments = payment_service.list_payments(invoice_id=invoice_id, business_id=g.caller.business_id)
        summary = payment_service.get_payment_summary(invoice_id=invoice_id, business_id=g.caller.business_id)
        return jsonify({
            "invoice_id": invoice_id,
            "payments": [p.to_dict() for p in payments],
            "summary": summary,
        }), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load invoice payments")
        return jsonify({"error": "Internal server error"}), 500
