# Overview: Flask API routes for quote operations; parses input and returns JSON responses.

# backend/quotebook/routes/quotes.py
"""
Quote Lifecycle API Routes

DESIGN:
- Create and edit draft quotes, their items and pricing
- Send, accept, reject, revise and convert quotes
- Totals are recomputed on every read

SECURITY:
- Every route requires caller context (X-Business-Id)
- Quotes of another business respond 404
- Client callers may only read, accept or reject their own sent quotes
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import ROLE_ADMIN, ROLE_CLIENT, ROLE_STAFF, require_caller, require_role
from ..errors import NotFound, QuotebookError, ValidationError
from ..models.quotes import QUOTE_DRAFT
from ..services import conversion_service, quote_service
from ..services.totals_service import compute_quote_totals
from ..validation import parse_int


quotes_bp = Blueprint("quotes", __name__, url_prefix="/api/quotes")

STAFF_ROLES = (ROLE_ADMIN, ROLE_STAFF)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload: expected an object")
    return data


def _guard_client_access(quote_id: int) -> None:
    """Client callers see only their own quotes, and never drafts."""
    if not g.caller.is_client:
        return
    quote = quote_service.get_quote(quote_id=quote_id, business_id=g.caller.business_id)
    if quote.client_id != g.caller.client_id or quote.state == QUOTE_DRAFT:
        raise NotFound(f"Quote {quote_id} not found", quote_id=quote_id)


def _detail(quote_id: int) -> dict:
    return quote_service.get_quote_detail(quote_id=quote_id, business_id=g.caller.business_id)


# =============================================================================
# QUOTE CRUD
# =============================================================================

@quotes_bp.post("")
@require_caller
@require_role(*STAFF_ROLES)
def create_quote_route():
    """
    Create a draft quote.

    Request body:
    {
        "client_id": 12,
        "title": "Kitchen refit",             (optional)
        "valid_until": "2026-12-31",          (optional)
        "vat_rate": "20",                     (optional, default from config)
        "discount_type": "percent", "discount_value": "10",   (optional)
        "items": [{"description": "...", "quantity": "2", "unit_price": "150.00"}]
    }

    Returns:
        201: Quote detail with totals
        400: Invalid input
    """
    try:
        quote = quote_service.create_quote(
            business_id=g.caller.business_id,
            payload=_json_body(),
            actor_id=g.caller.actor_id,
        )
        return jsonify({"quote": _detail(quote.id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.get("")
@require_caller
@require_role(*STAFF_ROLES)
def list_quotes_route():
    """
    List quotes for the caller's business.

    Query params: status, client_id, limit (default 100), offset (default 0)
    """
    try:
        client_id = request.args.get("client_id")
        quotes = quote_service.list_quotes(
            business_id=g.caller.business_id,
            status=request.args.get("status"),
            client_id=parse_int(client_id, "client_id") if client_id else None,
            limit=min(parse_int(request.args.get("limit", "100"), "limit"), 500),
            offset=parse_int(request.args.get("offset", "0"), "offset"),
        )
        results = []
        for quote in quotes:
            data = quote.to_dict()
            data["totals"] = compute_quote_totals(quote.items, quote).to_dict()
            results.append(data)
        return jsonify({"quotes": results, "count": len(results)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list quotes")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.get("/<int:quote_id>")
@require_caller
def get_quote_route(quote_id: int):
    try:
        _guard_client_access(quote_id)
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.patch("/<int:quote_id>")
@require_caller
@require_role(*STAFF_ROLES)
def update_quote_route(quote_id: int):
    """
    Patch header fields and pricing; an "items" list replaces all items.

    Only draft and revising quotes are editable (409 otherwise).
    """
    try:
        quote_service.update_quote(
            quote_id=quote_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.delete("/<int:quote_id>")
@require_caller
@require_role(*STAFF_ROLES)
def delete_quote_route(quote_id: int):
    """Delete a draft quote."""
    try:
        quote_service.delete_quote(
            quote_id=quote_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"deleted": True, "quote_id": quote_id}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete quote")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ITEMS
# =============================================================================

@quotes_bp.post("/<int:quote_id>/items")
@require_caller
@require_role(*STAFF_ROLES)
def add_item_route(quote_id: int):
    try:
        item = quote_service.add_item(
            quote_id=quote_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
        )
        return jsonify({"item": item.to_dict(), "quote": _detail(quote_id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add quote item")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.patch("/<int:quote_id>/items/<int:item_id>")
@require_caller
@require_role(*STAFF_ROLES)
def update_item_route(quote_id: int, item_id: int):
    try:
        item = quote_service.update_item(
            quote_id=quote_id,
            item_id=item_id,
            payload=_json_body(),
            business_id=g.caller.business_id,
        )
        return jsonify({"item": item.to_dict(), "quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update quote item")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.delete("/<int:quote_id>/items/<int:item_id>")
@require_caller
@require_role(*STAFF_ROLES)
def remove_item_route(quote_id: int, item_id: int):
    try:
        quote_service.remove_item(
            quote_id=quote_id,
            item_id=item_id,
            business_id=g.caller.business_id,
        )
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to remove quote item")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# DUPLICATION & HISTORY
# =============================================================================

@quotes_bp.post("/<int:quote_id>/duplicate")
@require_caller
@require_role(*STAFF_ROLES)
def duplicate_quote_route(quote_id: int):
    try:
        quote = quote_service.duplicate_quote(
            quote_id=quote_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"quote": _detail(quote.id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to duplicate quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.get("/<int:quote_id>/revisions")
@require_caller
@require_role(*STAFF_ROLES)
def list_revisions_route(quote_id: int):
    """Revision history plus acceptance snapshots, oldest first."""
    try:
        revisions = quote_service.list_revisions(quote_id=quote_id, business_id=g.caller.business_id)
        acceptances = quote_service.list_acceptances(quote_id=quote_id, business_id=g.caller.business_id)
        return jsonify({
            "quote_id": quote_id,
            "revisions": [r.to_dict() for r in revisions],
            "acceptances": [a.to_dict() for a in acceptances],
        }), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load quote revisions")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSITIONS
# =============================================================================

@quotes_bp.post("/<int:quote_id>/send")
@require_caller
@require_role(*STAFF_ROLES)
def send_quote_route(quote_id: int):
    try:
        quote_service.send_quote(
            quote_id=quote_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to send quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.post("/<int:quote_id>/accept")
@require_caller
@require_role(ROLE_ADMIN, ROLE_STAFF, ROLE_CLIENT)
def accept_quote_route(quote_id: int):
    """
    Accept a sent quote; freezes a snapshot and locks the quote.

    Request body: {"acceptance_note": "..."}  (optional)

    Returns:
        200: Accepted (also when it already was)
        409: InvalidTransition / Expired / ConcurrentModification
    """
    try:
        _guard_client_access(quote_id)
        quote_service.accept_quote(
            quote_id=quote_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
            note=_json_body().get("acceptance_note"),
        )
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to accept quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.post("/<int:quote_id>/reject")
@require_caller
@require_role(ROLE_ADMIN, ROLE_STAFF, ROLE_CLIENT)
def reject_quote_route(quote_id: int):
    """Request body: {"reason": "..."}  (required)"""
    try:
        _guard_client_access(quote_id)
        quote_service.reject_quote(
            quote_id=quote_id,
            reason=_json_body().get("reason"),
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"quote": _detail(quote_id)}), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to reject quote")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.post("/<int:quote_id>/create-revision")
@require_caller
@require_role(*STAFF_ROLES)
def create_revision_route(quote_id: int):
    """
    Reopen an accepted, locked quote for amendment.

    Request body: {"reason": "..."}  (required)
    """
    try:
        revision = quote_service.create_revision(
            quote_id=quote_id,
            reason=_json_body().get("reason"),
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"revision": revision.to_dict(), "quote": _detail(quote_id)}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create quote revision")
        return jsonify({"error": "Internal server error"}), 500


@quotes_bp.post("/<int:quote_id>/create-invoice")
@require_caller
@require_role(*STAFF_ROLES)
def create_invoice_route(quote_id: int):
    """
    Convert an accepted, locked quote into a draft invoice.

    Returns:
        201: {"invoice_id", "number"}
        409: AlreadyConverted (carries invoice_id) / InvalidTransition
    """
    try:
        invoice = conversion_service.convert_quote(
            quote_id=quote_id,
            business_id=g.caller.business_id,
            actor_id=g.caller.actor_id,
        )
        return jsonify({"invoice_id": invoice.id, "number": invoice.number}), 201
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to convert quote")
        return jsonify({"error": "Internal server error"}), 500
