# Overview: Flask API routes for document numbering; read-only preview of the next number.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import ROLE_ADMIN, ROLE_STAFF, require_caller, require_role
from ..errors import QuotebookError
from ..services import numbering_service
from ..validation import parse_int


numbering_bp = Blueprint("numbering", __name__, url_prefix="/api/numbering")


@numbering_bp.get("/peek")
@require_caller
@require_role(ROLE_ADMIN, ROLE_STAFF)
def peek_route():
    """
    Preview the next document number without allocating it.

    Query params: document_type (quote | invoice), year (default current)
    """
    try:
        year = request.args.get("year")
        preview = numbering_service.peek_next_document_number(
            business_id=g.caller.business_id,
            document_type=request.args.get("document_type", ""),
            year=parse_int(year, "year") if year else None,
        )
        return jsonify(preview), 200
    except QuotebookError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to peek document number")
        return jsonify({"error": "Internal server error"}), 500
