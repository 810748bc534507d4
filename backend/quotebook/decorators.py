# Overview: Request decorators for API routes; caller context from the upstream authorization layer.

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import current_app, g, jsonify, request


ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_CLIENT = "client"

CALLER_ROLES = (ROLE_ADMIN, ROLE_STAFF, ROLE_CLIENT)


@dataclass(frozen=True)
class CallerContext:
    """
    Who is calling, as asserted by the authorization layer in front of us.

    business_id scopes every read and write. client_id is set only for
    client-portal callers.
    """
    business_id: int
    actor_id: Optional[int]
    role: str
    client_id: Optional[int]

    @property
    def is_client(self) -> bool:
        return self.role == ROLE_CLIENT


def _header_int(name: str) -> Optional[int]:
    raw = request.headers.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def require_caller(f):
    """
    Require caller context and attach it to the request.

    Sets g.caller to a CallerContext built from:
    - X-Business-Id (required)
    - X-Actor-Id
    - X-Caller-Role (admin | staff | client; default staff)
    - X-Client-Id (required for client callers)

    Returns 401 if the business is missing, 400 if a header is malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            business_id = _header_int("X-Business-Id")
            actor_id = _header_int("X-Actor-Id")
            client_id = _header_int("X-Client-Id")
        except ValueError as e:
            return jsonify({"error": str(e), "kind": "ValidationError"}), 400

        if business_id is None:
            return jsonify({"error": "Caller context required"}), 401

        role = (request.headers.get("X-Caller-Role") or ROLE_STAFF).strip().lower()
        if role not in CALLER_ROLES:
            return jsonify({"error": f"Unknown caller role: {role}", "kind": "ValidationError"}), 400
        if role == ROLE_CLIENT and client_id is None:
            return jsonify({"error": "Client callers must identify their client"}), 401

        g.caller = CallerContext(
            business_id=business_id,
            actor_id=actor_id,
            role=role,
            client_id=client_id,
        )
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Require the caller's role to be one of `roles`. Use after @require_caller."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            caller = getattr(g, "caller", None)
            if caller is None:
                return jsonify({"error": "Caller context required"}), 401
            if caller.role not in roles:
                current_app.logger.info(
                    "Denied %s %s for role %s (business %s)",
                    request.method, request.path, caller.role, caller.business_id,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
