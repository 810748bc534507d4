# Overview: Domain error taxonomy shared by services and routes.

"""
Quotebook error taxonomy.

Every service failure is a QuotebookError carrying:
- kind: stable machine-readable name the client switches on
- http_status: how the HTTP boundary reports it
- details: the current authoritative values (balance_due, invoice_id, ...)
  so the client can self-correct without another round-trip

Validation always happens before any write, so raising one of these
means nothing was committed.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class QuotebookError(Exception):
    kind = "QuotebookError"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "kind": self.kind}
        for key, value in self.details.items():
            payload[key] = f"{value:.2f}" if isinstance(value, Decimal) else value
        return payload


class NotFound(QuotebookError):
    kind = "NotFound"
    http_status = 404


class ValidationError(QuotebookError, ValueError):
    """400-level input problem."""
    kind = "ValidationError"
    http_status = 400


class InvalidTransition(QuotebookError):
    """State change not legal from the current status."""
    kind = "InvalidTransition"
    http_status = 409


class Expired(QuotebookError):
    """Quote validity window has passed."""
    kind = "Expired"
    http_status = 409


class AlreadyConverted(QuotebookError):
    """Quote already has an invoice; details carry its invoice_id."""
    kind = "AlreadyConverted"
    http_status = 409

    @property
    def invoice_id(self) -> int | None:
        return self.details.get("invoice_id")


class ConcurrentModification(QuotebookError):
    """Precondition no longer held at write time; re-fetch and retry."""
    kind = "ConcurrentModification"
    http_status = 409


class OverpaymentRejected(QuotebookError):
    """Payment exceeds the freshly computed balance due."""
    kind = "OverpaymentRejected"
    http_status = 422

    @property
    def balance_due(self) -> Decimal | None:
        return self.details.get("balance_due")


class AllocationFailed(QuotebookError):
    """Document numbering exhausted its retries; nothing was committed."""
    kind = "AllocationFailed"
    http_status = 503
