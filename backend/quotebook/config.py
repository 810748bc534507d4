# backend/quotebook/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_prefixes(name: str, default: dict[str, str]) -> dict[str, str]:
    """Parse "quote=Q,invoice=INV" into a mapping."""
    raw = os.environ.get(name)
    if not raw:
        return dict(default)
    prefixes = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        doc_type, prefix = pair.split("=", 1)
        prefixes[doc_type.strip()] = prefix.strip()
    return prefixes


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/quotebook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///quotebook.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Document numbering: {PREFIX}-{YEAR}-{sequence:06d}
    DOCUMENT_NUMBER_PREFIXES = _env_prefixes(
        "DOCUMENT_NUMBER_PREFIXES",
        {"quote": "Q", "invoice": "INV"},
    )
    NUMBERING_MAX_ATTEMPTS = int(os.environ.get("NUMBERING_MAX_ATTEMPTS", "3"))
    NUMBERING_BACKOFF_BASE = float(os.environ.get("NUMBERING_BACKOFF_BASE", "0.05"))

    # Pricing defaults (GBP, UK VAT)
    DEFAULT_VAT_RATE = os.environ.get("DEFAULT_VAT_RATE", "20")
    INVOICE_PAYMENT_TERMS_DAYS = int(os.environ.get("INVOICE_PAYMENT_TERMS_DAYS", "30"))

    # Audit entries that fail to write are retried after the business commit
    AUDIT_RETRY_ASYNC = _env_bool("AUDIT_RETRY_ASYNC", True)
    AUDIT_RETRY_DELAY_SECONDS = float(os.environ.get("AUDIT_RETRY_DELAY_SECONDS", "1.0"))
