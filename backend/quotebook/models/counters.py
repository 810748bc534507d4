from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DocumentCounter(db.Model):
    """
    Atomic per-business, per-year document sequences.

    WHY: Prevent race conditions when generating quote and invoice numbers.
    Not a business entity; next_number is the sequence the next caller gets.
    """
    __tablename__ = "document_number_counters"
    __table_args__ = (
        db.UniqueConstraint(
            "business_id", "year", "document_type",
            name="uq_document_number_counters_key",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "year": self.year,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
