from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class AuditEvent(db.Model):
    """
    Append-only audit trail of document state transitions.

    WHY: Dispute resolution needs who moved a quote or invoice, when,
    and from which state to which.

    occurred_at is business time (when the transition happened);
    created_at is system time, which differs when the write was retried.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, nullable=False, index=True)

    entity_type = db.Column(db.String(32), nullable=False)  # quote, invoice, payment
    entity_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(64), nullable=False)  # e.g. quote.accepted

    actor_id = db.Column(db.Integer, nullable=True)
    prior_state = db.Column(db.String(32), nullable=True)
    new_state = db.Column(db.String(32), nullable=True)
    note = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "prior_state": self.prior_state,
            "new_state": self.new_state,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }
