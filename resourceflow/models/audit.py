"""
ResourceFlow Fulfillment Core
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from resourceflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "aid_request", "contribution", "delivery_route", "logistic", "scheduled_job",
}

AUDIT_ACTIONS = {
    # Request lifecycle
    "aid_request.create",
    "aid_request.approve",
    "aid_request.claim",
    "aid_request.complete",
    "aid_request.flag_unmatched",
    "aid_request.close_unmatched",
    "aid_request.close_expired",
    "aid_request.review_close",
    # Ledger
    "contribution.create",
    "contribution.request_recede",
    "contribution.approve_recede",
    "contribution.reject_recede",
    # Delivery
    "delivery_route.create",
    "delivery_route.update",
    "logistic.update_location",
    "logistic.complete_delivery",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. Batch jobs write one row for the whole batch with the
    affected count in ``diff_json``.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="aid_request | contribution | delivery_route | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity, or 'batch' for bulk jobs",
    )

    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system",
                      comment="User email or 'system'")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}} or batch summary")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor=None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` may be a User instance, a plain label, or None for system jobs.
    Returns the (flushed) AuditLog instance.
    """
    if actor is None:
        label, actor_user_id = "system", None
    elif isinstance(actor, str):
        label, actor_user_id = actor, None
    else:
        label, actor_user_id = actor.email, actor.id

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=label,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
