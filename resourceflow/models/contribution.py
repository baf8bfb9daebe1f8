"""
ResourceFlow Fulfillment Core
Contribution domain model.

Models:
    - Contribution: one supplier's percentage commitment toward a request.
      Never hard-deleted; withdrawal goes through the two-step recede flow.
"""

from datetime import datetime, timezone
from decimal import Decimal

from resourceflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CONTRIBUTION_STATUSES = {"pending", "committed", "receded"}
ACTIVE_CONTRIBUTION_STATUSES = {"pending", "committed"}


class Contribution(db.Model):
    """
    A supplier's share of a request's funding.

    Only ``committed`` rows count toward the request's 100% ceiling. A recede
    request leaves the row committed and only stamps the ``recede_requested_*``
    columns; the row moves to ``receded`` once an admin approves.
    """

    __tablename__ = "contributions"
    __table_args__ = (
        db.Index("idx_contributions_request_status", "request_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("aid_requests.id", ondelete="RESTRICT"), nullable=False,
    )
    supplier_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    percentage = db.Column(db.Numeric(5, 2), nullable=False, comment="Share of the request, (0, 100]")
    amount_value = db.Column(db.Numeric(12, 2), nullable=True,
                             comment="Optional declared value of the share")
    status = db.Column(db.String(20), nullable=False, default="committed",
                       comment="pending, committed, receded")

    recede_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recede_requested_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                    nullable=True)
    recede_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recede_approved_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                   nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    request = db.relationship("AidRequest", back_populates="contributions")
    supplier = db.relationship("User", foreign_keys=[supplier_id])

    @property
    def recede_pending(self) -> bool:
        return self.recede_requested_at is not None and self.status == "committed"

    def to_dict(self):
        pct = self.percentage if self.percentage is not None else Decimal("0")
        return {
            "id": self.id,
            "request_id": self.request_id,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier.full_name if self.supplier else None,
            "percentage": float(pct),
            "amount_value": float(self.amount_value) if self.amount_value is not None else None,
            "status": self.status,
            "recede_pending": self.recede_pending,
            "recede_requested_at": (
                self.recede_requested_at.isoformat() if self.recede_requested_at else None
            ),
            "recede_approved_at": (
                self.recede_approved_at.isoformat() if self.recede_approved_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Contribution {self.id} request={self.request_id} {self.percentage}% [{self.status}]>"
