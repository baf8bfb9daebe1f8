"""
ResourceFlow Fulfillment Core
Request domain models.

Models:
    - AidRequest: a recipient's request for donated resources, with its
      lifecycle status, funding status and review flag
    - Allocation: resource allocation produced by the (external) allocation
      step; the core only reads it and advances its status
"""

from datetime import datetime, timezone

from resourceflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_STATUSES = {"pending", "approved", "claimed", "completed", "closed_no_match"}
TERMINAL_REQUEST_STATUSES = {"closed_no_match", "completed"}
UNMATCHED_REQUEST_STATUSES = {"pending", "approved"}
FUNDING_STATUSES = {"unfunded", "partially_funded", "fully_funded"}

ALLOCATION_STATUSES = {"Pending", "Approved", "In Transit", "Delivered", "Cancelled"}


class AidRequest(db.Model):
    """
    A request for donated resources.

    ``status`` follows the lifecycle pending → approved → claimed → completed,
    with closed_no_match as the SLA/expiry exit. ``is_flagged_for_review`` is
    an independent overlay that only ever goes false → true.

    ``lock_version`` is bumped by every funding mutation; the guarded UPDATE
    that bumps it is what serialises concurrent contributions.
    """

    __tablename__ = "aid_requests"
    __table_args__ = (
        db.Index("idx_aid_requests_status_created", "status", "created_at"),
        db.Index("idx_aid_requests_flagged", "is_flagged_for_review"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
        comment="Owning recipient",
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), nullable=True)
    quantity_needed = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(30), nullable=False, default="pending",
                       comment="pending, approved, claimed, completed, closed_no_match")
    funding_status = db.Column(db.String(30), nullable=False, default="unfunded",
                               comment="unfunded, partially_funded, fully_funded")
    assigned_supplier_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    is_flagged_for_review = db.Column(db.Boolean, nullable=False, default=False)
    flagged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lock_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    contributions = db.relationship(
        "Contribution", back_populates="request", lazy="dynamic",
        order_by="Contribution.id",
    )
    allocations = db.relationship("Allocation", back_populates="request", lazy="dynamic")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "quantity_needed": self.quantity_needed,
            "status": self.status,
            "funding_status": self.funding_status,
            "assigned_supplier_id": self.assigned_supplier_id,
            "is_flagged_for_review": self.is_flagged_for_review,
            "flagged_at": self.flagged_at.isoformat() if self.flagged_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<AidRequest {self.id}: {self.title[:40]} [{self.status}]>"


class Allocation(db.Model):
    """Resources set aside for a request, ready to be routed to it."""

    __tablename__ = "allocations"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("aid_requests.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    allocated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    quantity_allocated = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="Pending",
                       comment="Pending, Approved, In Transit, Delivered, Cancelled")
    actual_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    request = db.relationship("AidRequest", back_populates="allocations")
    routes = db.relationship("DeliveryRoute", back_populates="allocation", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "allocated_by": self.allocated_by,
            "quantity_allocated": self.quantity_allocated,
            "status": self.status,
            "actual_delivery_date": (
                self.actual_delivery_date.isoformat() if self.actual_delivery_date else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Allocation {self.id} request={self.request_id} [{self.status}]>"
