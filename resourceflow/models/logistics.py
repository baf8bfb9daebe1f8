"""
ResourceFlow Fulfillment Core
Delivery domain models.

Models:
    - DeliveryRoute: a planned delivery of one allocation by a driver
    - Logistic: the tracking record owned by a route (exactly one per route
      that has an allocation; created only by services.route_logistics)
"""

from datetime import datetime, timezone

from resourceflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROUTE_STATUSES = {"Scheduled", "In Transit", "Delivered", "Cancelled"}
ACTIVE_ROUTE_STATUSES = {"Scheduled", "In Transit"}


class DeliveryRoute(db.Model):
    """A delivery run for an allocation."""

    __tablename__ = "delivery_routes"

    id = db.Column(db.Integer, primary_key=True)
    route_name = db.Column(db.String(255), nullable=False)
    allocation_id = db.Column(
        db.Integer, db.ForeignKey("allocations.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    driver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="Scheduled",
                       comment="Scheduled, In Transit, Delivered, Cancelled")

    destination_region = db.Column(db.String(100), nullable=True)
    destination_city = db.Column(db.String(100), nullable=True)
    destination_address = db.Column(db.String(500), nullable=True)
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_arrival_date = db.Column(db.DateTime(timezone=True), nullable=True)
    route_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    allocation = db.relationship("Allocation", back_populates="routes")
    logistic = db.relationship("Logistic", back_populates="route", uselist=False)

    def to_dict(self, include_logistic=False):
        d = {
            "id": self.id,
            "route_name": self.route_name,
            "allocation_id": self.allocation_id,
            "driver_id": self.driver_id,
            "status": self.status,
            "destination_region": self.destination_region,
            "destination_city": self.destination_city,
            "destination_address": self.destination_address,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "actual_arrival_date": (
                self.actual_arrival_date.isoformat() if self.actual_arrival_date else None
            ),
            "route_notes": self.route_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_logistic:
            d["logistic"] = self.logistic.to_dict() if self.logistic else None
        return d

    def __repr__(self):
        return f"<DeliveryRoute {self.id}: {self.route_name} [{self.status}]>"


class Logistic(db.Model):
    """
    Tracking record for a delivery route.

    ``status`` mirrors the owning route; ``location_updates`` is an ordered
    history of ``{latitude, longitude, timestamp}`` points.
    """

    __tablename__ = "logistics"

    id = db.Column(db.Integer, primary_key=True)
    delivery_route_id = db.Column(
        db.Integer, db.ForeignKey("delivery_routes.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    allocation_id = db.Column(
        db.Integer, db.ForeignKey("allocations.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="Scheduled")
    tracking_number = db.Column(db.String(40), nullable=False, unique=True)
    location_updates = db.Column(db.JSON, default=list)
    last_location_update = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    route = db.relationship("DeliveryRoute", back_populates="logistic")

    def to_dict(self):
        return {
            "id": self.id,
            "delivery_route_id": self.delivery_route_id,
            "allocation_id": self.allocation_id,
            "status": self.status,
            "tracking_number": self.tracking_number,
            "location_updates": list(self.location_updates or []),
            "last_location_update": (
                self.last_location_update.isoformat() if self.last_location_update else None
            ),
            "delivery_notes": self.delivery_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Logistic {self.id} {self.tracking_number} [{self.status}]>"
