"""
Route → Logistic bridge and delivery route commands.

Every delivery route that has an allocation owns exactly one Logistic
tracking record. The bridge handlers are called explicitly by the route
commands below, inside the same transaction as the route mutation, so a
reader never sees a route status that its Logistic does not mirror.

    on_route_created(route)                   → creates the Logistic (idempotent)
    on_route_status_changed(route, old)       → mirrors the new status (no-op
                                                when unchanged or no Logistic)

Only this module creates Logistic rows.
"""

import logging
import secrets
import string
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from resourceflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from resourceflow.models import db
from resourceflow.models.aid_request import Allocation
from resourceflow.models.audit import write_audit
from resourceflow.models.auth import User
from resourceflow.models.logistics import (
    ACTIVE_ROUTE_STATUSES,
    ROUTE_STATUSES,
    DeliveryRoute,
    Logistic,
)
from resourceflow.services.access_policy import authorize, can

logger = logging.getLogger(__name__)

TRACKING_PREFIX = "RF"
_TRACKING_ALPHABET = string.ascii_uppercase + string.digits
_TRACKING_CODE_LENGTH = 8

ROUTABLE_ALLOCATION_STATUSES = {"Pending", "Approved"}

# Fields a route update may touch
_ROUTE_UPDATE_FIELDS = (
    "route_name", "driver_id", "status", "destination_region", "destination_city",
    "destination_address", "scheduled_date", "actual_arrival_date", "route_notes",
)
_DATE_FIELDS = {"scheduled_date", "actual_arrival_date"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_tracking_number(route_id: int) -> str:
    """``RF-<8 random A-Z0-9>-<route id>``; the id suffix makes it unique per route."""
    code = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(_TRACKING_CODE_LENGTH))
    return f"{TRACKING_PREFIX}-{code}-{route_id}"


def _logistic_for_route(route_id: int) -> Logistic | None:
    return db.session.execute(
        select(Logistic).where(Logistic.delivery_route_id == route_id)
    ).scalar_one_or_none()


# ═════════════════════════════════════════════════════════════════════════════
# Bridge handlers
# ═════════════════════════════════════════════════════════════════════════════


def on_route_created(route: DeliveryRoute) -> Logistic | None:
    """
    Create the route's Logistic when it has an allocation.

    Safe to call more than once: an existing row is returned, and a
    concurrent insert losing on the unique ``delivery_route_id`` falls back
    to the winner's row.
    """
    if route.allocation_id is None:
        return None

    existing = _logistic_for_route(route.id)
    if existing is not None:
        return existing

    try:
        with db.session.begin_nested():
            logistic = Logistic(
                delivery_route_id=route.id,
                allocation_id=route.allocation_id,
                status="Scheduled",
                tracking_number=generate_tracking_number(route.id),
                location_updates=[],
            )
            db.session.add(logistic)
            db.session.flush()
    except IntegrityError:
        logger.info("Logistic for route %d already created concurrently", route.id)
        return _logistic_for_route(route.id)

    logger.info("Logistic %s created for route %d", logistic.tracking_number, route.id)
    return logistic


def on_route_status_changed(route: DeliveryRoute, old_status: str) -> Logistic | None:
    """Mirror a changed route status onto its Logistic; nothing else cascades."""
    if route.status == old_status:
        return None
    logistic = _logistic_for_route(route.id)
    if logistic is None:
        return None
    logistic.status = route.status
    db.session.flush()
    logger.debug("Logistic %d status %s → %s", logistic.id, old_status, route.status)
    return logistic


# ═════════════════════════════════════════════════════════════════════════════
# Input helpers
# ═════════════════════════════════════════════════════════════════════════════


def _parse_datetime(value, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime",
                                  details={field: str(value)}) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _check_status(status) -> str:
    if status not in ROUTE_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(sorted(ROUTE_STATUSES))}",
            details={"status": str(status)},
        )
    return status


def _check_driver(driver_id):
    if driver_id in (None, ""):
        return None
    try:
        driver_id = int(driver_id)
    except (TypeError, ValueError):
        raise ValidationError("driver_id must be an integer") from None
    if db.session.get(User, driver_id) is None:
        raise ValidationError(f"Driver {driver_id} does not exist", details={"driver_id": driver_id})
    return driver_id


def _visible_routes(stmt, actor):
    """Distributors see every route; others only routes they drive or allocated."""
    if can(actor, "view_all", "delivery_route"):
        return stmt
    allocated = select(Allocation.id).where(Allocation.allocated_by == actor.id)
    return stmt.where(
        or_(DeliveryRoute.driver_id == actor.id, DeliveryRoute.allocation_id.in_(allocated))
    )


# ═════════════════════════════════════════════════════════════════════════════
# Route commands
# ═════════════════════════════════════════════════════════════════════════════


def create_route(data: dict, actor) -> DeliveryRoute:
    """
    Create a delivery route and, when it carries an allocation, its Logistic.

    The allocation must be Pending or Approved and have no other active
    route; a Pending allocation is approved by this call. New routes are
    always Scheduled, matching the Logistic created alongside.
    """
    authorize(actor, "create", "delivery_route")

    route_name = (data.get("route_name") or "").strip()
    if not route_name:
        raise ValidationError("route_name is required", details={"route_name": "required"})
    status = _check_status(data.get("status") or "Scheduled")
    if status != "Scheduled":
        # The Logistic starts as Scheduled; later states go through update_route
        raise ValidationError("A new delivery route must start as Scheduled",
                              details={"status": status})
    driver_id = _check_driver(data.get("driver_id"))
    allocation_id = data.get("allocation_id")

    try:
        if allocation_id is not None:
            allocation = db.session.execute(
                select(Allocation).where(Allocation.id == allocation_id).with_for_update()
            ).scalar_one_or_none()
            if allocation is None:
                raise NotFoundError(resource="Allocation", resource_id=allocation_id)
            if allocation.status not in ROUTABLE_ALLOCATION_STATUSES:
                raise ValidationError(
                    f"Cannot create delivery route for allocation with status: {allocation.status}",
                    details={"allocation_status": allocation.status},
                )
            active = db.session.execute(
                select(DeliveryRoute.id).where(
                    DeliveryRoute.allocation_id == allocation.id,
                    DeliveryRoute.status.in_(ACTIVE_ROUTE_STATUSES),
                ).limit(1)
            ).first()
            if active is not None:
                raise ValidationError(
                    "A delivery route already exists for this allocation",
                    details={"delivery_route_id": active[0]},
                )
            if allocation.status == "Pending":
                allocation.status = "Approved"

        route = DeliveryRoute(
            route_name=route_name,
            allocation_id=allocation_id,
            driver_id=driver_id,
            status=status,
            destination_region=data.get("destination_region"),
            destination_city=data.get("destination_city"),
            destination_address=data.get("destination_address"),
            scheduled_date=_parse_datetime(data.get("scheduled_date"), "scheduled_date"),
            route_notes=data.get("route_notes"),
        )
        db.session.add(route)
        db.session.flush()

        on_route_created(route)
        write_audit(entity_type="delivery_route", entity_id=route.id,
                    action="delivery_route.create", actor=actor,
                    diff={"allocation_id": allocation_id, "status": status})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Route %d created (allocation=%s) by user %d", route.id, allocation_id, actor.id)
    return route


def update_route(route_id: int, data: dict, actor) -> DeliveryRoute:
    """Apply field changes; a status change is mirrored onto the Logistic."""
    route = db.session.get(DeliveryRoute, route_id)
    if route is None:
        raise NotFoundError(resource="DeliveryRoute", resource_id=route_id)
    authorize(actor, "update", "delivery_route", route)

    try:
        # Validate the whole payload before touching the route
        values = {}
        for field in _ROUTE_UPDATE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "status":
                value = _check_status(value)
            elif field == "driver_id":
                value = _check_driver(value)
            elif field in _DATE_FIELDS:
                value = _parse_datetime(value, field)
            elif field == "route_name" and not (value or "").strip():
                raise ValidationError("route_name cannot be empty")
            values[field] = value

        old_status = route.status
        changes = {}
        for field, value in values.items():
            old = getattr(route, field)
            if old != value:
                changes[field] = {"old": old, "new": value}
                setattr(route, field, value)

        db.session.flush()
        on_route_status_changed(route, old_status)
        if changes:
            write_audit(entity_type="delivery_route", entity_id=route.id,
                        action="delivery_route.update", actor=actor, diff=changes)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return route


def list_routes(actor, *, status: str | None = None):
    """Select statement for the routes visible to ``actor``, soonest first."""
    authorize(actor, "view_any", "delivery_route")
    stmt = _visible_routes(select(DeliveryRoute), actor)
    if status:
        stmt = stmt.where(DeliveryRoute.status == status)
    return stmt.order_by(DeliveryRoute.scheduled_date.is_(None), DeliveryRoute.scheduled_date,
                         DeliveryRoute.id)


def get_route(route_id: int, actor) -> DeliveryRoute:
    route = db.session.get(DeliveryRoute, route_id)
    if route is None:
        raise NotFoundError(resource="DeliveryRoute", resource_id=route_id)
    authorize(actor, "view", "delivery_route", route)
    return route


# ═════════════════════════════════════════════════════════════════════════════
# Logistic commands
# ═════════════════════════════════════════════════════════════════════════════


def _get_logistic(logistic_id: int) -> Logistic:
    logistic = db.session.get(Logistic, logistic_id)
    if logistic is None:
        raise NotFoundError(resource="Logistic", resource_id=logistic_id)
    return logistic


def get_logistic(logistic_id: int, actor) -> Logistic:
    logistic = _get_logistic(logistic_id)
    authorize(actor, "view", "logistic", logistic)
    return logistic


def list_logistics(actor, *, status: str | None = None, tracking_number: str | None = None):
    """Select statement for the Logistics on routes visible to ``actor``, newest first."""
    stmt = select(Logistic)
    if not can(actor, "view_all", "delivery_route"):
        stmt = stmt.where(
            Logistic.delivery_route_id.in_(_visible_routes(select(DeliveryRoute.id), actor))
        )
    if status:
        stmt = stmt.where(Logistic.status == status)
    if tracking_number:
        stmt = stmt.where(Logistic.tracking_number == tracking_number)
    return stmt.order_by(Logistic.created_at.desc(), Logistic.id.desc())


def track(tracking_number: str) -> Logistic:
    """Public lookup by tracking number."""
    logistic = db.session.execute(
        select(Logistic).where(Logistic.tracking_number == tracking_number)
    ).scalar_one_or_none()
    if logistic is None:
        raise NotFoundError(resource="Tracking number", resource_id=tracking_number)
    return logistic


def update_location(logistic_id: int, point: dict, actor) -> Logistic:
    """Append a ``{latitude, longitude, timestamp}`` point to the history."""
    logistic = _get_logistic(logistic_id)
    authorize(actor, "update_location", "logistic", logistic)

    errors = {}
    coords = {}
    for field, bound in (("latitude", 90), ("longitude", 180)):
        raw = point.get(field)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            errors[field] = "required numeric"
            continue
        if not -bound <= value <= bound:
            errors[field] = f"must be between -{bound} and {bound}"
        coords[field] = value
    if not point.get("timestamp"):
        errors["timestamp"] = "required"
    if errors:
        raise ValidationError("Invalid location update", details=errors)
    timestamp = _parse_datetime(point["timestamp"], "timestamp")

    entry = {
        "latitude": coords["latitude"],
        "longitude": coords["longitude"],
        "timestamp": timestamp.isoformat(),
    }
    logistic.location_updates = list(logistic.location_updates or []) + [entry]
    logistic.last_location_update = _utcnow()
    write_audit(entity_type="logistic", entity_id=logistic.id,
                action="logistic.update_location", actor=actor, diff=entry)
    db.session.commit()
    return logistic


def complete_delivery(logistic_id: int, actor) -> Logistic:
    """Mark the route Delivered and cascade to the Logistic and the allocation."""
    logistic = _get_logistic(logistic_id)
    route = logistic.route
    if route is None:
        raise NotFoundError(resource="DeliveryRoute", resource_id=logistic.delivery_route_id)
    authorize(actor, "complete_delivery", "logistic", logistic)
    if route.status in ("Delivered", "Cancelled"):
        raise ConflictError(
            f"Route {route.id} is already {route.status}",
            resource="DeliveryRoute", resource_id=route.id, state=route.status,
        )

    now = _utcnow()
    route_id = route.id
    try:
        old_status = route.status
        route.status = "Delivered"
        route.actual_arrival_date = now
        db.session.flush()
        on_route_status_changed(route, old_status)

        allocation_id = route.allocation_id or logistic.allocation_id
        allocation = db.session.get(Allocation, allocation_id) if allocation_id else None
        if allocation is not None:
            allocation.status = "Delivered"
            allocation.actual_delivery_date = now

        write_audit(entity_type="logistic", entity_id=logistic.id,
                    action="logistic.complete_delivery", actor=actor,
                    diff={"route_id": route.id, "status": {"old": old_status, "new": "Delivered"},
                          "allocation_id": allocation_id})
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error("Delivery completion failed: route=%d", route_id)
        raise

    logger.info("Delivery completed: route=%d logistic=%d", route.id, logistic.id)
    return logistic
