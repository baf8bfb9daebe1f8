"""
Request Lifecycle Service — status transitions and SLA enforcement.

Status machine:
    pending → approved → claimed → completed
    pending | approved → closed_no_match   (SLA job, expiry job, admin review)

``closed_no_match`` and ``completed`` are terminal. ``is_flagged_for_review``
is an overlay outside the machine and only ever moves false → true.

SLA batch operations are single conditional UPDATE statements: the unmatched
predicate is evaluated by the database at write time, so a request that gains
a committed contribution or an assigned supplier concurrently is simply not
matched. Re-running any batch is safe.

Usage:
    from resourceflow.services.request_lifecycle import (
        close_unmatched, flag_unmatched, transition_request,
    )

    transition_request(request_id, "approve", admin)
    flagged = flag_unmatched(days=30)
    closed = close_unmatched(days=30)
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, exists, or_, select, update

from resourceflow.core.exceptions import (
    NotFoundError,
    TransitionError,
    ValidationError,
)
from resourceflow.models import db
from resourceflow.models.aid_request import (
    UNMATCHED_REQUEST_STATUSES,
    AidRequest,
    Allocation,
)
from resourceflow.models.audit import write_audit
from resourceflow.models.contribution import Contribution
from resourceflow.models.logistics import DeliveryRoute
from resourceflow.services.access_policy import authorize, can
from resourceflow.services.contribution_ledger import lock_request
from resourceflow.services.notification import NotificationService

logger = logging.getLogger(__name__)

DEFAULT_SLA_DAYS = 30

# action → {"from": allowed statuses, "to": target status}
REQUEST_TRANSITIONS = {
    "approve": {"from": {"pending"}, "to": "approved"},
    "claim": {"from": {"approved"}, "to": "claimed"},
    "complete": {"from": {"claimed"}, "to": "completed"},
    "close_no_match": {"from": {"pending", "approved"}, "to": "closed_no_match"},
}

# Transition action → policy action on the "request" resource group
_ACTION_POLICY = {
    "approve": "approve",
    "claim": "claim",
    "complete": "complete",
    "close_no_match": "review",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value, field: str) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime",
                                  details={field: str(value)}) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _check_days(days) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days < 0:
        raise ValidationError("days must be a non-negative integer", details={"days": str(days)})
    return days


# ═════════════════════════════════════════════════════════════════════════════
# Unmatched predicate
# ═════════════════════════════════════════════════════════════════════════════


def unmatched_clause():
    """SQL predicate: pending/approved, no assigned supplier, no committed contribution."""
    has_committed = exists().where(
        Contribution.request_id == AidRequest.id,
        Contribution.status == "committed",
    )
    return and_(
        AidRequest.status.in_(UNMATCHED_REQUEST_STATUSES),
        AidRequest.assigned_supplier_id.is_(None),
        ~has_committed,
    )


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


def create_request(data: dict, actor) -> AidRequest:
    """Create a request owned by ``actor``."""
    authorize(actor, "create", "request")

    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    quantity = data.get("quantity_needed")
    if quantity is not None:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("quantity_needed must be an integer",
                                  details={"quantity_needed": str(quantity)}) from None

    req = AidRequest(
        user_id=actor.id,
        title=title,
        description=data.get("description", ""),
        category=data.get("category"),
        quantity_needed=quantity,
        expires_at=_parse_datetime(data.get("expires_at"), "expires_at"),
        status="pending",
        funding_status="unfunded",
    )
    db.session.add(req)
    db.session.flush()
    write_audit(entity_type="aid_request", entity_id=req.id, action="aid_request.create",
                actor=actor, diff={"title": title})
    db.session.commit()
    logger.info("Request %d created by user %d", req.id, actor.id)
    return req


def get_request(request_id: int, actor) -> AidRequest:
    """Return a request the actor may see; others' requests look missing."""
    req = db.session.get(AidRequest, request_id)
    if req is None:
        raise NotFoundError(resource="AidRequest", resource_id=request_id)
    authorize(actor, "view", "request", req, hide_existence=True)
    return req


def list_requests(actor, *, status: str | None = None, flagged: bool | None = None):
    """Select statement for the requests visible to ``actor``."""
    stmt = select(AidRequest)
    if not can(actor, "view_any", "request"):
        stmt = stmt.where(AidRequest.user_id == actor.id)
    if status:
        stmt = stmt.where(AidRequest.status == status)
    if flagged is not None:
        stmt = stmt.where(AidRequest.is_flagged_for_review.is_(flagged))
    return stmt.order_by(AidRequest.created_at.desc(), AidRequest.id.desc())


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def validate_transition(req: AidRequest, action: str) -> dict:
    """
    Validate whether an action is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = REQUEST_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": req.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if req.status not in rule["from"]:
        return {"valid": False, "from": req.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{req.status}'"}

    return {"valid": True, "from": req.status, "to": rule["to"], "reason": None}


def _has_delivered_route(request_id: int) -> bool:
    return db.session.execute(
        select(
            exists()
            .where(DeliveryRoute.allocation_id == Allocation.id)
            .where(Allocation.request_id == request_id)
            .where(DeliveryRoute.status == "Delivered")
        )
    ).scalar()


def _has_allocations(request_id: int) -> bool:
    return db.session.execute(
        select(exists().where(Allocation.request_id == request_id))
    ).scalar()


def _has_committed_contributions(request_id: int) -> bool:
    return db.session.execute(
        select(exists().where(
            Contribution.request_id == request_id,
            Contribution.status == "committed",
        ))
    ).scalar()


def transition_request(request_id: int, action: str, actor) -> dict:
    """
    Execute a request lifecycle transition.

    Returns:
        {"request_id", "action", "from", "to", "request"}

    Raises:
        NotFoundError, AuthorizationError, ConflictError (terminal request),
        TransitionError (action not valid from the current status).
    """
    req = db.session.get(AidRequest, request_id)
    if req is None:
        raise NotFoundError(resource="AidRequest", resource_id=request_id)
    policy_action = _ACTION_POLICY.get(action)
    if policy_action is None:
        raise TransitionError(request_id, action, req.status, "Unknown action")
    authorize(actor, policy_action, "request", req)

    try:
        req = lock_request(request_id)
        check = validate_transition(req, action)
        if not check["valid"]:
            raise TransitionError(request_id, action, req.status, check["reason"])

        if action == "claim":
            if _has_committed_contributions(request_id):
                raise TransitionError(request_id, action, req.status,
                                      "Request already has committed contributions")
            req.assigned_supplier_id = actor.id
            req.funding_status = "fully_funded"
        elif action == "complete":
            if _has_allocations(request_id) and not _has_delivered_route(request_id):
                raise TransitionError(request_id, action, req.status,
                                      "Delivery must be completed before the request can be completed")

        old_status = req.status
        req.status = check["to"]
        write_audit(
            entity_type="aid_request",
            entity_id=req.id,
            action=f"aid_request.{action}",
            actor=actor,
            diff={"status": {"old": old_status, "new": req.status}},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Request %d: %s → %s by user %d", request_id, old_status, req.status, actor.id)
    return {
        "request_id": request_id,
        "action": action,
        "from": old_status,
        "to": req.status,
        "request": req.to_dict(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# SLA batch operations
# ═════════════════════════════════════════════════════════════════════════════


def flag_unmatched(days: int = DEFAULT_SLA_DAYS, *, now: datetime | None = None) -> int:
    """
    Flag unmatched, not-yet-flagged requests older than ``days``.

    The flag is committed before any notification is attempted, so a
    delivery failure can never undo it. Every active admin receives one
    notification carrying the batch count; an empty batch notifies nobody.

    Returns:
        Number of requests flagged by this run.
    """
    days = _check_days(days)
    now = now or _utcnow()
    cutoff = now - timedelta(days=days)

    try:
        result = db.session.execute(
            update(AidRequest)
            .where(
                unmatched_clause(),
                AidRequest.is_flagged_for_review.is_(False),
                AidRequest.created_at < cutoff,
            )
            .values(is_flagged_for_review=True, flagged_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count:
            write_audit(entity_type="aid_request", entity_id="batch",
                        action="aid_request.flag_unmatched",
                        diff={"count": count, "days": days, "flagged_at": now.isoformat()})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Flag unmatched: days=%d flagged=%d", days, count)
    if count:
        NotificationService.notify_admins_flagged(count, days=days)
    return count


def close_unmatched(days: int = DEFAULT_SLA_DAYS, *, now: datetime | None = None) -> int:
    """
    Close unmatched requests older than ``days`` or past their expiry,
    regardless of flag state.

    Returns:
        Number of requests moved to ``closed_no_match``; 0 on a re-run.
    """
    days = _check_days(days)
    now = now or _utcnow()
    cutoff = now - timedelta(days=days)

    try:
        result = db.session.execute(
            update(AidRequest)
            .where(
                unmatched_clause(),
                or_(
                    AidRequest.created_at < cutoff,
                    and_(AidRequest.expires_at.is_not(None), AidRequest.expires_at < now),
                ),
            )
            .values(status="closed_no_match")
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count:
            write_audit(entity_type="aid_request", entity_id="batch",
                        action="aid_request.close_unmatched",
                        diff={"count": count, "days": days})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Close unmatched: days=%d closed=%d", days, count)
    return count


def close_expired(*, now: datetime | None = None) -> int:
    """Close pending/approved requests whose ``expires_at`` has passed, matched or not."""
    now = now or _utcnow()

    try:
        result = db.session.execute(
            update(AidRequest)
            .where(
                AidRequest.status.in_(UNMATCHED_REQUEST_STATUSES),
                AidRequest.expires_at.is_not(None),
                AidRequest.expires_at <= now,
            )
            .values(status="closed_no_match")
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count:
            write_audit(entity_type="aid_request", entity_id="batch",
                        action="aid_request.close_expired", diff={"count": count})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Close expired: closed=%d", count)
    return count


# ═════════════════════════════════════════════════════════════════════════════
# Admin review
# ═════════════════════════════════════════════════════════════════════════════


def list_flagged(actor) -> list[AidRequest]:
    """Flagged requests still awaiting a decision, oldest first."""
    authorize(actor, "review", "request")
    return db.session.execute(
        select(AidRequest)
        .where(
            AidRequest.is_flagged_for_review.is_(True),
            AidRequest.status.in_(UNMATCHED_REQUEST_STATUSES),
        )
        .order_by(AidRequest.created_at, AidRequest.id)
    ).scalars().all()


def review_close(request_ids, actor) -> int:
    """Close the given flagged requests; the flag itself stays set."""
    authorize(actor, "review", "request")
    if not request_ids or not isinstance(request_ids, (list, tuple)):
        raise ValidationError("request_ids must be a non-empty list",
                              details={"request_ids": "required"})
    try:
        ids = [int(i) for i in request_ids]
    except (TypeError, ValueError):
        raise ValidationError("request_ids must contain integers") from None

    try:
        result = db.session.execute(
            update(AidRequest)
            .where(
                AidRequest.id.in_(ids),
                AidRequest.is_flagged_for_review.is_(True),
                AidRequest.status.in_(UNMATCHED_REQUEST_STATUSES),
            )
            .values(status="closed_no_match")
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        write_audit(entity_type="aid_request", entity_id="batch",
                    action="aid_request.review_close", actor=actor,
                    diff={"request_ids": ids, "count": count})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Review close by user %d: requested=%d closed=%d", actor.id, len(ids), count)
    return count

