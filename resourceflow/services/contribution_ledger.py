"""
Contribution Ledger — percentage-based partial funding of aid requests.

Invariant: for every request, the committed percentages sum to at most 100,
including under concurrent writers.

Serialisation: every mutation that reads the committed sum first runs a
guarded ``UPDATE aid_requests SET lock_version = lock_version + 1`` on the
target request (row lock on PostgreSQL, database write lock on SQLite). A
second writer blocks on that UPDATE until the first commits, then re-reads
the sum inside its own transaction.

Recede is two-step: the supplier asks, an admin approves. Until approval the
contribution stays ``committed`` and keeps counting toward the sum.

Usage:
    from resourceflow.services import contribution_ledger as ledger

    stats = ledger.create_contribution(request_id, supplier, "60")
    ledger.request_recede(contribution_id, supplier)
    ledger.approve_recede(contribution_id, admin)
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, or_, select, update

from resourceflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from resourceflow.models import db
from resourceflow.models.aid_request import TERMINAL_REQUEST_STATUSES, AidRequest
from resourceflow.models.audit import write_audit
from resourceflow.models.contribution import ACTIVE_CONTRIBUTION_STATUSES, Contribution
from resourceflow.services.access_policy import authorize, can

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def parse_percentage(value) -> Decimal:
    """Coerce ``value`` to a Decimal in (0, 100] with at most two decimals."""
    if value is None or isinstance(value, bool):
        raise ValidationError("percentage is required", details={"percentage": "required"})
    try:
        pct = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("percentage must be a number", details={"percentage": str(value)}) from None
    if not pct.is_finite():
        raise ValidationError("percentage must be a number", details={"percentage": str(value)})
    if pct <= 0 or pct > HUNDRED:
        raise ValidationError(
            "percentage must be greater than 0 and at most 100",
            details={"percentage": str(pct)},
        )
    if pct != pct.quantize(_CENT):
        raise ValidationError(
            "percentage supports at most two decimal places",
            details={"percentage": str(pct)},
        )
    return pct.quantize(_CENT)


def _parse_amount(value) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount_value must be a number",
                              details={"amount_value": str(value)}) from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError("amount_value must be a non-negative number",
                              details={"amount_value": str(value)})
    return amount


def lock_request(request_id: int) -> AidRequest:
    """Take the per-request serialisation point and return the fresh row.

    Raises NotFoundError for an unknown id and ConflictError when the
    request is already terminal.
    """
    result = db.session.execute(
        update(AidRequest)
        .where(
            AidRequest.id == request_id,
            AidRequest.status.not_in(TERMINAL_REQUEST_STATUSES),
        )
        .values(lock_version=AidRequest.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        req = db.session.get(AidRequest, request_id)
        if req is None:
            raise NotFoundError(resource="AidRequest", resource_id=request_id)
        raise ConflictError(
            f"Request {request_id} is {req.status}; funding can no longer change",
            resource="AidRequest", resource_id=request_id, state=req.status,
        )
    return db.session.get(AidRequest, request_id, populate_existing=True)


def _committed_total(request_id: int, *, exclude_id: int | None = None) -> Decimal:
    stmt = (
        select(func.coalesce(func.sum(Contribution.percentage), 0))
        .where(Contribution.request_id == request_id, Contribution.status == "committed")
    )
    if exclude_id is not None:
        stmt = stmt.where(Contribution.id != exclude_id)
    total = db.session.execute(stmt).scalar()
    return Decimal(str(total or 0)).quantize(_CENT)


def funding_status_for(total: Decimal) -> str:
    if total <= 0:
        return "unfunded"
    if total >= HUNDRED:
        return "fully_funded"
    return "partially_funded"


def _apply_funding(req: AidRequest, total: Decimal) -> None:
    """Update funding_status and move the request in or out of ``claimed``."""
    req.funding_status = funding_status_for(total)
    if total >= HUNDRED and req.status in ("pending", "approved"):
        req.status = "claimed"
    elif total < HUNDRED and req.status == "claimed" and req.assigned_supplier_id is None:
        req.status = "approved"


def _get_contribution(contribution_id: int) -> Contribution:
    c = db.session.get(Contribution, contribution_id)
    if c is None:
        raise NotFoundError(resource="Contribution", resource_id=contribution_id)
    return c


# ═════════════════════════════════════════════════════════════════════════════
# Commands
# ═════════════════════════════════════════════════════════════════════════════


def create_contribution(request_id: int, supplier, percentage, *, amount_value=None) -> dict:
    """
    Commit a supplier's percentage share toward a request.

    Args:
        request_id: Target AidRequest id.
        supplier: Acting ``User``; must pass the ``contribution.create`` policy.
        percentage: Share in (0, 100]; str, int, float or Decimal.
        amount_value: Optional declared value of the share.

    Returns:
        Ledger stats for the request after the insert (see ``get_stats``).

    Raises:
        ValidationError: bad percentage, percentage above the remaining
            share, or the supplier already holds an active contribution.
        ConflictError: request terminal, already fully funded, or claimed
            by a single supplier.
        NotFoundError: unknown request.
    """
    authorize(supplier, "create", "contribution")
    pct = parse_percentage(percentage)
    amount_value = _parse_amount(amount_value)

    try:
        req = lock_request(request_id)

        if req.status == "claimed" and req.assigned_supplier_id is not None:
            raise ConflictError(
                f"Request {request_id} is claimed by supplier {req.assigned_supplier_id}",
                resource="AidRequest", resource_id=request_id, state=req.status,
            )

        duplicate = db.session.execute(
            select(Contribution.id).where(
                Contribution.request_id == request_id,
                Contribution.supplier_id == supplier.id,
                Contribution.status.in_(ACTIVE_CONTRIBUTION_STATUSES),
            ).limit(1)
        ).first()
        if duplicate is not None:
            raise ValidationError(
                "You already have an active contribution for this request",
                details={"contribution_id": duplicate[0]},
            )

        total = _committed_total(request_id)
        remaining = HUNDRED - total
        if remaining <= 0:
            raise ConflictError(
                f"Request {request_id} is already fully funded",
                resource="AidRequest", resource_id=request_id, state="fully_funded",
            )
        if pct > remaining:
            raise ValidationError(
                f"Percentage {pct} exceeds the remaining {remaining}",
                details={"percentage": float(pct), "remaining_percentage": float(remaining)},
            )

        contribution = Contribution(
            request_id=request_id,
            supplier_id=supplier.id,
            percentage=pct,
            amount_value=amount_value,
            status="committed",
        )
        db.session.add(contribution)
        db.session.flush()

        old_status = req.status
        _apply_funding(req, total + pct)
        write_audit(
            entity_type="contribution",
            entity_id=contribution.id,
            action="contribution.create",
            actor=supplier,
            diff={
                "request_id": request_id,
                "percentage": str(pct),
                "total_percentage": {"old": str(total), "new": str(total + pct)},
                "request_status": {"old": old_status, "new": req.status},
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Contribution %d: supplier=%d request=%d pct=%s total=%s",
        contribution.id, supplier.id, request_id, pct, total + pct,
    )
    return get_stats(request_id)


def update_contribution(contribution_id: int, actor, *, percentage=None, amount_value=None) -> dict:
    """
    Change a committed contribution's percentage and/or declared value.

    The new percentage must fit in what the other committed contributions
    leave free; the request's funding status and claimed state follow the
    new total. Owner supplier or admin only.

    Raises:
        ValidationError: nothing to change, bad values, a pending recede,
            or the new percentage exceeds the free share.
        ConflictError: request terminal.
    """
    contribution = _get_contribution(contribution_id)
    authorize(actor, "update", "contribution", contribution)
    if percentage is None and amount_value is None:
        raise ValidationError("Nothing to update", details={"percentage": "required"})
    pct = parse_percentage(percentage) if percentage is not None else None
    amount = _parse_amount(amount_value)

    try:
        req = lock_request(contribution.request_id)
        db.session.refresh(contribution)
        if contribution.status != "committed":
            raise ValidationError(
                f"Only committed contributions can be changed (status={contribution.status})",
                details={"status": contribution.status},
            )
        if contribution.recede_pending:
            raise ValidationError("A recede request is pending for this contribution")

        changes = {}
        if pct is not None and pct != Decimal(str(contribution.percentage)).quantize(_CENT):
            remaining = HUNDRED - _committed_total(req.id, exclude_id=contribution.id)
            if pct > remaining:
                raise ValidationError(
                    f"Percentage {pct} exceeds the remaining {remaining}",
                    details={"percentage": float(pct), "remaining_percentage": float(remaining)},
                )
            changes["percentage"] = {"old": str(contribution.percentage), "new": str(pct)}
            contribution.percentage = pct
        if amount is not None:
            changes["amount_value"] = {"old": str(contribution.amount_value), "new": str(amount)}
            contribution.amount_value = amount
        db.session.flush()

        old_status = req.status
        total = _committed_total(req.id)
        _apply_funding(req, total)
        write_audit(
            entity_type="contribution",
            entity_id=contribution.id,
            action="contribution.update",
            actor=actor,
            diff={
                **changes,
                "request_id": req.id,
                "total_percentage": str(total),
                "request_status": {"old": old_status, "new": req.status},
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Contribution %d updated by user %d: total=%s", contribution.id, actor.id, total)
    return get_stats(req.id)


def request_recede(contribution_id: int, actor) -> dict:
    """Supplier asks to withdraw a committed contribution (step one of two)."""
    contribution = _get_contribution(contribution_id)
    authorize(actor, "request_recede", "contribution", contribution)

    try:
        lock_request(contribution.request_id)
        db.session.refresh(contribution)
        if contribution.status != "committed":
            raise ValidationError(
                f"Only committed contributions can be receded (status={contribution.status})",
                details={"status": contribution.status},
            )
        if contribution.recede_requested_at is not None:
            raise ValidationError("A recede request is already pending for this contribution")

        contribution.recede_requested_at = _utcnow()
        contribution.recede_requested_by = actor.id
        write_audit(
            entity_type="contribution",
            entity_id=contribution.id,
            action="contribution.request_recede",
            actor=actor,
            diff={"request_id": contribution.request_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Recede requested: contribution=%d by user=%d", contribution.id, actor.id)
    return contribution.to_dict()


def approve_recede(contribution_id: int, actor) -> dict:
    """Admin approves a pending recede; the share stops counting (step two)."""
    contribution = _get_contribution(contribution_id)
    authorize(actor, "approve_recede", "contribution", contribution)

    try:
        req = lock_request(contribution.request_id)
        db.session.refresh(contribution)
        if not contribution.recede_pending:
            raise ValidationError("No pending recede request for this contribution")

        contribution.status = "receded"
        contribution.recede_approved_at = _utcnow()
        contribution.recede_approved_by = actor.id
        db.session.flush()

        old_status = req.status
        total = _committed_total(req.id)
        _apply_funding(req, total)
        write_audit(
            entity_type="contribution",
            entity_id=contribution.id,
            action="contribution.approve_recede",
            actor=actor,
            diff={
                "request_id": req.id,
                "percentage": str(contribution.percentage),
                "total_percentage": str(total),
                "request_status": {"old": old_status, "new": req.status},
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Recede approved: contribution=%d request=%d", contribution.id, req.id)
    return get_stats(req.id)


def reject_recede(contribution_id: int, actor) -> dict:
    """Admin rejects a pending recede; the contribution stays committed."""
    contribution = _get_contribution(contribution_id)
    authorize(actor, "reject_recede", "contribution", contribution)

    try:
        lock_request(contribution.request_id)
        db.session.refresh(contribution)
        if not contribution.recede_pending:
            raise ValidationError("No pending recede request for this contribution",
                                  details={"status": contribution.status})

        requested_by = contribution.recede_requested_by
        contribution.recede_requested_at = None
        contribution.recede_requested_by = None
        write_audit(
            entity_type="contribution",
            entity_id=contribution.id,
            action="contribution.reject_recede",
            actor=actor,
            diff={"request_id": contribution.request_id, "recede_requested_by": requested_by},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Recede rejected: contribution=%d by user=%d", contribution.id, actor.id)
    return contribution.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_stats(request_id: int) -> dict:
    """Aggregate funding view of a request; only committed rows count."""
    req = db.session.get(AidRequest, request_id)
    if req is None:
        raise NotFoundError(resource="AidRequest", resource_id=request_id)

    committed = db.session.execute(
        select(Contribution)
        .where(Contribution.request_id == request_id, Contribution.status == "committed")
        .order_by(Contribution.created_at, Contribution.id)
    ).scalars().all()

    total = sum((Decimal(str(c.percentage)) for c in committed), Decimal("0")).quantize(_CENT)
    remaining = max(HUNDRED - total, Decimal("0"))
    return {
        "request_id": request_id,
        "request_status": req.status,
        "total_percentage": float(total),
        "remaining_percentage": float(remaining),
        "contribution_count": len(committed),
        "funding_status": funding_status_for(total),
        "contributions": [c.to_dict() for c in committed],
    }


def get_contribution(contribution_id: int, actor) -> Contribution:
    contribution = _get_contribution(contribution_id)
    authorize(actor, "view", "contribution", contribution, hide_existence=True)
    return contribution


def list_contributions(actor, *, request_id: int | None = None):
    """Select statement for the contributions visible to ``actor``, newest first.

    Suppliers only see their own rows; request owners see the rows on
    their requests.
    """
    stmt = select(Contribution)
    if request_id is not None:
        stmt = stmt.where(Contribution.request_id == request_id)
    if not can(actor, "view_any", "contribution"):
        own_requests = select(AidRequest.id).where(AidRequest.user_id == actor.id)
        stmt = stmt.where(
            or_(Contribution.supplier_id == actor.id, Contribution.request_id.in_(own_requests))
        )
    return stmt.order_by(Contribution.created_at.desc(), Contribution.id.desc())
