"""
ResourceFlow Fulfillment Core
Notification & Scheduling Blueprint.

Provides:
    - The caller's in-app notifications (list, unread count, mark read)
    - Scheduled job management for admins (list, run, toggle)
"""

from __future__ import annotations

import inspect
import logging

from flask import Blueprint, jsonify, request

from resourceflow.middleware.auth_context import current_actor, require_actor
from resourceflow.services.access_policy import authorize
from resourceflow.services.notification import NotificationService
from resourceflow.services.scheduler_service import (
    SchedulerService,
    UnknownJobError,
    get_registered_jobs,
)
from resourceflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
@require_actor
def list_notifications():
    """List the caller's notifications, newest first."""
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    unread_only = request.args.get("unread_only", "false").lower() == "true"

    items, total = NotificationService.list_for_user(
        current_actor().id, unread_only=unread_only,
        limit=min(max(limit, 1), 200), offset=max(offset, 0),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
@require_actor
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_actor().id)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
@require_actor
def mark_read(nid):
    notif = NotificationService.mark_read(nid, current_actor().id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
@require_actor
def mark_all_read():
    return jsonify({"marked_read": NotificationService.mark_all_read(current_actor().id)})


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
@require_actor
def list_scheduled_jobs():
    """List all registered jobs with their run history."""
    authorize(current_actor(), "view", "scheduler")
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
@require_actor
def run_job(job_name):
    """Run a job now. Body may carry ``days`` for the SLA jobs."""
    actor = current_actor()
    authorize(actor, "run", "scheduler")

    fn = get_registered_jobs().get(job_name)
    if fn is None:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")

    data = request.get_json(silent=True) or {}
    params = {}
    if "days" in data:
        if "days" not in inspect.signature(fn).parameters:
            return api_error(E.VALIDATION_REQUIRED, f"Job '{job_name}' does not take 'days'")
        days = data["days"]
        if isinstance(days, bool) or not isinstance(days, int) or days < 0:
            return api_error(E.VALIDATION_REQUIRED, "'days' must be a non-negative integer")
        params["days"] = days

    try:
        result = SchedulerService.run_job(job_name, **params)
    except UnknownJobError:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    logger.info("Job %s triggered by user %d: %s", job_name, actor.id, result["status"])
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@require_actor
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    authorize(current_actor(), "run", "scheduler")
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
