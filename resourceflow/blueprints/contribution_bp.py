"""
ResourceFlow Fulfillment Core
Contribution Blueprint — partial funding ledger endpoints.
"""

from flask import Blueprint, jsonify, request

from resourceflow.blueprints import paginate_select
from resourceflow.core.exceptions import NotFoundError
from resourceflow.middleware.auth_context import current_actor, require_actor
from resourceflow.models import db
from resourceflow.models.aid_request import AidRequest
from resourceflow.services import contribution_ledger
from resourceflow.services.access_policy import authorize
from resourceflow.utils.errors import E, api_error

contribution_bp = Blueprint("contribution_bp", __name__, url_prefix="/api/v1")


@contribution_bp.route("/contributions", methods=["GET"])
@require_actor
def list_contributions():
    stmt = contribution_ledger.list_contributions(
        current_actor(), request_id=request.args.get("request_id", type=int),
    )
    items, total = paginate_select(stmt)
    return jsonify({"items": [c.to_dict() for c in items], "total": total})


@contribution_bp.route("/contributions", methods=["POST"])
@require_actor
def create_contribution():
    """Commit a percentage share; 201 with the request's updated stats."""
    data = request.get_json(silent=True) or {}
    request_id = data.get("request_id")
    if request_id is None:
        return api_error(E.VALIDATION_REQUIRED, "request_id is required")
    try:
        request_id = int(request_id)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_REQUIRED, "request_id must be an integer")

    stats = contribution_ledger.create_contribution(
        request_id,
        current_actor(),
        data.get("percentage"),
        amount_value=data.get("amount_value"),
    )
    return jsonify(stats), 201


@contribution_bp.route("/contributions/<int:contribution_id>", methods=["GET"])
@require_actor
def get_contribution(contribution_id):
    return jsonify(contribution_ledger.get_contribution(contribution_id, current_actor()).to_dict())


@contribution_bp.route("/contributions/<int:contribution_id>", methods=["PUT", "PATCH"])
@require_actor
def update_contribution(contribution_id):
    """Change percentage and/or amount_value; 200 with the request's updated stats."""
    data = request.get_json(silent=True) or {}
    stats = contribution_ledger.update_contribution(
        contribution_id,
        current_actor(),
        percentage=data.get("percentage"),
        amount_value=data.get("amount_value"),
    )
    return jsonify(stats)


@contribution_bp.route("/contributions/request/<int:request_id>/stats", methods=["GET"])
@require_actor
def request_stats(request_id):
    req = db.session.get(AidRequest, request_id)
    if req is None:
        raise NotFoundError(resource="AidRequest", resource_id=request_id)
    authorize(current_actor(), "view_stats", "contribution", req, hide_existence=True)
    return jsonify(contribution_ledger.get_stats(request_id))


@contribution_bp.route("/contributions/<int:contribution_id>/recede", methods=["POST"])
@require_actor
def request_recede(contribution_id):
    return jsonify(contribution_ledger.request_recede(contribution_id, current_actor()))


@contribution_bp.route("/contributions/<int:contribution_id>/approve-recede", methods=["POST"])
@require_actor
def approve_recede(contribution_id):
    return jsonify(contribution_ledger.approve_recede(contribution_id, current_actor()))


@contribution_bp.route("/contributions/<int:contribution_id>/reject-recede", methods=["POST"])
@require_actor
def reject_recede(contribution_id):
    return jsonify(contribution_ledger.reject_recede(contribution_id, current_actor()))
