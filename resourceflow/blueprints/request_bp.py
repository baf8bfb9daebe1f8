"""
ResourceFlow Fulfillment Core
Request Blueprint.

Endpoints:
    POST /api/v1/requests                       create (recipient/requestor/ngo)
    GET  /api/v1/requests                       list visible requests
    GET  /api/v1/requests/<id>                  view (404 for other recipients)
    POST /api/v1/requests/<id>/approve|claim|complete
    GET  /api/v1/requests/flagged               admin review queue
    POST /api/v1/requests/review-close          admin closes flagged requests
"""

from flask import Blueprint, jsonify, request

from resourceflow.blueprints import paginate_select
from resourceflow.middleware.auth_context import current_actor, require_actor
from resourceflow.services import request_lifecycle

request_bp = Blueprint("request_bp", __name__, url_prefix="/api/v1")


@request_bp.route("/requests", methods=["POST"])
@require_actor
def create_request():
    data = request.get_json(silent=True) or {}
    req = request_lifecycle.create_request(data, current_actor())
    return jsonify(req.to_dict()), 201


@request_bp.route("/requests", methods=["GET"])
@require_actor
def list_requests():
    flagged = request.args.get("flagged")
    stmt = request_lifecycle.list_requests(
        current_actor(),
        status=request.args.get("status"),
        flagged=None if flagged is None else flagged.lower() in ("1", "true", "yes"),
    )
    items, total = paginate_select(stmt)
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@request_bp.route("/requests/<int:request_id>", methods=["GET"])
@require_actor
def get_request(request_id):
    req = request_lifecycle.get_request(request_id, current_actor())
    return jsonify(req.to_dict())


@request_bp.route("/requests/<int:request_id>/approve", methods=["POST"])
@require_actor
def approve_request(request_id):
    return jsonify(request_lifecycle.transition_request(request_id, "approve", current_actor()))


@request_bp.route("/requests/<int:request_id>/claim", methods=["POST"])
@require_actor
def claim_request(request_id):
    return jsonify(request_lifecycle.transition_request(request_id, "claim", current_actor()))


@request_bp.route("/requests/<int:request_id>/complete", methods=["POST"])
@require_actor
def complete_request(request_id):
    return jsonify(request_lifecycle.transition_request(request_id, "complete", current_actor()))


# ═══════════════════════════════════════════════════════════════════════════
#  ADMIN REVIEW
# ═══════════════════════════════════════════════════════════════════════════

@request_bp.route("/requests/flagged", methods=["GET"])
@require_actor
def list_flagged():
    items = request_lifecycle.list_flagged(current_actor())
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})


@request_bp.route("/requests/review-close", methods=["POST"])
@require_actor
def review_close():
    data = request.get_json(silent=True) or {}
    closed = request_lifecycle.review_close(data.get("request_ids"), current_actor())
    return jsonify({"closed": closed})
