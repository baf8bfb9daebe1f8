"""
ResourceFlow Fulfillment Core
Logistics Blueprint — delivery routes and tracking records.

Route mutations go through services.route_logistics, which keeps each
route's Logistic in step inside the same transaction.
"""

from flask import Blueprint, jsonify, request

from resourceflow.blueprints import paginate_select
from resourceflow.middleware.auth_context import current_actor, require_actor
from resourceflow.services import route_logistics

logistics_bp = Blueprint("logistics_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  DELIVERY ROUTES
# ═══════════════════════════════════════════════════════════════════════════

@logistics_bp.route("/delivery-routes", methods=["GET"])
@require_actor
def list_routes():
    stmt = route_logistics.list_routes(current_actor(), status=request.args.get("status"))
    items, total = paginate_select(stmt)
    return jsonify({"items": [r.to_dict(include_logistic=True) for r in items], "total": total})


@logistics_bp.route("/delivery-routes", methods=["POST"])
@require_actor
def create_route():
    data = request.get_json(silent=True) or {}
    route = route_logistics.create_route(data, current_actor())
    return jsonify(route.to_dict(include_logistic=True)), 201


@logistics_bp.route("/delivery-routes/<int:route_id>", methods=["GET"])
@require_actor
def get_route(route_id):
    route = route_logistics.get_route(route_id, current_actor())
    return jsonify(route.to_dict(include_logistic=True))


@logistics_bp.route("/delivery-routes/<int:route_id>", methods=["PUT", "PATCH"])
@require_actor
def update_route(route_id):
    data = request.get_json(silent=True) or {}
    route = route_logistics.update_route(route_id, data, current_actor())
    return jsonify(route.to_dict(include_logistic=True))


# ═══════════════════════════════════════════════════════════════════════════
#  LOGISTICS
# ═══════════════════════════════════════════════════════════════════════════

@logistics_bp.route("/logistics", methods=["GET"])
@require_actor
def list_logistics():
    stmt = route_logistics.list_logistics(
        current_actor(),
        status=request.args.get("status"),
        tracking_number=request.args.get("tracking_number"),
    )
    items, total = paginate_select(stmt)
    return jsonify({"items": [lg.to_dict() for lg in items], "total": total})


@logistics_bp.route("/logistics/<int:logistic_id>", methods=["GET"])
@require_actor
def get_logistic(logistic_id):
    return jsonify(route_logistics.get_logistic(logistic_id, current_actor()).to_dict())


@logistics_bp.route("/logistics/track/<tracking_number>", methods=["GET"])
def track(tracking_number):
    """Public tracking lookup; no authentication."""
    return jsonify(route_logistics.track(tracking_number).to_dict())


@logistics_bp.route("/logistics/<int:logistic_id>/update-location", methods=["POST"])
@require_actor
def update_location(logistic_id):
    data = request.get_json(silent=True) or {}
    logistic = route_logistics.update_location(logistic_id, data, current_actor())
    return jsonify(logistic.to_dict())


@logistics_bp.route("/logistics/<int:logistic_id>/complete-delivery", methods=["POST"])
@require_actor
def complete_delivery(logistic_id):
    logistic = route_logistics.complete_delivery(logistic_id, current_actor())
    return jsonify(logistic.to_dict())
