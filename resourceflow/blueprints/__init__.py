"""
ResourceFlow Fulfillment Core
Blueprint registry.
"""

from flask import request
from sqlalchemy import func, select

from resourceflow.models import db


def paginate_select(stmt, default_limit=50, max_limit=200):
    """Apply limit/offset pagination to a SQLAlchemy ``select``.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = db.session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = db.session.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return items, total


def register_blueprints(app):
    from resourceflow.blueprints.contribution_bp import contribution_bp
    from resourceflow.blueprints.logistics_bp import logistics_bp
    from resourceflow.blueprints.notification_bp import notification_bp
    from resourceflow.blueprints.request_bp import request_bp

    app.register_blueprint(request_bp)
    app.register_blueprint(contribution_bp)
    app.register_blueprint(logistics_bp)
    app.register_blueprint(notification_bp)
