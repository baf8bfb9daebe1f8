"""
ResourceFlow Fulfillment Core
Flask Application Factory.

Usage:
    from resourceflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask, request
from flask.cli import AppGroup
from flask_migrate import Migrate

from resourceflow.config import config
from resourceflow.middleware.auth_context import init_auth_middleware
from resourceflow.middleware.logging_config import configure_logging, init_request_logging
from resourceflow.models import db
from resourceflow.utils.errors import E, register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None, overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        overrides: Optional mapping applied on top of the config class
                   (e.g. a different SQLALCHEMY_DATABASE_URI).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Request logging + actor resolution ───────────────────────────────
    init_request_logging(app)
    init_auth_middleware(app)

    # ── Domain error envelope ────────────────────────────────────────────
    register_error_handlers(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from resourceflow.models import auth as _auth_models                 # noqa: F401
    from resourceflow.models import aid_request as _aid_request_models   # noqa: F401
    from resourceflow.models import contribution as _contribution_models  # noqa: F401
    from resourceflow.models import logistics as _logistics_models       # noqa: F401
    from resourceflow.models import notification as _notification_models  # noqa: F401
    from resourceflow.models import scheduling as _scheduling_models     # noqa: F401
    from resourceflow.models import audit as _audit_models               # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from resourceflow.blueprints import register_blueprints
    register_blueprints(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    requests_cli = AppGroup("requests", help="Request lifecycle maintenance.")

    @requests_cli.command("flag-unmatched")
    @click.option("--days", type=click.IntRange(min=0), default=None,
                  help="SLA window in days (default: SLA_WINDOW_DAYS).")
    def flag_unmatched_cmd(days):
        """Flag unmatched requests past the SLA window and notify admins."""
        _run_cli_job("flag_unmatched_requests", days)

    @requests_cli.command("close-unmatched")
    @click.option("--days", type=click.IntRange(min=0), default=None,
                  help="SLA window in days (default: SLA_WINDOW_DAYS).")
    def close_unmatched_cmd(days):
        """Close unmatched requests past the SLA window or their expiry."""
        _run_cli_job("close_unmatched_requests", days)

    @requests_cli.command("close-expired")
    def close_expired_cmd():
        """Close pending/approved requests past their expiry."""
        _run_cli_job("close_expired_requests", None)

    app.cli.add_command(requests_cli)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "ResourceFlow Fulfillment Core"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": E.INTERNAL}, 500

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("resourceflow.services.scheduled_jobs")  # registers @register_job handlers
    from resourceflow.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app


def _run_cli_job(job_name, days):
    from resourceflow.services.scheduler_service import SchedulerService

    params = {"days": days} if days is not None else {}
    result = SchedulerService.run_job(job_name, **params)
    click.echo(f"{job_name}: {result['status']} {result['result'] or result['error'] or ''}")
    if result["status"] == "failed":
        raise SystemExit(1)
