"""Standardised API error responses.

Usage
-----
    from resourceflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Delivery route not found")
    return api_error(E.VALIDATION_INVALID, "percentage exceeds remaining", details={...})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Malformed input – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"

    # Business-rule validation – HTTP 422
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_TRANSITION = "ERR_VALIDATION_TRANSITION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.VALIDATION_TRANSITION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, remaining percentage, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app) -> None:
    """Map the domain exception hierarchy onto the standard envelope."""
    import logging

    from flask import request
    from sqlalchemy.exc import SQLAlchemyError

    from resourceflow.core.exceptions import (
        AuthenticationError,
        AuthorizationError,
        ConflictError,
        NotFoundError,
        TransitionError,
        ValidationError,
    )
    from resourceflow.models import db

    logger = logging.getLogger(__name__)

    @app.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(TransitionError)
    def _transition(error: TransitionError):
        return api_error(E.VALIDATION_TRANSITION, str(error), details=error.details)

    @app.errorhandler(ValidationError)
    def _validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _conflict(error: ConflictError):
        details = {"state": error.state} if error.state else None
        return api_error(E.CONFLICT_STATE, str(error), details=details)

    @app.errorhandler(AuthorizationError)
    def _forbidden(error: AuthorizationError):
        logger.warning(
            "Denied: user=%s action=%s resource=%s path=%s",
            error.actor_id, error.action, error.resource_type, request.path,
        )
        return api_error(E.FORBIDDEN, "Permission denied",
                         details={"action": error.action, "resource": error.resource_type})

    @app.errorhandler(AuthenticationError)
    def _unauthenticated(error: AuthenticationError):
        return api_error(E.UNAUTHENTICATED, str(error))

    @app.errorhandler(SQLAlchemyError)
    def _database(error: SQLAlchemyError):
        logger.exception("Database error on %s", request.path)
        db.session.rollback()
        return api_error(E.DATABASE, "Database error")
