"""
Auth Context Middleware — resolves the acting user from a Bearer JWT.

Sets ``g.current_user`` to an active ``User`` or ``None``. Endpoints that
need an actor call ``current_actor()`` (or use ``@require_actor``), which
raises ``AuthenticationError`` → 401 when nothing valid was presented.
"""

import functools
import logging

import jwt as pyjwt
from flask import g, request

from resourceflow.core.exceptions import AuthenticationError
from resourceflow.models import db
from resourceflow.models.auth import User
from resourceflow.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that never need an actor
AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/logistics/track/",
)


def init_auth_middleware(app):
    """Register the actor-resolution hook."""

    @app.before_request
    def _resolve_actor():
        g.current_user = None
        g.auth_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(AUTH_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
            user_id = int(payload.get("sub"))
        except pyjwt.ExpiredSignatureError:
            g.auth_error = "Token expired"
            return
        except (pyjwt.InvalidTokenError, TypeError, ValueError):
            g.auth_error = "Invalid token"
            return

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.info("Token for unknown or inactive user %s rejected", user_id)
            g.auth_error = "Unknown or inactive user"
            return
        g.current_user = user


def current_actor() -> User:
    """Return the resolved actor or raise ``AuthenticationError``."""
    user = getattr(g, "current_user", None)
    if user is None:
        raise AuthenticationError(getattr(g, "auth_error", None) or "Authentication required")
    return user


def require_actor(f):
    """Decorator: reject the call with 401 unless an actor was resolved."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        current_actor()
        return f(*args, **kwargs)

    return decorated
