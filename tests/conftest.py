"""
Shared pytest fixtures for the ResourceFlow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_request / make_allocation: entity factories
    - auth_headers: Bearer header for a user
"""

from datetime import datetime, timezone

import pytest

from resourceflow import create_app
from resourceflow.models import db as _db
from resourceflow.services.jwt_service import generate_access_token


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    from resourceflow.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Create and commit a User; email defaults to ``<role>N@test.local``."""
    from resourceflow.models.auth import User

    counter = {"n": 0}

    def _make(role="recipient", *, email=None, full_name=None, permissions=None, is_active=True):
        counter["n"] += 1
        user = User(
            email=email or f"{role}{counter['n']}@test.local",
            full_name=full_name or f"{role.title()} {counter['n']}",
            role=role,
            permissions=permissions or [],
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_request():
    """Create and commit an AidRequest owned by ``owner``."""
    from resourceflow.models.aid_request import AidRequest

    def _make(owner, *, title="Blankets for shelter", status="pending",
              created_at=None, expires_at=None, **kwargs):
        req = AidRequest(
            user_id=owner.id,
            title=title,
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            expires_at=expires_at,
            **kwargs,
        )
        _db.session.add(req)
        _db.session.commit()
        return req

    return _make


@pytest.fixture()
def make_allocation():
    """Create and commit an Allocation for a request."""
    from resourceflow.models.aid_request import Allocation

    def _make(request, *, allocated_by=None, status="Pending", quantity=10, **kwargs):
        allocation = Allocation(
            request_id=request.id,
            allocated_by=allocated_by.id if allocated_by is not None else None,
            quantity_allocated=quantity,
            status=status,
            **kwargs,
        )
        _db.session.add(allocation)
        _db.session.commit()
        return allocation

    return _make


@pytest.fixture()
def auth_headers():
    """Return a function producing an ``Authorization: Bearer`` header."""

    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id, user.role)}"}

    return _headers
