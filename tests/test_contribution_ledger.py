"""
Tests — partial funding ledger.

Covers:
    1. Percentage parsing
    2. Create: remaining-share enforcement, duplicates, funding status
    3. Two-step recede
    4. Updating a committed share
    5. Listing and showing contributions
    6. Concurrent writers on a file-backed database
"""

import threading
from decimal import Decimal

import pytest

from resourceflow import create_app
from resourceflow.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from resourceflow.models import db
from resourceflow.models.aid_request import AidRequest
from resourceflow.models.audit import AuditLog
from resourceflow.models.auth import User
from resourceflow.models.contribution import Contribution
from resourceflow.services import contribution_ledger as ledger


@pytest.fixture()
def recipient(make_user):
    return make_user("recipient")


@pytest.fixture()
def request_(make_request, recipient):
    return make_request(recipient, title="Water filters")


# ═══════════════════════════════════════════════════════════════════════════
#  parse_percentage
# ═══════════════════════════════════════════════════════════════════════════

class TestParsePercentage:

    @pytest.mark.parametrize("raw,expected", [
        ("60", Decimal("60.00")),
        (12.5, Decimal("12.50")),
        (100, Decimal("100.00")),
        (" 0.01 ", Decimal("0.01")),
    ])
    def test_valid(self, raw, expected):
        assert ledger.parse_percentage(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "abc", 0, -5, "100.01", "NaN", "12.345"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            ledger.parse_percentage(raw)


# ═══════════════════════════════════════════════════════════════════════════
#  create_contribution
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateContribution:

    def test_partial_funding_walkthrough(self, make_user, request_):
        supplier_a = make_user("supplier")
        supplier_b = make_user("supplier")

        stats = ledger.create_contribution(request_.id, supplier_a, 60)
        assert stats["total_percentage"] == 60.0
        assert stats["remaining_percentage"] == 40.0
        assert stats["funding_status"] == "partially_funded"

        with pytest.raises(ValidationError) as exc:
            ledger.create_contribution(request_.id, supplier_b, 50)
        assert exc.value.details["remaining_percentage"] == 40.0

        stats = ledger.create_contribution(request_.id, supplier_b, 40)
        assert stats["total_percentage"] == 100.0
        assert stats["remaining_percentage"] == 0.0
        assert stats["contribution_count"] == 2
        assert stats["funding_status"] == "fully_funded"
        assert stats["request_status"] == "claimed"

    def test_fully_funded_rejects_further_shares(self, make_user, request_):
        ledger.create_contribution(request_.id, make_user("supplier"), 100)
        with pytest.raises(ConflictError):
            ledger.create_contribution(request_.id, make_user("supplier"), 1)

    def test_duplicate_active_contribution(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 10)
        with pytest.raises(ValidationError):
            ledger.create_contribution(request_.id, supplier, 10)

    def test_non_supplier_denied(self, make_user, request_):
        with pytest.raises(AuthorizationError):
            ledger.create_contribution(request_.id, make_user("donor"), 10)

    def test_unknown_request(self, make_user):
        with pytest.raises(NotFoundError):
            ledger.create_contribution(9999, make_user("supplier"), 10)

    @pytest.mark.parametrize("status", ["closed_no_match", "completed"])
    def test_terminal_request_conflicts(self, make_user, make_request, recipient, status):
        req = make_request(recipient, status=status)
        with pytest.raises(ConflictError) as exc:
            ledger.create_contribution(req.id, make_user("supplier"), 10)
        assert exc.value.state == status

    def test_single_supplier_claim_blocks_shares(self, make_user, make_request, recipient):
        owner = make_user("supplier")
        req = make_request(recipient, status="claimed", assigned_supplier_id=owner.id)
        with pytest.raises(ConflictError):
            ledger.create_contribution(req.id, make_user("supplier"), 10)

    def test_failed_create_leaves_no_row(self, make_user, request_):
        with pytest.raises(ValidationError):
            ledger.create_contribution(request_.id, make_user("supplier"), "150")
        assert Contribution.query.count() == 0

    def test_audit_row_written(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 25, amount_value="500")
        log = AuditLog.query.filter_by(action="contribution.create").one()
        assert log.actor_user_id == supplier.id
        assert log.diff["percentage"] == "25.00"
        assert Contribution.query.one().amount_value == Decimal("500.00")

    def test_stats_counts_committed_only(self, make_user, request_):
        supplier = make_user("supplier")
        db.session.add(Contribution(request_id=request_.id, supplier_id=supplier.id,
                                    percentage=Decimal("30"), status="receded"))
        db.session.commit()
        stats = ledger.get_stats(request_.id)
        assert stats["total_percentage"] == 0.0
        assert stats["funding_status"] == "unfunded"
        assert stats["contributions"] == []


# ═══════════════════════════════════════════════════════════════════════════
#  Recede
# ═══════════════════════════════════════════════════════════════════════════

class TestRecede:

    def test_pending_recede_still_counts(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 70)
        contribution = Contribution.query.one()

        result = ledger.request_recede(contribution.id, supplier)
        assert result["recede_pending"] is True
        assert ledger.get_stats(request_.id)["total_percentage"] == 70.0

    def test_approve_recede_releases_share(self, make_user, request_):
        supplier = make_user("supplier")
        admin = make_user("admin")
        ledger.create_contribution(request_.id, supplier, 100)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)

        stats = ledger.approve_recede(contribution.id, admin)
        assert stats["total_percentage"] == 0.0
        assert stats["remaining_percentage"] == 100.0
        # Dropping below 100% reopens a share-funded request
        assert stats["request_status"] == "approved"
        assert db.session.get(Contribution, contribution.id).status == "receded"

    def test_reject_recede_keeps_commitment(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 40)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)

        result = ledger.reject_recede(contribution.id, make_user("admin"))
        assert result["status"] == "committed"
        assert result["recede_pending"] is False

    def test_only_owner_requests_recede(self, make_user, request_):
        ledger.create_contribution(request_.id, make_user("supplier"), 40)
        contribution = Contribution.query.one()
        with pytest.raises(AuthorizationError):
            ledger.request_recede(contribution.id, make_user("supplier"))

    def test_supplier_cannot_approve(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 40)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)
        with pytest.raises(AuthorizationError):
            ledger.approve_recede(contribution.id, supplier)

    def test_approve_without_request(self, make_user, request_):
        ledger.create_contribution(request_.id, make_user("supplier"), 40)
        contribution = Contribution.query.one()
        with pytest.raises(ValidationError):
            ledger.approve_recede(contribution.id, make_user("admin"))

    def test_double_recede_request(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 40)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)
        with pytest.raises(ValidationError):
            ledger.request_recede(contribution.id, supplier)

    def test_receded_supplier_may_contribute_again(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 40)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)
        ledger.approve_recede(contribution.id, make_user("admin"))

        stats = ledger.create_contribution(request_.id, supplier, 20)
        assert stats["total_percentage"] == 20.0

    def test_reject_on_terminal_request_conflicts(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 40)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)
        request_.status = "closed_no_match"
        db.session.commit()

        with pytest.raises(ConflictError):
            ledger.reject_recede(contribution.id, make_user("admin"))
        assert db.session.get(Contribution, contribution.id).recede_pending is True
        assert AuditLog.query.filter_by(action="contribution.reject_recede").count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  update_contribution
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateContribution:

    def test_raise_within_free_share(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 30)
        ledger.create_contribution(request_.id, make_user("supplier"), 30)
        contribution = Contribution.query.filter_by(supplier_id=supplier.id).one()

        stats = ledger.update_contribution(contribution.id, supplier, percentage="55")
        assert stats["total_percentage"] == 85.0
        assert stats["remaining_percentage"] == 15.0
        assert stats["funding_status"] == "partially_funded"

    def test_raise_to_full_claims_request(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 60)
        ledger.create_contribution(request_.id, make_user("supplier"), 30)
        contribution = Contribution.query.filter_by(supplier_id=supplier.id).one()

        stats = ledger.update_contribution(contribution.id, supplier, percentage=70)
        assert stats["total_percentage"] == 100.0
        assert stats["funding_status"] == "fully_funded"
        assert stats["request_status"] == "claimed"

    def test_lowering_reopens_claimed_request(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 100)
        contribution = Contribution.query.one()

        stats = ledger.update_contribution(contribution.id, supplier, percentage=40)
        assert stats["request_status"] == "approved"
        assert stats["funding_status"] == "partially_funded"

    def test_own_share_is_excluded_from_the_sum(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 60)
        ledger.create_contribution(request_.id, make_user("supplier"), 30)
        contribution = Contribution.query.filter_by(supplier_id=supplier.id).one()

        with pytest.raises(ValidationError) as exc:
            ledger.update_contribution(contribution.id, supplier, percentage=71)
        assert exc.value.details["remaining_percentage"] == 70.0
        assert db.session.get(Contribution, contribution.id).percentage == Decimal("60.00")
        assert ledger.get_stats(request_.id)["total_percentage"] == 90.0

    def test_amount_only(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 20)
        contribution = Contribution.query.one()

        ledger.update_contribution(contribution.id, supplier, amount_value="250")
        assert db.session.get(Contribution, contribution.id).amount_value == Decimal("250.00")
        log = AuditLog.query.filter_by(action="contribution.update").one()
        assert log.diff["amount_value"]["new"] == "250"

    def test_nothing_to_update(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 20)
        with pytest.raises(ValidationError):
            ledger.update_contribution(Contribution.query.one().id, supplier)

    def test_other_supplier_denied(self, make_user, request_):
        ledger.create_contribution(request_.id, make_user("supplier"), 20)
        with pytest.raises(AuthorizationError):
            ledger.update_contribution(Contribution.query.one().id, make_user("supplier"), percentage=10)

    def test_pending_recede_blocks_update(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 20)
        contribution = Contribution.query.one()
        ledger.request_recede(contribution.id, supplier)
        with pytest.raises(ValidationError):
            ledger.update_contribution(contribution.id, supplier, percentage=30)

    def test_terminal_request_conflicts(self, make_user, request_):
        supplier = make_user("supplier")
        ledger.create_contribution(request_.id, supplier, 20)
        request_.status = "completed"
        db.session.commit()
        with pytest.raises(ConflictError):
            ledger.update_contribution(Contribution.query.one().id, supplier, percentage=30)


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestContributionQueries:

    @pytest.fixture()
    def two_suppliers(self, make_user, request_):
        supplier_a = make_user("supplier")
        supplier_b = make_user("supplier")
        ledger.create_contribution(request_.id, supplier_a, 30)
        ledger.create_contribution(request_.id, supplier_b, 20)
        return supplier_a, supplier_b

    @staticmethod
    def _visible(actor, **filters):
        stmt = ledger.list_contributions(actor, **filters)
        return db.session.execute(stmt).scalars().all()

    def test_supplier_sees_own_rows_only(self, two_suppliers):
        supplier_a, _ = two_suppliers
        rows = self._visible(supplier_a)
        assert [c.supplier_id for c in rows] == [supplier_a.id]

    def test_request_owner_sees_all_rows_on_request(self, two_suppliers, recipient):
        assert len(self._visible(recipient)) == 2

    def test_unrelated_recipient_sees_nothing(self, two_suppliers, make_user):
        assert self._visible(make_user("recipient")) == []

    def test_donor_filters_by_request(self, two_suppliers, make_user, make_request, recipient):
        donor = make_user("donor")
        other = make_request(recipient, title="Blankets")
        ledger.create_contribution(other.id, make_user("supplier"), 10)

        assert len(self._visible(donor)) == 3
        assert {c.request_id for c in self._visible(donor, request_id=other.id)} == {other.id}

    def test_show_hidden_from_other_supplier(self, two_suppliers, make_user):
        supplier_a, _ = two_suppliers
        contribution = Contribution.query.filter_by(supplier_id=supplier_a.id).one()

        assert ledger.get_contribution(contribution.id, supplier_a).id == contribution.id
        with pytest.raises(NotFoundError):
            ledger.get_contribution(contribution.id, make_user("supplier"))


# ═══════════════════════════════════════════════════════════════════════════
#  Concurrency
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def file_app(app, tmp_path):
    """A second app on a file-backed SQLite database shared by real threads."""
    from resourceflow.services.scheduler_service import SchedulerService

    application = create_app("testing", overrides={
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'ledger.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {
            "connect_args": {"timeout": 30, "check_same_thread": False},
        },
    })
    with application.app_context():
        db.create_all()
    yield application
    with application.app_context():
        db.drop_all()
        db.engine.dispose()
    SchedulerService.init_app(app)


class TestConcurrentCreates:

    def test_sum_never_exceeds_hundred(self, file_app):
        n_suppliers = 5
        with file_app.app_context():
            owner = User(email="owner@test.local", role="recipient")
            suppliers = [User(email=f"s{i}@test.local", role="supplier") for i in range(n_suppliers)]
            db.session.add_all([owner, *suppliers])
            db.session.flush()
            req = AidRequest(user_id=owner.id, title="Generators")
            db.session.add(req)
            db.session.commit()
            request_id = req.id
            supplier_ids = [s.id for s in suppliers]

        barrier = threading.Barrier(n_suppliers)
        outcomes = []
        lock = threading.Lock()

        def contribute(supplier_id):
            with file_app.app_context():
                supplier = db.session.get(User, supplier_id)
                barrier.wait()
                try:
                    ledger.create_contribution(request_id, supplier, "30")
                    outcome = "ok"
                except (ValidationError, ConflictError) as exc:
                    outcome = type(exc).__name__
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=contribute, args=(sid,)) for sid in supplier_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(outcomes) == n_suppliers
        assert outcomes.count("ok") == 3
        assert outcomes.count("ValidationError") == 2

        with file_app.app_context():
            stats = ledger.get_stats(request_id)
            assert stats["total_percentage"] == 90.0
            assert stats["contribution_count"] == 3


class TestRecedeAgainstStaleRows:

    def test_reject_after_concurrent_approve(self, file_app):
        with file_app.app_context():
            owner = User(email="owner@test.local", role="recipient")
            supplier = User(email="s@test.local", role="supplier")
            admin = User(email="admin@test.local", role="admin")
            db.session.add_all([owner, supplier, admin])
            db.session.flush()
            req = AidRequest(user_id=owner.id, title="Tents")
            db.session.add(req)
            db.session.commit()
            ledger.create_contribution(req.id, supplier, "50")
            contribution_id = Contribution.query.one().id
            ledger.request_recede(contribution_id, supplier)
            admin_id = admin.id

        with file_app.app_context():
            admin = db.session.get(User, admin_id)
            # Loaded while the recede is still pending
            stale = db.session.get(Contribution, contribution_id)
            assert stale.recede_pending is True

            with file_app.app_context():
                ledger.approve_recede(contribution_id, db.session.get(User, admin_id))

            with pytest.raises(ValidationError):
                ledger.reject_recede(contribution_id, admin)

        with file_app.app_context():
            contribution = db.session.get(Contribution, contribution_id)
            assert contribution.status == "receded"
            assert contribution.recede_requested_by is not None
            assert AuditLog.query.filter_by(action="contribution.reject_recede").count() == 0
