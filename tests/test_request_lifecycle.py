"""
Tests — request lifecycle transitions and SLA batch operations.

Covers:
    1. Create / view visibility
    2. approve → claim → complete transitions
    3. flag_unmatched: idempotent, one notification per admin per batch
    4. close_unmatched / close_expired
    5. Admin review queue
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from resourceflow.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from resourceflow.models import db
from resourceflow.models.aid_request import AidRequest
from resourceflow.models.audit import AuditLog
from resourceflow.models.contribution import Contribution
from resourceflow.models.logistics import DeliveryRoute
from resourceflow.models.notification import Notification
from resourceflow.models.scheduling import EmailLog
from resourceflow.services import request_lifecycle as lifecycle

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _utc(dt):
    return dt if dt is None or dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _reload(req_id):
    return db.session.get(AidRequest, req_id, populate_existing=True)


@pytest.fixture()
def recipient(make_user):
    return make_user("recipient")


@pytest.fixture()
def admin(make_user):
    return make_user("admin")


# ═══════════════════════════════════════════════════════════════════════════
#  Create / view
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAndView:

    def test_create_request(self, recipient):
        req = lifecycle.create_request({"title": " Tents ", "quantity_needed": "12"}, recipient)
        assert req.title == "Tents"
        assert req.quantity_needed == 12
        assert req.status == "pending"
        assert req.funding_status == "unfunded"
        assert req.is_flagged_for_review is False
        assert AuditLog.query.filter_by(action="aid_request.create").count() == 1

    def test_title_required(self, recipient):
        with pytest.raises(ValidationError):
            lifecycle.create_request({"title": "  "}, recipient)

    def test_supplier_cannot_create(self, make_user):
        with pytest.raises(AuthorizationError):
            lifecycle.create_request({"title": "Rice"}, make_user("supplier"))

    def test_expires_at_parsed(self, recipient):
        req = lifecycle.create_request(
            {"title": "Rice", "expires_at": "2026-03-01T00:00:00"}, recipient,
        )
        assert _utc(req.expires_at) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_other_recipient_sees_not_found(self, make_user, make_request, recipient):
        req = make_request(recipient)
        with pytest.raises(NotFoundError):
            lifecycle.get_request(req.id, make_user("recipient"))

    def test_list_scoped_to_owner(self, make_user, make_request, recipient):
        make_request(recipient, title="Mine")
        make_request(make_user("recipient"), title="Theirs")
        own = db.session.execute(lifecycle.list_requests(recipient)).scalars().all()
        assert [r.title for r in own] == ["Mine"]
        every = db.session.execute(lifecycle.list_requests(make_user("auditor"))).scalars().all()
        assert len(every) == 2


# ═══════════════════════════════════════════════════════════════════════════
#  Transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitions:

    def test_approve_claim_complete(self, make_user, make_request, recipient, admin):
        supplier = make_user("supplier")
        req = make_request(recipient)

        result = lifecycle.transition_request(req.id, "approve", admin)
        assert (result["from"], result["to"]) == ("pending", "approved")

        result = lifecycle.transition_request(req.id, "claim", supplier)
        assert result["to"] == "claimed"
        assert result["request"]["assigned_supplier_id"] == supplier.id
        assert result["request"]["funding_status"] == "fully_funded"

        result = lifecycle.transition_request(req.id, "complete", supplier)
        assert result["to"] == "completed"

    def test_approve_requires_admin(self, make_user, make_request, recipient):
        req = make_request(recipient)
        with pytest.raises(AuthorizationError):
            lifecycle.transition_request(req.id, "approve", make_user("supplier"))

    def test_claim_from_pending_rejected(self, make_user, make_request, recipient):
        req = make_request(recipient)
        with pytest.raises(TransitionError) as exc:
            lifecycle.transition_request(req.id, "claim", make_user("supplier"))
        assert exc.value.current_status == "pending"

    def test_claim_blocked_by_committed_shares(self, make_user, make_request, recipient):
        req = make_request(recipient, status="approved")
        db.session.add(Contribution(request_id=req.id, supplier_id=make_user("supplier").id,
                                    percentage=Decimal("20"), status="committed"))
        db.session.commit()
        with pytest.raises(TransitionError):
            lifecycle.transition_request(req.id, "claim", make_user("supplier"))
        assert _reload(req.id).assigned_supplier_id is None

    def test_only_assigned_supplier_completes(self, make_user, make_request, recipient):
        supplier = make_user("supplier")
        req = make_request(recipient, status="claimed", assigned_supplier_id=supplier.id)
        with pytest.raises(AuthorizationError):
            lifecycle.transition_request(req.id, "complete", make_user("supplier"))

    def test_complete_waits_for_delivery(self, make_user, make_request, make_allocation, recipient):
        supplier = make_user("supplier")
        req = make_request(recipient, status="claimed", assigned_supplier_id=supplier.id)
        allocation = make_allocation(req)
        route = DeliveryRoute(route_name="Route 1", allocation_id=allocation.id, status="In Transit")
        db.session.add(route)
        db.session.commit()

        with pytest.raises(TransitionError):
            lifecycle.transition_request(req.id, "complete", supplier)

        route.status = "Delivered"
        db.session.commit()
        assert lifecycle.transition_request(req.id, "complete", supplier)["to"] == "completed"

    def test_terminal_request_conflicts(self, make_request, recipient, admin):
        req = make_request(recipient, status="closed_no_match")
        with pytest.raises(ConflictError):
            lifecycle.transition_request(req.id, "approve", admin)

    def test_unknown_action(self, make_request, recipient, admin):
        req = make_request(recipient)
        with pytest.raises(TransitionError):
            lifecycle.transition_request(req.id, "teleport", admin)

    def test_unknown_request(self, admin):
        with pytest.raises(NotFoundError):
            lifecycle.transition_request(404, "approve", admin)

    def test_validate_transition(self, make_request, recipient):
        req = make_request(recipient, status="approved")
        assert lifecycle.validate_transition(req, "claim")["valid"] is True
        check = lifecycle.validate_transition(req, "approve")
        assert check["valid"] is False
        assert "approved" in check["reason"]


# ═══════════════════════════════════════════════════════════════════════════
#  flag_unmatched
# ═══════════════════════════════════════════════════════════════════════════

class TestFlagUnmatched:

    def test_flags_only_old_unmatched(self, make_user, make_request, recipient, admin):
        old = make_request(recipient, created_at=T0)
        young = make_request(recipient, created_at=T0 + timedelta(days=20))
        funded = make_request(recipient, created_at=T0)
        db.session.add(Contribution(request_id=funded.id, supplier_id=make_user("supplier").id,
                                    percentage=Decimal("10"), status="committed"))
        assigned = make_request(recipient, created_at=T0, status="claimed",
                                assigned_supplier_id=make_user("supplier").id)
        db.session.commit()

        flagged = lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31))

        assert flagged == 1
        assert _reload(old.id).is_flagged_for_review is True
        assert _utc(_reload(old.id).flagged_at) == T0 + timedelta(days=31)
        for other in (young, funded, assigned):
            assert _reload(other.id).is_flagged_for_review is False

    def test_receded_share_does_not_count_as_match(self, make_user, make_request, recipient, admin):
        req = make_request(recipient, created_at=T0)
        db.session.add(Contribution(request_id=req.id, supplier_id=make_user("supplier").id,
                                    percentage=Decimal("10"), status="receded"))
        db.session.commit()
        assert lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31)) == 1

    def test_second_run_flags_and_notifies_nothing(self, make_user, make_request, recipient, admin):
        make_user("admin")
        make_request(recipient, created_at=T0)
        make_request(recipient, created_at=T0)

        now = T0 + timedelta(days=31)
        assert lifecycle.flag_unmatched(30, now=now) == 2
        assert Notification.query.count() == 2

        assert lifecycle.flag_unmatched(30, now=now) == 0
        assert Notification.query.count() == 2

    def test_one_notification_per_active_admin(self, make_user, make_request, recipient, admin):
        inactive = make_user("admin", is_active=False)
        make_request(recipient, created_at=T0)
        make_request(recipient, created_at=T0)
        make_request(recipient, created_at=T0)

        lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31))

        notes = Notification.query.all()
        assert [n.recipient_user_id for n in notes] == [admin.id]
        assert notes[0].payload == {"type": "monthly_summary", "flagged_count": 3}
        assert notes[0].category == "review"
        assert Notification.query.filter_by(recipient_user_id=inactive.id).count() == 0

        email = EmailLog.query.one()
        assert email.recipient_email == admin.email
        assert email.subject == "Monthly Review: 3 Request(s) Flagged for Review"
        assert email.notification_id == notes[0].id

    def test_empty_batch_notifies_nobody(self, admin):
        assert lifecycle.flag_unmatched(30, now=T0) == 0
        assert Notification.query.count() == 0
        assert AuditLog.query.count() == 0

    def test_batch_audit_row(self, make_request, recipient, admin):
        make_request(recipient, created_at=T0)
        lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31))
        log = AuditLog.query.filter_by(action="aid_request.flag_unmatched").one()
        assert log.entity_id == "batch"
        assert log.actor == "system"
        assert log.diff["count"] == 1

    @pytest.mark.parametrize("days", [-1, "30", 2.5, True])
    def test_bad_window(self, days):
        with pytest.raises(ValidationError):
            lifecycle.flag_unmatched(days)


# ═══════════════════════════════════════════════════════════════════════════
#  close_unmatched / close_expired
# ═══════════════════════════════════════════════════════════════════════════

class TestCloseUnmatched:

    def test_close_then_rerun_is_noop(self, make_request, recipient):
        req = make_request(recipient, created_at=T0)
        now = T0 + timedelta(days=45)
        assert lifecycle.close_unmatched(30, now=now) == 1
        assert _reload(req.id).status == "closed_no_match"
        assert lifecycle.close_unmatched(30, now=now) == 0

    def test_closes_regardless_of_flag(self, make_request, recipient):
        make_request(recipient, created_at=T0, is_flagged_for_review=True)
        make_request(recipient, created_at=T0)
        assert lifecycle.close_unmatched(30, now=T0 + timedelta(days=45)) == 2

    def test_flag_survives_close(self, make_request, recipient, admin):
        req = make_request(recipient, created_at=T0)
        lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31))
        lifecycle.close_unmatched(30, now=T0 + timedelta(days=45))
        reloaded = _reload(req.id)
        assert reloaded.status == "closed_no_match"
        assert reloaded.is_flagged_for_review is True

    def test_expired_young_request_closed(self, make_request, recipient):
        req = make_request(recipient, created_at=T0, expires_at=T0 + timedelta(days=2))
        assert lifecycle.close_unmatched(30, now=T0 + timedelta(days=3)) == 1
        assert _reload(req.id).status == "closed_no_match"

    def test_matched_request_untouched(self, make_user, make_request, recipient):
        req = make_request(recipient, created_at=T0)
        db.session.add(Contribution(request_id=req.id, supplier_id=make_user("supplier").id,
                                    percentage=Decimal("50"), status="committed"))
        db.session.commit()
        assert lifecycle.close_unmatched(30, now=T0 + timedelta(days=45)) == 0
        assert _reload(req.id).status == "pending"

    def test_close_expired_ignores_matching(self, make_user, make_request, recipient):
        req = make_request(recipient, created_at=T0, status="approved",
                           expires_at=T0 + timedelta(days=1))
        db.session.add(Contribution(request_id=req.id, supplier_id=make_user("supplier").id,
                                    percentage=Decimal("50"), status="committed"))
        fresh = make_request(recipient, created_at=T0, expires_at=T0 + timedelta(days=10))
        db.session.commit()

        assert lifecycle.close_expired(now=T0 + timedelta(days=2)) == 1
        assert _reload(req.id).status == "closed_no_match"
        assert _reload(fresh.id).status == "pending"


# ═══════════════════════════════════════════════════════════════════════════
#  End-to-end SLA timeline
# ═══════════════════════════════════════════════════════════════════════════

class TestSlaTimeline:

    def test_flag_at_31_days_close_at_45(self, make_request, recipient, admin):
        req = make_request(recipient, created_at=T0)

        assert lifecycle.flag_unmatched(30, now=T0 + timedelta(days=29)) == 0
        assert lifecycle.flag_unmatched(30, now=T0 + timedelta(days=31)) == 1
        assert Notification.query.filter_by(recipient_user_id=admin.id).count() == 1
        assert _reload(req.id).status == "pending"

        assert lifecycle.close_unmatched(30, now=T0 + timedelta(days=45)) == 1
        assert _reload(req.id).status == "closed_no_match"


# ═══════════════════════════════════════════════════════════════════════════
#  Admin review
# ═══════════════════════════════════════════════════════════════════════════

class TestReview:

    def test_list_flagged_oldest_first(self, make_request, recipient, admin):
        newer = make_request(recipient, created_at=T0 + timedelta(days=1), is_flagged_for_review=True)
        older = make_request(recipient, created_at=T0, is_flagged_for_review=True)
        make_request(recipient, created_at=T0)
        assert [r.id for r in lifecycle.list_flagged(admin)] == [older.id, newer.id]

    def test_review_close(self, make_request, recipient, admin):
        flagged = make_request(recipient, is_flagged_for_review=True)
        unflagged = make_request(recipient)
        assert lifecycle.review_close([flagged.id, unflagged.id], admin) == 1
        assert _reload(flagged.id).status == "closed_no_match"
        assert _reload(unflagged.id).status == "pending"

    def test_review_requires_admin(self, make_user):
        with pytest.raises(AuthorizationError):
            lifecycle.list_flagged(make_user("auditor"))

    def test_review_close_needs_ids(self, admin):
        with pytest.raises(ValidationError):
            lifecycle.review_close([], admin)
