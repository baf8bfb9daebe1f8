"""
Tests — scheduler runner, run-lock and the registered SLA jobs.

Jobs run in their own app context, so fixtures commit before calling
``run_job`` and assertions re-read from the database.
"""

from datetime import datetime, timedelta, timezone

import pytest

from resourceflow.models import db
from resourceflow.models.aid_request import AidRequest
from resourceflow.models.notification import Notification
from resourceflow.models.scheduling import ScheduledJob
from resourceflow.services import scheduler_service
from resourceflow.services.scheduler_service import (
    SchedulerService,
    UnknownJobError,
    get_registered_jobs,
)

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _job(name):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).one()


class TestRegistry:

    def test_sla_jobs_registered(self):
        jobs = get_registered_jobs()
        for name in ("flag_unmatched_requests", "close_unmatched_requests", "close_expired_requests"):
            assert name in jobs

    def test_ensure_jobs_registered_creates_rows(self):
        created = SchedulerService.ensure_jobs_registered()
        assert "flag_unmatched_requests" in created
        assert SchedulerService.ensure_jobs_registered() == []
        assert _job("flag_unmatched_requests").schedule_config["day"] == "1"

    def test_unknown_job(self):
        with pytest.raises(UnknownJobError):
            SchedulerService.run_job("does_not_exist")


class TestRunLock:

    def test_run_records_and_releases(self, make_user, make_request):
        make_request(make_user("recipient"), created_at=T0)
        result = SchedulerService.run_job("close_unmatched_requests", now=T0 + timedelta(days=45))

        assert result["status"] == "success"
        assert result["result"] == {"days": 30, "closed": 1}
        job = _job("close_unmatched_requests")
        assert job.is_running is False
        assert job.run_started_at is None
        assert job.run_count == 1
        assert job.last_run_status == "success"

    def test_running_job_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        job = _job("flag_unmatched_requests")
        job.is_running = True
        job.run_started_at = datetime.now(timezone.utc)
        db.session.commit()

        result = SchedulerService.run_job("flag_unmatched_requests")
        assert result["status"] == "skipped"
        assert result["error"] == "already running"
        assert _job("flag_unmatched_requests").run_count == 0

    def test_stale_lock_reclaimed(self):
        SchedulerService.ensure_jobs_registered()
        job = _job("close_expired_requests")
        job.is_running = True
        job.run_started_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db.session.commit()

        result = SchedulerService.run_job("close_expired_requests")
        assert result["status"] == "success"
        assert _job("close_expired_requests").is_running is False

    def test_disabled_job_is_skipped(self):
        SchedulerService.toggle_job("close_expired_requests", False)
        result = SchedulerService.run_job("close_expired_requests")
        assert result["status"] == "skipped"
        assert result["error"] == "disabled"

    def test_failure_recorded_and_lock_released(self, monkeypatch):
        def boom(app, **params):
            raise RuntimeError("kaboom")

        monkeypatch.setitem(scheduler_service._job_registry, "exploding_job", boom)
        result = SchedulerService.run_job("exploding_job")

        assert result["status"] == "failed"
        assert "kaboom" in result["error"]
        job = _job("exploding_job")
        assert job.error_count == 1
        assert job.is_running is False


class TestSlaJobs:

    def test_flag_job_notifies_admins(self, make_user, make_request):
        admin = make_user("admin")
        req = make_request(make_user("recipient"), created_at=T0)

        result = SchedulerService.run_job("flag_unmatched_requests", now=T0 + timedelta(days=31))
        assert result["result"] == {"days": 30, "flagged": 1}

        db.session.expire_all()
        assert db.session.get(AidRequest, req.id).is_flagged_for_review is True
        assert Notification.query.filter_by(recipient_user_id=admin.id).count() == 1

        rerun = SchedulerService.run_job("flag_unmatched_requests", now=T0 + timedelta(days=31))
        assert rerun["result"]["flagged"] == 0
        assert Notification.query.count() == 1

    def test_days_override(self, make_user, make_request):
        make_request(make_user("recipient"), created_at=T0)
        result = SchedulerService.run_job("close_unmatched_requests", days=60,
                                          now=T0 + timedelta(days=45))
        assert result["result"] == {"days": 60, "closed": 0}

    def test_window_from_config(self, app, make_user, make_request, monkeypatch):
        monkeypatch.setitem(app.config, "SLA_WINDOW_DAYS", 10)
        make_request(make_user("recipient"), created_at=T0)
        result = SchedulerService.run_job("close_unmatched_requests", now=T0 + timedelta(days=11))
        assert result["result"] == {"days": 10, "closed": 1}


class TestCli:

    def test_close_unmatched_command(self, app, make_user, make_request):
        make_request(make_user("recipient"), created_at=datetime.now(timezone.utc) - timedelta(days=40))
        runner = app.test_cli_runner()
        out = runner.invoke(args=["requests", "close-unmatched", "--days", "30"])
        assert out.exit_code == 0
        assert "close_unmatched_requests: success" in out.output
        db.session.expire_all()
        assert AidRequest.query.one().status == "closed_no_match"

    def test_negative_days_rejected(self, app):
        out = app.test_cli_runner().invoke(args=["requests", "flag-unmatched", "--days", "-1"])
        assert out.exit_code != 0
