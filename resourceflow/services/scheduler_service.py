"""
ResourceFlow Fulfillment Core
Scheduler Service.

Registry and runner for periodic jobs. An external trigger (cron, a
platform scheduler, the ``flask requests`` CLI or the admin API) calls
``SchedulerService.run_job``; this module makes sure at most one run of a
given job is in flight across all processes.

Architecture:
    - Job functions register themselves with ``@register_job(name)``
    - Each job has a ScheduledJob row: config, run history and run-lock
    - The run-lock is a conditional UPDATE flipping ``is_running`` false → true;
      a lock older than SCHEDULER_LOCK_TIMEOUT_S is treated as abandoned
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask
from sqlalchemy import or_, update

from resourceflow.models import db
from resourceflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("flag_unmatched_requests")
        def flag_unmatched_requests(app, days=None, now=None):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class UnknownJobError(KeyError):
    """Raised when a job name has no registered function."""


class SchedulerService:
    """
    Job registry persistence and guarded execution.

    Jobs are executed within a Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _ensure_record(cls, job_name: str) -> ScheduledJob:
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is None:
            fn = _job_registry[job_name]
            record = ScheduledJob(
                job_name=job_name,
                description=(fn.__doc__ or f"Scheduled job: {job_name}").strip().splitlines()[0],
                schedule_type="cron",
                schedule_config=_get_default_schedule(job_name),
                status="active",
                is_enabled=True,
                is_running=False,
                run_count=0,
                error_count=0,
            )
            db.session.add(record)
            db.session.commit()
        return record

    @classmethod
    def ensure_jobs_registered(cls) -> list[str]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for name in _job_registry:
            if ScheduledJob.query.filter_by(job_name=name).first() is None:
                cls._ensure_record(name)
                created.append(name)
        if created:
            logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Run-lock ──────────────────────────────────────────────────────────

    @classmethod
    def _acquire_lock(cls, job_name: str) -> bool:
        now = datetime.now(timezone.utc)
        timeout = cls._app.config.get("SCHEDULER_LOCK_TIMEOUT_S", 3600)
        result = db.session.execute(
            update(ScheduledJob)
            .where(
                ScheduledJob.job_name == job_name,
                ScheduledJob.is_enabled.is_(True),
                or_(
                    ScheduledJob.is_running.is_(False),
                    ScheduledJob.run_started_at.is_(None),
                    ScheduledJob.run_started_at < now - timedelta(seconds=timeout),
                ),
            )
            .values(is_running=True, run_started_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    # ── Execution ─────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str, **params) -> dict:
        """
        Execute a single job by name, unless another run holds its lock.

        ``params`` are passed through to the job function (e.g. ``days``,
        ``now``).

        Returns:
            Dict with job_name, status (success | failed | skipped),
            duration_ms, result and error.

        Raises:
            UnknownJobError: no job registered under ``job_name``.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            raise UnknownJobError(job_name)
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")

        with cls._app.app_context():
            cls._ensure_record(job_name)
            if not cls._acquire_lock(job_name):
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                reason = "disabled" if not record.is_enabled else "already running"
                logger.warning("Job %s skipped: %s", job_name, reason)
                return {
                    "job_name": job_name,
                    "status": "skipped",
                    "duration_ms": 0,
                    "result": None,
                    "error": reason,
                }

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app, **params)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        # Record the run and release the lock
        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        if job_name not in _job_registry:
            return None
        job_record = cls._ensure_record(job_name)
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "flag_unmatched_requests": {"day": "1", "hour": "1", "minute": "0",
                                    "description": "Monthly on the 1st at 01:00"},
        "close_unmatched_requests": {"hour": "2", "minute": "0", "description": "Daily at 02:00"},
        "close_expired_requests": {"hour": "0", "minute": "0", "description": "Daily at midnight"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0",
                                    "description": "Daily at midnight"})
