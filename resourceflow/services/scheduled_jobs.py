"""
ResourceFlow Fulfillment Core
Scheduled Jobs.

Concrete job implementations run through SchedulerService.

Jobs:
    - flag_unmatched_requests: flags unmatched requests past the SLA window
      and notifies active admins
    - close_unmatched_requests: closes unmatched requests past the SLA window
      or their expiry
    - close_expired_requests: closes pending/approved requests past expiry

Every job accepts ``now`` so a run can be evaluated at a chosen instant.
"""

from __future__ import annotations

import logging
from typing import Any

from resourceflow.services import request_lifecycle
from resourceflow.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


def _window(app, days) -> int:
    return days if days is not None else app.config.get("SLA_WINDOW_DAYS", 30)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Flag Unmatched Requests
# ═══════════════════════════════════════════════════════════════════════════

@register_job("flag_unmatched_requests")
def flag_unmatched_requests(app, days=None, now=None) -> dict[str, Any]:
    """Flag unmatched requests older than the SLA window for admin review."""
    days = _window(app, days)
    results = {"days": days, "flagged": request_lifecycle.flag_unmatched(days, now=now)}
    logger.info("Flag unmatched requests: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Close Unmatched Requests
# ═══════════════════════════════════════════════════════════════════════════

@register_job("close_unmatched_requests")
def close_unmatched_requests(app, days=None, now=None) -> dict[str, Any]:
    """Close unmatched requests older than the SLA window or past expiry."""
    days = _window(app, days)
    results = {"days": days, "closed": request_lifecycle.close_unmatched(days, now=now)}
    logger.info("Close unmatched requests: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Close Expired Requests
# ═══════════════════════════════════════════════════════════════════════════

@register_job("close_expired_requests")
def close_expired_requests(app, now=None) -> dict[str, Any]:
    """Close pending/approved requests whose expiry has passed."""
    results = {"closed": request_lifecycle.close_expired(now=now)}
    logger.info("Close expired requests: %s", results)
    return results
