"""
ResourceFlow Fulfillment Core
Notification Service.

Central service for creating, fanning out and querying in-app notifications.
Fanout delivers one in-app row plus one email per recipient, each recipient
inside its own savepoint so a failure for one never affects the others.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from resourceflow.core.exceptions import NotFoundError
from resourceflow.models import db
from resourceflow.models.auth import User
from resourceflow.models.notification import Notification
from resourceflow.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_user_id, title, message="", category="system", severity="info",
               entity_type="", entity_id=None, payload=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (committed unless ``commit=False``).
        """
        notif = Notification(
            recipient_user_id=recipient_user_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notif

    @staticmethod
    def fanout(recipients, *, title, message="", category="system", severity="info",
               payload=None, email_template=None, email_context=None) -> dict:
        """
        Deliver one notification (and optionally one email) per recipient.

        Each recipient is isolated in a savepoint; a failure is logged and
        counted, never raised.

        Returns:
            {"recipients": int, "delivered": int, "failed": int}
        """
        result = {"recipients": 0, "delivered": 0, "failed": 0}
        for user in recipients:
            result["recipients"] += 1
            try:
                with db.session.begin_nested():
                    notif = NotificationService.create(
                        recipient_user_id=user.id,
                        title=title,
                        message=message,
                        category=category,
                        severity=severity,
                        payload=payload,
                        commit=False,
                    )
                    if email_template and user.email:
                        EmailService.send_from_template(
                            to_email=user.email,
                            to_name=user.full_name,
                            template_name=email_template,
                            context=dict(email_context or {}),
                            category=category,
                            notification_id=notif.id,
                        )
                result["delivered"] += 1
            except Exception:
                result["failed"] += 1
                logger.exception("Notification delivery failed for user %s", user.id)
        db.session.commit()
        return result

    @staticmethod
    def notify_admins_flagged(count: int, *, days: int) -> dict:
        """Tell every active admin how many requests the flag batch just flagged."""
        admins = (
            User.query
            .filter_by(role="admin", is_active=True)
            .order_by(User.id)
            .all()
        )
        review_url = current_app.config.get("REVIEW_URL", "/dashboard/flagged-requests")
        result = NotificationService.fanout(
            admins,
            title=f"Monthly Review: {count} Request(s) Flagged for Review",
            message=f"{count} request(s) flagged for monthly review.",
            category="review",
            severity="warning",
            payload={"type": "monthly_summary", "flagged_count": count},
            email_template="flagged_requests_summary",
            email_context={"count": count, "days": days, "review_url": review_url},
        )
        logger.info("Flag summary fanout: count=%d %s", count, result)
        return result

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve a user's notifications, newest first."""
        q = Notification.query.filter_by(recipient_user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(recipient_user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark one of the user's notifications as read."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_user_id != user_id:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        now = datetime.now(timezone.utc)
        count = (
            Notification.query
            .filter_by(recipient_user_id=user_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count
