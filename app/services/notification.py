"""
Notification Service.

Receives the notification instructions a workflow transition produces and
stores them as in-app notifications.  Dispatch is fire-and-forget: it runs
after the transition committed and a failure here is logged, never
propagated back into the workflow result.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from flask import current_app, has_app_context

from app.core.exceptions import NotFoundError
from app.core.roles import Role
from app.models import db
from app.models.auth import User
from app.models.notification import NOTIFICATION_CATEGORIES, Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationInstruction:
    """One message for the sink: ``{recipient_id, subject, body, category}``."""

    recipient_id: int
    subject: str
    body: str
    category: str
    invoice_id: str | None = None
    severity: str = "info"

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient_id,
            "subject": self.subject,
            "body": self.body,
            "category": self.category,
            "invoice_id": self.invoice_id,
        }


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def enabled() -> bool:
        if not has_app_context():
            return True
        return bool(current_app.config.get("NOTIFICATIONS_ENABLED", True))

    @staticmethod
    def dispatch(instructions):
        """
        Persist every instruction as a Notification.

        Returns:
            List of created Notification instances; empty when disabled or
            when the sink failed.
        """
        instructions = list(instructions or [])
        if not instructions or not NotificationService.enabled():
            return []

        notifications = []
        try:
            for ins in instructions:
                if ins.category not in NOTIFICATION_CATEGORIES:
                    raise ValueError(f"Unknown notification category: {ins.category}")
                notif = Notification(
                    recipient_id=ins.recipient_id,
                    title=ins.subject,
                    message=ins.body,
                    category=ins.category,
                    severity=ins.severity,
                    invoice_id=ins.invoice_id,
                )
                db.session.add(notif)
                notifications.append(notif)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception(
                "Notification dispatch failed (%d instruction(s))", len(instructions),
                extra={"recipients": [i.recipient_id for i in instructions]},
            )
            return []

        logger.info("Dispatched %d notification(s)", len(notifications))
        return notifications

    @staticmethod
    def admin_recipients() -> list[int]:
        """Active Admin ids, the audience for routing problems."""
        return [
            u.id for u in User.query.filter_by(role=Role.ADMIN, is_active=True).order_by(User.id).all()
        ]

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read.

        Another user's notification is reported as not found.
        """
        notif = db.session.get(Notification, notification_id)
        if not notif or notif.recipient_id != recipient_id:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(UTC)
        count = (
            Notification.query
            .filter_by(recipient_id=recipient_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count
