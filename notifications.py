"""
Notification dispatch.

Engines never talk to the notification store directly: they hand a
message to ``dispatch`` after their own state change has been committed.
A failing sink is logged and ignored, the state change stands.
"""
from datetime import timedelta
from typing import Dict, Optional

import structlog

from extensions import db
from models import Notification, utcnow

logger = structlog.get_logger(__name__)

RELATED_KEYS = ("bin", "schedule", "route")


class Notifier:
    """Interface every notification sink implements."""

    def notify(self, recipient_id: int, type: str, title: str, message: str,
               priority: str = "medium", related: Optional[Dict] = None,
               now=None):
        raise NotImplementedError


class DatabaseNotifier(Notifier):
    """
    Stores notifications in the ``notifications`` table.

    Identical ``(recipient, type, related entity)`` notifications issued
    within ``dedup_minutes`` of each other collapse into the first one.
    """

    def __init__(self, dedup_minutes: int = 5, expiry_days: int = 30):
        self.dedup_window = timedelta(minutes=dedup_minutes)
        self.expiry = timedelta(days=expiry_days)

    def notify(self, recipient_id, type, title, message,
               priority="medium", related=None, now=None):
        now = now or utcnow()
        related = related or {}

        if related:
            recent = (
                Notification.query
                .filter_by(
                    recipient_id=recipient_id,
                    type=type,
                    related_bin_id=related.get("bin"),
                    related_schedule_id=related.get("schedule"),
                    related_route_id=related.get("route"),
                )
                .filter(Notification.created_at >= now - self.dedup_window)
                .first()
            )
            if recent:
                logger.debug(
                    "notification_deduplicated",
                    recipient_id=recipient_id,
                    type=type,
                    notification_id=recent.id,
                )
                return recent

        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            priority=priority,
            related_bin_id=related.get("bin"),
            related_schedule_id=related.get("schedule"),
            related_route_id=related.get("route"),
            expires_at=now + self.expiry,
            created_at=now,
        )
        db.session.add(notification)
        db.session.commit()
        return notification

    def unread(self, recipient_id: int):
        return (
            Notification.query
            .filter_by(recipient_id=recipient_id, is_read=False)
            .order_by(Notification.created_at.desc())
            .all()
        )

    def mark_read(self, notification_id: int, now=None):
        notification = db.session.get(Notification, notification_id)
        if notification and not notification.is_read:
            notification.is_read = True
            notification.read_at = now or utcnow()
            db.session.commit()
        return notification


def dispatch(notifier: Optional[Notifier], recipient_id, type, title, message,
             priority="medium", related=None, now=None):
    """Best-effort send. Returns the notification or None."""
    if notifier is None or recipient_id is None:
        return None
    try:
        return notifier.notify(
            recipient_id, type, title, message,
            priority=priority, related=related, now=now,
        )
    except Exception:
        db.session.rollback()
        logger.exception(
            "notification_failed",
            recipient_id=recipient_id,
            type=type,
            related=related,
        )
        return None
