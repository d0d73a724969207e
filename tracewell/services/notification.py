"""
Tracewell
Notification Service.

Creates and queries in-app notifications.  Story status changes fan out to
every active user whose role is subscribed to the destination status; the
actor who made the change is never notified of their own action.
"""

import logging

from tracewell.models import db
from tracewell.models.auth import (
    ROLE_ADMIN,
    ROLE_DEVELOPER,
    ROLE_PORTFOLIO_MANAGER,
    ROLE_PROGRAM_MANAGER,
    User,
)
from tracewell.models.notification import Notification

logger = logging.getLogger(__name__)

# Destination status → roles notified when a story enters it
STATUS_NOTIFICATION_RULES = {
    "Draft": (),
    "Internal Review": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER),
    "Pending Client Review": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER),
    "Approved": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER, ROLE_DEVELOPER),
    "In Development": (ROLE_DEVELOPER, ROLE_PROGRAM_MANAGER),
    "In UAT": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER),
    "Needs Discussion": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER, ROLE_PROGRAM_MANAGER),
    "Out of Scope": (ROLE_ADMIN, ROLE_PORTFOLIO_MANAGER),
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, user_ids, title, message="", notification_type="system", story_id=None):
        """
        Create one notification per recipient and commit.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for uid in user_ids:
            notif = Notification(
                user_id=uid,
                notification_type=notification_type,
                title=title,
                message=message,
                story_id=story_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50):
        """Notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif


def recipients_for_status(status, exclude_user_id=None) -> list[str]:
    """Active users whose role is subscribed to ``status``, minus the actor."""
    roles = STATUS_NOTIFICATION_RULES.get(status, ())
    if not roles:
        return []
    q = User.query.filter(User.role.in_(roles), User.is_active.is_(True))
    if exclude_user_id:
        q = q.filter(User.user_id != exclude_user_id)
    return [u.user_id for u in q.order_by(User.user_id).all()]


def notify_status_change(payload: dict) -> int:
    """Side-effect handler for ``story.status_changed``.  Returns recipient count."""
    new_status = payload.get("new_status")
    recipients = recipients_for_status(new_status, exclude_user_id=payload.get("actor_id"))
    if not recipients:
        return 0

    actor_name = payload.get("actor_name") or "Someone"
    title = f"{payload.get('story_id')} moved to {new_status}"
    message = (
        f"{actor_name} changed \"{payload.get('title', '')}\" "
        f"from {payload.get('old_status')} to {new_status}."
    )
    if payload.get("notes"):
        message += f" Notes: {payload['notes']}"

    NotificationService.broadcast(
        user_ids=recipients,
        title=title,
        message=message,
        notification_type="approval" if new_status == "Approved" else "status_change",
        story_id=payload.get("story_id"),
    )
    logger.info("Status change %s → %s notified %d user(s)", payload.get("story_id"), new_status, len(recipients))
    return len(recipients)
