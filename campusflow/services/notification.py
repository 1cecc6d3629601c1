"""
Notification Service.

Central service for creating, fanning out and querying in-app notifications.
The lifecycle engine calls ``notify`` in its post-commit phase; writes here
only ``flush`` so the caller decides when (and whether) they become durable.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update

from campusflow.core.exceptions import NotFoundError
from campusflow.models import db
from campusflow.models.notification import NOTIFICATION_TEMPLATE_KEYS, Notification
from campusflow.models.org import User
from campusflow.models.request import Request
from campusflow.models.workflow import RoleBinding, UserBinding

logger = logging.getLogger(__name__)


# ── Recipient selectors ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class UserSelector:
    user_id: int


@dataclass(frozen=True)
class RoleSelector:
    """Fan-out to every active user holding the role."""

    role_id: int


def selector_for_binding(binding):
    """Map a step's approver binding to the matching recipient selector."""
    if isinstance(binding, UserBinding):
        return UserSelector(binding.user_id)
    if isinstance(binding, RoleBinding):
        return RoleSelector(binding.role_id)
    raise TypeError(f"Unsupported approver binding: {binding!r}")


# ── Message templates ────────────────────────────────────────────────────────

_TEMPLATES = {
    "new_request": (
        "New request for review",
        "New {form} request from {actor} - reference {ref}",
    ),
    "request_updated": (
        "Request resubmitted",
        "{actor} resubmitted request {ref} after changes",
    ),
    "document_ready": (
        "Official document ready",
        "The official document for request {ref} has been issued",
    ),
    "status.approved": ("Request status updated", "Your request {ref} was approved by {actor}"),
    "status.rejected": ("Request status updated", "Your request {ref} was rejected by {actor}"),
    "status.pending": ("Request status updated", "Your request {ref} is under review"),
    "status.in_progress": ("Request status updated", "Your request {ref} is in progress"),
    "status.returned": (
        "Request status updated",
        "Your request {ref} was returned for changes by {actor}",
    ),
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def recipients(selector) -> list[User]:
        if isinstance(selector, UserSelector):
            user = db.session.get(User, selector.user_id)
            return [user] if user is not None and user.is_active else []
        if isinstance(selector, RoleSelector):
            return list(db.session.execute(
                select(User)
                .where(User.role_id == selector.role_id, User.is_active.is_(True))
                .order_by(User.id)
            ).scalars())
        raise TypeError(f"Unsupported recipient selector: {selector!r}")

    @staticmethod
    def notify(selector, request_id, template_key, actor_name=""):
        """
        Create one notification per recipient for a request event.

        Returns:
            List of created (flushed) Notification instances.  Empty when the
            selector matches nobody.
        """
        if template_key not in NOTIFICATION_TEMPLATE_KEYS:
            raise ValueError(f"Unknown notification template: {template_key}")

        req = db.session.get(Request, request_id)
        if req is None:
            raise NotFoundError("Request", request_id)

        title, body = _TEMPLATES[template_key]
        message = body.format(
            ref=req.reference_no,
            actor=actor_name or "the system",
            form=req.form.name if req.form else "",
        )

        users = NotificationService.recipients(selector)
        notifications = []
        for user in users:
            notif = Notification(
                user_id=user.id,
                request_id=req.id,
                template_key=template_key,
                title=title,
                message=message,
                link=f"/requests/{req.id}",
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()

        if not notifications:
            logger.info("Notification %s for %s matched no active recipients",
                        template_key, req.reference_no,
                        extra={"request_ref": req.reference_no, "event_type": "notify.empty"})
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a user, newest first.
        """
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(user_id):
        """Return count of unread notifications."""
        return db.session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.is_read.is_(False),
            )
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark a single notification of ``user_id`` as read."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.user_id != user_id:
            raise NotFoundError("Notification", notification_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        """Mark all notifications for a user as read."""
        now = datetime.now(timezone.utc)
        result = db.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=now)
        )
        db.session.commit()
        return result.rowcount
