"""
Benefit Request Engine
Notification Service.

Creates in-app notifications for request lifecycle events.  Always called
after the engine's transaction has committed; a failure here is logged and
rolled back on its own, never surfaced to the caller.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from benefits.models import db
from benefits.models.benefit_request import BenefitRequest
from benefits.models.employee import ROLE_HR, User
from benefits.models.notification import Notification

logger = logging.getLogger(__name__)


# event → (title template, severity)
_EVENTS = {
    "created": ("{kind} request #{id} submitted", "info"),
    "marked_ready": ("{kind} request #{id} is ready for review", "info"),
    "marked_incomplete": ("{kind} request #{id} needs more documents", "warning"),
    "moved_to_review": ("{kind} request #{id} is under officer review", "info"),
    "approvers_assigned": ("{kind} request #{id} awaits your approval", "action_required"),
    "step_approved": ("{kind} request #{id} awaits your approval", "action_required"),
    "approved": ("{kind} request #{id} was approved", "success"),
    "rejected": ("{kind} request #{id} was rejected", "error"),
    "released": ("{kind} request #{id} was released", "success"),
    "cancelled": ("{kind} request #{id} was cancelled", "warning"),
}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def dispatch(event, request_id, recipients, message=""):
        """
        Fire-and-forget: one notification per recipient for a lifecycle event.

        Returns:
            Number of notifications created (0 on failure).
        """
        try:
            req = db.session.get(BenefitRequest, request_id)
            if req is None or event not in _EVENTS:
                logger.warning("Skipping notification %s for request %s", event, request_id)
                return 0
            template, severity = _EVENTS[event]
            title = template.format(kind=req.request_kind, id=req.id)
            targets = sorted({r for r in recipients if r is not None})
            for user_id in targets:
                db.session.add(Notification(
                    user_id=user_id,
                    title=title,
                    message=message or "",
                    severity=severity,
                    request_id=request_id,
                ))
            db.session.commit()
            return len(targets)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Notification dispatch failed: %s on request %s", event, request_id,
                extra={"request_id": request_id, "event_type": "notification_failed"},
            )
            return 0

    @staticmethod
    def hr_user_ids():
        """All HR users; recipients for newly submitted requests."""
        return list(db.session.execute(select(User.id).where(User.role == ROLE_HR)).scalars())

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50):
        """Retrieve a user's notifications, newest first."""
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return list(db.session.execute(stmt).scalars())

