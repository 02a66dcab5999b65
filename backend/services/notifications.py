"""Notification fanout.

Notifications are stored per tenant+branch and pushed to the branch's realtime
group together with their role target; clients keep the ones addressed to
their own role or to ``all``. Read state is tracked per user, so "unread" means
the caller has no read marker on the row.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database import utcnow
from core.effects import Broadcast
from core.errors import ValidationFailed
from core.permissions import Operation, require_role
from core.security import BranchScope, RequestContext
from models.notification import (
    Notification,
    NotificationRead,
    NotificationType,
    ReferenceType,
    RoleTarget,
)
from models.schemas import NotificationOut, OfferCreate

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


def _scoped(db: Session, scope: BranchScope):
    return db.query(Notification).filter(
        Notification.tenant_id == scope.tenant_id,
        Notification.branch_id == scope.branch_id,
    )


def _visible_to(query, ctx: RequestContext):
    return query.filter(or_(Notification.role_target == ctx.role.value,
                            Notification.role_target == RoleTarget.ALL))


def _unread_by(query, user_id: str):
    read_ids = select(NotificationRead.notification_id).where(NotificationRead.user_id == user_id)
    return query.filter(Notification.id.notin_(read_ids))


def serialize_notification(notification: Notification, user_id: Optional[str] = None) -> dict:
    data = NotificationOut.model_validate(notification)
    if user_id is not None:
        data.is_read = notification.is_read_by(user_id)
    return data.model_dump(mode="json")


def delivery_payload(notification: Notification) -> dict:
    return {
        "notification": serialize_notification(notification),
        "roleTarget": notification.role_target.value,
    }


def create_notification(
    db: Session,
    scope: BranchScope,
    *,
    type: NotificationType,
    title: str,
    message: str,
    role_target: RoleTarget,
    reference_id: Optional[str] = None,
    reference_type: Optional[ReferenceType] = None,
    created_by: Optional[str] = None,
) -> tuple[Notification, bool]:
    """Create a notification unless one exists for the same reference.

    Returns the stored row and whether it was newly created.
    """
    if reference_id is not None:
        existing = _scoped(db, scope).filter(
            Notification.type == type,
            Notification.reference_id == reference_id,
        ).first()
        if existing is not None:
            return existing, False

    notification = Notification(
        tenant_id=scope.tenant_id,
        branch_id=scope.branch_id,
        type=type,
        title=title.strip()[:200],
        message=message.strip()[:500],
        role_target=role_target,
        reference_id=reference_id,
        reference_type=reference_type,
        created_by=created_by,
    )
    db.add(notification)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with an identical notification
        db.rollback()
        existing = _scoped(db, scope).filter(
            Notification.type == type,
            Notification.reference_id == reference_id,
        ).first()
        if existing is None:
            raise
        return existing, False
    db.refresh(notification)
    return notification, True


def list_notifications(db: Session, ctx: RequestContext, page: int = 1, limit: int = 20,
                       unread_only: bool = False) -> tuple[list[Notification], int]:
    require_role(ctx.role, Operation.READ_NOTIFICATIONS)
    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))

    query = _visible_to(_scoped(db, ctx.scope), ctx)
    if unread_only:
        query = _unread_by(query, ctx.user_id)

    total = query.count()
    rows = (query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit).limit(limit).all())
    return rows, total


def unread_count(db: Session, ctx: RequestContext) -> int:
    require_role(ctx.role, Operation.READ_NOTIFICATIONS)
    return _unread_by(_visible_to(_scoped(db, ctx.scope), ctx), ctx.user_id).count()


def _add_read_markers(db: Session, notification_ids: list[int], user_id: str) -> int:
    now = utcnow()
    for attempt in range(2):
        already = {
            row.notification_id
            for row in db.query(NotificationRead.notification_id).filter(
                NotificationRead.user_id == user_id,
                NotificationRead.notification_id.in_(notification_ids),
            )
        }
        pending = [nid for nid in notification_ids if nid not in already]
        for nid in pending:
            db.add(NotificationRead(notification_id=nid, user_id=user_id, read_at=now))
        try:
            db.commit()
            return len(pending)
        except IntegrityError:
            # Another device of the same user marked some of them first
            db.rollback()
            if attempt:
                raise
    return 0


def mark_as_read(db: Session, ctx: RequestContext, notification_ids: list[int]):
    require_role(ctx.role, Operation.READ_NOTIFICATIONS)
    if not notification_ids:
        raise ValidationFailed("notification_ids array is required")

    in_scope = [row.id for row in _scoped(db, ctx.scope).filter(
        Notification.id.in_(notification_ids)).with_entities(Notification.id)]
    marked = _add_read_markers(db, in_scope, ctx.user_id) if in_scope else 0

    effects = [Broadcast(ctx.scope, "notifications-read", {
        "notificationIds": notification_ids,
        "userId": ctx.user_id,
        "role": ctx.role.value,
    })]
    return marked, effects


def mark_all_as_read(db: Session, ctx: RequestContext):
    require_role(ctx.role, Operation.READ_NOTIFICATIONS)
    unread_ids = [row.id for row in _unread_by(_visible_to(_scoped(db, ctx.scope), ctx), ctx.user_id)
                  .with_entities(Notification.id)]
    marked = _add_read_markers(db, unread_ids, ctx.user_id) if unread_ids else 0

    effects = [Broadcast(ctx.scope, "notifications-read-all", {
        "userId": ctx.user_id,
        "role": ctx.role.value,
    })]
    return marked, effects


def create_offer(db: Session, ctx: RequestContext, payload: OfferCreate):
    require_role(ctx.role, Operation.CREATE_OFFER)
    title = (payload.title or "").strip()
    message = (payload.message or "").strip()
    if not title or not message:
        raise ValidationFailed("Title and message are required")

    try:
        target = RoleTarget(payload.role_target)
    except ValueError:
        target = RoleTarget.ALL

    notification, _ = create_notification(
        db, ctx.scope,
        type=NotificationType.OFFER_ANNOUNCEMENT,
        title=title,
        message=message,
        role_target=target,
        reference_type=ReferenceType.OFFER,
        created_by=ctx.user_id,
    )
    return notification, [Broadcast(ctx.scope, "new-notification", delivery_payload(notification))]


def purge_expired(db: Session, retention_days: int, now=None) -> int:
    """Delete notifications older than the retention window."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    expired_ids = [row.id for row in db.query(Notification.id).filter(Notification.created_at < cutoff)]
    if not expired_ids:
        return 0
    db.query(NotificationRead).filter(NotificationRead.notification_id.in_(expired_ids)).delete(
        synchronize_session=False)
    deleted = db.query(Notification).filter(Notification.id.in_(expired_ids)).delete(
        synchronize_session=False)
    db.commit()
    logger.info("Purged %d notifications older than %d days", deleted, retention_days)
    return deleted
