# Overview: Notification store; deduplicated alert persistence, read state and retention cleanup.

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ReferentialGapError
from ..models import Notification, User
from ..models.notifications import NOTIFICATION_TYPES
from .concurrency import run_in_unit_of_work
from stockbook.time_utils import utcnow


def _find_unread(user_id: int, dedup_key: str) -> Notification | None:
    return (
        Notification.query
        .filter_by(user_id=user_id, dedup_key=dedup_key, read=False)
        .order_by(Notification.id.asc())
        .first()
    )


def _refresh(notification: Notification, *, title, message, data) -> Notification:
    notification.title = title
    notification.message = message
    notification.data = data
    notification.updated_at = utcnow()
    return notification


def create_notification(
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: dict | None = None,
    dedup_key: str | None = None,
) -> tuple[Notification, bool]:
    """
    Create a notification, or refresh the user's unread one with the same dedup_key.

    Without dedup_key every call inserts. With dedup_key the lookup and the
    write run in the caller's transaction; a concurrent insert that wins the
    race trips the partial unique index, and the loser updates the winner's
    row instead. The race is never surfaced to the caller.

    Returns (notification, created). Does not commit.
    """
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Invalid notification type '{type}'. Must be one of: {', '.join(NOTIFICATION_TYPES)}")
    if dedup_key is not None:
        existing = _find_unread(user_id, dedup_key)
        if existing is not None:
            return _refresh(existing, title=title, message=message, data=data), False

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data,
        dedup_key=dedup_key,
        read=False,
    )
    try:
        with db.session.begin_nested():
            db.session.add(notification)
    except IntegrityError:
        if dedup_key is None:
            raise
        existing = _find_unread(user_id, dedup_key)
        if existing is None:
            raise
        return _refresh(existing, title=title, message=message, data=data), False

    return notification, True


def notify_active_users(*, type: str, title: str, message: str, data: dict | None = None, dedup_key: str | None = None) -> int:
    """Fan one alert out to every active user. Returns the number of rows inserted."""
    created = 0
    user_ids = [uid for (uid,) in db.session.query(User.id).filter(User.is_active.is_(True)).order_by(User.id)]
    for user_id in user_ids:
        _, was_created = create_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data,
            dedup_key=dedup_key,
        )
        if was_created:
            created += 1
    return created


def mark_read(notification_id: int, *, user_id: int | None = None) -> Notification:
    def _op():
        notification = db.session.get(Notification, notification_id)
        if notification is None or (user_id is not None and notification.user_id != user_id):
            raise ReferentialGapError("notification", notification_id)
        if not notification.read:
            notification.read = True
            notification.read_at = utcnow()
        return notification

    return run_in_unit_of_work(_op)


def mark_all_read(user_id: int) -> int:
    def _op():
        now = utcnow()
        return (
            Notification.query
            .filter_by(user_id=user_id, read=False)
            .update({"read": True, "read_at": now, "updated_at": now}, synchronize_session=False)
        )

    return run_in_unit_of_work(_op)


def unread_count(user_id: int) -> int:
    return Notification.query.filter_by(user_id=user_id, read=False).count()


def list_notifications(user_id: int, *, unread_only: bool = False, type: str | None = None, limit: int = 50) -> list[Notification]:
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(read=False)
    if type:
        query = query.filter_by(type=type)
    limit = max(1, min(int(limit), 200))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def cleanup_older_than(days: int, *, read_only: bool = True) -> int:
    """
    Delete notifications created more than `days` days ago.

    read_only=True (default) keeps unread rows regardless of age.
    Returns the number of rows deleted. Does not commit.
    """
    cutoff = utcnow() - timedelta(days=days)
    query = Notification.query.filter(Notification.created_at < cutoff)
    if read_only:
        query = query.filter(Notification.read.is_(True))
    return query.delete(synchronize_session=False)


def get_notification_stats(user_id: int | None = None) -> dict:
    query = db.session.query(Notification.type, Notification.read, func.count(Notification.id))
    if user_id is not None:
        query = query.filter(Notification.user_id == user_id)

    total = 0
    unread = 0
    unread_by_type: dict[str, int] = {}
    for type_, read, count in query.group_by(Notification.type, Notification.read).all():
        total += count
        if not read:
            unread += count
            unread_by_type[type_] = unread_by_type.get(type_, 0) + count

    return {
        "total": total,
        "unread": unread,
        "read": total - unread,
        "unread_by_type": unread_by_type,
    }
