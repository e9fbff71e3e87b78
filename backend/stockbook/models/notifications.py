from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import utcnow, to_utc_z


NOTIFICATION_TYPES = ("low_stock", "expired_product")


class Notification(db.Model):
    """
    User-scoped alert.

    DEDUP:
    dedup_key names the subject of the alert ("low_stock:product:7",
    "expired_product:lot:12"). At most one UNREAD row exists per
    (user_id, dedup_key); the partial unique index enforces it and
    notification_service upserts against it. Read rows keep their key, so a
    condition that recurs after the user read the alert raises a fresh one.

    Rows are deleted only by retention cleanup.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "read"),
        db.Index(
            "uq_notifications_unread_dedup",
            "user_id",
            "dedup_key",
            unique=True,
            sqlite_where=db.text("read = 0 AND dedup_key IS NOT NULL"),
            postgresql_where=db.text("read = false AND dedup_key IS NOT NULL"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String(32), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON, nullable=True)
    dedup_key = db.Column(db.String(128), nullable=True)

    read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "dedup_key": self.dedup_key,
            "read": self.read,
            "read_at": to_utc_z(self.read_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SweepLock(db.Model):
    """
    Advisory lease for scheduled sweeps.

    One row per sweep name. A sweep may run only while it holds an unexpired
    lease (see services.alert_service.acquire_sweep_lock).
    """
    __tablename__ = "sweep_locks"

    name = db.Column(db.String(64), primary_key=True)
    holder = db.Column(db.String(64), nullable=True)
    locked_until = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "holder": self.holder,
            "locked_until": to_utc_z(self.locked_until),
            "last_run_at": to_utc_z(self.last_run_at),
        }
