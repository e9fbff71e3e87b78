# Overview: Pytest coverage for the notification store (dedup upsert, read state, listing, stats).

import pytest

from stockbook.errors import ReferentialGapError
from stockbook.models import Notification
from stockbook.services import notification_service


def _notify(user, *, type="low_stock", dedup_key=None, message="Paracetamol 500mg is running low"):
    notification, created = notification_service.create_notification(
        user_id=user.id, type=type, title="Low Stock Alert", message=message, dedup_key=dedup_key,
    )
    return notification, created


class TestCreate:
    def test_without_dedup_key_every_call_inserts(self, db_session, user):
        _notify(user)
        _notify(user)
        db_session.commit()
        assert Notification.query.count() == 2

    def test_dedup_key_refreshes_unread_row(self, db_session, user):
        first, created = _notify(user, dedup_key="low_stock:product:1", message="Current stock: 8")
        db_session.commit()
        second, created_again = _notify(user, dedup_key="low_stock:product:1", message="Current stock: 3")
        db_session.commit()

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert Notification.query.one().message == "Current stock: 3"

    def test_dedup_is_per_user(self, db_session, users):
        for u in users[:2]:
            _notify(u, dedup_key="low_stock:product:1")
        db_session.commit()
        assert Notification.query.count() == 2

    def test_notify_active_users_skips_inactive(self, db_session, users):
        created = notification_service.notify_active_users(
            type="low_stock", title="Low Stock Alert", message="m", dedup_key="low_stock:product:1",
        )
        db_session.commit()

        assert created == 2
        assert users[2].id not in {n.user_id for n in Notification.query.all()}

    def test_unknown_type_rejected(self, db_session, user):
        with pytest.raises(ValueError):
            _notify(user, type="price_change")
        assert Notification.query.count() == 0


class TestReadState:
    def test_mark_read(self, db_session, user):
        notification, _ = _notify(user)
        db_session.commit()

        marked = notification_service.mark_read(notification.id, user_id=user.id)

        assert marked.read is True
        assert marked.read_at is not None
        assert notification_service.unread_count(user.id) == 0

    def test_mark_read_of_other_users_notification(self, db_session, users):
        notification, _ = _notify(users[0])
        db_session.commit()

        with pytest.raises(ReferentialGapError):
            notification_service.mark_read(notification.id, user_id=users[1].id)

    def test_mark_all_read(self, db_session, users):
        for key in ("a", "b", "c"):
            _notify(users[0], dedup_key=key)
        _notify(users[1], dedup_key="a")
        db_session.commit()

        assert notification_service.mark_all_read(users[0].id) == 3
        assert notification_service.unread_count(users[0].id) == 0
        assert notification_service.unread_count(users[1].id) == 1


class TestListingAndStats:
    def test_list_filters_and_orders_newest_first(self, db_session, user):
        older, _ = _notify(user, type="low_stock")
        newer, _ = _notify(user, type="expired_product")
        db_session.commit()
        notification_service.mark_read(older.id)

        assert [n.id for n in notification_service.list_notifications(user.id)] == [newer.id, older.id]
        assert [n.id for n in notification_service.list_notifications(user.id, unread_only=True)] == [newer.id]
        assert [n.id for n in notification_service.list_notifications(user.id, type="low_stock")] == [older.id]

    def test_stats(self, db_session, user):
        _notify(user, type="low_stock", dedup_key="low_stock:product:1")
        _notify(user, type="expired_product", dedup_key="expired_product:lot:4")
        read, _ = _notify(user, type="expired_product", dedup_key="expired_product:lot:5")
        db_session.commit()
        notification_service.mark_read(read.id)

        stats = notification_service.get_notification_stats(user.id)

        assert stats == {
            "total": 3,
            "unread": 2,
            "read": 1,
            "unread_by_type": {"low_stock": 1, "expired_product": 1},
        }
