# Overview: Pytest coverage for the stock alert observer, dedup and scheduled sweeps.

"""
Alert Observer Tests

- Crossing min_stock raises exactly one unread low-stock alert per active user
- Further drops refresh the unread alert instead of adding rows
- A failing alert write never rolls back the stock change that triggered it
- Sweeps are idempotent and skip while another sweep holds the lock
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from stockbook.models import Notification, StockLot, StockMovement
from stockbook.services import alert_service, notification_service, stock_service
from stockbook.services.stock_service import LotState
from stockbook.time_utils import utcnow


def _state(**overrides):
    values = dict(
        lot_id=1, warehouse_id=1, warehouse_name="Main Warehouse", product_id=1, product_name="Paracetamol 500mg",
        product_active=True, batch="B1", expiry_date=None, cost_price=Decimal("3.00"), quantity=Decimal("5"),
        product_total=Decimal("5"), min_stock=Decimal("10"),
    )
    values.update(overrides)
    return LotState(**values)


class TestHooks:
    def test_low_stock_hook_fires_at_threshold(self):
        intents = alert_service.low_stock_hook(_state(product_total=Decimal("11")), _state(product_total=Decimal("10")))
        assert [i.dedup_key for i in intents] == ["low_stock:product:1"]
        assert intents[0].data["current_stock"] == "10"

    def test_low_stock_hook_ignores_zero_threshold(self):
        assert alert_service.low_stock_hook(None, _state(min_stock=Decimal("0"), product_total=Decimal("0"))) == []

    def test_low_stock_hook_ignores_unchanged_total(self):
        assert alert_service.low_stock_hook(_state(), _state()) == []

    def test_expiry_hook(self):
        as_of = date(2027, 1, 10)
        intents = alert_service.expiry_hook(None, _state(lot_id=9, expiry_date=date(2027, 1, 7)), as_of=as_of)
        assert intents[0].dedup_key == "expired_product:lot:9"
        assert intents[0].data["days_expired"] == 3

        assert alert_service.expiry_hook(None, _state(expiry_date=date(2027, 1, 10)), as_of=as_of) == []
        assert alert_service.expiry_hook(None, _state(expiry_date=date(2027, 1, 7), quantity=Decimal("0")), as_of=as_of) == []


class TestLowStockAlerts:
    def test_crossing_threshold_notifies_each_active_user_once(self, db_session, warehouse, product, users):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=15)
        assert Notification.query.count() == 0

        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-7)

        rows = Notification.query.order_by(Notification.user_id).all()
        assert [n.user_id for n in rows] == [users[0].id, users[1].id]
        assert {n.type for n in rows} == {"low_stock"}
        assert rows[0].data["current_stock"] == "8"

        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-5)

        rows = Notification.query.all()
        assert len(rows) == 2
        assert {n.data["current_stock"] for n in rows} == {"3"}

    def test_read_alert_is_raised_again(self, db_session, warehouse, product, user):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=8)
        first = Notification.query.one()
        notification_service.mark_read(first.id)

        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-1)

        assert Notification.query.count() == 2
        assert notification_service.unread_count(user.id) == 1

    def test_untracked_product_never_alerts(self, db_session, warehouse, untracked_product, user):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=untracked_product.id, quantity_delta=1)
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=untracked_product.id, quantity_delta=-1)
        assert Notification.query.count() == 0

    def test_failing_alert_write_keeps_stock_change(self, db_session, monkeypatch, warehouse, product, user):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=15)

        def _broken(intent):
            raise RuntimeError("notification store unavailable")

        monkeypatch.setattr(alert_service, "persist_intent", _broken)
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-10)

        db_session.expire_all()
        assert stock_service.get_product_total(product.id) == Decimal("5")
        assert StockMovement.query.count() == 2
        assert Notification.query.count() == 0


class TestExpiryAlerts:
    def test_receiving_expired_lot_raises_alert(self, db_session, warehouse, untracked_product, user):
        expired_on = date.today() - timedelta(days=2)
        stock_service.adjust_stock_now(
            warehouse_id=warehouse.id, product_id=untracked_product.id, quantity_delta=4,
            batch="OLD", expiry_date=expired_on.isoformat(),
        )

        notification = Notification.query.one()
        lot = StockLot.query.one()
        assert notification.type == "expired_product"
        assert notification.dedup_key == f"expired_product:lot:{lot.id}"
        assert notification.data["days_expired"] == 2


class TestSweeps:
    def test_sweep_is_idempotent(self, app, db_session, warehouse, product, untracked_product, users):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=4)
        stock_service.adjust_stock_now(
            warehouse_id=warehouse.id, product_id=untracked_product.id, quantity_delta=2,
            batch="X", expiry_date="2027-01-01",
        )
        Notification.query.delete()
        db_session.commit()

        first = alert_service.run_alert_sweep(as_of=date(2027, 2, 1))
        assert first["skipped"] is False
        assert first["low_stock_products"] == 1
        assert first["low_stock_notifications"] == 2
        assert first["expired_lots"] == 1
        assert first["expired_notifications"] == 2

        second = alert_service.run_alert_sweep(as_of=date(2027, 2, 1))
        assert second["low_stock_notifications"] == 0
        assert second["expired_notifications"] == 0
        assert Notification.query.count() == 4

    def test_sweep_skips_while_lock_is_held(self, app, db_session, product):
        holder = alert_service.acquire_sweep_lock(alert_service.ALERT_SWEEP)
        assert holder is not None
        try:
            assert alert_service.run_alert_sweep() == {"skipped": True}
            assert alert_service.acquire_sweep_lock(alert_service.ALERT_SWEEP) is None
        finally:
            assert alert_service.release_sweep_lock(alert_service.ALERT_SWEEP, holder) is True

        assert alert_service.run_alert_sweep()["skipped"] is False

    def test_expired_lease_can_be_taken_over(self, app, db_session):
        stale = alert_service.acquire_sweep_lock(alert_service.ALERT_SWEEP, lease_seconds=-1)
        assert stale is not None

        fresh = alert_service.acquire_sweep_lock(alert_service.ALERT_SWEEP)
        assert fresh is not None
        assert fresh != stale
        assert alert_service.release_sweep_lock(alert_service.ALERT_SWEEP, stale) is False
        assert alert_service.release_sweep_lock(alert_service.ALERT_SWEEP, fresh) is True

    @pytest.mark.parametrize("include_unread, expected", [(False, 1), (True, 2)])
    def test_notification_cleanup(self, app, db_session, user, include_unread, expected):
        old = utcnow() - timedelta(days=60)
        for read in (True, False):
            notification, _ = notification_service.create_notification(
                user_id=user.id, type="low_stock", title="t", message="m",
            )
            notification.read = read
            notification.created_at = old
        db_session.commit()

        result = alert_service.run_notification_cleanup(retention_days=30, include_unread=include_unread)

        assert result["deleted"] == expected
        assert Notification.query.count() == 2 - expected
