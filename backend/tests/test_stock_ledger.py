# Overview: Pytest coverage for lot-level stock adjustments, allocation order and transfers.

"""
Stock Ledger Tests

- Receipts merge into the lot matching (warehouse, product, batch, expiry)
- Withdrawals without a batch follow earliest-expiry-first across lots
- Insufficient stock is rejected before any lot or movement is written
- Transfers are atomic across both warehouses
- Every mutation appends a StockMovement
"""

from datetime import date
from decimal import Decimal

import pytest

from stockbook.errors import InsufficientStockError, ReferentialGapError
from stockbook.models import StockLot, StockMovement, ReferenceType
from stockbook.services import stock_service


def _receive(warehouse, product, qty, *, batch=None, expiry=None, cost="3.00"):
    return stock_service.adjust_stock_now(
        warehouse_id=warehouse.id,
        product_id=product.id,
        quantity_delta=qty,
        batch=batch,
        expiry_date=expiry,
        cost_price=cost,
    )


class TestReceiving:
    def test_receive_creates_lot_and_movement(self, db_session, warehouse, product):
        changes = _receive(warehouse, product, 10, batch="B1", expiry="2027-06-30")

        assert len(changes) == 1
        assert changes[0].old is None
        lot = db_session.get(StockLot, changes[0].lot.id)
        assert lot.quantity == Decimal("10")
        assert lot.batch == "B1"
        assert lot.expiry_date == date(2027, 6, 30)

        movements = StockMovement.query.filter_by(stock_lot_id=lot.id).all()
        assert len(movements) == 1
        assert movements[0].quantity_delta == Decimal("10")
        assert movements[0].balance_after == Decimal("10")
        assert movements[0].reference_type == ReferenceType.STOCK_ADJUSTMENT.value

    def test_same_batch_and_expiry_merges_with_weighted_cost(self, db_session, warehouse, product):
        _receive(warehouse, product, 10, batch="B1", expiry="2027-06-30", cost="4.00")
        _receive(warehouse, product, 10, batch="B1", expiry="2027-06-30", cost="6.00")

        lots = StockLot.query.filter_by(product_id=product.id).all()
        assert len(lots) == 1
        assert lots[0].quantity == Decimal("20")
        assert lots[0].cost_price == Decimal("5.00")

    def test_different_expiry_creates_separate_lot(self, db_session, warehouse, product):
        _receive(warehouse, product, 5, batch="B1", expiry="2027-06-30")
        _receive(warehouse, product, 5, batch="B1", expiry="2027-12-31")

        assert StockLot.query.filter_by(product_id=product.id).count() == 2
        assert stock_service.get_product_total(product.id) == Decimal("10")

    def test_unknown_warehouse_is_referential_gap(self, db_session, product):
        with pytest.raises(ReferentialGapError):
            stock_service.adjust_stock_now(warehouse_id=9999, product_id=product.id, quantity_delta=1)


class TestWithdrawal:
    def test_fefo_takes_earliest_expiry_first(self, db_session, warehouse, product):
        later = _receive(warehouse, product, 5, batch="LATE", expiry="2027-12-31")[0].lot.id
        sooner = _receive(warehouse, product, 5, batch="SOON", expiry="2027-03-31")[0].lot.id

        changes = stock_service.adjust_stock_now(
            warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-7,
        )

        assert [c.lot.id for c in changes] == [sooner, later]
        assert db_session.get(StockLot, sooner).quantity == Decimal("0")
        assert db_session.get(StockLot, later).quantity == Decimal("3")

    def test_lots_without_expiry_are_consumed_last(self, db_session, warehouse, product):
        no_expiry = _receive(warehouse, product, 5, batch="NOEXP")[0].lot.id
        dated = _receive(warehouse, product, 5, batch="DATED", expiry="2028-01-01")[0].lot.id

        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-6)

        assert db_session.get(StockLot, dated).quantity == Decimal("0")
        assert db_session.get(StockLot, no_expiry).quantity == Decimal("4")

    def test_pinned_batch_only_touches_that_batch(self, db_session, warehouse, product):
        _receive(warehouse, product, 5, batch="A", expiry="2027-01-31")
        b_lot = _receive(warehouse, product, 5, batch="B", expiry="2027-12-31")[0].lot.id

        changes = stock_service.adjust_stock_now(
            warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-2, batch="B",
        )

        assert [c.lot.id for c in changes] == [b_lot]
        assert db_session.get(StockLot, b_lot).quantity == Decimal("3")

    def test_insufficient_stock_changes_nothing(self, db_session, warehouse, product):
        lot_id = _receive(warehouse, product, 4, batch="B1")[0].lot.id
        movements_before = StockMovement.query.count()

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-5)

        assert exc_info.value.requested == Decimal("5")
        assert exc_info.value.available == Decimal("4")
        assert db_session.get(StockLot, lot_id).quantity == Decimal("4")
        assert StockMovement.query.count() == movements_before

    def test_withdrawal_from_empty_warehouse_raises(self, db_session, warehouse, product):
        with pytest.raises(InsufficientStockError):
            stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-1)

    def test_set_stock_level_may_go_negative(self, db_session, warehouse, product):
        _receive(warehouse, product, 2, batch="B1")

        stock_service.set_stock_level_now(
            warehouse_id=warehouse.id, product_id=product.id, quantity=-3, batch="B1",
        )

        assert stock_service.get_product_total(product.id) == Decimal("-3")
        lot = StockLot.query.filter_by(product_id=product.id, batch="B1").one()
        assert lot.quantity == Decimal("-3")
        deltas = [
            m.quantity_delta
            for m in StockMovement.query.filter_by(reference_type=ReferenceType.STOCK_ADJUSTMENT.value).all()
        ]
        assert sum(deltas) == Decimal("-3")

    def test_set_stock_level_without_batch_leaves_batched_lots_alone(self, db_session, warehouse, product):
        batched = _receive(warehouse, product, 10, batch="X", expiry="2030-01-01")[0].lot.id
        unbatched = _receive(warehouse, product, 10)[0].lot.id

        stock_service.set_stock_level_now(warehouse_id=warehouse.id, product_id=product.id, quantity=5)

        assert db_session.get(StockLot, unbatched).quantity == Decimal("5")
        assert db_session.get(StockLot, batched).quantity == Decimal("10")


class TestTransfer:
    def test_transfer_keeps_batch_expiry_and_cost(self, db_session, warehouse, second_warehouse, product):
        _receive(warehouse, product, 10, batch="B1", expiry="2027-06-30", cost="4.50")

        result = stock_service.transfer_stock_now(
            from_warehouse_id=warehouse.id,
            to_warehouse_id=second_warehouse.id,
            product_id=product.id,
            quantity=4,
        )

        assert len(result.source) == 1
        assert len(result.destination) == 1
        dest = db_session.get(StockLot, result.destination[0].lot.id)
        assert dest.warehouse_id == second_warehouse.id
        assert dest.batch == "B1"
        assert dest.expiry_date == date(2027, 6, 30)
        assert dest.cost_price == Decimal("4.50")
        assert dest.quantity == Decimal("4")
        assert stock_service.get_product_total(product.id) == Decimal("10")

    def test_failed_transfer_applies_neither_leg(self, db_session, warehouse, second_warehouse, product):
        _receive(warehouse, product, 3, batch="B1")

        with pytest.raises(InsufficientStockError):
            stock_service.transfer_stock_now(
                from_warehouse_id=warehouse.id,
                to_warehouse_id=second_warehouse.id,
                product_id=product.id,
                quantity=5,
            )

        assert StockLot.query.filter_by(warehouse_id=second_warehouse.id).count() == 0
        assert stock_service.get_product_total(product.id) == Decimal("3")

    def test_failed_destination_leg_leaves_source_untouched(
        self, db_session, monkeypatch, warehouse, second_warehouse, product
    ):
        lot_id = _receive(warehouse, product, 6, batch="B1")[0].lot.id
        movements_before = StockMovement.query.count()
        real_adjust = stock_service.adjust_stock
        legs = []

        def adjust_failing_on_destination(**kwargs):
            legs.append(kwargs["warehouse_id"])
            if len(legs) == 2:
                raise RuntimeError("destination warehouse unavailable")
            return real_adjust(**kwargs)

        monkeypatch.setattr(stock_service, "adjust_stock", adjust_failing_on_destination)

        with pytest.raises(RuntimeError):
            stock_service.transfer_stock_now(
                from_warehouse_id=warehouse.id,
                to_warehouse_id=second_warehouse.id,
                product_id=product.id,
                quantity=4,
            )

        assert legs == [warehouse.id, second_warehouse.id]
        assert db_session.get(StockLot, lot_id).quantity == Decimal("6")
        assert StockMovement.query.count() == movements_before
        assert StockLot.query.filter_by(warehouse_id=second_warehouse.id).count() == 0

    def test_transfer_to_same_warehouse_rejected(self, db_session, warehouse, product):
        _receive(warehouse, product, 3)
        with pytest.raises(ValueError):
            stock_service.transfer_stock_now(
                from_warehouse_id=warehouse.id,
                to_warehouse_id=warehouse.id,
                product_id=product.id,
                quantity=1,
            )


class TestAllocationPolicy:
    def test_fifo_policy_ignores_expiry(self, app, db_session, warehouse, product):
        first = _receive(warehouse, product, 5, batch="OLD", expiry="2028-01-01")[0].lot.id
        _receive(warehouse, product, 5, batch="NEW", expiry="2027-01-01")

        changes = stock_service.adjust_stock_now(
            warehouse_id=warehouse.id, product_id=product.id, quantity_delta=-2, policy="fifo",
        )

        assert [c.lot.id for c in changes] == [first]

    def test_unknown_policy_rejected(self, db_session):
        with pytest.raises(ValueError):
            stock_service.get_allocation_policy("lifo-ish")
