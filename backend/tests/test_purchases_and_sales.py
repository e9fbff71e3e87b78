# Overview: Pytest coverage for purchase and sale posting, lifecycle guards and cancellation.

"""
Document Posting Tests

- Approving a purchase receives stock and books Inventory against Payables
- Selling withdraws stock, books revenue and cost of goods sold
- A failed line aborts the whole document: no stock, no journal rows
- Posting happens at most once per document
- Cancelling a posted document reverses stock and journal
"""

from decimal import Decimal

import pytest

from stockbook.errors import DocumentError, DuplicatePostingError, InsufficientStockError, InvalidTransitionError
from stockbook.models import Purchase, Sale, SaleItemAllocation, StockLot, StockMovement, Transaction, ReferenceType
from stockbook.services import document_service, ledger_service, purchase_service, sales_service, stock_service


def _ledger_rows(reference_type, reference_id):
    return Transaction.query.filter_by(reference_type=reference_type.value, reference_id=reference_id).all()


def _stock_lot(db_session, warehouse, product, qty=10, batch="B1", cost="3.00", expiry=None):
    changes = stock_service.adjust_stock_now(
        warehouse_id=warehouse.id,
        product_id=product.id,
        quantity_delta=qty,
        batch=batch,
        expiry_date=expiry,
        cost_price=cost,
    )
    return db_session.get(StockLot, changes[0].lot.id)


class TestPurchasePosting:
    def test_approved_purchase_receives_stock_and_books_payable(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 20, "unit_price": "5.00", "batch": "P-1"}],
        )
        assert purchase.status == "draft"
        assert purchase.invoice_number == "PUR-000001"
        assert StockLot.query.count() == 0

        purchase_service.approve_purchase(purchase.id)

        lot = StockLot.query.filter_by(product_id=product.id, batch="P-1").one()
        assert lot.quantity == Decimal("20")
        assert lot.cost_price == Decimal("5.00")
        assert ledger_service.balance_of(accounts["inventory"].id) == Decimal("100.00")
        assert ledger_service.balance_of(accounts["accounts_payable"].id) == Decimal("100.00")

        refreshed = db_session.get(Purchase, purchase.id)
        assert refreshed.status == "approved"
        assert refreshed.posted_at is not None
        assert refreshed.items[0].stock_lot_id == lot.id

    def test_tax_goes_to_tax_input(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            tax_rate=10,
            items=[{"product_id": product.id, "quantity": 10, "unit_price": "10.00"}],
        )
        purchase_service.complete_purchase(purchase.id)

        assert ledger_service.balance_of(accounts["inventory"].id) == Decimal("100.00")
        assert ledger_service.balance_of(accounts["tax_input"].id) == Decimal("10.00")
        assert ledger_service.balance_of(accounts["accounts_payable"].id) == Decimal("110.00")

    def test_cash_purchase_credits_cash(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            payment_mode="cash",
            items=[{"product_id": product.id, "quantity": 2, "unit_price": "5.00"}],
        )
        purchase_service.complete_purchase(purchase.id)

        assert ledger_service.balance_of(accounts["cash"].id) == Decimal("-10.00")
        assert ledger_service.balance_of(accounts["accounts_payable"].id) == Decimal("0.00")

    def test_zero_price_purchase_receives_stock_only(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 5, "unit_price": "0.00", "batch": "SAMPLE"}],
        )
        purchase_service.approve_purchase(purchase.id)

        assert db_session.get(Purchase, purchase.id).status == "approved"
        lot = StockLot.query.filter_by(product_id=product.id, batch="SAMPLE").one()
        assert lot.quantity == Decimal("5")
        assert lot.cost_price == Decimal("0.00")
        assert _ledger_rows(ReferenceType.PURCHASE, purchase.id) == []

    def test_discounted_purchase_keeps_inventory_at_lot_cost(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            discount_amount="10.00",
            items=[{"product_id": product.id, "quantity": 20, "unit_price": "5.00"}],
        )
        purchase_service.approve_purchase(purchase.id)

        assert ledger_service.balance_of(accounts["inventory"].id) == Decimal("100.00")
        assert ledger_service.balance_of(accounts["accounts_payable"].id) == Decimal("90.00")
        variance = ledger_service.get_system_account("purchase_price_variance")
        assert ledger_service.balance_of(variance.id) == Decimal("-10.00")

        sales_service.process_sale(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 20, "unit_price": "8.00"}],
        )

        assert stock_service.get_product_total(product.id) == Decimal("0")
        assert ledger_service.balance_of(accounts["inventory"].id) == Decimal("0.00")
        assert ledger_service.trial_balance()["balanced"] is True

    def test_document_numbers_are_sequential(self, db_session, accounts, warehouse, product):
        numbers = [
            purchase_service.create_purchase(
                warehouse_id=warehouse.id,
                items=[{"product_id": product.id, "quantity": 1, "unit_price": "1.00"}],
            ).invoice_number
            for _ in range(3)
        ]
        assert numbers == ["PUR-000001", "PUR-000002", "PUR-000003"]

    def test_unknown_document_type_is_a_document_error(self, db_session):
        with pytest.raises(DocumentError) as exc_info:
            document_service.next_document_number("invoice")
        assert exc_info.value.to_dict()["code"] == "DOCUMENT_SEQUENCE"


class TestAtMostOncePosting:
    def test_second_approval_raises_and_posts_nothing(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 20, "unit_price": "5.00"}],
        )
        purchase_service.approve_purchase(purchase.id)
        rows_after_first = Transaction.query.count()
        movements_after_first = StockMovement.query.count()

        with pytest.raises(DuplicatePostingError):
            purchase_service.approve_purchase(purchase.id)

        assert Transaction.query.count() == rows_after_first
        assert StockMovement.query.count() == movements_after_first
        assert stock_service.get_product_total(product.id) == Decimal("20")

    def test_complete_after_approve_does_not_repost(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 5, "unit_price": "2.00"}],
        )
        purchase_service.approve_purchase(purchase.id)
        purchase_service.complete_purchase(purchase.id)

        assert db_session.get(Purchase, purchase.id).status == "completed"
        assert stock_service.get_product_total(product.id) == Decimal("5")
        assert len(_ledger_rows(ReferenceType.PURCHASE, purchase.id)) == 2  # zero tax line dropped

        with pytest.raises(DuplicatePostingError):
            purchase_service.complete_purchase(purchase.id)

    def test_invalid_transition(self, db_session, accounts, warehouse, product):
        purchase = purchase_service.create_purchase(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_price": "1.00"}],
        )
        purchase_service.cancel_purchase(purchase.id, reason="Entered twice")

        with pytest.raises(InvalidTransitionError):
            purchase_service.submit_purchase(purchase.id)
        assert db_session.get(Purchase, purchase.id).cancel_reason == "Entered twice"


class TestSalePosting:
    def test_scenario_sell_then_oversell(self, db_session, accounts, warehouse, product):
        """Lot of 10: selling 4 leaves 6; selling 7 more fails without partial effects."""
        lot = _stock_lot(db_session, warehouse, product, qty=10, batch="B1", cost="3.00")

        sale = sales_service.process_sale(
            warehouse_id=warehouse.id,
            payment_mode="cash",
            items=[{"product_id": product.id, "quantity": 4, "unit_price": "5.00"}],
        )

        assert db_session.get(StockLot, lot.id).quantity == Decimal("6")
        cogs_rows = [
            r for r in _ledger_rows(ReferenceType.SALE, sale.id)
            if r.account_id in (accounts["cost_of_goods_sold"].id, accounts["inventory"].id)
        ]
        assert len(cogs_rows) == 2
        assert {(r.debit, r.credit) for r in cogs_rows} == {
            (Decimal("12.00"), Decimal("0.00")),
            (Decimal("0.00"), Decimal("12.00")),
        }
        sales_before = Sale.query.count()
        rows_before = Transaction.query.count()

        with pytest.raises(InsufficientStockError):
            sales_service.process_sale(
                warehouse_id=warehouse.id,
                payment_mode="cash",
                items=[{"product_id": product.id, "quantity": 7, "unit_price": "5.00"}],
            )

        assert db_session.get(StockLot, lot.id).quantity == Decimal("6")
        assert Transaction.query.count() == rows_before
        assert Sale.query.count() == sales_before

    def test_failing_second_line_rolls_back_first_line(self, db_session, accounts, warehouse, product, untracked_product):
        lot = _stock_lot(db_session, warehouse, product, qty=10)
        sale = sales_service.create_sale(
            warehouse_id=warehouse.id,
            customer_id=42,
            items=[
                {"product_id": product.id, "quantity": 3, "unit_price": "5.00"},
                {"product_id": untracked_product.id, "quantity": 1, "unit_price": "2.00"},
            ],
        )

        with pytest.raises(InsufficientStockError):
            sales_service.approve_sale(sale.id)

        assert db_session.get(StockLot, lot.id).quantity == Decimal("10")
        assert db_session.get(Sale, sale.id).status == "draft"
        assert db_session.get(Sale, sale.id).posted_at is None
        assert _ledger_rows(ReferenceType.SALE, sale.id) == []

    def test_customer_sale_books_receivable_and_allocations(self, db_session, accounts, warehouse, product):
        cheap = _stock_lot(db_session, warehouse, product, qty=2, batch="A", cost="2.00", expiry="2027-01-31")
        dear = _stock_lot(db_session, warehouse, product, qty=5, batch="B", cost="4.00", expiry="2027-12-31")

        sale = sales_service.create_sale(
            warehouse_id=warehouse.id,
            customer_id=7,
            tax_rate=10,
            items=[{"product_id": product.id, "quantity": 3, "unit_price": "10.00"}],
        )
        sales_service.approve_sale(sale.id)

        sale = db_session.get(Sale, sale.id)
        assert sale.total_amount == Decimal("33.00")
        assert sale.payment_status == "pending"
        assert ledger_service.balance_of(accounts["accounts_receivable"].id) == Decimal("33.00")
        assert ledger_service.balance_of(accounts["sales_revenue"].id) == Decimal("30.00")
        assert ledger_service.balance_of(accounts["tax_output"].id) == Decimal("3.00")

        allocations = SaleItemAllocation.query.order_by(SaleItemAllocation.id).all()
        assert [(a.stock_lot_id, a.quantity, a.unit_cost) for a in allocations] == [
            (cheap.id, Decimal("2"), Decimal("2.00")),
            (dear.id, Decimal("1"), Decimal("4.00")),
        ]
        assert sale.items[0].cost_amount == Decimal("8.00")
        assert ledger_service.balance_of(accounts["cost_of_goods_sold"].id) == Decimal("8.00")

    def test_walk_in_sale_is_paid(self, db_session, accounts, warehouse, product):
        _stock_lot(db_session, warehouse, product, qty=5)
        sale = sales_service.process_sale(
            warehouse_id=warehouse.id,
            payment_mode="bank",
            items=[{"product_id": product.id, "quantity": 1, "unit_price": "5.00"}],
        )
        assert sale.payment_status == "paid"
        assert ledger_service.balance_of(accounts["bank"].id) == Decimal("5.00")

    def test_zero_price_sale_books_cost_only(self, db_session, accounts, warehouse, product):
        _stock_lot(db_session, warehouse, product, qty=5, cost="3.00")

        sale = sales_service.process_sale(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_price": "0"}],
        )

        assert sale.status == "completed"
        assert stock_service.get_product_total(product.id) == Decimal("4")
        assert ledger_service.balance_of(accounts["sales_revenue"].id) == Decimal("0.00")
        assert ledger_service.balance_of(accounts["cost_of_goods_sold"].id) == Decimal("3.00")
        assert len(_ledger_rows(ReferenceType.SALE, sale.id)) == 2

    def test_cancel_approved_sale_restores_stock_and_journal(self, db_session, accounts, warehouse, product):
        lot = _stock_lot(db_session, warehouse, product, qty=10, cost="3.00")
        sale = sales_service.create_sale(
            warehouse_id=warehouse.id,
            customer_id=1,
            items=[{"product_id": product.id, "quantity": 4, "unit_price": "5.00"}],
        )
        sales_service.approve_sale(sale.id)
        sales_service.cancel_sale(sale.id, reason="Customer changed mind")

        assert db_session.get(StockLot, lot.id).quantity == Decimal("10")
        for role in ("accounts_receivable", "sales_revenue", "cost_of_goods_sold"):
            assert ledger_service.balance_of(accounts[role].id) == Decimal("0.00")
        assert ledger_service.balance_of(accounts["inventory"].id) == Decimal("0.00")
        assert ledger_service.trial_balance()["balanced"] is True
        assert db_session.get(Sale, sale.id).status == "cancelled"

    def test_completed_sale_cannot_be_cancelled(self, db_session, accounts, warehouse, product):
        _stock_lot(db_session, warehouse, product, qty=10)
        sale = sales_service.process_sale(
            warehouse_id=warehouse.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_price": "5.00"}],
        )
        with pytest.raises(InvalidTransitionError):
            sales_service.cancel_sale(sale.id)
