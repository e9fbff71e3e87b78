# Overview: Pytest coverage for the Flask CLI command groups.

from stockbook.models import Account, Notification, Quotation
from stockbook.services import ledger_service, quotation_service, stock_service


class TestAccountsCommands:
    def test_seed_then_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["accounts", "seed"])
        assert result.exit_code == 0
        assert f"PASS {len(ledger_service.DEFAULT_CHART_OF_ACCOUNTS)} accounts created" in result.output

        result = runner.invoke(args=["accounts", "list"])
        assert result.exit_code == 0
        assert "Cash" in result.output
        assert Account.query.count() == len(ledger_service.DEFAULT_CHART_OF_ACCOUNTS)

    def test_list_without_accounts(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["accounts", "list"])
        assert "No accounts" in result.output

    def test_trial_balance_passes_on_balanced_ledger(self, app, db_session, accounts, warehouse, product):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=5)
        result = app.test_cli_runner().invoke(args=["accounts", "trial-balance", "--as-of", "2099-12-31"])
        assert result.exit_code == 0
        assert "PASS Trial balance is balanced" in result.output

    def test_balance_sheet(self, app, db_session, accounts):
        result = app.test_cli_runner().invoke(args=["accounts", "balance-sheet"])
        assert result.exit_code == 0
        assert "ASSET" in result.output
        assert "EQUITY" in result.output


class TestSystemCommands:
    def test_reset_requires_confirmation(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["system", "reset-db"])
        assert result.exit_code == 1
        assert "Refusing" in result.output


class TestStockAndAlertCommands:
    def test_low_stock(self, app, db_session, warehouse, product):
        runner = app.test_cli_runner()
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=4)

        result = runner.invoke(args=["stock", "low"])
        assert "PARA-500" in result.output

    def test_alert_sweep(self, app, db_session, warehouse, product, user):
        stock_service.adjust_stock_now(warehouse_id=warehouse.id, product_id=product.id, quantity_delta=40)

        result = app.test_cli_runner().invoke(args=["alerts", "sweep", "--as-of", "2027-01-01"])

        assert result.exit_code == 0
        assert "Low stock: 0 products" in result.output
        assert Notification.query.count() == 0

    def test_cleanup(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["alerts", "cleanup", "--retention-days", "7"])
        assert result.exit_code == 0
        assert "Deleted 0 notifications older than 7 days." in result.output

    def test_expire_quotations(self, app, db_session, warehouse, product):
        quotation = quotation_service.create_quotation(
            warehouse_id=warehouse.id,
            valid_until="2020-01-01",
            items=[{"product_id": product.id, "quantity": 1, "unit_price": "5.00"}],
        )

        result = app.test_cli_runner().invoke(args=["alerts", "expire-quotations"])

        assert "Marked 1 quotations as expired." in result.output
        db_session.expire_all()
        assert db_session.get(Quotation, quotation.id).status == "expired"
