# Overview: Pytest coverage for double-entry posting, immutability, balances and reports.

from datetime import date
from decimal import Decimal

import pytest

from stockbook.errors import (
    ImmutableLedgerError,
    InvalidEntryError,
    ReferentialGapError,
    UnbalancedLedgerError,
)
from stockbook.extensions import db
from stockbook.models import Account, Transaction, ReferenceType
from stockbook.services import ledger_service
from stockbook.services.concurrency import run_in_unit_of_work
from stockbook.services.ledger_service import credit, debit


def _post(entries, **kwargs):
    kwargs.setdefault("transaction_date", date(2026, 1, 15))
    return run_in_unit_of_work(lambda: ledger_service.post_entries(entries, **kwargs))


class TestPosting:
    def test_balanced_batch_is_written_with_shared_batch_id(self, db_session, accounts):
        ids = _post(
            [debit(accounts["cash"].id, "100.00"), credit(accounts["owners_equity"].id, "100.00")],
            description="Owner investment",
        )

        rows = Transaction.query.filter(Transaction.id.in_(ids)).all()
        assert len(rows) == 2
        assert len({r.posting_batch for r in rows}) == 1
        assert sum(r.debit for r in rows) == sum(r.credit for r in rows) == Decimal("100.00")

    def test_unbalanced_batch_writes_nothing(self, db_session, accounts):
        with pytest.raises(UnbalancedLedgerError) as exc_info:
            _post([debit(accounts["cash"].id, "100.00"), credit(accounts["owners_equity"].id, "99.99")])

        assert exc_info.value.debits == Decimal("100.00")
        assert exc_info.value.credits == Decimal("99.99")
        assert Transaction.query.count() == 0

    def test_dict_entries_are_accepted(self, db_session, accounts):
        ids = _post([
            {"account_id": accounts["bank"].id, "debit": "50"},
            {"account_id": accounts["cash"].id, "credit": "50"},
        ])
        assert len(ids) == 2

    def test_zero_lines_are_dropped(self, db_session, accounts):
        ids = _post([
            debit(accounts["inventory"].id, "10.00"),
            debit(accounts["tax_input"].id, "0.00"),
            credit(accounts["accounts_payable"].id, "10.00"),
        ])
        assert len(ids) == 2

    def test_negative_amount_rejected(self, db_session, accounts):
        with pytest.raises(InvalidEntryError):
            _post([debit(accounts["cash"].id, "-5"), credit(accounts["owners_equity"].id, "-5")])

    def test_unknown_account_is_referential_gap(self, db_session, accounts):
        with pytest.raises(ReferentialGapError):
            _post([debit(999999, "5"), credit(accounts["cash"].id, "5")])
        assert Transaction.query.count() == 0

    def test_inactive_account_rejected(self, db_session, accounts):
        accounts["bank"].is_active = False
        db_session.commit()
        with pytest.raises(InvalidEntryError):
            _post([debit(accounts["bank"].id, "5"), credit(accounts["cash"].id, "5")])


class TestImmutability:
    def test_update_of_journal_row_raises(self, db_session, accounts):
        ids = _post([debit(accounts["cash"].id, "10"), credit(accounts["owners_equity"].id, "10")])
        row = db_session.get(Transaction, ids[0])
        row.debit = Decimal("11.00")
        with pytest.raises(ImmutableLedgerError):
            db_session.flush()
        db_session.rollback()

    def test_delete_of_journal_row_raises(self, db_session, accounts):
        ids = _post([debit(accounts["cash"].id, "10"), credit(accounts["owners_equity"].id, "10")])
        db_session.delete(db_session.get(Transaction, ids[0]))
        with pytest.raises(ImmutableLedgerError):
            db_session.flush()
        db_session.rollback()


class TestBalances:
    def test_natural_sign_per_account_type(self, db_session, accounts):
        _post([debit(accounts["cash"].id, "250.00"), credit(accounts["owners_equity"].id, "250.00")])
        _post([debit(accounts["operating_expenses"].id, "40.00"), credit(accounts["cash"].id, "40.00")])

        assert ledger_service.balance_of(accounts["cash"].id) == Decimal("210.00")
        assert ledger_service.balance_of(accounts["owners_equity"].id) == Decimal("250.00")
        assert ledger_service.balance_of(accounts["operating_expenses"].id) == Decimal("40.00")
        assert ledger_service.raw_balance(accounts["owners_equity"].id) == Decimal("-250.00")

    def test_as_of_is_inclusive(self, db_session, accounts):
        _post([debit(accounts["cash"].id, "10"), credit(accounts["owners_equity"].id, "10")],
              transaction_date=date(2026, 1, 10))
        _post([debit(accounts["cash"].id, "5"), credit(accounts["owners_equity"].id, "5")],
              transaction_date=date(2026, 1, 20))

        assert ledger_service.balance_of(accounts["cash"].id, as_of="2026-01-10") == Decimal("10.00")
        assert ledger_service.balance_of(accounts["cash"].id, as_of="2026-01-19") == Decimal("10.00")
        assert ledger_service.balance_of(accounts["cash"].id, as_of="2026-01-20") == Decimal("15.00")

    def test_opening_balance_included(self, db_session, accounts):
        account = ledger_service.create_account(code="1010", name="Petty Cash", type="asset", opening_balance="75.00")
        assert ledger_service.balance_of(account.id) == Decimal("75.00")

    def test_balance_of_unknown_account(self, db_session, accounts):
        with pytest.raises(ReferentialGapError):
            ledger_service.balance_of(424242)


class TestReversal:
    def test_reverse_reference_mirrors_each_batch_once(self, db_session, accounts):
        _post([debit(accounts["cash"].id, "30"), credit(accounts["owners_equity"].id, "30")],
              reference_type=ReferenceType.STOCK_ADJUSTMENT, reference_id=None)
        _post([debit(accounts["bank"].id, "20"), credit(accounts["cash"].id, "20")],
              reference_type=ReferenceType.BANK_TRANSACTION, reference_id=7)

        first = run_in_unit_of_work(lambda: ledger_service.reverse_reference(ReferenceType.BANK_TRANSACTION, 7))
        second = run_in_unit_of_work(lambda: ledger_service.reverse_reference(ReferenceType.BANK_TRANSACTION, 7))

        assert len(first) == 2
        assert second == []
        assert ledger_service.balance_of(accounts["bank"].id) == Decimal("0.00")
        assert ledger_service.balance_of(accounts["cash"].id) == Decimal("30.00")
        reversal_rows = Transaction.query.filter(Transaction.reverses_batch.isnot(None)).all()
        assert {r.reference_id for r in reversal_rows} == {7}


class TestReports:
    def test_trial_balance_is_balanced(self, db_session, accounts):
        _post([debit(accounts["cash"].id, "500"), credit(accounts["owners_equity"].id, "500")])
        _post([debit(accounts["inventory"].id, "90"), debit(accounts["tax_input"].id, "10"),
               credit(accounts["accounts_payable"].id, "100")])

        report = ledger_service.trial_balance()

        assert report["balanced"] is True
        assert report["total_debit"] == report["total_credit"] == "600.00"
        assert [row["code"] for row in report["accounts"]] == sorted(row["code"] for row in report["accounts"])

    def test_balance_sheet_and_profit_and_loss(self, db_session, accounts):
        _post([debit(accounts["cash"].id, "100"), credit(accounts["sales_revenue"].id, "100")])
        _post([debit(accounts["cost_of_goods_sold"].id, "60"), credit(accounts["cash"].id, "60")])

        sheet = ledger_service.balance_sheet()
        assert sheet["totals"]["total_asset"] == "40.00"

        pnl = ledger_service.profit_and_loss("2026-01-01", "2026-01-31")
        assert pnl["total_income"] == "100.00"
        assert pnl["total_expenses"] == "60.00"
        assert pnl["net_profit"] == "40.00"


class TestChartOfAccounts:
    def test_seed_is_idempotent(self, db_session, accounts):
        assert ledger_service.seed_chart_of_accounts() == 0
        assert Account.query.count() == len(ledger_service.DEFAULT_CHART_OF_ACCOUNTS)

    def test_duplicate_code_rejected(self, db_session, accounts):
        with pytest.raises(ValueError):
            ledger_service.create_account(code="1000", name="Cash again", type="asset")

    def test_invalid_type_rejected(self, db_session):
        with pytest.raises(ValueError):
            ledger_service.create_account(code="9999", name="Odd", type="contra")
        assert db.session.query(Account).count() == 0

    def test_invalid_sub_type_rejected(self, db_session):
        with pytest.raises(ValueError):
            ledger_service.create_account(code="1500", name="Prepaid", type="asset", sub_type="prepaid")
        assert db.session.query(Account).count() == 0

    def test_known_sub_type_accepted(self, db_session):
        account = ledger_service.create_account(code="1500", name="Shelving", type="asset", sub_type="fixed_asset")
        assert account.sub_type == "fixed_asset"
