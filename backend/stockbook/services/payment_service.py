# Overview: Ledger-only vouchers; receipts/payments, expenses and bank transactions.

from __future__ import annotations

from ..extensions import db
from ..errors import DocumentError, ReferentialGapError
from ..models import Account, BankTransaction, Expense, Payment, Sale, ReferenceType
from . import ledger_service, sales_service
from .concurrency import lock_for_update, run_in_unit_of_work
from .document_service import next_document_number, to_money
from .ledger_service import credit, debit
from stockbook.time_utils import parse_iso_date, today


VOUCHER_TYPES = ("receipt", "payment")
PAYMENT_MODES = ("cash", "bank_transfer", "cheque", "card", "other")
BANK_TRANSACTION_TYPES = ("deposit", "withdraw", "transfer")


def _require_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise ReferentialGapError("account", account_id)
    return account


def _positive_amount(amount):
    value = to_money(amount)
    if value <= 0:
        raise DocumentError("amount must be positive")
    return value


def _cash_side(cash_account_id: int | None, payment_mode: str) -> Account:
    if cash_account_id is not None:
        return _require_account(cash_account_id)
    return ledger_service.get_cash_account(payment_mode)


# =============================================================================
# PAYMENT / RECEIPT VOUCHERS
# =============================================================================

def create_payment(
    *,
    voucher_type: str,
    account_id: int,
    amount,
    payment_mode: str = "cash",
    payment_date=None,
    cash_account_id: int | None = None,
    reference_type=None,
    reference_id: int | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> Payment:
    """
    Create and post a voucher in one unit of work.

        receipt: debit Cash/Bank, credit account_id
        payment: debit account_id, credit Cash/Bank

    A receipt referencing a sale also updates the sale's paid_amount and
    payment_status.
    """
    if voucher_type not in VOUCHER_TYPES:
        raise DocumentError(f"Invalid voucher_type '{voucher_type}'")
    if payment_mode not in PAYMENT_MODES:
        raise DocumentError(f"Invalid payment_mode '{payment_mode}'")
    value = _positive_amount(amount)

    def _op():
        account = _require_account(account_id)
        cash = _cash_side(cash_account_id, payment_mode)
        if account.id == cash.id:
            raise DocumentError("account_id and the cash/bank account must differ")

        ref_type = None
        if reference_type is not None:
            ref_type = ReferenceType.coerce(reference_type)
            ledger_service.resolve_reference(ref_type, reference_id)

        payment = Payment(
            voucher_number=next_document_number(voucher_type),
            voucher_type=voucher_type,
            payment_date=parse_iso_date(payment_date) or today(),
            account_id=account.id,
            cash_account_id=cash.id,
            reference_type=ref_type.value if ref_type else None,
            reference_id=reference_id,
            amount=value,
            payment_mode=payment_mode,
            reference_number=reference_number,
            notes=notes,
            status="completed",
            created_by_user_id=user_id,
        )
        db.session.add(payment)
        db.session.flush()

        if voucher_type == "receipt":
            entries = [debit(cash.id, value), credit(account.id, value)]
        else:
            entries = [debit(account.id, value), credit(cash.id, value)]

        ledger_service.post_entries(
            entries,
            transaction_date=payment.payment_date,
            reference_type=ReferenceType.PAYMENT,
            reference_id=payment.id,
            description=f"{voucher_type.capitalize()} {payment.voucher_number}" + (f": {notes}" if notes else ""),
            user_id=user_id,
        )

        if voucher_type == "receipt" and ref_type == ReferenceType.SALE:
            sale = lock_for_update(Sale.query.filter_by(id=reference_id)).first()
            sales_service.apply_payment(sale, value)

        return payment

    return run_in_unit_of_work(_op)


# =============================================================================
# EXPENSES
# =============================================================================

def create_expense(
    *,
    account_id: int,
    amount,
    category: str,
    description: str,
    payment_mode: str = "cash",
    expense_date=None,
    cash_account_id: int | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> Expense:
    """Create and post an expense: debit the expense account, credit Cash/Bank."""
    if payment_mode not in PAYMENT_MODES:
        raise DocumentError(f"Invalid payment_mode '{payment_mode}'")
    value = _positive_amount(amount)

    def _op():
        account = _require_account(account_id)
        if account.type != "expense":
            raise DocumentError(f"Account {account.code} is not an expense account")
        cash = _cash_side(cash_account_id, payment_mode)

        expense = Expense(
            expense_number=next_document_number("expense"),
            account_id=account.id,
            cash_account_id=cash.id,
            expense_date=parse_iso_date(expense_date) or today(),
            category=category,
            description=description,
            amount=value,
            payment_mode=payment_mode,
            reference_number=reference_number,
            notes=notes,
            status="completed",
            created_by_user_id=user_id,
        )
        db.session.add(expense)
        db.session.flush()

        ledger_service.post_entries(
            [debit(account.id, value), credit(cash.id, value)],
            transaction_date=expense.expense_date,
            reference_type=ReferenceType.EXPENSE,
            reference_id=expense.id,
            description=f"Expense {expense.expense_number}: {description}",
            user_id=user_id,
        )
        return expense

    return run_in_unit_of_work(_op)


# =============================================================================
# BANK TRANSACTIONS
# =============================================================================

def create_bank_transaction(
    *,
    transaction_type: str,
    from_account_id: int,
    to_account_id: int,
    amount,
    transaction_date=None,
    reference_number: str | None = None,
    description: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> BankTransaction:
    """Create and post a cash/bank movement: debit to_account, credit from_account."""
    if transaction_type not in BANK_TRANSACTION_TYPES:
        raise DocumentError(f"Invalid transaction_type '{transaction_type}'")
    if from_account_id == to_account_id:
        raise DocumentError("from_account_id and to_account_id must differ")
    value = _positive_amount(amount)

    def _op():
        source = _require_account(from_account_id)
        target = _require_account(to_account_id)

        bank_tx = BankTransaction(
            transaction_number=next_document_number("bank_transaction"),
            transaction_type=transaction_type,
            from_account_id=source.id,
            to_account_id=target.id,
            transaction_date=parse_iso_date(transaction_date) or today(),
            amount=value,
            reference_number=reference_number,
            description=description,
            notes=notes,
            status="completed",
            created_by_user_id=user_id,
        )
        db.session.add(bank_tx)
        db.session.flush()

        ledger_service.post_entries(
            [debit(target.id, value), credit(source.id, value)],
            transaction_date=bank_tx.transaction_date,
            reference_type=ReferenceType.BANK_TRANSACTION,
            reference_id=bank_tx.id,
            description=description or f"Bank {transaction_type} {bank_tx.transaction_number}",
            user_id=user_id,
        )
        return bank_tx

    return run_in_unit_of_work(_op)
