# Overview: Account ledger; chart of accounts, balanced journal postings and balance queries.

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import (
    InvalidEntryError,
    ReferentialGapError,
    UnbalancedLedgerError,
)
from ..models import (
    Account,
    Transaction,
    ReferenceType,
    Purchase,
    Sale,
    PurchaseReturn,
    SaleReturn,
    Payment,
    Expense,
    BankTransaction,
)
from ..models.ledger import ACCOUNT_SUB_TYPES, ACCOUNT_TYPES
from .concurrency import run_in_unit_of_work
from .document_service import to_money
from stockbook.time_utils import parse_iso_date, today
"""
Stockbook Account Ledger Invariants (authoritative)

- Append-only: rows are only ever inserted. Corrections are new offsetting
  rows (reverse_reference), tagged with the batch they reverse.
- Every post_entries() call is one posting batch, and every batch balances:
  sum(debit) == sum(credit). Unbalanced batches are rejected before any row
  is written.
- Each row carries exactly one non-zero side.
- Rows are written inside the caller's transaction; nothing here commits
  except the standalone create_account / seed helpers.
- Balances are computed from raw debit/credit magnitudes; the account type
  decides the sign (asset/expense: debit - credit, others: credit - debit).
"""


ZERO = Decimal("0.00")

# Accounts seeded by `flask accounts seed`: (code, name, type, sub_type)
DEFAULT_CHART_OF_ACCOUNTS = [
    ("1000", "Cash", "asset", "current_asset"),
    ("1100", "Bank", "asset", "current_asset"),
    ("1200", "Accounts Receivable", "asset", "current_asset"),
    ("1300", "Inventory", "asset", "current_asset"),
    ("1400", "Tax Input", "asset", "current_asset"),
    ("2000", "Accounts Payable", "liability", "current_liability"),
    ("2100", "Tax Output", "liability", "current_liability"),
    ("3000", "Owner's Equity", "equity", "owner_equity"),
    ("4000", "Sales Revenue", "income", "revenue"),
    ("4100", "Sales Returns", "income", "revenue"),
    ("5000", "Cost of Goods Sold", "expense", "cost_of_goods_sold"),
    ("5100", "Purchase Price Variance", "expense", "cost_of_goods_sold"),
    ("6000", "Operating Expenses", "expense", "operating_expense"),
]

# reference kind -> document table
REFERENCE_MODELS = {
    ReferenceType.PURCHASE: Purchase,
    ReferenceType.SALE: Sale,
    ReferenceType.PURCHASE_RETURN: PurchaseReturn,
    ReferenceType.SALE_RETURN: SaleReturn,
    ReferenceType.SALE_RETURN_REFUND: SaleReturn,
    ReferenceType.PAYMENT: Payment,
    ReferenceType.EXPENSE: Expense,
    ReferenceType.BANK_TRANSACTION: BankTransaction,
}


@dataclass
class LedgerEntry:
    """One side of a posting. Exactly one of debit/credit is non-zero."""
    account_id: int
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str | None = None
    transaction_date: date | None = None


def debit(account_id: int, amount, description: str | None = None) -> LedgerEntry:
    return LedgerEntry(account_id=account_id, debit=to_money(amount), description=description)


def credit(account_id: int, amount, description: str | None = None) -> LedgerEntry:
    return LedgerEntry(account_id=account_id, credit=to_money(amount), description=description)


def _coerce_entry(entry) -> LedgerEntry:
    if isinstance(entry, LedgerEntry):
        return entry
    return LedgerEntry(
        account_id=entry.get("account_id"),
        debit=to_money(entry.get("debit")),
        credit=to_money(entry.get("credit")),
        description=entry.get("description"),
        transaction_date=parse_iso_date(entry.get("date") or entry.get("transaction_date")),
    )


def _describe(entries) -> list[dict]:
    return [
        {"account_id": e.account_id, "debit": str(e.debit), "credit": str(e.credit), "description": e.description}
        for e in entries
    ]


# =============================================================================
# POSTING
# =============================================================================

def post_entries(
    entries,
    *,
    transaction_date=None,
    reference_type=None,
    reference_id: int | None = None,
    description: str | None = None,
    user_id: int | None = None,
    reverses_batch: str | None = None,
) -> list[int]:
    """
    Post one balanced batch of journal rows.

    Entries are LedgerEntry instances or dicts with account_id, debit, credit
    and optional date/description. Entries whose debit and credit are both
    zero are dropped (e.g. a zero tax line).

    Raises:
        InvalidEntryError: negative amount, both sides set, empty batch
        ReferentialGapError: unknown account
        UnbalancedLedgerError: sum(debit) != sum(credit) (logged with every entry)

    Returns the new Transaction ids. Does not commit.
    """
    coerced = [_coerce_entry(e) for e in entries]
    rows = []
    for entry in coerced:
        entry.debit = to_money(entry.debit)
        entry.credit = to_money(entry.credit)
        if entry.debit < 0 or entry.credit < 0:
            raise InvalidEntryError(f"Negative amount on account {entry.account_id}")
        if entry.debit > 0 and entry.credit > 0:
            raise InvalidEntryError(f"Entry for account {entry.account_id} sets both debit and credit")
        if entry.debit == 0 and entry.credit == 0:
            continue
        rows.append(entry)

    if not rows:
        raise InvalidEntryError("Posting batch has no non-zero entries")

    total_debit = sum((e.debit for e in rows), ZERO)
    total_credit = sum((e.credit for e in rows), ZERO)
    if total_debit != total_credit:
        current_app.logger.error(
            "Unbalanced posting rejected: reference=%s:%s debits=%s credits=%s entries=%s",
            reference_type, reference_id, total_debit, total_credit, _describe(rows),
        )
        raise UnbalancedLedgerError(total_debit, total_credit, _describe(rows))

    account_ids = {e.account_id for e in rows}
    accounts = {a.id: a for a in Account.query.filter(Account.id.in_(account_ids)).all()}
    for account_id in account_ids:
        account = accounts.get(account_id)
        if account is None:
            raise ReferentialGapError("account", account_id)
        if not account.is_active:
            raise InvalidEntryError(f"Account {account.code} is inactive")

    ref_type = ReferenceType.coerce(reference_type).value if reference_type is not None else None
    batch_date = parse_iso_date(transaction_date) or today()
    batch_id = uuid.uuid4().hex

    created = []
    for entry in rows:
        tx = Transaction(
            account_id=entry.account_id,
            transaction_date=entry.transaction_date or batch_date,
            reference_type=ref_type,
            reference_id=reference_id,
            debit=entry.debit,
            credit=entry.credit,
            description=entry.description or description,
            posting_batch=batch_id,
            reverses_batch=reverses_batch,
            created_by_user_id=user_id,
        )
        db.session.add(tx)
        created.append(tx)

    db.session.flush()
    return [tx.id for tx in created]


def reverse_reference(
    reference_type,
    reference_id: int,
    *,
    transaction_date=None,
    user_id: int | None = None,
    description: str | None = None,
) -> list[int]:
    """
    Post mirrored rows for every not-yet-reversed batch of a document.

    The reversal batches keep the document's reference and record the batch
    they undo in reverses_batch.
    """
    ref_type = ReferenceType.coerce(reference_type).value
    rows = (
        Transaction.query
        .filter_by(reference_type=ref_type, reference_id=reference_id)
        .order_by(Transaction.id.asc())
        .all()
    )
    reversed_batches = {r.reverses_batch for r in rows if r.reverses_batch}

    batches: dict[str, list[Transaction]] = {}
    for row in rows:
        if row.reverses_batch or row.posting_batch in reversed_batches:
            continue
        batches.setdefault(row.posting_batch, []).append(row)

    created = []
    for batch_id, batch_rows in batches.items():
        mirrored = [
            LedgerEntry(account_id=r.account_id, debit=to_money(r.credit), credit=to_money(r.debit))
            for r in batch_rows
        ]
        created.extend(
            post_entries(
                mirrored,
                transaction_date=transaction_date,
                reference_type=ref_type,
                reference_id=reference_id,
                description=description or f"Reversal of {ref_type} {reference_id}",
                user_id=user_id,
                reverses_batch=batch_id,
            )
        )
    return created


# =============================================================================
# BALANCES
# =============================================================================

def _sums(account_id: int, as_of=None, start_date=None) -> tuple[Decimal, Decimal]:
    query = db.session.query(
        func.coalesce(func.sum(Transaction.debit), 0),
        func.coalesce(func.sum(Transaction.credit), 0),
    ).filter(Transaction.account_id == account_id)
    as_of = parse_iso_date(as_of)
    start_date = parse_iso_date(start_date)
    if as_of is not None:
        query = query.filter(Transaction.transaction_date <= as_of)
    if start_date is not None:
        query = query.filter(Transaction.transaction_date >= start_date)
    debits, credits = query.one()
    return to_money(debits), to_money(credits)


def _require_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise ReferentialGapError("account", account_id)
    return account


def raw_balance(account_id: int, as_of=None) -> Decimal:
    """sum(debit) - sum(credit) over journal rows, ignoring opening balance."""
    debits, credits = _sums(account_id, as_of)
    return debits - credits


def balance_of(account_id: int, as_of=None) -> Decimal:
    """
    Balance in the account's natural sign, opening balance included.

    asset/expense:              opening + debits - credits
    liability/equity/income:    opening + credits - debits
    """
    account = _require_account(account_id)
    debits, credits = _sums(account_id, as_of)
    movement = debits - credits if account.is_debit_normal else credits - debits
    return to_money(account.opening_balance) + movement


def list_transactions(
    *,
    account_id: int | None = None,
    start_date=None,
    end_date=None,
    reference_type=None,
    reference_id: int | None = None,
    limit: int = 100,
) -> list[Transaction]:
    query = Transaction.query
    if account_id is not None:
        query = query.filter(Transaction.account_id == account_id)
    start_date = parse_iso_date(start_date)
    end_date = parse_iso_date(end_date)
    if start_date is not None:
        query = query.filter(Transaction.transaction_date >= start_date)
    if end_date is not None:
        query = query.filter(Transaction.transaction_date <= end_date)
    if reference_type is not None:
        query = query.filter(Transaction.reference_type == ReferenceType.coerce(reference_type).value)
    if reference_id is not None:
        query = query.filter(Transaction.reference_id == reference_id)
    limit = max(1, min(int(limit), 500))
    return (
        query.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )


def trial_balance(*, as_of=None, start_date=None) -> dict:
    """
    Debit and credit totals per account that has journal rows in the window.

    balanced is True when the grand totals agree, which holds for any set of
    complete posting batches.
    """
    query = (
        db.session.query(
            Account,
            func.coalesce(func.sum(Transaction.debit), 0),
            func.coalesce(func.sum(Transaction.credit), 0),
        )
        .join(Transaction, Transaction.account_id == Account.id)
    )
    as_of = parse_iso_date(as_of)
    start_date = parse_iso_date(start_date)
    if as_of is not None:
        query = query.filter(Transaction.transaction_date <= as_of)
    if start_date is not None:
        query = query.filter(Transaction.transaction_date >= start_date)
    rows = query.group_by(Account.id).order_by(Account.code).all()

    accounts = []
    total_debit = ZERO
    total_credit = ZERO
    for account, debits, credits in rows:
        debits = to_money(debits)
        credits = to_money(credits)
        total_debit += debits
        total_credit += credits
        accounts.append({
            "account_id": account.id,
            "code": account.code,
            "name": account.name,
            "type": account.type,
            "debit": str(debits),
            "credit": str(credits),
        })

    return {
        "accounts": accounts,
        "total_debit": str(total_debit),
        "total_credit": str(total_credit),
        "balanced": total_debit == total_credit,
        "as_of": as_of.isoformat() if as_of else None,
    }


def balance_sheet(as_of=None) -> dict:
    """Natural-sign balances of asset, liability and equity accounts, with totals."""
    result = {}
    totals = {}
    for account_type in ("asset", "liability", "equity"):
        items = []
        total = ZERO
        accounts = Account.query.filter_by(type=account_type).order_by(Account.code).all()
        for account in accounts:
            balance = balance_of(account.id, as_of)
            if balance == 0:
                continue
            total += balance
            items.append({"account_id": account.id, "code": account.code, "name": account.name, "balance": str(balance)})
        result[account_type] = items
        totals[f"total_{account_type}"] = str(total)
    result["totals"] = totals
    as_of = parse_iso_date(as_of)
    result["as_of"] = as_of.isoformat() if as_of else None
    return result


def profit_and_loss(start_date, end_date) -> dict:
    """Income (credits - debits) and expenses (debits - credits) over a period."""
    income = ZERO
    expenses = ZERO
    for account in Account.query.filter(Account.type.in_(("income", "expense"))).all():
        debits, credits = _sums(account.id, as_of=end_date, start_date=start_date)
        if account.type == "income":
            income += credits - debits
        else:
            expenses += debits - credits
    return {
        "total_income": str(income),
        "total_expenses": str(expenses),
        "net_profit": str(income - expenses),
        "start_date": to_iso(start_date),
        "end_date": to_iso(end_date),
    }


def to_iso(value) -> str | None:
    value = parse_iso_date(value)
    return value.isoformat() if value else None


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

def create_account(
    *,
    code: str,
    name: str,
    type: str,
    sub_type: str | None = None,
    parent_id: int | None = None,
    opening_balance=0,
    is_active: bool = True,
) -> Account:
    """
    Add a chart-of-accounts node. opening_balance is stored on the account in
    its natural sign and is never written as a journal row.
    """
    if type not in ACCOUNT_TYPES:
        raise ValueError(f"Invalid account type '{type}'. Must be one of: {', '.join(ACCOUNT_TYPES)}")
    if sub_type is not None and sub_type not in ACCOUNT_SUB_TYPES:
        raise ValueError(f"Invalid account sub_type '{sub_type}'. Must be one of: {', '.join(ACCOUNT_SUB_TYPES)}")
    if Account.query.filter_by(code=code).first():
        raise ValueError(f"Account code {code} already exists")
    if parent_id is not None:
        _require_account(parent_id)

    def _op():
        account = Account(
            code=code,
            name=name,
            type=type,
            sub_type=sub_type,
            parent_id=parent_id,
            opening_balance=to_money(opening_balance),
            is_active=is_active,
        )
        db.session.add(account)
        db.session.flush()
        return account

    return run_in_unit_of_work(_op)


def seed_chart_of_accounts() -> int:
    """Create any missing default accounts. Safe to call repeatedly; returns the number created."""
    def _op():
        existing = {code for (code,) in db.session.query(Account.code).all()}
        created = 0
        for code, name, account_type, sub_type in DEFAULT_CHART_OF_ACCOUNTS:
            if code in existing:
                continue
            db.session.add(Account(code=code, name=name, type=account_type, sub_type=sub_type))
            created += 1
        return created

    return run_in_unit_of_work(_op)


def get_system_account(role: str) -> Account:
    """Resolve a ledger role ("cash", "inventory", ...) to its configured account."""
    codes = current_app.config.get("SYSTEM_ACCOUNT_CODES", {})
    code = codes.get(role)
    if code is None:
        raise ReferentialGapError("account role", role)
    account = Account.query.filter_by(code=code).first()
    if account is None:
        raise ReferentialGapError("account", code)
    return account


def get_cash_account(payment_mode: str | None) -> Account:
    """Cash for cash payments, Bank for every other immediate payment mode."""
    if payment_mode in (None, "", "cash"):
        return get_system_account("cash")
    return get_system_account("bank")


def resolve_reference(reference_type, reference_id: int | None):
    """Load the document a (reference_type, reference_id) pair points at, or None for table-less kinds."""
    kind = ReferenceType.coerce(reference_type)
    model = REFERENCE_MODELS.get(kind)
    if model is None or reference_id is None:
        return None
    document = db.session.get(model, reference_id)
    if document is None:
        raise ReferentialGapError(kind.value, reference_id)
    return document
