from __future__ import annotations

from enum import Enum

from sqlalchemy import event

from ..extensions import db
from ..errors import ImmutableLedgerError
from stockbook.time_utils import to_utc_z, to_iso_date


ACCOUNT_TYPES = ("asset", "liability", "equity", "income", "expense")

# Accounts whose natural balance is debit - credit
DEBIT_NORMAL_TYPES = frozenset({"asset", "expense"})

ACCOUNT_SUB_TYPES = (
    "current_asset",
    "fixed_asset",
    "current_liability",
    "long_term_liability",
    "owner_equity",
    "revenue",
    "cost_of_goods_sold",
    "operating_expense",
    "other_expense",
)


class ReferenceType(str, Enum):
    """
    Kinds of business documents a journal row or stock movement can point at.

    The (reference_type, reference_id) pair is a tagged union: the kind picks
    the document table (see services.ledger_service.resolve_reference), the id
    is the row in that table. Kinds without a document table carry no id.
    """

    PURCHASE = "purchase"
    SALE = "sale"
    PURCHASE_RETURN = "purchase_return"
    SALE_RETURN = "sale_return"
    SALE_RETURN_REFUND = "sale_return_refund"
    PAYMENT = "payment"
    EXPENSE = "expense"
    BANK_TRANSACTION = "bank_transaction"
    STOCK_ADJUSTMENT = "stock_adjustment"
    STOCK_TRANSFER = "stock_transfer"

    @classmethod
    def coerce(cls, value) -> "ReferenceType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown reference type: {value!r}") from None


class Account(db.Model):
    """
    Chart-of-accounts node.

    Balances are computed per node (see services.ledger_service.balance_of);
    parent aggregation is a read-side concern for reports.

    opening_balance is stored in the account's natural sign (positive = normal
    balance) and is never written as a journal row.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.Index("ix_accounts_type_active", "type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    sub_type = db.Column(db.String(32), nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=True, index=True)
    opening_balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    parent = db.relationship("Account", remote_side=[id], backref=db.backref("children", lazy=True))

    @property
    def is_debit_normal(self) -> bool:
        return self.type in DEBIT_NORMAL_TYPES

    def __repr__(self) -> str:
        return f"<Account id={self.id} code={self.code!r} type={self.type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "sub_type": self.sub_type,
            "parent_id": self.parent_id,
            "opening_balance": str(self.opening_balance),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Transaction(db.Model):
    """
    Journal row.

    - Exactly one of debit/credit is non-zero.
    - Rows written by one ledger_service.post_entries call share posting_batch,
      and every batch balances (sum debit == sum credit).
    - Append-only: corrections are new offsetting rows. ORM updates and
      deletes raise ImmutableLedgerError.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_reference", "reference_type", "reference_id"),
        db.Index("ix_transactions_account_date", "account_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    transaction_date = db.Column(db.Date, nullable=False, index=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    debit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    credit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    description = db.Column(db.Text, nullable=True)

    posting_batch = db.Column(db.String(32), nullable=False, index=True)
    reverses_batch = db.Column(db.String(32), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    account = db.relationship("Account", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "transaction_date": to_iso_date(self.transaction_date),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "debit": str(self.debit),
            "credit": str(self.credit),
            "description": self.description,
            "posting_batch": self.posting_batch,
            "reverses_batch": self.reverses_batch,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(Transaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise ImmutableLedgerError(f"Journal row {target.id} is append-only and cannot be updated")


@event.listens_for(Transaction, "before_delete")
def _reject_transaction_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"Journal row {target.id} is append-only and cannot be deleted")
