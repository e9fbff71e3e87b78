from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, to_iso_date


def _money(value):
    return str(value) if value is not None else None


# =============================================================================
# SHARED LIFECYCLE COLUMNS
# =============================================================================

class PostableDocumentMixin:
    """
    Lifecycle columns shared by documents that post to the stock and account ledgers.

    STATE MACHINE (see services.lifecycle_service):
        draft -> pending -> approved -> completed
        cancelled is reachable from draft, pending and approved.

    posted_at is set exactly once, by the first transition into approved or
    completed. It is the at-most-once posting guard.
    """

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    notes = db.Column(db.Text, nullable=True)

    posted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def lifecycle_dict(self) -> dict:
        return {
            "status": self.status,
            "notes": self.notes,
            "posted_at": to_utc_z(self.posted_at),
            "approved_at": to_utc_z(self.approved_at),
            "approved_by_user_id": self.approved_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancel_reason": self.cancel_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


# =============================================================================
# PURCHASES
# =============================================================================

class Purchase(PostableDocumentMixin, db.Model):
    """
    Supplier purchase. Posting receives every line into a lot at the line's
    unit price and books Inventory (+ Tax-Input) against Accounts-Payable,
    or against Cash/Bank when payment_mode says it was paid on the spot.
    """
    __tablename__ = "purchases"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "purchase"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    purchase_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=True)
    payment_mode = db.Column(db.String(16), nullable=True)  # None (on credit), cash, bank

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    items = db.relationship(
        "PurchaseItem",
        backref="purchase",
        lazy=True,
        order_by="PurchaseItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "supplier_id": self.supplier_id,
            "warehouse_id": self.warehouse_id,
            "purchase_date": to_iso_date(self.purchase_date),
            "due_date": to_iso_date(self.due_date),
            "payment_mode": self.payment_mode,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "items": [item.to_dict() for item in self.items],
        }
        data.update(self.lifecycle_dict())
        return data


class PurchaseItem(db.Model):
    __tablename__ = "purchase_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)
    batch = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)

    # Lot the line was received into (set on posting)
    stock_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "batch": self.batch,
            "expiry_date": to_iso_date(self.expiry_date),
            "stock_lot_id": self.stock_lot_id,
        }


# =============================================================================
# SALES
# =============================================================================

class Sale(PostableDocumentMixin, db.Model):
    """
    Customer sale. Posting withdraws every line from stock (pinned batch or
    allocation policy) and books Receivable/Cash against Sales-Revenue
    (+ Tax-Output), plus Cost-of-Goods-Sold against Inventory at the cost of
    the consumed lots.
    """
    __tablename__ = "sales"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "sale"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, nullable=True, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    sale_date = db.Column(db.Date, nullable=False)
    payment_mode = db.Column(db.String(16), nullable=True)  # cash or bank for walk-in sales

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    paid_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="pending")  # pending, partial, paid

    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "warehouse_id": self.warehouse_id,
            "sale_date": to_iso_date(self.sale_date),
            "payment_mode": self.payment_mode,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "paid_amount": _money(self.paid_amount),
            "payment_status": self.payment_status,
            "items": [item.to_dict() for item in self.items],
        }
        data.update(self.lifecycle_dict())
        return data


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)
    batch = db.Column(db.String(64), nullable=True)

    # Total cost of the consumed lots (set on posting)
    cost_amount = db.Column(db.Numeric(14, 2), nullable=True)

    product = db.relationship("Product")
    allocations = db.relationship(
        "SaleItemAllocation",
        backref="sale_item",
        lazy=True,
        order_by="SaleItemAllocation.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "batch": self.batch,
            "cost_amount": _money(self.cost_amount),
            "allocations": [a.to_dict() for a in self.allocations],
        }


class SaleItemAllocation(db.Model):
    """Quantity of a sale line taken from one lot, at that lot's cost."""
    __tablename__ = "sale_item_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    stock_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_cost = db.Column(db.Numeric(14, 2), nullable=False)
    returned_quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_item_id": self.sale_item_id,
            "stock_lot_id": self.stock_lot_id,
            "quantity": str(self.quantity),
            "unit_cost": _money(self.unit_cost),
            "returned_quantity": str(self.returned_quantity),
        }


# =============================================================================
# RETURNS
# =============================================================================

class SaleReturn(PostableDocumentMixin, db.Model):
    """
    Customer return against a posted sale.

    Posting restores stock into the lots the sale consumed and reverses COGS at
    the ORIGINAL lot cost, never at the current cost.
    """
    __tablename__ = "sale_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "sale_return"

    id = db.Column(db.Integer, primary_key=True)
    return_number = db.Column(db.String(64), nullable=False, unique=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, nullable=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    return_date = db.Column(db.Date, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    refund_status = db.Column(db.String(16), nullable=False, default="pending")  # pending, completed, not_required
    refund_method = db.Column(db.String(16), nullable=True)  # cash, bank, credit_account
    refund_date = db.Column(db.Date, nullable=True)
    refunded_amount = db.Column(db.Numeric(14, 2), nullable=True)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    items = db.relationship(
        "SaleReturnItem",
        backref="sale_return",
        lazy=True,
        order_by="SaleReturnItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "return_number": self.return_number,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "warehouse_id": self.warehouse_id,
            "return_date": to_iso_date(self.return_date),
            "reason": self.reason,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "total_amount": _money(self.total_amount),
            "refund_status": self.refund_status,
            "refund_method": self.refund_method,
            "refund_date": to_iso_date(self.refund_date),
            "refunded_amount": _money(self.refunded_amount),
            "items": [item.to_dict() for item in self.items],
        }
        data.update(self.lifecycle_dict())
        return data


class SaleReturnItem(db.Model):
    __tablename__ = "sale_return_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_return_id = db.Column(db.Integer, db.ForeignKey("sale_returns.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)

    # Original cost of the returned units (set on posting)
    cost_amount = db.Column(db.Numeric(14, 2), nullable=True)

    sale_item = db.relationship("SaleItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_return_id": self.sale_return_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "cost_amount": _money(self.cost_amount),
        }


class PurchaseReturn(PostableDocumentMixin, db.Model):
    """Return of received goods to the supplier; takes stock out of the received lots."""
    __tablename__ = "purchase_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "purchase_return"

    id = db.Column(db.Integer, primary_key=True)
    return_number = db.Column(db.String(64), nullable=False, unique=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, nullable=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    return_date = db.Column(db.Date, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    purchase = db.relationship("Purchase", backref=db.backref("returns", lazy=True))
    items = db.relationship(
        "PurchaseReturnItem",
        backref="purchase_return",
        lazy=True,
        order_by="PurchaseReturnItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "return_number": self.return_number,
            "purchase_id": self.purchase_id,
            "supplier_id": self.supplier_id,
            "warehouse_id": self.warehouse_id,
            "return_date": to_iso_date(self.return_date),
            "reason": self.reason,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "total_amount": _money(self.total_amount),
            "items": [item.to_dict() for item in self.items],
        }
        data.update(self.lifecycle_dict())
        return data


class PurchaseReturnItem(db.Model):
    __tablename__ = "purchase_return_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_return_id = db.Column(db.Integer, db.ForeignKey("purchase_returns.id"), nullable=False, index=True)
    purchase_item_id = db.Column(db.Integer, db.ForeignKey("purchase_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)

    purchase_item = db.relationship("PurchaseItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_return_id": self.purchase_return_id,
            "purchase_item_id": self.purchase_item_id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
        }


# =============================================================================
# QUOTATIONS
# =============================================================================

class Quotation(db.Model):
    """
    Price offer to a customer. Never touches stock or the ledger itself;
    an approved, unexpired quotation converts exactly once into a Sale.
    """
    __tablename__ = "quotations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    quotation_number = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, nullable=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    quotation_date = db.Column(db.Date, nullable=False)
    valid_until = db.Column(db.Date, nullable=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="draft")  # draft, sent, approved, rejected, expired
    notes = db.Column(db.Text, nullable=True)

    converted_to_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, unique=True)
    converted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    approved_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    converted_sale = db.relationship("Sale", foreign_keys=[converted_to_sale_id])
    items = db.relationship(
        "QuotationItem",
        backref="quotation",
        lazy=True,
        order_by="QuotationItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quotation_number": self.quotation_number,
            "customer_id": self.customer_id,
            "warehouse_id": self.warehouse_id,
            "quotation_date": to_iso_date(self.quotation_date),
            "valid_until": to_iso_date(self.valid_until),
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "status": self.status,
            "notes": self.notes,
            "converted_to_sale_id": self.converted_to_sale_id,
            "converted_at": to_utc_z(self.converted_at),
            "created_by_user_id": self.created_by_user_id,
            "approved_by_user_id": self.approved_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class QuotationItem(db.Model):
    __tablename__ = "quotation_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total_price = db.Column(db.Numeric(14, 2), nullable=False)
    batch = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quotation_id": self.quotation_id,
            "product_id": self.product_id,
            "quantity": str(self.quantity),
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "batch": self.batch,
        }


# =============================================================================
# VOUCHERS (ledger-only documents)
# =============================================================================

class Payment(db.Model):
    """
    Receipt or payment voucher.

    receipt: debit cash/bank, credit account_id
    payment: debit account_id, credit cash/bank
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    document_type = "payment"

    id = db.Column(db.Integer, primary_key=True)
    voucher_number = db.Column(db.String(64), nullable=False, unique=True)
    voucher_type = db.Column(db.String(16), nullable=False)  # receipt, payment
    payment_date = db.Column(db.Date, nullable=False)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    cash_account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)

    # Optional document the voucher settles (sale or purchase)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    payment_mode = db.Column(db.String(16), nullable=False)  # cash, bank_transfer, cheque, card, other
    reference_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "voucher_number": self.voucher_number,
            "voucher_type": self.voucher_type,
            "payment_date": to_iso_date(self.payment_date),
            "account_id": self.account_id,
            "cash_account_id": self.cash_account_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "amount": _money(self.amount),
            "payment_mode": self.payment_mode,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class Expense(db.Model):
    __tablename__ = "expenses"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "expense"

    id = db.Column(db.Integer, primary_key=True)
    expense_number = db.Column(db.String(64), nullable=False, unique=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    cash_account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    expense_date = db.Column(db.Date, nullable=False)
    category = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    payment_mode = db.Column(db.String(16), nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "expense_number": self.expense_number,
            "account_id": self.account_id,
            "cash_account_id": self.cash_account_id,
            "expense_date": to_iso_date(self.expense_date),
            "category": self.category,
            "description": self.description,
            "amount": _money(self.amount),
            "payment_mode": self.payment_mode,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class BankTransaction(db.Model):
    """Deposit, withdrawal or transfer between two cash/bank accounts."""
    __tablename__ = "bank_transactions"
    __table_args__ = {"sqlite_autoincrement": True}

    document_type = "bank_transaction"

    id = db.Column(db.Integer, primary_key=True)
    transaction_number = db.Column(db.String(64), nullable=False, unique=True)
    transaction_type = db.Column(db.String(16), nullable=False)  # deposit, withdraw, transfer
    from_account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    to_account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False)
    transaction_date = db.Column(db.Date, nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    reference_number = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    from_account = db.relationship("Account", foreign_keys=[from_account_id])
    to_account = db.relationship("Account", foreign_keys=[to_account_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_number": self.transaction_number,
            "transaction_type": self.transaction_type,
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
            "transaction_date": to_iso_date(self.transaction_date),
            "amount": _money(self.amount),
            "reference_number": self.reference_number,
            "description": self.description,
            "notes": self.notes,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


# =============================================================================
# NUMBERING
# =============================================================================

class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: Invoice, return and voucher numbers must be unique even when two
    requests allocate at the same time.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
