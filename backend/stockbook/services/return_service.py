# Overview: Sale and purchase returns; quantity limits, stock restoration at original cost, reversing postings and refunds.

"""
Stockbook Returns

================================================================================
PURPOSE: Reverse the quantity direction of a posted sale or purchase, line by
line, with matching journal entries
================================================================================

RULES:
- A return references a posted, non-cancelled original document.
- Per original line, returned quantity (all non-cancelled returns) never
  exceeds the quantity originally transacted. Checked at creation and again,
  under row locks, when the return posts.
- Sale returns put stock back into the exact lots the sale consumed (most
  recently consumed allocation first) and reverse COGS at the ORIGINAL lot
  cost recorded on the allocation, never at the lot's current cost.
- Sale returns credit Accounts-Receivable. The customer is then refunded
  (process_refund: debit Receivable / credit Cash-or-Bank) or keeps the
  credit on account (refund_method="credit_account").
- Purchase returns take stock out of the lot the purchase line was received
  into; stock already sold raises InsufficientStockError.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func

from ..extensions import db
from ..errors import (
    DocumentError,
    DuplicatePostingError,
    InvalidTransitionError,
    ReferentialGapError,
    ReturnLimitExceededError,
)
from ..models import (
    Purchase,
    PurchaseItem,
    PurchaseReturn,
    PurchaseReturnItem,
    Sale,
    SaleItem,
    SaleReturn,
    SaleReturnItem,
    StockMovement,
    ReferenceType,
)
from . import ledger_service, lifecycle_service, stock_service
from .concurrency import lock_for_update, run_in_unit_of_work
from .document_service import next_document_number, to_money, to_qty
from .ledger_service import credit, debit
from .purchase_service import settlement_account
from stockbook.time_utils import parse_iso_date, today


REFUND_METHODS = ("cash", "bank", "credit_account")


def _require_posted(document, kind: str) -> None:
    if not lifecycle_service.is_posted(document) or document.status == lifecycle_service.CANCELLED:
        raise DocumentError(f"{kind} {document.id} is not posted; only posted documents can be returned")


def _proportional_tax(original_tax, original_subtotal, return_subtotal) -> Decimal:
    original_subtotal = to_money(original_subtotal)
    if original_subtotal <= 0:
        return Decimal("0.00")
    return to_money(to_money(original_tax) * return_subtotal / original_subtotal)


# =============================================================================
# SALE RETURNS
# =============================================================================

def returned_sale_quantity(sale_item_id: int, *, exclude_return_id: int | None = None) -> Decimal:
    """Quantity of a sale line claimed by non-cancelled returns."""
    query = (
        db.session.query(func.coalesce(func.sum(SaleReturnItem.quantity), 0))
        .join(SaleReturn, SaleReturn.id == SaleReturnItem.sale_return_id)
        .filter(
            SaleReturnItem.sale_item_id == sale_item_id,
            SaleReturn.status != lifecycle_service.CANCELLED,
        )
    )
    if exclude_return_id is not None:
        query = query.filter(SaleReturn.id != exclude_return_id)
    return to_qty(query.scalar())


def _check_sale_return_limit(sale_item: SaleItem, quantity: Decimal, *, exclude_return_id=None) -> None:
    already = returned_sale_quantity(sale_item.id, exclude_return_id=exclude_return_id)
    returnable = to_qty(sale_item.quantity) - already
    if quantity > returnable:
        raise ReturnLimitExceededError(sale_item.product_id, quantity, returnable)


def build_sale_return(
    *,
    sale_id: int,
    items: list[dict],
    return_date=None,
    reason: str | None = None,
    refund_method: str | None = None,
    notes: str | None = None,
    return_number: str | None = None,
    user_id: int | None = None,
) -> SaleReturn:
    """
    Create a draft sale return. items: [{"sale_item_id", "quantity", "unit_price"?}].

    unit_price defaults to the original line price; tax is the original
    sale's tax apportioned by subtotal.
    """
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise ReferentialGapError("sale", sale_id)
    _require_posted(sale, "sale")
    if refund_method is not None and refund_method not in REFUND_METHODS:
        raise DocumentError(f"Invalid refund_method '{refund_method}'")
    if not items:
        raise DocumentError("At least one line item is required")

    sale_return = SaleReturn(
        return_number=return_number or next_document_number("sale_return"),
        sale_id=sale.id,
        customer_id=sale.customer_id,
        warehouse_id=sale.warehouse_id,
        return_date=parse_iso_date(return_date) or today(),
        reason=reason,
        refund_method=refund_method,
        refund_status="not_required" if refund_method == "credit_account" else "pending",
        notes=notes,
        status=lifecycle_service.DRAFT,
        created_by_user_id=user_id,
    )

    subtotal = Decimal("0.00")
    for line in items:
        sale_item = db.session.get(SaleItem, line.get("sale_item_id"))
        if sale_item is None or sale_item.sale_id != sale.id:
            raise ReferentialGapError("sale_item", line.get("sale_item_id"))
        quantity = to_qty(line.get("quantity"))
        if quantity <= 0:
            raise DocumentError("Return quantity must be positive")
        _check_sale_return_limit(sale_item, quantity)

        unit_price = to_money(line["unit_price"]) if line.get("unit_price") is not None else to_money(sale_item.unit_price)
        line_total = to_money(quantity * unit_price)
        subtotal += line_total
        sale_return.items.append(
            SaleReturnItem(
                sale_item_id=sale_item.id,
                product_id=sale_item.product_id,
                quantity=quantity,
                unit_price=unit_price,
                total_price=line_total,
            )
        )

    tax = _proportional_tax(sale.tax_amount, sale.subtotal, subtotal)
    sale_return.subtotal = to_money(subtotal)
    sale_return.tax_amount = tax
    sale_return.total_amount = to_money(subtotal + tax)

    db.session.add(sale_return)
    db.session.flush()
    return sale_return


def create_sale_return(**kwargs) -> SaleReturn:
    return run_in_unit_of_work(lambda: build_sale_return(**kwargs))


def post_sale_return(sale_return: SaleReturn, *, user_id: int | None = None) -> None:
    """
    Restore stock into the consumed lots, then book:

        debit  Sales-Returns        total - tax
        debit  Tax-Output           tax
        credit Receivable           total

        debit  Inventory            original cost
        credit Cost-of-Goods-Sold   original cost
    """
    sale = lock_for_update(Sale.query.filter_by(id=sale_return.sale_id)).first()
    _require_posted(sale, "sale")

    total_cost = Decimal("0.00")
    for item in sale_return.items:
        sale_item = lock_for_update(SaleItem.query.filter_by(id=item.sale_item_id)).first()
        quantity = to_qty(item.quantity)
        _check_sale_return_limit(sale_item, quantity, exclude_return_id=sale_return.id)

        remaining = quantity
        item_cost = Decimal("0.00")
        for allocation in sorted(sale_item.allocations, key=lambda a: a.id, reverse=True):
            if remaining <= 0:
                break
            open_qty = to_qty(allocation.quantity) - to_qty(allocation.returned_quantity)
            if open_qty <= 0:
                continue
            take = min(open_qty, remaining)
            stock_service.adjust_stock(
                warehouse_id=sale_return.warehouse_id,
                product_id=item.product_id,
                quantity_delta=take,
                lot_id=allocation.stock_lot_id,
                reference_type=ReferenceType.SALE_RETURN,
                reference_id=sale_return.id,
                note=f"Sale return {sale_return.return_number}",
                user_id=user_id,
            )
            allocation.returned_quantity = to_qty(allocation.returned_quantity) + take
            item_cost += take * to_money(allocation.unit_cost)
            remaining -= take

        if remaining > 0:
            raise ReturnLimitExceededError(item.product_id, quantity, quantity - remaining)

        item.cost_amount = to_money(item_cost)
        total_cost += item.cost_amount

    total = to_money(sale_return.total_amount)
    tax = to_money(sale_return.tax_amount)
    if total > 0:
        ledger_service.post_entries(
            [
                debit(ledger_service.get_system_account("sales_returns").id, total - tax),
                debit(ledger_service.get_system_account("tax_output").id, tax),
                credit(ledger_service.get_system_account("accounts_receivable").id, total),
            ],
            transaction_date=sale_return.return_date,
            reference_type=ReferenceType.SALE_RETURN,
            reference_id=sale_return.id,
            description=f"Sale return {sale_return.return_number}",
            user_id=user_id,
        )
    if total_cost > 0:
        ledger_service.post_entries(
            [
                debit(ledger_service.get_system_account("inventory").id, total_cost),
                credit(ledger_service.get_system_account("cost_of_goods_sold").id, total_cost),
            ],
            transaction_date=sale_return.return_date,
            reference_type=ReferenceType.SALE_RETURN,
            reference_id=sale_return.id,
            description=f"COGS reversal {sale_return.return_number}",
            user_id=user_id,
        )
    db.session.flush()


def reverse_sale_return(sale_return: SaleReturn, *, user_id: int | None = None) -> None:
    """Cancellation of an approved sale return."""
    if sale_return.refund_status == "completed":
        raise InvalidTransitionError("sale_return", sale_return.id, sale_return.status, lifecycle_service.CANCELLED)

    # release the allocation quantities this return restored
    restored = {}
    for movement in StockMovement.query.filter_by(
        reference_type=ReferenceType.SALE_RETURN.value, reference_id=sale_return.id
    ).all():
        restored[movement.stock_lot_id] = restored.get(movement.stock_lot_id, Decimal("0")) + to_qty(movement.quantity_delta)
    for item in sale_return.items:
        for allocation in item.sale_item.allocations:
            give_back = min(restored.get(allocation.stock_lot_id, Decimal("0")), to_qty(allocation.returned_quantity))
            if give_back > 0:
                allocation.returned_quantity = to_qty(allocation.returned_quantity) - give_back
                restored[allocation.stock_lot_id] -= give_back

    stock_service.reverse_movements(
        ReferenceType.SALE_RETURN,
        sale_return.id,
        user_id=user_id,
        note=f"Cancellation of sale return {sale_return.return_number}",
    )
    ledger_service.reverse_reference(
        ReferenceType.SALE_RETURN,
        sale_return.id,
        user_id=user_id,
        description=f"Cancellation of sale return {sale_return.return_number}",
    )


def _sale_return_transition(return_id: int, to_status: str, *, user_id=None, reason=None) -> SaleReturn:
    return lifecycle_service.run_transition(
        SaleReturn,
        return_id,
        to_status,
        user_id=user_id,
        reason=reason,
        post=lambda doc: post_sale_return(doc, user_id=user_id),
        reverse=lambda doc: reverse_sale_return(doc, user_id=user_id),
    )


def submit_sale_return(return_id: int, *, user_id: int | None = None) -> SaleReturn:
    return _sale_return_transition(return_id, lifecycle_service.PENDING, user_id=user_id)


def approve_sale_return(return_id: int, *, user_id: int | None = None) -> SaleReturn:
    return _sale_return_transition(return_id, lifecycle_service.APPROVED, user_id=user_id)


def complete_sale_return(return_id: int, *, user_id: int | None = None) -> SaleReturn:
    return _sale_return_transition(return_id, lifecycle_service.COMPLETED, user_id=user_id)


def cancel_sale_return(return_id: int, *, user_id: int | None = None, reason: str | None = None) -> SaleReturn:
    return _sale_return_transition(return_id, lifecycle_service.CANCELLED, user_id=user_id, reason=reason)


def process_refund(
    return_id: int,
    *,
    refund_method: str,
    amount=None,
    refund_date=None,
    user_id: int | None = None,
) -> SaleReturn:
    """
    Pay a posted sale return back to the customer, once.

        debit  Accounts-Receivable  amount
        credit Cash / Bank          amount
    """
    if refund_method not in ("cash", "bank"):
        raise DocumentError(f"Invalid refund_method '{refund_method}'; use cash or bank")

    def _op():
        sale_return = lifecycle_service.load_for_update(SaleReturn, return_id)
        if not lifecycle_service.is_posted(sale_return) or sale_return.status == lifecycle_service.CANCELLED:
            raise DocumentError(f"Sale return {return_id} is not posted")
        if sale_return.refund_status != "pending":
            raise DuplicatePostingError("sale_return_refund", return_id, sale_return.refund_status)

        refund = to_money(amount) if amount is not None else to_money(sale_return.total_amount)
        if refund <= 0 or refund > to_money(sale_return.total_amount):
            raise DocumentError(f"Refund amount must be between 0 and {sale_return.total_amount}")

        refund_day = parse_iso_date(refund_date) or today()
        ledger_service.post_entries(
            [
                debit(ledger_service.get_system_account("accounts_receivable").id, refund),
                credit(ledger_service.get_cash_account(refund_method).id, refund),
            ],
            transaction_date=refund_day,
            reference_type=ReferenceType.SALE_RETURN_REFUND,
            reference_id=sale_return.id,
            description=f"Refund for {sale_return.return_number}",
            user_id=user_id,
        )
        sale_return.refund_status = "completed"
        sale_return.refund_method = refund_method
        sale_return.refunded_amount = refund
        sale_return.refund_date = refund_day
        return sale_return

    return run_in_unit_of_work(_op)


# =============================================================================
# PURCHASE RETURNS
# =============================================================================

def returned_purchase_quantity(purchase_item_id: int, *, exclude_return_id: int | None = None) -> Decimal:
    query = (
        db.session.query(func.coalesce(func.sum(PurchaseReturnItem.quantity), 0))
        .join(PurchaseReturn, PurchaseReturn.id == PurchaseReturnItem.purchase_return_id)
        .filter(
            PurchaseReturnItem.purchase_item_id == purchase_item_id,
            PurchaseReturn.status != lifecycle_service.CANCELLED,
        )
    )
    if exclude_return_id is not None:
        query = query.filter(PurchaseReturn.id != exclude_return_id)
    return to_qty(query.scalar())


def _check_purchase_return_limit(purchase_item: PurchaseItem, quantity: Decimal, *, exclude_return_id=None) -> None:
    already = returned_purchase_quantity(purchase_item.id, exclude_return_id=exclude_return_id)
    returnable = to_qty(purchase_item.quantity) - already
    if quantity > returnable:
        raise ReturnLimitExceededError(purchase_item.product_id, quantity, returnable)


def build_purchase_return(
    *,
    purchase_id: int,
    items: list[dict],
    return_date=None,
    reason: str | None = None,
    notes: str | None = None,
    return_number: str | None = None,
    user_id: int | None = None,
) -> PurchaseReturn:
    """Create a draft purchase return. items: [{"purchase_item_id", "quantity", "unit_price"?}]."""
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise ReferentialGapError("purchase", purchase_id)
    _require_posted(purchase, "purchase")
    if not items:
        raise DocumentError("At least one line item is required")

    purchase_return = PurchaseReturn(
        return_number=return_number or next_document_number("purchase_return"),
        purchase_id=purchase.id,
        supplier_id=purchase.supplier_id,
        warehouse_id=purchase.warehouse_id,
        return_date=parse_iso_date(return_date) or today(),
        reason=reason,
        notes=notes,
        status=lifecycle_service.DRAFT,
        created_by_user_id=user_id,
    )

    subtotal = Decimal("0.00")
    for line in items:
        purchase_item = db.session.get(PurchaseItem, line.get("purchase_item_id"))
        if purchase_item is None or purchase_item.purchase_id != purchase.id:
            raise ReferentialGapError("purchase_item", line.get("purchase_item_id"))
        quantity = to_qty(line.get("quantity"))
        if quantity <= 0:
            raise DocumentError("Return quantity must be positive")
        _check_purchase_return_limit(purchase_item, quantity)

        unit_price = to_money(line["unit_price"]) if line.get("unit_price") is not None else to_money(purchase_item.unit_price)
        line_total = to_money(quantity * unit_price)
        subtotal += line_total
        purchase_return.items.append(
            PurchaseReturnItem(
                purchase_item_id=purchase_item.id,
                product_id=purchase_item.product_id,
                quantity=quantity,
                unit_price=unit_price,
                total_price=line_total,
            )
        )

    tax = _proportional_tax(purchase.tax_amount, purchase.subtotal, subtotal)
    purchase_return.subtotal = to_money(subtotal)
    purchase_return.tax_amount = tax
    purchase_return.total_amount = to_money(subtotal + tax)

    db.session.add(purchase_return)
    db.session.flush()
    return purchase_return


def create_purchase_return(**kwargs) -> PurchaseReturn:
    return run_in_unit_of_work(lambda: build_purchase_return(**kwargs))


def post_purchase_return(purchase_return: PurchaseReturn, *, user_id: int | None = None) -> None:
    """
    Take the goods out of the received lots, then book:

        debit  Payables / Cash           total
        credit Inventory                 cost of the withdrawn units
        credit Tax-Input                 tax
        Purchase-Price-Variance          (total - tax) - cost, either side

    Inventory is relieved at the lot cost the units leave at, whatever price
    the return line carries.
    """
    purchase = lock_for_update(Purchase.query.filter_by(id=purchase_return.purchase_id)).first()
    _require_posted(purchase, "purchase")

    total_cost = Decimal("0.00")
    for item in purchase_return.items:
        purchase_item = lock_for_update(PurchaseItem.query.filter_by(id=item.purchase_item_id)).first()
        _check_purchase_return_limit(purchase_item, to_qty(item.quantity), exclude_return_id=purchase_return.id)
        changes = stock_service.adjust_stock(
            warehouse_id=purchase_return.warehouse_id,
            product_id=item.product_id,
            quantity_delta=-to_qty(item.quantity),
            lot_id=purchase_item.stock_lot_id,
            reference_type=ReferenceType.PURCHASE_RETURN,
            reference_id=purchase_return.id,
            note=f"Purchase return {purchase_return.return_number}",
            user_id=user_id,
        )
        for change in changes:
            total_cost += -change.delta * to_money(change.old.cost_price)
    total_cost = to_money(total_cost)

    total = to_money(purchase_return.total_amount)
    tax = to_money(purchase_return.tax_amount)
    if total == 0 and total_cost == 0:
        return
    variance = total - tax - total_cost
    entries = [
        debit(settlement_account(purchase).id, total),
        credit(ledger_service.get_system_account("inventory").id, total_cost),
        credit(ledger_service.get_system_account("tax_input").id, tax),
    ]
    variance_account = ledger_service.get_system_account("purchase_price_variance").id
    if variance > 0:
        entries.append(credit(variance_account, variance))
    elif variance < 0:
        entries.append(debit(variance_account, -variance))
    ledger_service.post_entries(
        entries,
        transaction_date=purchase_return.return_date,
        reference_type=ReferenceType.PURCHASE_RETURN,
        reference_id=purchase_return.id,
        description=f"Purchase return {purchase_return.return_number}",
        user_id=user_id,
    )


def reverse_purchase_return(purchase_return: PurchaseReturn, *, user_id: int | None = None) -> None:
    stock_service.reverse_movements(
        ReferenceType.PURCHASE_RETURN,
        purchase_return.id,
        user_id=user_id,
        note=f"Cancellation of purchase return {purchase_return.return_number}",
    )
    ledger_service.reverse_reference(
        ReferenceType.PURCHASE_RETURN,
        purchase_return.id,
        user_id=user_id,
        description=f"Cancellation of purchase return {purchase_return.return_number}",
    )


def _purchase_return_transition(return_id: int, to_status: str, *, user_id=None, reason=None) -> PurchaseReturn:
    return lifecycle_service.run_transition(
        PurchaseReturn,
        return_id,
        to_status,
        user_id=user_id,
        reason=reason,
        post=lambda doc: post_purchase_return(doc, user_id=user_id),
        reverse=lambda doc: reverse_purchase_return(doc, user_id=user_id),
    )


def submit_purchase_return(return_id: int, *, user_id: int | None = None) -> PurchaseReturn:
    return _purchase_return_transition(return_id, lifecycle_service.PENDING, user_id=user_id)


def approve_purchase_return(return_id: int, *, user_id: int | None = None) -> PurchaseReturn:
    return _purchase_return_transition(return_id, lifecycle_service.APPROVED, user_id=user_id)


def complete_purchase_return(return_id: int, *, user_id: int | None = None) -> PurchaseReturn:
    return _purchase_return_transition(return_id, lifecycle_service.COMPLETED, user_id=user_id)


def cancel_purchase_return(return_id: int, *, user_id: int | None = None, reason: str | None = None) -> PurchaseReturn:
    return _purchase_return_transition(return_id, lifecycle_service.CANCELLED, user_id=user_id, reason=reason)
