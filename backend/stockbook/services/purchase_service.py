# Overview: Purchase documents; creation, posting into stock lots and Inventory/Payables journal entries.

from __future__ import annotations

from ..extensions import db
from ..errors import DocumentError, ReferentialGapError
from ..models import Product, Purchase, PurchaseItem, Warehouse, ReferenceType
from . import ledger_service, lifecycle_service, stock_service
from .concurrency import run_in_unit_of_work
from .document_service import calculate_totals, next_document_number, to_money, to_qty
from .ledger_service import credit, debit
from stockbook.time_utils import parse_iso_date, today


PAYMENT_MODES = (None, "cash", "bank")


def _validate_lines(items) -> None:
    if not items:
        raise DocumentError("At least one line item is required")
    for line in items:
        if db.session.get(Product, line.get("product_id")) is None:
            raise ReferentialGapError("product", line.get("product_id"))
        if to_qty(line.get("quantity")) <= 0:
            raise DocumentError("Line quantity must be positive")
        if to_money(line.get("unit_price")) < 0:
            raise DocumentError("Line unit_price must not be negative")


def build_purchase(
    *,
    warehouse_id: int,
    items: list[dict],
    supplier_id: int | None = None,
    purchase_date=None,
    due_date=None,
    payment_mode: str | None = None,
    tax_rate=0,
    discount_amount=0,
    notes: str | None = None,
    invoice_number: str | None = None,
    user_id: int | None = None,
) -> Purchase:
    """Create a draft purchase inside the caller's transaction."""
    if db.session.get(Warehouse, warehouse_id) is None:
        raise ReferentialGapError("warehouse", warehouse_id)
    if payment_mode not in PAYMENT_MODES:
        raise DocumentError(f"Invalid payment_mode '{payment_mode}'")
    _validate_lines(items)

    totals = calculate_totals(items, tax_rate, discount_amount)
    purchase = Purchase(
        invoice_number=invoice_number or next_document_number("purchase"),
        supplier_id=supplier_id,
        warehouse_id=warehouse_id,
        purchase_date=parse_iso_date(purchase_date) or today(),
        due_date=parse_iso_date(due_date),
        payment_mode=payment_mode,
        subtotal=totals["subtotal"],
        tax_amount=totals["tax_amount"],
        discount_amount=totals["discount_amount"],
        total_amount=totals["total_amount"],
        notes=notes,
        status=lifecycle_service.DRAFT,
        created_by_user_id=user_id,
    )
    for line, line_total in zip(items, totals["line_totals"]):
        purchase.items.append(
            PurchaseItem(
                product_id=line["product_id"],
                quantity=to_qty(line["quantity"]),
                unit_price=to_money(line["unit_price"]),
                total_price=line_total,
                batch=line.get("batch"),
                expiry_date=parse_iso_date(line.get("expiry_date")),
            )
        )
    db.session.add(purchase)
    db.session.flush()
    return purchase


def create_purchase(**kwargs) -> Purchase:
    return run_in_unit_of_work(lambda: build_purchase(**kwargs))


def settlement_account(purchase: Purchase):
    """Accounts-Payable for credit purchases, Cash/Bank for purchases paid on the spot."""
    if purchase.payment_mode is None:
        return ledger_service.get_system_account("accounts_payable")
    return ledger_service.get_cash_account(purchase.payment_mode)


def post_purchase(purchase: Purchase, *, user_id: int | None = None) -> None:
    """
    Receive every line into a lot at the line's unit price, then book:

        debit  Inventory                 subtotal (received quantity at lot cost)
        debit  Tax-Input                 tax
        credit Payables / Cash           total
        credit Purchase-Price-Variance   discount

    Inventory is debited at lot cost. A zero-value purchase moves stock only.
    """
    for item in purchase.items:
        changes = stock_service.adjust_stock(
            warehouse_id=purchase.warehouse_id,
            product_id=item.product_id,
            quantity_delta=item.quantity,
            batch=item.batch,
            expiry_date=item.expiry_date,
            cost_price=item.unit_price,
            reference_type=ReferenceType.PURCHASE,
            reference_id=purchase.id,
            note=f"Purchase {purchase.invoice_number}",
            user_id=user_id,
        )
        item.stock_lot_id = changes[0].lot.id

    subtotal = to_money(purchase.subtotal)
    if subtotal == 0:
        return
    ledger_service.post_entries(
        [
            debit(ledger_service.get_system_account("inventory").id, subtotal),
            debit(ledger_service.get_system_account("tax_input").id, purchase.tax_amount),
            credit(settlement_account(purchase).id, purchase.total_amount),
            credit(ledger_service.get_system_account("purchase_price_variance").id, purchase.discount_amount),
        ],
        transaction_date=purchase.purchase_date,
        reference_type=ReferenceType.PURCHASE,
        reference_id=purchase.id,
        description=f"Purchase {purchase.invoice_number}",
        user_id=user_id,
    )


def reverse_purchase(purchase: Purchase, *, user_id: int | None = None) -> None:
    """Cancellation of an approved purchase: take the received stock back out and mirror the journal."""
    stock_service.reverse_movements(
        ReferenceType.PURCHASE,
        purchase.id,
        user_id=user_id,
        note=f"Cancellation of purchase {purchase.invoice_number}",
    )
    ledger_service.reverse_reference(
        ReferenceType.PURCHASE,
        purchase.id,
        user_id=user_id,
        description=f"Cancellation of purchase {purchase.invoice_number}",
    )


def _transition(purchase_id: int, to_status: str, *, user_id=None, reason=None) -> Purchase:
    return lifecycle_service.run_transition(
        Purchase,
        purchase_id,
        to_status,
        user_id=user_id,
        reason=reason,
        post=lambda doc: post_purchase(doc, user_id=user_id),
        reverse=lambda doc: reverse_purchase(doc, user_id=user_id),
    )


def submit_purchase(purchase_id: int, *, user_id: int | None = None) -> Purchase:
    return _transition(purchase_id, lifecycle_service.PENDING, user_id=user_id)


def approve_purchase(purchase_id: int, *, user_id: int | None = None) -> Purchase:
    return _transition(purchase_id, lifecycle_service.APPROVED, user_id=user_id)


def complete_purchase(purchase_id: int, *, user_id: int | None = None) -> Purchase:
    return _transition(purchase_id, lifecycle_service.COMPLETED, user_id=user_id)


def cancel_purchase(purchase_id: int, *, user_id: int | None = None, reason: str | None = None) -> Purchase:
    def _op():
        purchase = lifecycle_service.load_for_update(Purchase, purchase_id)
        if any(r.status != lifecycle_service.CANCELLED for r in purchase.returns):
            raise DocumentError(f"Purchase {purchase_id} has returns; cancel them first")
        return lifecycle_service.transition(
            purchase,
            lifecycle_service.CANCELLED,
            user_id=user_id,
            reason=reason,
            reverse=lambda doc: reverse_purchase(doc, user_id=user_id),
        )

    return run_in_unit_of_work(_op)
