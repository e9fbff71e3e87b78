# Overview: Sale documents; stock withdrawal with lot allocations, revenue and cost-of-goods-sold postings.

from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..errors import DocumentError, ReferentialGapError
from ..models import Product, Sale, SaleItem, SaleItemAllocation, Warehouse, ReferenceType
from . import ledger_service, lifecycle_service, stock_service
from .concurrency import run_in_unit_of_work
from .document_service import calculate_totals, next_document_number, to_money, to_qty
from .ledger_service import credit, debit
from stockbook.time_utils import parse_iso_date, today


PAYMENT_MODES = (None, "cash", "bank")


def build_sale(
    *,
    warehouse_id: int,
    items: list[dict],
    customer_id: int | None = None,
    sale_date=None,
    payment_mode: str | None = None,
    tax_rate=0,
    discount_amount=0,
    notes: str | None = None,
    invoice_number: str | None = None,
    user_id: int | None = None,
) -> Sale:
    """
    Create a draft sale inside the caller's transaction.

    Line items keep the order they were submitted in; posting walks them in
    that order.
    """
    if db.session.get(Warehouse, warehouse_id) is None:
        raise ReferentialGapError("warehouse", warehouse_id)
    if payment_mode not in PAYMENT_MODES:
        raise DocumentError(f"Invalid payment_mode '{payment_mode}'")
    if not items:
        raise DocumentError("At least one line item is required")
    for line in items:
        if db.session.get(Product, line.get("product_id")) is None:
            raise ReferentialGapError("product", line.get("product_id"))
        if to_qty(line.get("quantity")) <= 0:
            raise DocumentError("Line quantity must be positive")
        if to_money(line.get("unit_price")) < 0:
            raise DocumentError("Line unit_price must not be negative")

    totals = calculate_totals(items, tax_rate, discount_amount)
    sale = Sale(
        invoice_number=invoice_number or next_document_number("sale"),
        customer_id=customer_id,
        warehouse_id=warehouse_id,
        sale_date=parse_iso_date(sale_date) or today(),
        payment_mode=payment_mode,
        subtotal=totals["subtotal"],
        tax_amount=totals["tax_amount"],
        discount_amount=totals["discount_amount"],
        total_amount=totals["total_amount"],
        paid_amount=Decimal("0.00"),
        payment_status="pending",
        notes=notes,
        status=lifecycle_service.DRAFT,
        created_by_user_id=user_id,
    )
    for line, line_total in zip(items, totals["line_totals"]):
        sale.items.append(
            SaleItem(
                product_id=line["product_id"],
                quantity=to_qty(line["quantity"]),
                unit_price=to_money(line["unit_price"]),
                total_price=line_total,
                batch=line.get("batch"),
            )
        )
    db.session.add(sale)
    db.session.flush()
    return sale


def create_sale(**kwargs) -> Sale:
    return run_in_unit_of_work(lambda: build_sale(**kwargs))


def receivable_account(sale: Sale):
    """Accounts-Receivable for customer sales, Cash/Bank for walk-in sales."""
    if sale.customer_id is not None:
        return ledger_service.get_system_account("accounts_receivable")
    return ledger_service.get_cash_account(sale.payment_mode)


def post_sale(sale: Sale, *, user_id: int | None = None) -> None:
    """
    Withdraw every line from stock, then book two balanced batches:

        debit  Receivable / Cash    total
        credit Sales-Revenue        total - tax
        credit Tax-Output           tax

        debit  Cost-of-Goods-Sold   cost of consumed lots
        credit Inventory            cost of consumed lots

    A zero-value sale skips the revenue batch.

    An InsufficientStockError on any line aborts the whole document; the
    caller's unit of work rolls back lines already withdrawn.
    """
    total_cost = Decimal("0.00")
    for item in sale.items:
        changes = stock_service.adjust_stock(
            warehouse_id=sale.warehouse_id,
            product_id=item.product_id,
            quantity_delta=-to_qty(item.quantity),
            batch=item.batch,
            reference_type=ReferenceType.SALE,
            reference_id=sale.id,
            note=f"Sale {sale.invoice_number}",
            user_id=user_id,
        )
        item_cost = Decimal("0.00")
        for change in changes:
            taken = -change.delta
            unit_cost = to_money(change.old.cost_price if change.old else change.new.cost_price)
            item.allocations.append(
                SaleItemAllocation(
                    stock_lot_id=change.lot.id,
                    quantity=taken,
                    unit_cost=unit_cost,
                    returned_quantity=Decimal("0.000"),
                )
            )
            item_cost += taken * unit_cost
        item.cost_amount = to_money(item_cost)
        total_cost += item.cost_amount

    total = to_money(sale.total_amount)
    tax = to_money(sale.tax_amount)
    if total > 0:
        ledger_service.post_entries(
            [
                debit(receivable_account(sale).id, total),
                credit(ledger_service.get_system_account("sales_revenue").id, total - tax),
                credit(ledger_service.get_system_account("tax_output").id, tax),
            ],
            transaction_date=sale.sale_date,
            reference_type=ReferenceType.SALE,
            reference_id=sale.id,
            description=f"Sale {sale.invoice_number}",
            user_id=user_id,
        )
    if total_cost > 0:
        ledger_service.post_entries(
            [
                debit(ledger_service.get_system_account("cost_of_goods_sold").id, total_cost),
                credit(ledger_service.get_system_account("inventory").id, total_cost),
            ],
            transaction_date=sale.sale_date,
            reference_type=ReferenceType.SALE,
            reference_id=sale.id,
            description=f"Cost of goods sold {sale.invoice_number}",
            user_id=user_id,
        )

    if sale.customer_id is None:
        # walk-in sales are settled on the spot
        sale.paid_amount = total
        sale.payment_status = "paid"
    db.session.flush()


def reverse_sale(sale: Sale, *, user_id: int | None = None) -> None:
    """Cancellation of an approved sale: put the stock back into the consumed lots and mirror the journal."""
    stock_service.reverse_movements(
        ReferenceType.SALE,
        sale.id,
        user_id=user_id,
        note=f"Cancellation of sale {sale.invoice_number}",
    )
    ledger_service.reverse_reference(
        ReferenceType.SALE,
        sale.id,
        user_id=user_id,
        description=f"Cancellation of sale {sale.invoice_number}",
    )


def apply_payment(sale: Sale, amount) -> Sale:
    """Record money received against a sale and recompute its payment status."""
    sale.paid_amount = to_money(sale.paid_amount) + to_money(amount)
    if sale.paid_amount >= to_money(sale.total_amount):
        sale.payment_status = "paid"
    elif sale.paid_amount > 0:
        sale.payment_status = "partial"
    else:
        sale.payment_status = "pending"
    return sale


def _transition(sale_id: int, to_status: str, *, user_id=None, reason=None) -> Sale:
    return lifecycle_service.run_transition(
        Sale,
        sale_id,
        to_status,
        user_id=user_id,
        reason=reason,
        post=lambda doc: post_sale(doc, user_id=user_id),
        reverse=lambda doc: reverse_sale(doc, user_id=user_id),
    )


def submit_sale(sale_id: int, *, user_id: int | None = None) -> Sale:
    return _transition(sale_id, lifecycle_service.PENDING, user_id=user_id)


def approve_sale(sale_id: int, *, user_id: int | None = None) -> Sale:
    return _transition(sale_id, lifecycle_service.APPROVED, user_id=user_id)


def complete_sale(sale_id: int, *, user_id: int | None = None) -> Sale:
    return _transition(sale_id, lifecycle_service.COMPLETED, user_id=user_id)


def cancel_sale(sale_id: int, *, user_id: int | None = None, reason: str | None = None) -> Sale:
    def _op():
        sale = lifecycle_service.load_for_update(Sale, sale_id)
        if any(r.status != lifecycle_service.CANCELLED for r in sale.returns):
            raise DocumentError(f"Sale {sale_id} has returns; cancel them first")
        return lifecycle_service.transition(
            sale,
            lifecycle_service.CANCELLED,
            user_id=user_id,
            reason=reason,
            reverse=lambda doc: reverse_sale(doc, user_id=user_id),
        )

    return run_in_unit_of_work(_op)


def process_sale(**kwargs) -> Sale:
    """Point-of-sale flow: create and complete a sale in one unit of work."""
    user_id = kwargs.get("user_id")

    def _op():
        sale = build_sale(**kwargs)
        return lifecycle_service.transition(
            sale,
            lifecycle_service.COMPLETED,
            user_id=user_id,
            post=lambda doc: post_sale(doc, user_id=user_id),
        )

    return run_in_unit_of_work(_op)
