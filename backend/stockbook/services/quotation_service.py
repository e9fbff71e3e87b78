# Overview: Quotations; offer lifecycle and one-time conversion into a posted sale.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..errors import DocumentError, InvalidTransitionError, QuotationConversionError, ReferentialGapError
from ..models import Product, Quotation, QuotationItem, Warehouse
from . import lifecycle_service, sales_service
from .concurrency import lock_for_update, run_in_unit_of_work
from .document_service import calculate_totals, next_document_number, to_money, to_qty
from stockbook.time_utils import parse_iso_date, today, utcnow


DRAFT = "draft"
SENT = "sent"
APPROVED = "approved"
REJECTED = "rejected"
EXPIRED = "expired"

QUOTATION_TRANSITIONS = {
    (DRAFT, SENT),
    (DRAFT, APPROVED),
    (SENT, APPROVED),
    (DRAFT, REJECTED),
    (SENT, REJECTED),
    (DRAFT, EXPIRED),
    (SENT, EXPIRED),
    (APPROVED, EXPIRED),
}


def is_expired(quotation: Quotation, as_of=None) -> bool:
    as_of = parse_iso_date(as_of) or today()
    return quotation.status == EXPIRED or (
        quotation.valid_until is not None and quotation.valid_until < as_of
    )


def can_be_converted(quotation: Quotation, as_of=None) -> bool:
    return (
        quotation.status == APPROVED
        and not is_expired(quotation, as_of)
        and quotation.converted_to_sale_id is None
    )


def create_quotation(
    *,
    warehouse_id: int,
    items: list[dict],
    customer_id: int | None = None,
    quotation_date=None,
    valid_until=None,
    tax_rate=0,
    discount_amount=0,
    notes: str | None = None,
    user_id: int | None = None,
) -> Quotation:
    if db.session.get(Warehouse, warehouse_id) is None:
        raise ReferentialGapError("warehouse", warehouse_id)
    if not items:
        raise DocumentError("At least one line item is required")
    for line in items:
        if db.session.get(Product, line.get("product_id")) is None:
            raise ReferentialGapError("product", line.get("product_id"))
        if to_qty(line.get("quantity")) <= 0:
            raise DocumentError("Line quantity must be positive")

    def _op():
        totals = calculate_totals(items, tax_rate, discount_amount)
        quotation = Quotation(
            quotation_number=next_document_number("quotation"),
            customer_id=customer_id,
            warehouse_id=warehouse_id,
            quotation_date=parse_iso_date(quotation_date) or today(),
            valid_until=parse_iso_date(valid_until),
            subtotal=totals["subtotal"],
            tax_amount=totals["tax_amount"],
            discount_amount=totals["discount_amount"],
            total_amount=totals["total_amount"],
            status=DRAFT,
            notes=notes,
            created_by_user_id=user_id,
        )
        for line, line_total in zip(items, totals["line_totals"]):
            quotation.items.append(
                QuotationItem(
                    product_id=line["product_id"],
                    quantity=to_qty(line["quantity"]),
                    unit_price=to_money(line["unit_price"]),
                    total_price=line_total,
                    batch=line.get("batch"),
                )
            )
        db.session.add(quotation)
        db.session.flush()
        return quotation

    return run_in_unit_of_work(_op)


def _set_status(quotation_id: int, to_status: str, *, user_id: int | None = None) -> Quotation:
    def _op():
        quotation = lock_for_update(Quotation.query.filter_by(id=quotation_id)).first()
        if quotation is None:
            raise ReferentialGapError("quotation", quotation_id)
        if (quotation.status, to_status) not in QUOTATION_TRANSITIONS or quotation.converted_to_sale_id is not None:
            raise InvalidTransitionError("quotation", quotation_id, quotation.status, to_status)
        quotation.status = to_status
        if to_status == APPROVED:
            quotation.approved_by_user_id = user_id
        return quotation

    return run_in_unit_of_work(_op)


def send_quotation(quotation_id: int, *, user_id: int | None = None) -> Quotation:
    return _set_status(quotation_id, SENT, user_id=user_id)


def approve_quotation(quotation_id: int, *, user_id: int | None = None) -> Quotation:
    return _set_status(quotation_id, APPROVED, user_id=user_id)


def reject_quotation(quotation_id: int, *, user_id: int | None = None) -> Quotation:
    return _set_status(quotation_id, REJECTED, user_id=user_id)


def expire_quotations(as_of=None) -> int:
    """Mark unconverted quotations past valid_until as expired. Returns the number updated."""
    as_of = parse_iso_date(as_of) or today()

    def _op():
        return (
            Quotation.query
            .filter(
                Quotation.status.in_((DRAFT, SENT, APPROVED)),
                Quotation.converted_to_sale_id.is_(None),
                Quotation.valid_until.isnot(None),
                Quotation.valid_until < as_of,
            )
            .update({"status": EXPIRED}, synchronize_session=False)
        )

    return run_in_unit_of_work(_op)


def convert_to_sale(
    quotation_id: int,
    *,
    user_id: int | None = None,
    sale_date=None,
    payment_mode: str | None = None,
    post: bool = True,
):
    """
    Turn an approved, unexpired quotation into a Sale, exactly once.

    The sale inherits the quotation's lines and totals and, with post=True,
    runs the sale handler (stock withdrawal + journal) in the same unit of
    work. Any failure, e.g. insufficient stock, leaves the quotation
    unconverted.

    The one-time guard is a conditional UPDATE on converted_at IS NULL.
    """
    def _op():
        quotation = lock_for_update(Quotation.query.filter_by(id=quotation_id)).first()
        if quotation is None:
            raise ReferentialGapError("quotation", quotation_id)
        if quotation.converted_to_sale_id is not None:
            raise QuotationConversionError(
                f"Quotation {quotation.quotation_number} was already converted to sale {quotation.converted_to_sale_id}"
            )
        if quotation.status != APPROVED:
            raise QuotationConversionError(
                f"Quotation {quotation.quotation_number} must be approved before conversion (status: {quotation.status})"
            )
        if is_expired(quotation):
            raise QuotationConversionError(f"Quotation {quotation.quotation_number} expired on {quotation.valid_until}")

        now = utcnow()
        claimed = db.session.execute(
            update(Quotation)
            .where(Quotation.id == quotation.id, Quotation.converted_at.is_(None))
            .values(converted_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise QuotationConversionError(f"Quotation {quotation.quotation_number} is already being converted")

        sale = sales_service.build_sale(
            warehouse_id=quotation.warehouse_id,
            customer_id=quotation.customer_id,
            sale_date=sale_date,
            payment_mode=payment_mode,
            items=[
                {
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "batch": item.batch,
                }
                for item in quotation.items
            ],
            notes=f"Converted from quotation {quotation.quotation_number}",
            user_id=user_id,
        )
        # keep the quoted tax and discount rather than recomputing them
        sale.tax_amount = quotation.tax_amount
        sale.discount_amount = quotation.discount_amount
        sale.total_amount = quotation.total_amount
        db.session.flush()

        if post:
            lifecycle_service.transition(
                sale,
                lifecycle_service.COMPLETED,
                user_id=user_id,
                post=lambda doc: sales_service.post_sale(doc, user_id=user_id),
            )

        quotation.converted_at = now
        quotation.converted_to_sale_id = sale.id
        return sale

    return run_in_unit_of_work(_op)
