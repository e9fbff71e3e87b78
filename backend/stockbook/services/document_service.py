# Overview: Document numbering and money/quantity arithmetic shared by the document handlers.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DocumentError
from ..models import DocumentSequence


MONEY_QUANT = Decimal("0.01")
QTY_QUANT = Decimal("0.001")

# document_type -> voucher prefix
DOCUMENT_PREFIXES = {
    "purchase": "PUR",
    "sale": "SAL",
    "purchase_return": "PR",
    "sale_return": "SR",
    "quotation": "QUO",
    "payment": "PAY",
    "receipt": "REC",
    "expense": "EXP",
    "bank_transaction": "BT",
}


class DocumentSequenceError(DocumentError):
    """Raised when document sequence operations fail."""
    code: str = "DOCUMENT_SEQUENCE"


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_qty(value) -> Decimal:
    if value is None:
        return Decimal("0.000")
    return Decimal(str(value)).quantize(QTY_QUANT, rounding=ROUND_HALF_UP)


def next_document_number(document_type: str, *, prefix: str | None = None, pad: int = 6) -> str:
    """
    Atomically allocate the next document number for a type ("PUR-000001").

    Runs inside the caller's unit of work: the UPDATE takes the sequence row
    lock, and a first-use insert race falls back to the UPDATE path inside a
    savepoint so the surrounding transaction survives.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    if prefix is None:
        prefix = DOCUMENT_PREFIXES.get(document_type)
    if not prefix:
        raise DocumentSequenceError(f"No prefix configured for document type '{document_type}'")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type)
            .scalar()
        )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current() - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current() - 1

    return f"{prefix}-{next_num:0{pad}d}"


def calculate_totals(lines, tax_rate=0, discount_amount=0) -> dict:
    """
    Compute document totals from line items.

    subtotal = sum(quantity * unit_price)
    tax      = subtotal * tax_rate / 100
    total    = subtotal + tax - discount

    Returns the totals plus the per-line total_price values in line order.
    """
    line_totals = []
    subtotal = Decimal("0")
    for line in lines:
        line_total = to_money(to_qty(line["quantity"]) * to_money(line["unit_price"]))
        line_totals.append(line_total)
        subtotal += line_total

    subtotal = to_money(subtotal)
    tax_amount = to_money(subtotal * Decimal(str(tax_rate or 0)) / Decimal("100"))
    discount = to_money(discount_amount)
    total = to_money(subtotal + tax_amount - discount)

    if total < 0:
        raise ValueError("discount_amount exceeds document value")

    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "discount_amount": discount,
        "total_amount": total,
        "line_totals": line_totals,
    }
