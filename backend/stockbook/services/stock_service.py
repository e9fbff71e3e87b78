# Overview: Stock ledger; lot-level quantity mutations, allocation policies and stock read queries.

"""
Stockbook Stock Ledger

INVARIANTS:
- Every lot mutation goes through adjust_stock() (or the helpers built on it)
  and appends one StockMovement per lot touched, in the caller's transaction.
- A lot never goes negative unless the caller passes allow_negative=True
  (administrative adjustments only). Insufficient stock is detected BEFORE
  any lot is touched, so a rejected withdrawal leaves no partial state.
- Lots are read with SELECT ... FOR UPDATE before mutation.
- After every successful adjustment the registered stock observers are
  invoked synchronously with (old, new) lot snapshots. Observer failures are
  logged and never propagate into the stock transaction.

Nothing in this module commits. Document handlers own the unit of work;
the thin wrappers at the bottom (transfer_stock_now, adjust_stock_now,
set_stock_level_now) are the standalone entry points used by routes and CLI.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InsufficientStockError, ReferentialGapError
from ..models import Product, Warehouse, StockLot, StockMovement, ReferenceType
from .concurrency import lock_for_update, run_in_unit_of_work
from .document_service import to_money, to_qty
from stockbook.time_utils import parse_iso_date


ZERO = Decimal("0.000")


# =============================================================================
# SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class LotState:
    """
    Immutable view of a lot (plus its product aggregate) at one point in time.

    product_total is the product's quantity summed over every lot in every
    warehouse at that moment.
    """
    lot_id: int
    warehouse_id: int
    warehouse_name: str
    product_id: int
    product_name: str
    product_active: bool
    min_stock: Decimal
    batch: str | None
    expiry_date: date | None
    cost_price: Decimal
    quantity: Decimal
    product_total: Decimal


@dataclass
class LotChange:
    """Result of one lot mutation. old is None when the lot was created by it."""
    lot: StockLot
    old: LotState | None
    new: LotState
    delta: Decimal
    movement: StockMovement | None = None


@dataclass
class TransferResult:
    source: list = field(default_factory=list)
    destination: list = field(default_factory=list)


def _snapshot(lot: StockLot, product: Product, warehouse: Warehouse, *, quantity, product_total) -> LotState:
    return LotState(
        lot_id=lot.id,
        warehouse_id=warehouse.id,
        warehouse_name=warehouse.name,
        product_id=product.id,
        product_name=product.name,
        product_active=bool(product.is_active),
        min_stock=to_qty(product.min_stock),
        batch=lot.batch,
        expiry_date=lot.expiry_date,
        cost_price=to_money(lot.cost_price),
        quantity=to_qty(quantity),
        product_total=to_qty(product_total),
    )


# =============================================================================
# OBSERVERS
# =============================================================================

# callables receiving list[LotChange]; see alert_service.dispatch_stock_changes
STOCK_OBSERVERS: list = []


def register_stock_observer(observer) -> None:
    if observer not in STOCK_OBSERVERS:
        STOCK_OBSERVERS.append(observer)


def _notify_observers(changes: list[LotChange]) -> None:
    if not changes:
        return
    for observer in list(STOCK_OBSERVERS):
        try:
            observer(changes)
        except Exception:
            current_app.logger.exception(
                "Stock observer %s failed for lots %s",
                getattr(observer, "__name__", observer),
                [c.lot.id for c in changes],
            )


# =============================================================================
# ALLOCATION POLICIES
# =============================================================================

def _fefo_order(query):
    """Earliest expiry first; lots without expiry last; then oldest lot."""
    return query.order_by(
        StockLot.expiry_date.is_(None),
        StockLot.expiry_date.asc(),
        StockLot.created_at.asc(),
        StockLot.id.asc(),
    )


def _fifo_order(query):
    """Oldest lot first, ignoring expiry."""
    return query.order_by(StockLot.created_at.asc(), StockLot.id.asc())


ALLOCATION_POLICIES = {
    "fefo": _fefo_order,
    "fifo": _fifo_order,
}


def register_allocation_policy(name: str, order_func) -> None:
    """Register a withdrawal strategy: a function ordering a StockLot query."""
    ALLOCATION_POLICIES[name] = order_func


def get_allocation_policy(name: str | None = None):
    if name is None:
        name = current_app.config.get("STOCK_ALLOCATION_POLICY", "fefo")
    try:
        return ALLOCATION_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown stock allocation policy: {name!r}") from None


# =============================================================================
# CORE MUTATION
# =============================================================================

def _require_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ReferentialGapError("product", product_id)
    return product


def _require_warehouse(warehouse_id: int) -> Warehouse:
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise ReferentialGapError("warehouse", warehouse_id)
    return warehouse


def get_product_total(product_id: int) -> Decimal:
    """Quantity of a product summed over every lot in every warehouse."""
    total = (
        db.session.query(func.coalesce(func.sum(StockLot.quantity), 0))
        .filter(StockLot.product_id == product_id)
        .scalar()
    )
    return to_qty(total)


def _reference_value(reference_type):
    if reference_type is None:
        return None
    return ReferenceType.coerce(reference_type).value


def adjust_stock(
    *,
    warehouse_id: int,
    product_id: int,
    quantity_delta,
    batch: str | None = None,
    expiry_date=None,
    cost_price=None,
    lot_id: int | None = None,
    allow_negative: bool = False,
    policy: str | None = None,
    reference_type=None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> list[LotChange]:
    """
    Apply a signed quantity delta to the stock of (warehouse, product).

    Positive delta:
        Adds to the lot matching (warehouse, product, batch, expiry) or to
        lot_id when given; creates the lot when none matches. A cost_price on
        an existing lot is folded in as a weighted average.

    Negative delta:
        Withdraws from lot_id, from the lots of the pinned batch, or (no batch)
        from every lot of the pair in allocation-policy order, lot by lot.
        Raises InsufficientStockError before touching anything when the
        candidates hold less than requested, unless allow_negative is set.

    Returns one LotChange per lot touched, in mutation order. Does not commit.
    """
    delta = to_qty(quantity_delta)
    if delta == 0:
        raise ValueError("quantity_delta must be non-zero")

    warehouse = _require_warehouse(warehouse_id)
    product = _require_product(product_id)
    expiry = parse_iso_date(expiry_date)
    ref_type = _reference_value(reference_type)

    total_before = get_product_total(product_id)

    if delta > 0:
        changes = [
            _receive_into_lot(
                warehouse, product, delta,
                batch=batch, expiry=expiry, cost_price=cost_price, lot_id=lot_id,
                total_before=total_before,
            )
        ]
    else:
        changes = _withdraw(
            warehouse, product, -delta,
            batch=batch, expiry=expiry, lot_id=lot_id,
            allow_negative=allow_negative, policy=policy,
            total_before=total_before,
        )

    for change in changes:
        change.movement = StockMovement(
            stock_lot_id=change.lot.id,
            warehouse_id=warehouse.id,
            product_id=product.id,
            quantity_delta=change.delta,
            balance_after=change.new.quantity,
            unit_cost=change.lot.cost_price,
            reference_type=ref_type,
            reference_id=reference_id,
            note=note,
            created_by_user_id=user_id,
        )
        db.session.add(change.movement)
    db.session.flush()

    _notify_observers(changes)
    return changes


def _receive_into_lot(warehouse, product, qty, *, batch, expiry, cost_price, lot_id, total_before) -> LotChange:
    if lot_id is not None:
        lot = lock_for_update(StockLot.query.filter_by(id=lot_id)).first()
        if lot is None:
            raise ReferentialGapError("stock_lot", lot_id)
    else:
        lot = lock_for_update(
            StockLot.query.filter(
                StockLot.warehouse_id == warehouse.id,
                StockLot.product_id == product.id,
                StockLot.batch == batch,
                StockLot.expiry_date == expiry,
            ).order_by(StockLot.id.asc())
        ).first()

    total_after = total_before + qty

    if lot is None:
        lot = StockLot(
            warehouse_id=warehouse.id,
            product_id=product.id,
            batch=batch,
            expiry_date=expiry,
            cost_price=to_money(cost_price if cost_price is not None else product.cost_price),
            quantity=qty,
        )
        db.session.add(lot)
        db.session.flush()
        new = _snapshot(lot, product, warehouse, quantity=qty, product_total=total_after)
        return LotChange(lot=lot, old=None, new=new, delta=qty)

    old_qty = to_qty(lot.quantity)
    old = _snapshot(lot, product, warehouse, quantity=old_qty, product_total=total_before)

    if cost_price is not None:
        incoming = to_money(cost_price)
        if old_qty > 0:
            lot.cost_price = to_money((old_qty * to_money(lot.cost_price) + qty * incoming) / (old_qty + qty))
        else:
            lot.cost_price = incoming

    lot.quantity = old_qty + qty
    db.session.flush()
    new = _snapshot(lot, product, warehouse, quantity=lot.quantity, product_total=total_after)
    return LotChange(lot=lot, old=old, new=new, delta=qty)


def _withdraw(warehouse, product, qty, *, batch, expiry, lot_id, allow_negative, policy, total_before) -> list[LotChange]:
    if lot_id is not None:
        query = StockLot.query.filter_by(id=lot_id, warehouse_id=warehouse.id, product_id=product.id)
    else:
        query = StockLot.query.filter(
            StockLot.warehouse_id == warehouse.id,
            StockLot.product_id == product.id,
        )
        if batch is not None:
            query = query.filter(StockLot.batch == batch)
        if expiry is not None:
            query = query.filter(StockLot.expiry_date == expiry)

    candidates = lock_for_update(get_allocation_policy(policy)(query)).all()
    available = sum((to_qty(lot.quantity) for lot in candidates if lot.quantity > 0), ZERO)

    if qty > available and not allow_negative:
        raise InsufficientStockError(
            product.id,
            qty,
            available,
            warehouse_id=warehouse.id,
            batch=batch,
            product_name=product.name,
        )

    changes = []
    remaining = qty
    running_total = total_before

    for lot in candidates:
        if remaining <= 0:
            break
        lot_qty = to_qty(lot.quantity)
        if lot_qty <= 0:
            continue
        take = min(lot_qty, remaining)
        changes.append(_apply_withdrawal(lot, product, warehouse, take, running_total))
        running_total -= take
        remaining -= take

    if remaining > 0:
        # allow_negative: the shortfall lands on the first candidate lot
        if candidates:
            lot = candidates[0]
        else:
            lot = StockLot(
                warehouse_id=warehouse.id,
                product_id=product.id,
                batch=batch,
                expiry_date=expiry,
                cost_price=to_money(product.cost_price),
                quantity=ZERO,
            )
            db.session.add(lot)
            db.session.flush()
        changes.append(_apply_withdrawal(lot, product, warehouse, remaining, running_total))

    return changes


def _apply_withdrawal(lot, product, warehouse, take, total_before) -> LotChange:
    old_qty = to_qty(lot.quantity)
    old = _snapshot(lot, product, warehouse, quantity=old_qty, product_total=total_before)
    lot.quantity = old_qty - take
    db.session.flush()
    new = _snapshot(lot, product, warehouse, quantity=lot.quantity, product_total=total_before - take)
    return LotChange(lot=lot, old=old, new=new, delta=-take)


# =============================================================================
# COMPOSITE OPERATIONS
# =============================================================================

def transfer_stock(
    *,
    from_warehouse_id: int,
    to_warehouse_id: int,
    product_id: int,
    quantity,
    batch: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> TransferResult:
    """
    Move stock between warehouses inside the caller's transaction.

    Each consumed source lot lands in a destination lot with the same batch,
    expiry and cost. If the source leg raises, nothing is applied; if the
    destination leg raises, the caller's rollback undoes the source leg.
    """
    qty = to_qty(quantity)
    if qty <= 0:
        raise ValueError("quantity must be positive")
    if from_warehouse_id == to_warehouse_id:
        raise ValueError("source and destination warehouses must differ")
    _require_warehouse(to_warehouse_id)

    result = TransferResult()
    result.source = adjust_stock(
        warehouse_id=from_warehouse_id,
        product_id=product_id,
        quantity_delta=-qty,
        batch=batch,
        reference_type=ReferenceType.STOCK_TRANSFER,
        reference_id=reference_id,
        note=note,
        user_id=user_id,
    )
    for change in result.source:
        result.destination.extend(
            adjust_stock(
                warehouse_id=to_warehouse_id,
                product_id=product_id,
                quantity_delta=-change.delta,
                batch=change.lot.batch,
                expiry_date=change.lot.expiry_date,
                cost_price=change.lot.cost_price,
                reference_type=ReferenceType.STOCK_TRANSFER,
                reference_id=reference_id,
                note=note,
                user_id=user_id,
            )
        )
    return result


def set_stock_level(
    *,
    warehouse_id: int,
    product_id: int,
    quantity,
    batch: str | None = None,
    expiry_date=None,
    note: str | None = None,
    user_id: int | None = None,
) -> list[LotChange]:
    """
    Administrative correction: force the (warehouse, product, batch) quantity
    to an absolute value. The difference is applied as a stock_adjustment
    movement, so history stays append-only.

    Only the lots counted towards the current level are touched: batch=None
    means the unbatched lots, never other batches of the product.
    """
    target = to_qty(quantity)
    expiry = parse_iso_date(expiry_date)
    query = StockLot.query.filter(
        StockLot.warehouse_id == warehouse_id,
        StockLot.product_id == product_id,
        StockLot.batch == batch,
    )
    if expiry is not None:
        query = query.filter(StockLot.expiry_date == expiry)
    lots = lock_for_update(get_allocation_policy()(query)).all()
    current = sum((to_qty(lot.quantity) for lot in lots), ZERO)
    delta = target - current
    if delta == 0:
        return []

    common = dict(
        warehouse_id=warehouse_id,
        product_id=product_id,
        allow_negative=True,
        reference_type=ReferenceType.STOCK_ADJUSTMENT,
        note=note or "Manual stock level correction",
        user_id=user_id,
    )
    if delta > 0:
        return adjust_stock(
            quantity_delta=delta,
            batch=batch,
            expiry_date=expiry,
            lot_id=lots[0].id if lots else None,
            **common,
        )
    if not lots:
        product = _require_product(product_id)
        lot = StockLot(
            warehouse_id=_require_warehouse(warehouse_id).id,
            product_id=product.id,
            batch=batch,
            expiry_date=expiry,
            cost_price=to_money(product.cost_price),
            quantity=ZERO,
        )
        db.session.add(lot)
        db.session.flush()
        lots = [lot]

    changes = []
    remaining = -delta
    for lot in lots:
        take = min(to_qty(lot.quantity), remaining)
        if take <= 0:
            continue
        changes.extend(adjust_stock(quantity_delta=-take, lot_id=lot.id, **common))
        remaining -= take
        if remaining == 0:
            return changes
    # below zero: the rest lands on the first lot
    changes.extend(adjust_stock(quantity_delta=-remaining, lot_id=lots[0].id, **common))
    return changes


def set_lot_expiry(lot_id: int, expiry_date, *, user_id: int | None = None) -> LotChange:
    """Correct a lot's expiry date. Observers see the change like any other mutation."""
    lot = lock_for_update(StockLot.query.filter_by(id=lot_id)).first()
    if lot is None:
        raise ReferentialGapError("stock_lot", lot_id)
    product = _require_product(lot.product_id)
    warehouse = _require_warehouse(lot.warehouse_id)
    total = get_product_total(lot.product_id)

    old = _snapshot(lot, product, warehouse, quantity=lot.quantity, product_total=total)
    lot.expiry_date = parse_iso_date(expiry_date)
    db.session.flush()
    new = _snapshot(lot, product, warehouse, quantity=lot.quantity, product_total=total)

    change = LotChange(lot=lot, old=old, new=new, delta=ZERO)
    _notify_observers([change])
    return change


def reverse_movements(reference_type, reference_id: int, *, user_id: int | None = None, note: str | None = None) -> list[LotChange]:
    """
    Write compensating movements for every movement of a document, newest first,
    against the exact lots the document touched.

    Reversing a receipt whose stock has since been consumed raises
    InsufficientStockError.
    """
    ref_type = _reference_value(reference_type)
    movements = (
        StockMovement.query
        .filter_by(reference_type=ref_type, reference_id=reference_id)
        .order_by(StockMovement.id.desc())
        .all()
    )
    changes = []
    for movement in movements:
        changes.extend(
            adjust_stock(
                warehouse_id=movement.warehouse_id,
                product_id=movement.product_id,
                quantity_delta=-to_qty(movement.quantity_delta),
                lot_id=movement.stock_lot_id,
                reference_type=ref_type,
                reference_id=reference_id,
                note=note or f"Reversal of movement {movement.id}",
                user_id=user_id,
            )
        )
    return changes


# =============================================================================
# READ QUERIES
# =============================================================================

def get_stock_levels(
    *,
    warehouse_id: int | None = None,
    product_id: int | None = None,
    batch: str | None = None,
    include_empty: bool = False,
) -> list[StockLot]:
    query = StockLot.query
    if warehouse_id is not None:
        query = query.filter(StockLot.warehouse_id == warehouse_id)
    if product_id is not None:
        query = query.filter(StockLot.product_id == product_id)
    if batch is not None:
        query = query.filter(StockLot.batch == batch)
    if not include_empty:
        query = query.filter(StockLot.quantity != 0)
    return query.order_by(StockLot.warehouse_id, StockLot.product_id, StockLot.id).all()


def get_product_stock(product_id: int) -> list[dict]:
    """Per-warehouse totals for one product."""
    rows = (
        db.session.query(
            Warehouse.id,
            Warehouse.name,
            func.coalesce(func.sum(StockLot.quantity), 0),
        )
        .join(StockLot, StockLot.warehouse_id == Warehouse.id)
        .filter(StockLot.product_id == product_id)
        .group_by(Warehouse.id, Warehouse.name)
        .order_by(Warehouse.name)
        .all()
    )
    return [
        {"warehouse_id": wid, "warehouse_name": name, "quantity": str(to_qty(qty))}
        for wid, name, qty in rows
    ]


def get_low_stock_products() -> list[dict]:
    """Active products with a configured min_stock whose total quantity is at or below it."""
    totals = (
        db.session.query(
            StockLot.product_id,
            func.coalesce(func.sum(StockLot.quantity), 0).label("total"),
        )
        .group_by(StockLot.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, func.coalesce(totals.c.total, 0))
        .outerjoin(totals, totals.c.product_id == Product.id)
        .filter(Product.is_active.is_(True), Product.min_stock > 0)
        .order_by(Product.id)
        .all()
    )
    result = []
    for product, total in rows:
        total = to_qty(total)
        if total <= to_qty(product.min_stock):
            result.append({
                "product_id": product.id,
                "sku": product.sku,
                "name": product.name,
                "total_quantity": str(total),
                "min_stock": str(to_qty(product.min_stock)),
            })
    return result


def list_stock_movements(
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    reference_type=None,
    reference_id: int | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    query = StockMovement.query
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if warehouse_id is not None:
        query = query.filter(StockMovement.warehouse_id == warehouse_id)
    if reference_type is not None:
        query = query.filter(StockMovement.reference_type == _reference_value(reference_type))
    if reference_id is not None:
        query = query.filter(StockMovement.reference_id == reference_id)
    limit = max(1, min(int(limit), 500))
    return query.order_by(StockMovement.id.desc()).limit(limit).all()


# =============================================================================
# STANDALONE ENTRY POINTS (own unit of work)
# =============================================================================

def transfer_stock_now(**kwargs) -> TransferResult:
    return run_in_unit_of_work(lambda: transfer_stock(**kwargs))


def adjust_stock_now(**kwargs) -> list[LotChange]:
    kwargs.setdefault("reference_type", ReferenceType.STOCK_ADJUSTMENT)
    return run_in_unit_of_work(lambda: adjust_stock(**kwargs))


def set_stock_level_now(**kwargs) -> list[LotChange]:
    return run_in_unit_of_work(lambda: set_stock_level(**kwargs))
