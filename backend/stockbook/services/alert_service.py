# Overview: Alert observer; low-stock and expiry decisions on stock changes, scheduled sweeps and their advisory lock.

"""
Stockbook Alert Observer

DECISION vs PERSISTENCE:
- Hooks (low_stock_hook, expiry_hook) are pure functions from
  (old LotState | None, new LotState) to a list of AlertIntent. They never
  touch the database.
- dispatch_stock_changes() runs the hooks for a batch of lot changes and
  persists the resulting intents through notification_service, fanned out
  to every active user, deduplicated per (user, dedup_key).

FAILURE BOUNDARY:
Persistence runs inside a SAVEPOINT in the stock mutation's transaction.
A failing write is rolled back to the savepoint and logged; the stock and
ledger work around it carries on and commits.

SWEEPS:
run_alert_sweep() and run_notification_cleanup() take a lease in
sweep_locks first, so at most one instance of each sweep runs at a time.
A second caller gets {"skipped": True} instead of waiting.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StockLot, SweepLock, Warehouse
from . import notification_service, stock_service
from .concurrency import run_in_unit_of_work
from .document_service import to_qty
from stockbook.time_utils import today, utcnow


LOW_STOCK = "low_stock"
EXPIRED_PRODUCT = "expired_product"

ALERT_SWEEP = "alert_sweep"
NOTIFICATION_CLEANUP = "notification_cleanup"


@dataclass(frozen=True)
class AlertIntent:
    type: str
    dedup_key: str
    title: str
    message: str
    data: dict = field(default_factory=dict)


def low_stock_key(product_id: int) -> str:
    return f"{LOW_STOCK}:product:{product_id}"


def expired_key(lot_id: int) -> str:
    return f"{EXPIRED_PRODUCT}:lot:{lot_id}"


def low_stock_intent(*, product_id: int, product_name: str, current_stock, threshold) -> AlertIntent:
    current_stock = to_qty(current_stock)
    threshold = to_qty(threshold)
    return AlertIntent(
        type=LOW_STOCK,
        dedup_key=low_stock_key(product_id),
        title="Low Stock Alert",
        message=f"{product_name} is running low. Current stock: {current_stock}, Threshold: {threshold}",
        data={
            "product_id": product_id,
            "product_name": product_name,
            "current_stock": str(current_stock),
            "threshold": str(threshold),
            "severity": "warning",
        },
    )


def expired_intent(
    *,
    lot_id: int,
    product_id: int,
    product_name: str,
    batch: str | None,
    expiry_date: date,
    quantity,
    warehouse_name: str,
    as_of: date,
) -> AlertIntent:
    days_expired = (as_of - expiry_date).days
    quantity = to_qty(quantity)
    return AlertIntent(
        type=EXPIRED_PRODUCT,
        dedup_key=expired_key(lot_id),
        title="Expired Product Alert",
        message=(
            f"{product_name} (Batch: {batch or '-'}) expired {days_expired} day(s) ago on "
            f"{expiry_date.isoformat()} in {warehouse_name}. Quantity: {quantity}"
        ),
        data={
            "stock_id": lot_id,
            "product_id": product_id,
            "product_name": product_name,
            "batch": batch,
            "expiry_date": expiry_date.isoformat(),
            "qty": str(quantity),
            "warehouse_name": warehouse_name,
            "days_expired": days_expired,
            "severity": "warning",
        },
    )


# =============================================================================
# HOOKS (pure)
# =============================================================================

def low_stock_hook(old, new, *, as_of: date | None = None) -> list[AlertIntent]:
    """
    Product total at or below min_stock after a quantity change.

    A min_stock of zero means no threshold is configured for the product.
    """
    if not new.product_active or new.min_stock <= 0:
        return []
    if old is not None and old.product_total == new.product_total:
        return []
    if new.product_total > new.min_stock:
        return []
    return [
        low_stock_intent(
            product_id=new.product_id,
            product_name=new.product_name,
            current_stock=new.product_total,
            threshold=new.min_stock,
        )
    ]


def expiry_hook(old, new, *, as_of: date | None = None) -> list[AlertIntent]:
    """Lot past its expiry date that still holds stock."""
    as_of = as_of or today()
    if not new.product_active or new.expiry_date is None:
        return []
    if new.quantity <= 0 or new.expiry_date >= as_of:
        return []
    return [
        expired_intent(
            lot_id=new.lot_id,
            product_id=new.product_id,
            product_name=new.product_name,
            batch=new.batch,
            expiry_date=new.expiry_date,
            quantity=new.quantity,
            warehouse_name=new.warehouse_name,
            as_of=as_of,
        )
    ]


STOCK_HOOKS = [low_stock_hook, expiry_hook]


def evaluate_hooks(changes, *, as_of: date | None = None) -> list[AlertIntent]:
    """Run every hook over every change. Later intents for the same key replace earlier ones."""
    intents: dict[str, AlertIntent] = {}
    for change in changes:
        for hook in STOCK_HOOKS:
            for intent in hook(change.old, change.new, as_of=as_of):
                intents[intent.dedup_key] = intent
    return list(intents.values())


# =============================================================================
# PERSISTENCE
# =============================================================================

def persist_intent(intent: AlertIntent) -> int:
    return notification_service.notify_active_users(
        type=intent.type,
        title=intent.title,
        message=intent.message,
        data=intent.data,
        dedup_key=intent.dedup_key,
    )


def dispatch_stock_changes(changes) -> int:
    """
    Stock observer: evaluate hooks and persist intents best-effort.

    Returns the number of notifications inserted.
    """
    created = 0
    for intent in evaluate_hooks(changes):
        try:
            with db.session.begin_nested():
                created += persist_intent(intent)
        except Exception:
            current_app.logger.exception("Failed to persist %s alert %s", intent.type, intent.dedup_key)
    return created


stock_service.register_stock_observer(dispatch_stock_changes)


# =============================================================================
# SWEEP LOCK
# =============================================================================

def acquire_sweep_lock(name: str, *, lease_seconds: int | None = None) -> str | None:
    """
    Take the named sweep lease. Returns the holder token, or None when another
    holder's lease has not expired yet. Commits so other processes see it.
    """
    if lease_seconds is None:
        lease_seconds = current_app.config.get("ALERT_SWEEP_LOCK_SECONDS", 900)
    holder = uuid.uuid4().hex
    now = utcnow()

    if db.session.get(SweepLock, name) is None:
        try:
            with db.session.begin_nested():
                db.session.add(SweepLock(name=name))
        except IntegrityError:
            pass  # another process created the row first

    result = db.session.execute(
        update(SweepLock)
        .where(
            SweepLock.name == name,
            or_(SweepLock.locked_until.is_(None), SweepLock.locked_until < now),
        )
        .values(holder=holder, locked_until=now + timedelta(seconds=lease_seconds))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return holder if result.rowcount == 1 else None


def release_sweep_lock(name: str, holder: str) -> bool:
    result = db.session.execute(
        update(SweepLock)
        .where(SweepLock.name == name, SweepLock.holder == holder)
        .values(holder=None, locked_until=None, last_run_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


# =============================================================================
# SWEEPS
# =============================================================================

def scan_low_stock() -> tuple[int, int]:
    """Returns (products at or below threshold, notifications inserted)."""
    products = stock_service.get_low_stock_products()
    created = 0
    for row in products:
        created += persist_intent(
            low_stock_intent(
                product_id=row["product_id"],
                product_name=row["name"],
                current_stock=row["total_quantity"],
                threshold=row["min_stock"],
            )
        )
    return len(products), created


def scan_expired(as_of: date | None = None) -> tuple[int, int]:
    """Returns (expired lots still holding stock, notifications inserted)."""
    as_of = as_of or today()
    rows = (
        db.session.query(StockLot, Product, Warehouse)
        .join(Product, Product.id == StockLot.product_id)
        .join(Warehouse, Warehouse.id == StockLot.warehouse_id)
        .filter(
            Product.is_active.is_(True),
            StockLot.expiry_date.isnot(None),
            StockLot.expiry_date < as_of,
            StockLot.quantity > 0,
        )
        .order_by(StockLot.expiry_date.asc(), StockLot.id.asc())
        .all()
    )
    created = 0
    for lot, product, warehouse in rows:
        created += persist_intent(
            expired_intent(
                lot_id=lot.id,
                product_id=product.id,
                product_name=product.name,
                batch=lot.batch,
                expiry_date=lot.expiry_date,
                quantity=lot.quantity,
                warehouse_name=warehouse.name,
                as_of=as_of,
            )
        )
    return len(rows), created


def run_alert_sweep(*, as_of: date | None = None) -> dict:
    """
    Periodic low-stock and expiry scan. Idempotent: a second run over the same
    state inserts nothing because unread alerts are refreshed in place.
    """
    holder = acquire_sweep_lock(ALERT_SWEEP)
    if holder is None:
        current_app.logger.info("Alert sweep skipped: another sweep holds the lock")
        return {"skipped": True}

    try:
        def _op():
            low_products, low_created = scan_low_stock()
            expired_lots, expired_created = scan_expired(as_of)
            return {
                "skipped": False,
                "low_stock_products": low_products,
                "low_stock_notifications": low_created,
                "expired_lots": expired_lots,
                "expired_notifications": expired_created,
            }

        result = run_in_unit_of_work(_op)
    finally:
        release_sweep_lock(ALERT_SWEEP, holder)

    current_app.logger.info(
        "Alert sweep: %s low-stock products (%s new notifications), %s expired lots (%s new notifications)",
        result["low_stock_products"], result["low_stock_notifications"],
        result["expired_lots"], result["expired_notifications"],
    )
    return result


def run_notification_cleanup(*, retention_days: int | None = None, include_unread: bool = False) -> dict:
    """Retention cleanup of notifications older than retention_days (read ones only by default)."""
    if retention_days is None:
        retention_days = current_app.config.get("NOTIFICATION_RETENTION_DAYS", 30)

    holder = acquire_sweep_lock(NOTIFICATION_CLEANUP)
    if holder is None:
        current_app.logger.info("Notification cleanup skipped: another run holds the lock")
        return {"skipped": True, "deleted": 0}

    try:
        deleted = run_in_unit_of_work(
            lambda: notification_service.cleanup_older_than(retention_days, read_only=not include_unread)
        )
    finally:
        release_sweep_lock(NOTIFICATION_CLEANUP, holder)

    current_app.logger.info("Notification cleanup: deleted %s notifications older than %s days", deleted, retention_days)
    return {"skipped": False, "deleted": deleted, "retention_days": retention_days}
