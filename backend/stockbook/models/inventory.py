from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z, to_iso_date


class StockLot(db.Model):
    """
    Atomic inventory unit: (warehouse, product, batch, expiry, cost) -> quantity.

    LIFECYCLE:
    - Created when a purchase, return or adjustment first introduces a batch
      into a warehouse.
    - Mutated only through services.stock_service (every mutation appends a
      StockMovement in the same DB transaction).
    - Never deleted. A consumed lot is driven to zero and kept for batch
      reporting.

    INVARIANT:
    quantity >= 0, except after an administrative adjustment that explicitly
    allows a negative result.

    CONCURRENCY:
    Rows are read with SELECT ... FOR UPDATE before mutation; version_id
    additionally detects lost updates on backends that ignore row locks.
    """
    __tablename__ = "stock_lots"
    __table_args__ = (
        db.Index("ix_stock_lots_warehouse_product", "warehouse_id", "product_id"),
        db.Index("ix_stock_lots_warehouse_product_batch", "warehouse_id", "product_id", "batch"),
        db.Index("ix_stock_lots_expiry", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    batch = db.Column(db.String(64), nullable=True)
    expiry_date = db.Column(db.Date, nullable=True)
    cost_price = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    warehouse = db.relationship("Warehouse", backref=db.backref("stock_lots", lazy=True))
    product = db.relationship("Product", backref=db.backref("stock_lots", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockLot id={self.id} warehouse_id={self.warehouse_id} product_id={self.product_id} "
            f"batch={self.batch!r} quantity={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "batch": self.batch,
            "expiry_date": to_iso_date(self.expiry_date),
            "cost_price": str(self.cost_price),
            "quantity": str(self.quantity),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only history of lot mutations.

    One row per lot touched by an adjustment; a multi-lot withdrawal writes
    one row per consumed lot. reference_type/reference_id name the document
    (see models.ledger.ReferenceType) that caused the movement.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity_delta = db.Column(db.Numeric(14, 3), nullable=False)
    balance_after = db.Column(db.Numeric(14, 3), nullable=False)
    unit_cost = db.Column(db.Numeric(14, 2), nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    stock_lot = db.relationship("StockLot", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_lot_id": self.stock_lot_id,
            "warehouse_id": self.warehouse_id,
            "product_id": self.product_id,
            "quantity_delta": str(self.quantity_delta),
            "balance_after": str(self.balance_after),
            "unit_cost": str(self.unit_cost) if self.unit_cost is not None else None,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
