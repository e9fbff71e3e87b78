# Overview: Flask API routes for stock levels, movements, transfers and adjustments.

"""
Stock routes.

- GET  /api/stock                 lot-level quantities (filters: warehouse_id, product_id, batch)
- GET  /api/stock/low             products at or below min_stock
- GET  /api/stock/movements       append-only movement history
- POST /api/stock/transfer        move quantity between warehouses
- POST /api/stock/adjust          signed delta against a (warehouse, product, batch)
- POST /api/stock/set-level       administrative absolute correction

The acting user is read from the X-User-Id header and recorded on movements
for the audit trail only.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import StockbookError
from ..services import stock_service


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _acting_user_id():
    return request.headers.get("X-User-Id", type=int)


def _change_dict(change) -> dict:
    return {
        "lot": change.lot.to_dict(),
        "delta": str(change.delta),
        "movement_id": change.movement.id if change.movement is not None else None,
    }


@stock_bp.get("")
def list_stock_route():
    lots = stock_service.get_stock_levels(
        warehouse_id=request.args.get("warehouse_id", type=int),
        product_id=request.args.get("product_id", type=int),
        batch=request.args.get("batch"),
        include_empty=request.args.get("include_empty", "false").lower() == "true",
    )
    return jsonify({"items": [lot.to_dict() for lot in lots]}), 200


@stock_bp.get("/low")
def low_stock_route():
    return jsonify({"items": stock_service.get_low_stock_products()}), 200


@stock_bp.get("/movements")
def list_movements_route():
    limit = request.args.get("limit", default=100, type=int)
    try:
        movements = stock_service.list_stock_movements(
            product_id=request.args.get("product_id", type=int),
            warehouse_id=request.args.get("warehouse_id", type=int),
            reference_type=request.args.get("reference_type"),
            reference_id=request.args.get("reference_id", type=int),
            limit=limit,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": [m.to_dict() for m in movements], "limit": limit}), 200


@stock_bp.post("/transfer")
def transfer_stock_route():
    """
    Body: {from_warehouse_id, to_warehouse_id, product_id, quantity, batch?, note?}

    Error responses:
        404: warehouse or product not found
        409: insufficient stock at the source
        400: invalid input
    """
    payload = request.get_json(silent=True) or {}
    missing = [f for f in ("from_warehouse_id", "to_warehouse_id", "product_id", "quantity") if payload.get(f) is None]
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    try:
        result = stock_service.transfer_stock_now(
            from_warehouse_id=int(payload["from_warehouse_id"]),
            to_warehouse_id=int(payload["to_warehouse_id"]),
            product_id=int(payload["product_id"]),
            quantity=payload["quantity"],
            batch=payload.get("batch"),
            note=payload.get("note"),
            user_id=_acting_user_id(),
        )
    except StockbookError as e:
        return jsonify(e.to_dict()), e.http_status
    except (ValueError, TypeError, ArithmeticError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to transfer stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "source": [_change_dict(c) for c in result.source],
        "destination": [_change_dict(c) for c in result.destination],
    }), 201


@stock_bp.post("/adjust")
def adjust_stock_route():
    """
    Body: {warehouse_id, product_id, quantity_delta, batch?, expiry_date?, cost_price?, note?}

    A positive delta receives into the matching lot; a negative delta
    withdraws using the configured allocation policy.
    """
    payload = request.get_json(silent=True) or {}
    missing = [f for f in ("warehouse_id", "product_id", "quantity_delta") if payload.get(f) is None]
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    try:
        changes = stock_service.adjust_stock_now(
            warehouse_id=int(payload["warehouse_id"]),
            product_id=int(payload["product_id"]),
            quantity_delta=payload["quantity_delta"],
            batch=payload.get("batch"),
            expiry_date=payload.get("expiry_date"),
            cost_price=payload.get("cost_price"),
            note=payload.get("note"),
            user_id=_acting_user_id(),
        )
    except StockbookError as e:
        return jsonify(e.to_dict()), e.http_status
    except (ValueError, TypeError, ArithmeticError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"changes": [_change_dict(c) for c in changes]}), 201


@stock_bp.post("/set-level")
def set_stock_level_route():
    payload = request.get_json(silent=True) or {}
    missing = [f for f in ("warehouse_id", "product_id", "quantity") if payload.get(f) is None]
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    try:
        changes = stock_service.set_stock_level_now(
            warehouse_id=int(payload["warehouse_id"]),
            product_id=int(payload["product_id"]),
            quantity=payload["quantity"],
            batch=payload.get("batch"),
            expiry_date=payload.get("expiry_date"),
            note=payload.get("note"),
            user_id=_acting_user_id(),
        )
    except StockbookError as e:
        return jsonify(e.to_dict()), e.http_status
    except (ValueError, TypeError, ArithmeticError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set stock level")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"changes": [_change_dict(c) for c in changes]}), 200
