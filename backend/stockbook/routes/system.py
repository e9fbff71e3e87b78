# Overview: Flask API routes for health checks and on-demand alert maintenance.

import time

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..models import Account, Product, Warehouse
from ..services import alert_service
from stockbook.time_utils import parse_iso_date, to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        details = {
            "products": db.session.query(Product).count(),
            "warehouses": db.session.query(Warehouse).count(),
            "accounts": db.session.query(Account).count(),
        }
        return {
            "status": "healthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "details": details,
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health_route():
    database = check_database_health()
    status = 200 if database["status"] == "healthy" else 503
    return jsonify({
        "status": database["status"],
        "timestamp": to_utc_z(utcnow()),
        "database": database,
    }), status


@system_bp.post("/api/alerts/sweep")
def alert_sweep_route():
    """Run the low-stock/expiry sweep now. 409 when another sweep holds the lock."""
    payload = request.get_json(silent=True) or {}
    try:
        as_of = parse_iso_date(payload.get("as_of"))
    except ValueError:
        return jsonify({"error": "as_of must be an ISO-8601 date"}), 400

    try:
        result = alert_service.run_alert_sweep(as_of=as_of)
    except Exception:
        current_app.logger.exception("Failed to run alert sweep")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(result), 409 if result["skipped"] else 200
