# Overview: Flask API routes for accounts, journal rows and financial reports; read-only.

from flask import Blueprint, request, jsonify

from ..errors import StockbookError
from ..models import Account
from ..services import ledger_service

"""
Date semantics:
- API accepts ISO-8601 dates (YYYY-MM-DD); filtering is inclusive on both ends.
- Balances are in the account's natural sign (debit-normal for asset/expense).
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


@ledger_bp.get("/accounts")
def list_accounts_route():
    query = Account.query
    account_type = request.args.get("type")
    if account_type:
        query = query.filter(Account.type == account_type)
    accounts = query.order_by(Account.code).all()
    return jsonify({"items": [a.to_dict() for a in accounts]}), 200


@ledger_bp.get("/accounts/<int:account_id>/balance")
def account_balance_route(account_id: int):
    try:
        balance = ledger_service.balance_of(account_id, as_of=request.args.get("as_of"))
    except StockbookError as e:
        return jsonify(e.to_dict()), e.http_status
    except ValueError:
        return jsonify({"error": "as_of must be an ISO-8601 date"}), 400
    return jsonify({
        "account_id": account_id,
        "balance": str(balance),
        "as_of": request.args.get("as_of"),
    }), 200


@ledger_bp.get("/transactions")
def list_transactions_route():
    limit = request.args.get("limit", default=100, type=int)
    try:
        rows = ledger_service.list_transactions(
            account_id=request.args.get("account_id", type=int),
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
            reference_type=request.args.get("reference_type"),
            reference_id=request.args.get("reference_id", type=int),
            limit=limit,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": [t.to_dict() for t in rows], "limit": limit}), 200


@ledger_bp.get("/trial-balance")
def trial_balance_route():
    try:
        report = ledger_service.trial_balance(
            as_of=request.args.get("as_of"),
            start_date=request.args.get("start_date"),
        )
    except ValueError:
        return jsonify({"error": "as_of and start_date must be ISO-8601 dates"}), 400
    return jsonify(report), 200


@ledger_bp.get("/balance-sheet")
def balance_sheet_route():
    try:
        report = ledger_service.balance_sheet(as_of=request.args.get("as_of"))
    except ValueError:
        return jsonify({"error": "as_of must be an ISO-8601 date"}), 400
    return jsonify(report), 200


@ledger_bp.get("/profit-and-loss")
def profit_and_loss_route():
    start_date = request.args.get("start_date")
    end_date = request.args.get("end_date")
    if not start_date or not end_date:
        return jsonify({"error": "start_date and end_date are required"}), 400
    try:
        report = ledger_service.profit_and_loss(start_date, end_date)
    except ValueError:
        return jsonify({"error": "start_date and end_date must be ISO-8601 dates"}), 400
    return jsonify(report), 200
