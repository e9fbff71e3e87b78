# Overview: Flask API routes for business documents; creation, lifecycle transitions, quotations and vouchers.

"""
Document routes.

Every postable document kind exposes the same surface:

- POST /api/documents/<kind>                    create a draft
- GET  /api/documents/<kind>/<id>               read back with line items
- POST /api/documents/<kind>/<id>/submit        draft -> pending
- POST /api/documents/<kind>/<id>/approve       -> approved (posts on first posting transition)
- POST /api/documents/<kind>/<id>/complete      -> completed (posts on first posting transition)
- POST /api/documents/<kind>/<id>/cancel        -> cancelled (reverses postings)

kind is one of: purchases, sales, sale-returns, purchase-returns.

Plus:
- POST /api/sales/checkout                      create and complete a sale in one step
- POST /api/documents/sale-returns/<id>/refund  pay a posted sale return back
- /api/quotations/...                           quotation lifecycle and conversion
- /api/vouchers/...                             payments, receipts, expenses, bank transactions

Error responses:
    404: referenced document/account/product/warehouse not found
    409: invalid transition, duplicate posting, insufficient stock, conversion refused
    422: return quantity above what is still returnable
    400: malformed input
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import StockbookError
from ..models import Purchase, PurchaseReturn, Quotation, Sale, SaleReturn
from ..services import payment_service, purchase_service, quotation_service, return_service, sales_service


documents_bp = Blueprint("documents", __name__, url_prefix="/api")


DOCUMENT_HANDLERS = {
    "purchases": {
        "model": Purchase,
        "create": purchase_service.create_purchase,
        "fields": {"warehouse_id", "supplier_id", "items", "purchase_date", "due_date", "payment_mode",
                   "tax_rate", "discount_amount", "notes", "invoice_number"},
        "submit": purchase_service.submit_purchase,
        "approve": purchase_service.approve_purchase,
        "complete": purchase_service.complete_purchase,
        "cancel": purchase_service.cancel_purchase,
    },
    "sales": {
        "model": Sale,
        "create": sales_service.create_sale,
        "fields": {"warehouse_id", "customer_id", "items", "sale_date", "payment_mode",
                   "tax_rate", "discount_amount", "notes", "invoice_number"},
        "submit": sales_service.submit_sale,
        "approve": sales_service.approve_sale,
        "complete": sales_service.complete_sale,
        "cancel": sales_service.cancel_sale,
    },
    "sale-returns": {
        "model": SaleReturn,
        "create": return_service.create_sale_return,
        "fields": {"sale_id", "items", "return_date", "reason", "refund_method", "notes", "return_number"},
        "submit": return_service.submit_sale_return,
        "approve": return_service.approve_sale_return,
        "complete": return_service.complete_sale_return,
        "cancel": return_service.cancel_sale_return,
    },
    "purchase-returns": {
        "model": PurchaseReturn,
        "create": return_service.create_purchase_return,
        "fields": {"purchase_id", "items", "return_date", "reason", "notes", "return_number"},
        "submit": return_service.submit_purchase_return,
        "approve": return_service.approve_purchase_return,
        "complete": return_service.complete_purchase_return,
        "cancel": return_service.cancel_purchase_return,
    },
}

TRANSITION_ACTIONS = ("submit", "approve", "complete", "cancel")


def _acting_user_id():
    return request.headers.get("X-User-Id", type=int)


def _pick(payload: dict, fields) -> dict:
    return {k: v for k, v in payload.items() if k in fields}


def _run(action: str, func, *args, **kwargs):
    """Call a service and map the outcome to (body, status). Returns (result, None) on success."""
    try:
        return func(*args, **kwargs), None
    except StockbookError as e:
        if e.http_status >= 500:
            current_app.logger.exception("Failed to %s", action)
        return None, (jsonify(e.to_dict()), e.http_status)
    except (ValueError, TypeError, ArithmeticError) as e:
        return None, (jsonify({"error": str(e)}), 400)
    except Exception:
        current_app.logger.exception("Failed to %s", action)
        return None, (jsonify({"error": "Internal server error"}), 500)


# =============================================================================
# POSTABLE DOCUMENTS
# =============================================================================

@documents_bp.post("/documents/<kind>")
def create_document_route(kind: str):
    handler = DOCUMENT_HANDLERS.get(kind)
    if handler is None:
        return jsonify({"error": f"Unknown document kind '{kind}'"}), 404

    payload = request.get_json(silent=True) or {}
    document, error = _run(
        f"create {kind}",
        handler["create"],
        user_id=_acting_user_id(),
        **_pick(payload, handler["fields"]),
    )
    if error:
        return error
    return jsonify({"document": document.to_dict()}), 201


@documents_bp.get("/documents/<kind>/<int:document_id>")
def get_document_route(kind: str, document_id: int):
    handler = DOCUMENT_HANDLERS.get(kind)
    if handler is None:
        return jsonify({"error": f"Unknown document kind '{kind}'"}), 404
    document = db.session.get(handler["model"], document_id)
    if document is None:
        return jsonify({"error": f"{kind} {document_id} not found"}), 404
    return jsonify({"document": document.to_dict()}), 200


@documents_bp.post("/documents/<kind>/<int:document_id>/<action>")
def transition_document_route(kind: str, document_id: int, action: str):
    """
    Lifecycle transition. Body (cancel only): {"reason": "..."}

    approve/complete post the document to the stock and account ledgers the
    first time either is reached; a second attempt answers 409.
    """
    handler = DOCUMENT_HANDLERS.get(kind)
    if handler is None or action not in TRANSITION_ACTIONS:
        return jsonify({"error": f"Unknown action '{action}' for '{kind}'"}), 404

    kwargs = {"user_id": _acting_user_id()}
    if action == "cancel":
        payload = request.get_json(silent=True) or {}
        kwargs["reason"] = payload.get("reason")

    document, error = _run(f"{action} {kind} {document_id}", handler[action], document_id, **kwargs)
    if error:
        return error
    return jsonify({
        "document": document.to_dict(),
        "message": f"{kind} {document_id} {action} succeeded",
    }), 200


@documents_bp.post("/sales/checkout")
def checkout_sale_route():
    payload = request.get_json(silent=True) or {}
    sale, error = _run(
        "process sale",
        sales_service.process_sale,
        user_id=_acting_user_id(),
        **_pick(payload, DOCUMENT_HANDLERS["sales"]["fields"]),
    )
    if error:
        return error
    return jsonify({"document": sale.to_dict()}), 201


@documents_bp.post("/documents/sale-returns/<int:return_id>/refund")
def refund_sale_return_route(return_id: int):
    payload = request.get_json(silent=True) or {}
    if not payload.get("refund_method"):
        return jsonify({"error": "refund_method is required"}), 400
    sale_return, error = _run(
        f"refund sale return {return_id}",
        return_service.process_refund,
        return_id,
        refund_method=payload["refund_method"],
        amount=payload.get("amount"),
        refund_date=payload.get("refund_date"),
        user_id=_acting_user_id(),
    )
    if error:
        return error
    return jsonify({"document": sale_return.to_dict()}), 200


# =============================================================================
# QUOTATIONS
# =============================================================================

QUOTATION_FIELDS = {"warehouse_id", "customer_id", "items", "quotation_date", "valid_until",
                    "tax_rate", "discount_amount", "notes"}

QUOTATION_ACTIONS = {
    "send": quotation_service.send_quotation,
    "approve": quotation_service.approve_quotation,
    "reject": quotation_service.reject_quotation,
}


@documents_bp.post("/quotations")
def create_quotation_route():
    payload = request.get_json(silent=True) or {}
    quotation, error = _run(
        "create quotation",
        quotation_service.create_quotation,
        user_id=_acting_user_id(),
        **_pick(payload, QUOTATION_FIELDS),
    )
    if error:
        return error
    return jsonify({"quotation": quotation.to_dict()}), 201


@documents_bp.get("/quotations/<int:quotation_id>")
def get_quotation_route(quotation_id: int):
    quotation = db.session.get(Quotation, quotation_id)
    if quotation is None:
        return jsonify({"error": f"Quotation {quotation_id} not found"}), 404
    data = quotation.to_dict()
    data["can_be_converted"] = quotation_service.can_be_converted(quotation)
    return jsonify({"quotation": data}), 200


@documents_bp.post("/quotations/<int:quotation_id>/<action>")
def quotation_action_route(quotation_id: int, action: str):
    func = QUOTATION_ACTIONS.get(action)
    if func is None:
        return jsonify({"error": f"Unknown quotation action '{action}'"}), 404
    quotation, error = _run(f"{action} quotation {quotation_id}", func, quotation_id, user_id=_acting_user_id())
    if error:
        return error
    return jsonify({"quotation": quotation.to_dict()}), 200


@documents_bp.post("/quotations/<int:quotation_id>/convert")
def convert_quotation_route(quotation_id: int):
    """
    Convert an approved quotation into a completed sale.

    Body: {"sale_date"?, "payment_mode"?, "post"?: true}
    """
    payload = request.get_json(silent=True) or {}
    sale, error = _run(
        f"convert quotation {quotation_id}",
        quotation_service.convert_to_sale,
        quotation_id,
        user_id=_acting_user_id(),
        sale_date=payload.get("sale_date"),
        payment_mode=payload.get("payment_mode"),
        post=bool(payload.get("post", True)),
    )
    if error:
        return error
    return jsonify({"sale": sale.to_dict(), "quotation_id": quotation_id}), 201


# =============================================================================
# VOUCHERS
# =============================================================================

VOUCHER_HANDLERS = {
    "payments": (
        payment_service.create_payment,
        {"voucher_type", "account_id", "amount", "payment_mode", "payment_date", "cash_account_id",
         "reference_type", "reference_id", "reference_number", "notes"},
    ),
    "expenses": (
        payment_service.create_expense,
        {"account_id", "amount", "category", "description", "payment_mode", "expense_date",
         "cash_account_id", "reference_number", "notes"},
    ),
    "bank-transactions": (
        payment_service.create_bank_transaction,
        {"transaction_type", "from_account_id", "to_account_id", "amount", "transaction_date",
         "reference_number", "description", "notes"},
    ),
}


@documents_bp.post("/vouchers/<kind>")
def create_voucher_route(kind: str):
    handler = VOUCHER_HANDLERS.get(kind)
    if handler is None:
        return jsonify({"error": f"Unknown voucher kind '{kind}'"}), 404
    func, fields = handler
    payload = request.get_json(silent=True) or {}
    voucher, error = _run(f"create {kind}", func, user_id=_acting_user_id(), **_pick(payload, fields))
    if error:
        return error
    return jsonify({"voucher": voucher.to_dict()}), 201
