# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/stockledger/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, request, g, current_app

from ..services import sales_service
from ..services.errors import StockLedgerError
from ..validation import ValidationError, coerce_date
from ..decorators import require_actor
from .responses import invalid_body_response, ledger_error_response


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_actor
def create_sale_route():
    """
    Create a sale and take its stock.

    Body:
    - customer: {name, phone?, email?, address?, gst_number?}
    - items: [{product_id, quantity, unit_price_cents?, discount_cents?, tax_rate_bps?}, ...]
    - payment_method, paid_amount_cents, due_date, notes, status (optional)
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        sale = sales_service.create_sale(
            customer=data.get("customer"),
            items=data.get("items"),
            sold_by_user_id=g.actor_id,
            payment_method=data.get("payment_method", "cash"),
            paid_amount_cents=data.get("paid_amount_cents", 0),
            due_date=data.get("due_date"),
            notes=data.get("notes"),
            status=data.get("status", "confirmed"),
        )
        return {"sale": sale.to_dict()}, 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return {"error": "Internal server error"}, 500


@sales_bp.get("")
@require_actor
def list_sales_route():
    try:
        return sales_service.list_sales(
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            customer=request.args.get("customer"),
            date_from=coerce_date(request.args.get("date_from"), "date_from"),
            date_to=coerce_date(request.args.get("date_to"), "date_to"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("limit", 20, type=int),
        )
    except ValidationError as e:
        return {"error": str(e)}, 400


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        return {"sale": sale.to_dict()}
    except StockLedgerError as e:
        return ledger_error_response(e)


@sales_bp.patch("/<int:sale_id>")
@require_actor
def update_sale_route(sale_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        sale = sales_service.update_sale(sale_id=sale_id, payload=data)
        return {"sale": sale.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return {"error": "Internal server error"}, 500


@sales_bp.post("/<int:sale_id>/payments")
@require_actor
def record_payment_route(sale_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        sale = sales_service.record_sale_payment(
            sale_id=sale_id,
            amount_cents=data.get("amount_cents"),
            payment_method=data.get("payment_method"),
            notes=data.get("notes"),
        )
        return {"sale": sale.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record sale payment")
        return {"error": "Internal server error"}, 500


@sales_bp.post("/<int:sale_id>/cancel")
@require_actor
def cancel_sale_route(sale_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        sale = sales_service.cancel_sale(sale_id=sale_id, reason=data.get("reason"), actor_user_id=g.actor_id)
        return {"sale": sale.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return {"error": "Internal server error"}, 500


@sales_bp.post("/<int:sale_id>/return")
@require_actor
def return_sale_route(sale_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        sale = sales_service.return_sale(sale_id=sale_id, reason=data.get("reason"), actor_user_id=g.actor_id)
        return {"sale": sale.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to return sale")
        return {"error": "Internal server error"}, 500
