# Overview: Flask API routes for stock mutations, ledger history and reconciliation.

# backend/stockledger/routes/inventory.py
from flask import Blueprint, request, g, current_app

from ..services import stock_service
from ..services.errors import StockLedgerError
from ..validation import ValidationError
from ..decorators import require_actor
from .responses import invalid_body_response, ledger_error_response

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

# purchase, sale and initial entries only come from their documents
MANUAL_TYPES = {"stock_in", "stock_out", "adjustment", "damaged", "transfer", "return"}


@inventory_bp.post("/<int:product_id>/mutations")
@require_actor
def mutate_stock_route(product_id: int):
    """
    Apply one stock movement.

    Body:
    - transaction_type: stock_in | stock_out | adjustment | damaged | transfer | return
    - quantity: positive integer
    - direction: "in" | "out" (required for adjustment, optional for transfer)
    - unit_price_cents, reference, notes, supplier_id (optional)
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()
    if data.get("transaction_type") not in MANUAL_TYPES:
        return {"error": f"transaction_type must be one of: {', '.join(sorted(MANUAL_TYPES))}"}, 400

    try:
        result = stock_service.mutate_stock(
            product_id,
            data.get("transaction_type"),
            data.get("quantity"),
            g.actor_id,
            unit_price_cents=data.get("unit_price_cents"),
            reference=data.get("reference"),
            notes=data.get("notes"),
            supplier_id=data.get("supplier_id"),
            direction=data.get("direction"),
        )
        return result.to_dict(), 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply stock mutation")
        return {"error": "Internal server error"}, 500


@inventory_bp.get("/<int:product_id>/history")
@require_actor
def stock_history_route(product_id: int):
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", 20, type=int)

    try:
        return stock_service.get_stock_history(product_id, page=page, limit=limit)
    except StockLedgerError as e:
        return ledger_error_response(e)


@inventory_bp.get("/<int:product_id>/verify")
@require_actor
def verify_ledger_route(product_id: int):
    try:
        return stock_service.verify_product_ledger(product_id)
    except StockLedgerError as e:
        return ledger_error_response(e)
