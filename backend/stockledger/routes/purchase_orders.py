# Overview: Flask API routes for purchase orders; parses input and returns JSON responses.

# backend/stockledger/routes/purchase_orders.py
"""
Purchase order routes.

SECURITY:
- create / update / cancel / delete require manager or admin
- confirm, receive, payments and reads are open to any actor
"""

from flask import Blueprint, request, g, current_app

from ..services import purchase_order_service
from ..services.errors import StockLedgerError
from ..validation import ValidationError, coerce_date
from ..decorators import require_actor, require_role
from .responses import invalid_body_response, ledger_error_response


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")

PRIVILEGED_ROLES = ("manager", "admin")


@purchase_orders_bp.post("")
@require_actor
@require_role(*PRIVILEGED_ROLES)
def create_purchase_order_route():
    """
    Body:
    - supplier_id: int
    - items: [{product_id, quantity, unit_price_cents?}, ...]
    - expected_delivery_date, tax_amount_cents, discount_amount_cents, notes (optional)
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        order = purchase_order_service.create_purchase_order(
            supplier_id=data.get("supplier_id"),
            items=data.get("items"),
            created_by_user_id=g.actor_id,
            expected_delivery_date=data.get("expected_delivery_date"),
            tax_amount_cents=data.get("tax_amount_cents", 0),
            discount_amount_cents=data.get("discount_amount_cents", 0),
            notes=data.get("notes"),
        )
        return {"purchase_order": order.to_dict()}, 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.get("")
@require_actor
def list_purchase_orders_route():
    try:
        return purchase_order_service.list_purchase_orders(
            status=request.args.get("status"),
            supplier_id=request.args.get("supplier_id", type=int),
            date_from=coerce_date(request.args.get("date_from"), "date_from"),
            date_to=coerce_date(request.args.get("date_to"), "date_to"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("limit", 20, type=int),
        )
    except ValidationError as e:
        return {"error": str(e)}, 400


@purchase_orders_bp.get("/<int:order_id>")
@require_actor
def get_purchase_order_route(order_id: int):
    try:
        order = purchase_order_service.get_purchase_order(order_id)
        return {"purchase_order": order.to_dict()}
    except StockLedgerError as e:
        return ledger_error_response(e)


@purchase_orders_bp.patch("/<int:order_id>")
@require_actor
@require_role(*PRIVILEGED_ROLES)
def update_purchase_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        order = purchase_order_service.update_purchase_order(order_id=order_id, payload=data)
        return {"purchase_order": order.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.delete("/<int:order_id>")
@require_actor
@require_role(*PRIVILEGED_ROLES)
def delete_purchase_order_route(order_id: int):
    try:
        purchase_order_service.delete_purchase_order(order_id=order_id)
        return {"deleted": True, "order_id": order_id}
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.post("/<int:order_id>/confirm")
@require_actor
def confirm_purchase_order_route(order_id: int):
    try:
        order = purchase_order_service.confirm_purchase_order(order_id=order_id)
        return {"purchase_order": order.to_dict()}
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.post("/<int:order_id>/receive")
@require_actor
def receive_purchase_order_route(order_id: int):
    """
    Body:
    - received_items: [{product_id, received_quantity}, ...]
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        order = purchase_order_service.receive_purchase_order(
            order_id=order_id,
            received_items=data.get("received_items"),
            actor_user_id=g.actor_id,
        )
        return {"purchase_order": order.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.post("/<int:order_id>/cancel")
@require_actor
@require_role(*PRIVILEGED_ROLES)
def cancel_purchase_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        order = purchase_order_service.cancel_purchase_order(order_id=order_id, reason=data.get("reason"))
        return {"purchase_order": order.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel purchase order")
        return {"error": "Internal server error"}, 500


@purchase_orders_bp.post("/<int:order_id>/payments")
@require_actor
def record_purchase_order_payment_route(order_id: int):
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return invalid_body_response()

    try:
        order = purchase_order_service.record_purchase_order_payment(
            order_id=order_id,
            amount_cents=data.get("amount_cents"),
            notes=data.get("notes"),
        )
        return {"purchase_order": order.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record purchase order payment")
        return {"error": "Internal server error"}, 500
