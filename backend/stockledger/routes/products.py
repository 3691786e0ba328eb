# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/stockledger/routes/products.py
"""
Product catalogue routes.

current_stock is read-only here. Opening stock goes in as initial_stock on
create; every later change goes through /api/inventory/<id>/mutations.
"""
from flask import Blueprint, request, g, current_app

from ..services import products_service
from ..services.errors import StockLedgerError
from ..validation import ValidationError
from ..decorators import require_actor
from .responses import invalid_body_response, ledger_error_response

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_actor
def list_products():
    """
    Query params:
    - status: active | inactive | discontinued (optional)
    - q: substring of name, SKU or barcode (optional)
    - page, per_page
    """
    try:
        return products_service.list_products(
            status=request.args.get("status"),
            search=request.args.get("q"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 20, type=int),
        )
    except Exception:
        current_app.logger.exception("Failed to list products")
        return {"error": "Internal server error"}, 500


@products_bp.post("")
@require_actor
def create_product_route():
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return invalid_body_response()

    try:
        product = products_service.create_product(payload=payload, actor_user_id=g.actor_id)
        return {"product": product.to_dict()}, 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500


@products_bp.get("/low-stock")
@require_actor
def low_stock_route():
    products = products_service.list_low_stock_products()
    return {"items": [p.to_dict() for p in products], "count": len(products)}


@products_bp.get("/lookup")
@require_actor
def lookup_product_route():
    """Find one product by ?sku= or ?barcode=."""
    sku = request.args.get("sku")
    barcode = request.args.get("barcode")
    if not sku and not barcode:
        return {"error": "sku or barcode required"}, 400

    try:
        if sku:
            product = products_service.get_product_by_sku(sku)
        else:
            product = products_service.get_product_by_barcode(barcode)
        return {"product": product.to_dict()}
    except StockLedgerError as e:
        return ledger_error_response(e)


@products_bp.get("/<int:product_id>")
@require_actor
def get_product_route(product_id: int):
    try:
        product = products_service.get_product(product_id)
        return {"product": product.to_dict()}
    except StockLedgerError as e:
        return ledger_error_response(e)


@products_bp.patch("/<int:product_id>")
@require_actor
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return invalid_body_response()

    try:
        product = products_service.update_product(product_id=product_id, payload=payload)
        return {"product": product.to_dict()}
    except ValidationError as e:
        return {"error": str(e)}, 400
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return {"error": "Internal server error"}, 500


@products_bp.delete("/<int:product_id>")
@require_actor
def delete_product_route(product_id: int):
    try:
        products_service.delete_product(product_id=product_id)
        return {"deleted": True, "product_id": product_id}
    except StockLedgerError as e:
        return ledger_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete product")
        return {"error": "Internal server error"}, 500
