# backend/stockledger/services/products_service.py
"""
Products Service

Catalogue maintenance around the stock record. Nothing here writes
current_stock directly:
- create_product records any opening quantity as an "initial" ledger entry
  through stock_service.mutate_stock
- update_product refuses current_stock outright
- delete_product refuses once the product has any ledger history
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, PurchaseOrderLine, SaleLine, StockTransaction, Supplier
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    coerce_int,
    enforce_rules_product,
    validate_payload,
)
from .concurrency import run_with_retry
from .errors import (
    DuplicateIdentifierError,
    InvalidStateError,
    ProductNotFoundError,
    SupplierNotFoundError,
)
from .pagination import paginate
from .stock_service import mutate_stock

logger = logging.getLogger(__name__)

INITIAL_STOCK_REFERENCE = "Initial Stock"

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku",
        "barcode",
        "name",
        "description",
        "unit",
        "supplier_id",
        "cost_price_cents",
        "selling_price_cents",
        "tax_rate_bps",
        "min_stock_level",
        "max_stock_level",
        "reorder_point",
        "status",
    },
    required_on_create={"sku", "name"},
)


def normalize_sku(sku) -> str:
    return str(sku or "").strip().upper()


def _normalize_identifiers(patch: dict) -> None:
    if "sku" in patch:
        patch["sku"] = normalize_sku(patch["sku"])
        if not patch["sku"]:
            raise ValidationError("sku cannot be blank")
    if "barcode" in patch and patch["barcode"] is not None:
        patch["barcode"] = patch["barcode"].strip() or None


def _ensure_unique_identifiers(patch: dict, *, exclude_id: int | None = None) -> None:
    checks = (("sku", Product.sku, "SKU"), ("barcode", Product.barcode, "Barcode"))
    for key, column, label in checks:
        value = patch.get(key)
        if value is None:
            continue
        query = db.session.query(Product.id).filter(column == value)
        if exclude_id is not None:
            query = query.filter(Product.id != exclude_id)
        if query.first() is not None:
            raise DuplicateIdentifierError(
                f"{label} already exists",
                {"field": key, "value": value},
            )


def _ensure_supplier(supplier_id) -> None:
    if supplier_id is None:
        return
    if db.session.get(Supplier, supplier_id) is None:
        raise SupplierNotFoundError(supplier_id)


def _warn_on_margin(product: Product) -> None:
    if product.selling_price_cents and product.cost_price_cents >= product.selling_price_cents:
        logger.warning(
            "Product %s (%s): cost price %s is not below selling price %s",
            product.id, product.sku, product.cost_price_cents, product.selling_price_cents,
        )


def create_product(*, payload: dict, actor_user_id: int | None = None) -> Product:
    """
    Create a product from a client payload.

    payload may carry initial_stock (int >= 0, default 0). A non-zero opening
    quantity requires actor_user_id, since it is recorded in the ledger.

    Raises:
        ValidationError, DuplicateIdentifierError, SupplierNotFoundError
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    initial_stock = coerce_int(payload.pop("initial_stock", 0) or 0, "initial_stock")
    if initial_stock < 0:
        raise ValidationError("initial_stock must be >= 0")
    if initial_stock > 0 and actor_user_id is None:
        raise ValidationError("actor_user_id is required to record initial stock")

    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    _normalize_identifiers(patch)
    enforce_rules_product(patch)

    def _op():
        _ensure_unique_identifiers(patch)
        _ensure_supplier(patch.get("supplier_id"))

        product = Product(current_stock=0, **patch)
        db.session.add(product)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise DuplicateIdentifierError("SKU or barcode already exists") from exc

        if initial_stock > 0:
            mutate_stock(
                product.id,
                "initial",
                initial_stock,
                actor_user_id,
                unit_price_cents=product.cost_price_cents,
                reference=INITIAL_STOCK_REFERENCE,
                notes="Opening stock on product creation",
                supplier_id=product.supplier_id,
                commit=False,
            )

        db.session.commit()
        return product

    product = run_with_retry(_op)
    _warn_on_margin(product)
    logger.info("Created product %s sku=%s initial_stock=%s", product.id, product.sku, initial_stock)
    return product


def update_product(*, product_id: int, payload: dict) -> Product:
    """
    Patch non-stock fields of a product.

    Raises:
        ProductNotFoundError
        ValidationError: includes any attempt to set current_stock
        DuplicateIdentifierError
    """
    if isinstance(payload, dict) and ("current_stock" in payload or "initial_stock" in payload):
        raise ValidationError("current_stock can only change through stock mutations")

    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    _normalize_identifiers(patch)

    def _op():
        product = db.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        enforce_rules_product(patch, current=product)
        _ensure_unique_identifiers(patch, exclude_id=product.id)
        if "supplier_id" in patch:
            _ensure_supplier(patch["supplier_id"])

        for key, value in patch.items():
            setattr(product, key, value)

        try:
            db.session.flush()
        except IntegrityError as exc:
            raise DuplicateIdentifierError("SKU or barcode already exists") from exc
        db.session.commit()
        return product

    product = run_with_retry(_op)
    _warn_on_margin(product)
    return product


def delete_product(*, product_id: int) -> None:
    """
    Hard-delete a product that has never moved stock.

    Raises:
        ProductNotFoundError
        InvalidStateError: ledger entries or document lines reference it
    """
    def _op():
        product = db.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        has_ledger = (
            db.session.query(StockTransaction.id)
            .filter(StockTransaction.product_id == product_id)
            .first()
            is not None
        )
        if has_ledger:
            raise InvalidStateError(
                "Cannot delete product with stock history",
                {"product_id": product_id},
            )

        on_documents = (
            db.session.query(PurchaseOrderLine.id).filter(PurchaseOrderLine.product_id == product_id).first()
            or db.session.query(SaleLine.id).filter(SaleLine.product_id == product_id).first()
        )
        if on_documents:
            raise InvalidStateError(
                "Cannot delete product referenced by purchase orders or sales",
                {"product_id": product_id},
            )

        db.session.delete(product)
        db.session.commit()

    run_with_retry(_op)
    logger.info("Deleted product %s", product_id)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


def get_product_by_sku(sku: str) -> Product:
    normalized = normalize_sku(sku)
    product = db.session.query(Product).filter(Product.sku == normalized).first()
    if product is None:
        raise ProductNotFoundError(normalized)
    return product


def get_product_by_barcode(barcode: str) -> Product:
    value = str(barcode or "").strip()
    product = db.session.query(Product).filter(Product.barcode == value).first() if value else None
    if product is None:
        raise ProductNotFoundError(value)
    return product


def list_products(
    *,
    status: str | None = None,
    search: str | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(Product)
    if status:
        query = query.filter(Product.status == status)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(
            db.or_(Product.name.ilike(like), Product.sku.ilike(like), Product.barcode.ilike(like))
        )
    query = query.order_by(Product.name.asc(), Product.id.asc())
    return paginate(query, page, per_page)


def list_low_stock_products() -> list[Product]:
    """Active products at or below their minimum level, lowest stock first."""
    return (
        db.session.query(Product)
        .filter(
            Product.status == "active",
            Product.current_stock <= Product.min_stock_level,
        )
        .order_by(Product.current_stock.asc(), Product.name.asc())
        .all()
    )
