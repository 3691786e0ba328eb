# Overview: Stock Mutation Service; the only writer of Product.current_stock and the ledger.

"""
Stock ledger invariants (authoritative)

Ownership:
- mutate_stock() is the ONLY code path that assigns Product.current_stock.
- Every successful call appends exactly one StockTransaction in the same DB
  transaction as the stock write. A failed call appends nothing.

Arithmetic:
- quantity is a positive int; quantity_delta is +quantity for additive types
  and -quantity for subtractive types.
- new_stock = previous_stock + quantity_delta, and never goes below zero.
- Therefore current_stock == SUM(quantity_delta) over the product's ledger.

Serialization:
- The product row is read with SELECT ... FOR UPDATE where the backend
  supports it, and written with a version_id compare-and-swap everywhere.
  Losing the race raises StaleDataError; run_with_retry rolls back and re-runs
  the whole read-compute-write unit, so concurrent updates are never lost.

Transaction ownership:
- commit=True (default): mutate_stock owns the transaction, retries
  conflicts itself and commits.
- commit=False: the caller owns the transaction (sale creation, PO receipt).
  The mutation is flushed only, and retry/commit are the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func

from ..extensions import db
from ..models import Product, StockTransaction
from ..validation import ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .errors import InsufficientStockError, InvalidQuantityError, ProductNotFoundError
from .pagination import paginate

logger = logging.getLogger(__name__)


ADDITIVE_TYPES = frozenset({"stock_in", "purchase", "return", "initial"})
SUBTRACTIVE_TYPES = frozenset({"stock_out", "sale", "damaged"})
# Direction chosen per call
DIRECTIONAL_TYPES = frozenset({"adjustment", "transfer"})

TRANSACTION_TYPES = (
    "stock_in",
    "stock_out",
    "adjustment",
    "purchase",
    "sale",
    "return",
    "damaged",
    "transfer",
    "initial",
)

DIRECTION_IN = "in"
DIRECTION_OUT = "out"


@dataclass(frozen=True)
class MutationResult:
    previous_stock: int
    new_stock: int
    transaction: StockTransaction

    def to_dict(self) -> dict:
        return {
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "transaction": self.transaction.to_dict(),
        }


def signed_quantity(transaction_type: str, quantity: int, direction: str | None = None) -> int:
    """
    Signed delta a mutation applies to current_stock.

    transfer defaults to outbound; adjustment has no default and must say
    which way it goes.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction type: {transaction_type}")

    if direction is not None and direction not in (DIRECTION_IN, DIRECTION_OUT):
        raise ValidationError("direction must be 'in' or 'out'")

    if transaction_type in ADDITIVE_TYPES:
        if direction == DIRECTION_OUT:
            raise ValidationError(f"{transaction_type} always adds stock")
        return quantity

    if transaction_type in SUBTRACTIVE_TYPES:
        if direction == DIRECTION_IN:
            raise ValidationError(f"{transaction_type} always removes stock")
        return -quantity

    if transaction_type == "adjustment" and direction is None:
        raise ValidationError("adjustment requires direction 'in' or 'out'")

    if direction == DIRECTION_IN:
        return quantity
    return -quantity


def validate_quantity(quantity) -> int:
    # bool is an int subclass; True must not mean 1
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(
            "Quantity must be a positive integer",
            {"quantity": quantity if isinstance(quantity, (int, float, str)) else repr(quantity)},
        )
    return quantity


def get_product_for_update(product_id: int) -> Product:
    """Load a product with a row lock, or raise ProductNotFoundError."""
    query = db.session.query(Product).filter(Product.id == product_id).populate_existing()
    product = lock_for_update(query).first()
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


def _apply_mutation(
    *,
    product_id: int,
    transaction_type: str,
    quantity: int,
    actor_user_id: int,
    unit_price_cents: int | None,
    reference: str | None,
    notes: str | None,
    supplier_id: int | None,
    customer: dict | None,
    direction: str | None,
) -> MutationResult:
    """Read-compute-write-append for one product. Flushes, never commits."""
    delta = signed_quantity(transaction_type, quantity, direction)

    product = get_product_for_update(product_id)

    previous_stock = product.current_stock
    if delta < 0 and quantity > previous_stock:
        raise InsufficientStockError(
            product_id=product.id,
            available=previous_stock,
            requested=quantity,
            product_name=product.name,
        )
    new_stock = previous_stock + delta

    if unit_price_cents is None:
        unit_price_cents = product.cost_price_cents or 0

    customer = customer or {}

    product.current_stock = new_stock

    tx = StockTransaction(
        product_id=product.id,
        transaction_type=transaction_type,
        quantity=quantity,
        quantity_delta=delta,
        unit_price_cents=unit_price_cents,
        total_amount_cents=quantity * unit_price_cents,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reference=reference,
        notes=notes,
        supplier_id=supplier_id,
        customer_name=customer.get("name"),
        customer_phone=customer.get("phone"),
        customer_email=customer.get("email"),
        performed_by_user_id=actor_user_id,
    )
    db.session.add(tx)
    db.session.flush()

    logger.info(
        "Stock %s product=%s qty=%s %s -> %s ref=%s actor=%s",
        transaction_type, product.id, quantity, previous_stock, new_stock, reference, actor_user_id,
    )
    return MutationResult(previous_stock=previous_stock, new_stock=new_stock, transaction=tx)


def mutate_stock(
    product_id: int,
    transaction_type: str,
    quantity: int,
    actor_user_id: int,
    unit_price_cents: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
    supplier_id: int | None = None,
    customer: dict | None = None,
    direction: str | None = None,
    commit: bool = True,
) -> MutationResult:
    """
    Apply one stock movement and append its ledger entry.

    Raises:
        InvalidQuantityError: quantity is not an int > 0
        ValidationError: unknown type, bad direction, missing actor, bad price
        ProductNotFoundError: no such product
        InsufficientStockError: subtractive movement larger than current stock
    """
    validate_quantity(quantity)
    if actor_user_id is None:
        raise ValidationError("actor_user_id is required")
    if unit_price_cents is not None:
        unit_price_cents = coerce_int(unit_price_cents, "unit_price_cents")
        if unit_price_cents < 0:
            raise ValidationError("unit_price_cents must be >= 0")
    # Fail on bad type/direction before touching the database
    signed_quantity(transaction_type, quantity, direction)

    kwargs = dict(
        product_id=product_id,
        transaction_type=transaction_type,
        quantity=quantity,
        actor_user_id=actor_user_id,
        unit_price_cents=unit_price_cents,
        reference=reference,
        notes=notes,
        supplier_id=supplier_id,
        customer=customer,
        direction=direction,
    )

    if not commit:
        return _apply_mutation(**kwargs)

    def _op():
        result = _apply_mutation(**kwargs)
        db.session.commit()
        return result

    return run_with_retry(_op)


def get_stock_history(product_id: int, page: int = 1, limit: int = 20) -> dict:
    """
    Newest-first ledger entries for one product, paginated.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    base_query = (
        db.session.query(StockTransaction)
        .filter(StockTransaction.product_id == product_id)
        .order_by(StockTransaction.created_at.desc(), StockTransaction.id.desc())
    )

    result = paginate(base_query, page, limit)
    result["product"] = {
        "id": product.id,
        "sku": product.sku,
        "name": product.name,
        "current_stock": product.current_stock,
    }
    return result


def verify_product_ledger(product_id: int) -> dict:
    """
    Reconcile one product's stock against its ledger. Read-only.

    Checks:
    - current_stock == SUM(quantity_delta)
    - entries chain in append order: each previous_stock equals the prior
      entry's new_stock (the first one starts from zero)
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    ledger_total = int(
        db.session.query(func.coalesce(func.sum(StockTransaction.quantity_delta), 0))
        .filter(StockTransaction.product_id == product_id)
        .scalar()
        or 0
    )

    entries = (
        db.session.query(StockTransaction)
        .filter(StockTransaction.product_id == product_id)
        .order_by(StockTransaction.id.asc())
        .all()
    )

    chain_breaks = []
    expected_previous = 0
    for tx in entries:
        if tx.previous_stock != expected_previous:
            chain_breaks.append({
                "transaction_id": tx.id,
                "expected_previous_stock": expected_previous,
                "previous_stock": tx.previous_stock,
            })
        expected_previous = tx.new_stock

    ok = ledger_total == product.current_stock and not chain_breaks
    return {
        "product_id": product.id,
        "sku": product.sku,
        "current_stock": product.current_stock,
        "ledger_total": ledger_total,
        "entry_count": len(entries),
        "chain_breaks": chain_breaks,
        "ok": ok,
    }


def verify_all_ledgers() -> dict:
    product_ids = [pid for (pid,) in db.session.query(Product.id).order_by(Product.id.asc()).all()]
    reports = [verify_product_ledger(pid) for pid in product_ids]
    mismatches = [r for r in reports if not r["ok"]]
    if mismatches:
        logger.warning("Ledger verification found %d mismatched product(s)", len(mismatches))
    return {
        "products_checked": len(reports),
        "ok": not mismatches,
        "mismatches": mismatches,
    }
