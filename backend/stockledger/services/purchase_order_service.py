# Overview: Purchase order lifecycle; receipt is the only step that moves stock.

"""
Purchase Order Service

LIFECYCLE:
1. pending: created by a manager/admin, lines editable
2. confirmed: supplier acknowledged, lines still editable until first receipt
3. partial_received: some quantity received, lines frozen
4. received: every line received in full (terminal)
5. cancelled: terminal; blocks further receipts

Status after a receipt is derived from line quantities
(totals_service.derive_receipt_status), never assigned by callers.

RECEIPT (explicit two-step, one DB transaction):
1. validate every entry (line exists, quantity positive, cumulative receipt
   within ordered quantity) before touching anything
2. for each entry: bump received_quantity, then apply a "purchase" stock
   mutation referencing the order number
Then re-derive status and commit once. Any failure rolls back all of it.

Cancellation never reverses stock that was already received; that takes a
separate stock_out mutation.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderLine, Supplier
from ..models.purchasing import (
    PO_STATUS_CANCELLED,
    PO_STATUS_CONFIRMED,
    PO_STATUS_PENDING,
    PO_STATUS_RECEIVED,
    PO_STATUSES,
)
from ..validation import ValidationError, coerce_date, coerce_int
from stockledger.time_utils import day_range, utcnow
from .concurrency import lock_for_update, run_with_retry
from .document_service import PURCHASE_ORDER_PREFIX, next_daily_number
from .errors import (
    DuplicateIdentifierError,
    InvalidStateError,
    LineNotFoundError,
    OverPaymentError,
    OverReceiptError,
    ProductNotFoundError,
    PurchaseOrderNotFoundError,
    SupplierNotFoundError,
)
from .pagination import paginate
from .stock_service import mutate_stock, validate_quantity
from .totals_service import append_note, format_cents, recompute_purchase_order

logger = logging.getLogger(__name__)

LOCKED_STATUSES = (PO_STATUS_RECEIVED, PO_STATUS_CANCELLED)

PO_UPDATABLE_FIELDS = {
    "supplier_id",
    "expected_delivery_date",
    "tax_amount_cents",
    "discount_amount_cents",
    "notes",
    "items",
}


def _get_order(order_id: int, *, lock: bool = False) -> PurchaseOrder:
    query = db.session.query(PurchaseOrder).filter(PurchaseOrder.id == order_id)
    if lock:
        query = lock_for_update(query.populate_existing())
    order = query.first()
    if order is None:
        raise PurchaseOrderNotFoundError(order_id)
    return order


def _require_active_supplier(supplier_id) -> Supplier:
    if supplier_id is None:
        raise ValidationError("supplier_id is required")
    supplier = db.session.get(Supplier, coerce_int(supplier_id, "supplier_id"))
    if supplier is None:
        raise SupplierNotFoundError(supplier_id)
    if not supplier.is_active:
        raise InvalidStateError(f"Supplier {supplier.name} is inactive", {"supplier_id": supplier.id})
    return supplier


def _non_negative_cents(value, field: str) -> int:
    cents = coerce_int(value if value is not None else 0, field)
    if cents < 0:
        raise ValidationError(f"{field} must be >= 0")
    return cents


def _build_lines(items) -> list[PurchaseOrderLine]:
    """Validate item payloads and build unsaved order lines."""
    if not isinstance(items, list) or not items:
        raise ValidationError("Purchase order must have at least one item")

    lines = []
    seen = set()
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {index} must be an object")

        if item.get("product_id") is None:
            raise ValidationError(f"Item {index}: product_id is required")
        product_id = coerce_int(item.get("product_id"), "product_id")
        if product_id in seen:
            raise ValidationError(
                f"Product {product_id} appears more than once; combine the quantities into one item"
            )
        seen.add(product_id)

        product = db.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        quantity = validate_quantity(item.get("quantity"))

        unit_price = item.get("unit_price_cents")
        if unit_price is None:
            unit_price = product.cost_price_cents
        unit_price = _non_negative_cents(unit_price, "unit_price_cents")

        lines.append(
            PurchaseOrderLine(
                line_number=index,
                product_id=product_id,
                quantity=quantity,
                unit_price_cents=unit_price,
                received_quantity=0,
            )
        )
    return lines


def _check_totals(order: PurchaseOrder) -> None:
    if order.total_amount_cents < 0:
        raise ValidationError("Discount cannot exceed subtotal plus tax")
    if order.paid_amount_cents > order.total_amount_cents:
        raise OverPaymentError(
            "Order total cannot drop below the amount already paid",
            {"total_amount_cents": order.total_amount_cents, "paid_amount_cents": order.paid_amount_cents},
        )


def create_purchase_order(
    *,
    supplier_id: int,
    items: list,
    created_by_user_id: int,
    expected_delivery_date=None,
    tax_amount_cents: int = 0,
    discount_amount_cents: int = 0,
    notes: str | None = None,
) -> PurchaseOrder:
    """
    Create a pending purchase order with a fresh PO<YYYYMMDD><NNN> number.

    Raises:
        ValidationError: empty items, bad amounts, duplicate products
        SupplierNotFoundError, ProductNotFoundError, InvalidQuantityError
    """
    if created_by_user_id is None:
        raise ValidationError("created_by_user_id is required")

    tax_amount_cents = _non_negative_cents(tax_amount_cents, "tax_amount_cents")
    discount_amount_cents = _non_negative_cents(discount_amount_cents, "discount_amount_cents")
    expected_delivery_date = coerce_date(expected_delivery_date, "expected_delivery_date")

    def _op():
        supplier = _require_active_supplier(supplier_id)
        lines = _build_lines(items)

        order = PurchaseOrder(
            supplier_id=supplier.id,
            status=PO_STATUS_PENDING,
            order_date=utcnow(),
            expected_delivery_date=expected_delivery_date,
            tax_amount_cents=tax_amount_cents,
            discount_amount_cents=discount_amount_cents,
            paid_amount_cents=0,
            notes=notes,
            created_by_user_id=created_by_user_id,
        )
        order.lines = lines
        recompute_purchase_order(order)
        _check_totals(order)

        order.order_number = next_daily_number(
            prefix=PURCHASE_ORDER_PREFIX,
            number_column=PurchaseOrder.order_number,
        )
        db.session.add(order)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise DuplicateIdentifierError(
                "Order number already exists",
                {"order_number": order.order_number},
            ) from exc

        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info(
        "Created purchase order %s supplier=%s lines=%d total=%s",
        order.order_number, order.supplier_id, len(order.lines), order.total_amount_cents,
    )
    return order


def update_purchase_order(*, order_id: int, payload: dict) -> PurchaseOrder:
    """
    Edit an open purchase order.

    Items may be replaced only while nothing has been received. Status is not
    editable here; use confirm / receive / cancel.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if "status" in payload:
        raise ValidationError("status cannot be set directly; use confirm, receive or cancel")
    unknown = sorted(k for k in payload if k not in PO_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op():
        order = _get_order(order_id, lock=True)
        if order.status in LOCKED_STATUSES:
            raise InvalidStateError(
                f"Cannot modify a {order.status} purchase order",
                {"order_id": order.id, "status": order.status},
            )

        if "supplier_id" in payload:
            order.supplier_id = _require_active_supplier(payload["supplier_id"]).id
        if "expected_delivery_date" in payload:
            order.expected_delivery_date = coerce_date(payload["expected_delivery_date"], "expected_delivery_date")
        if "tax_amount_cents" in payload:
            order.tax_amount_cents = _non_negative_cents(payload["tax_amount_cents"], "tax_amount_cents")
        if "discount_amount_cents" in payload:
            order.discount_amount_cents = _non_negative_cents(
                payload["discount_amount_cents"], "discount_amount_cents"
            )
        if "notes" in payload:
            order.notes = payload["notes"]

        if "items" in payload:
            if any(line.received_quantity > 0 for line in order.lines):
                raise InvalidStateError(
                    "Cannot replace items after goods have been received",
                    {"order_id": order.id},
                )
            new_lines = _build_lines(payload["items"])
            # Old lines must be gone before re-inserting the same products
            order.lines.clear()
            db.session.flush()
            order.lines.extend(new_lines)

        recompute_purchase_order(order)
        _check_totals(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def confirm_purchase_order(*, order_id: int) -> PurchaseOrder:
    def _op():
        order = _get_order(order_id, lock=True)
        if order.status != PO_STATUS_PENDING:
            raise InvalidStateError(
                f"Only pending purchase orders can be confirmed (status is {order.status})",
                {"order_id": order.id, "status": order.status},
            )
        order.status = PO_STATUS_CONFIRMED
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Confirmed purchase order %s", order.order_number)
    return order


def _plan_receipt(order: PurchaseOrder, received_items) -> list[tuple[PurchaseOrderLine, int]]:
    """
    Validate every receipt entry against the order without changing it.

    Duplicate entries for one product are checked cumulatively.
    """
    if not isinstance(received_items, list) or not received_items:
        raise ValidationError("received_items must be a non-empty list")

    lines_by_product = {line.product_id: line for line in order.lines}
    pending: dict[int, int] = {}
    plan = []

    for entry in received_items:
        if not isinstance(entry, dict):
            raise ValidationError("Each received item must be an object")
        if entry.get("product_id") is None:
            raise ValidationError("product_id is required for each received item")
        product_id = coerce_int(entry.get("product_id"), "product_id")

        line = lines_by_product.get(product_id)
        if line is None:
            raise LineNotFoundError(
                f"Product {product_id} is not on purchase order {order.order_number}",
                {"order_id": order.id, "product_id": product_id},
            )

        raw_quantity = entry.get("received_quantity", entry.get("quantity"))
        quantity = validate_quantity(raw_quantity)

        cumulative = pending.get(product_id, 0) + quantity
        if line.received_quantity + cumulative > line.quantity:
            raise OverReceiptError(
                f"Cannot receive more than ordered for product {product_id}",
                {
                    "product_id": product_id,
                    "ordered": line.quantity,
                    "already_received": line.received_quantity,
                    "requested": cumulative,
                },
            )
        pending[product_id] = cumulative
        plan.append((line, quantity))

    return plan


def receive_purchase_order(*, order_id: int, received_items: list, actor_user_id: int) -> PurchaseOrder:
    """
    Receive goods against an order. All-or-nothing.

    Args:
        received_items: [{"product_id": int, "received_quantity": int}, ...]

    Raises:
        PurchaseOrderNotFoundError
        InvalidStateError: order already received or cancelled
        LineNotFoundError, InvalidQuantityError, OverReceiptError
    """
    if actor_user_id is None:
        raise ValidationError("actor_user_id is required")

    def _op():
        order = _get_order(order_id, lock=True)
        if order.status in LOCKED_STATUSES:
            raise InvalidStateError(
                f"Cannot receive against a {order.status} purchase order",
                {"order_id": order.id, "status": order.status},
            )

        plan = _plan_receipt(order, received_items)

        for line, quantity in plan:
            line.received_quantity += quantity
            mutate_stock(
                line.product_id,
                "purchase",
                quantity,
                actor_user_id,
                unit_price_cents=line.unit_price_cents,
                reference=order.order_number,
                notes=f"Received against {order.order_number}",
                supplier_id=order.supplier_id,
                commit=False,
            )

        order.received_by_user_id = actor_user_id
        order.actual_delivery_date = utcnow()
        recompute_purchase_order(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Received against purchase order %s; status=%s", order.order_number, order.status)
    return order


def cancel_purchase_order(*, order_id: int, reason: str) -> PurchaseOrder:
    """
    Cancel an order that is not yet fully received.

    Stock already received stays on hand.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")

    def _op():
        order = _get_order(order_id, lock=True)
        if order.status == PO_STATUS_RECEIVED:
            raise InvalidStateError(
                "Cannot cancel a received purchase order",
                {"order_id": order.id, "status": order.status},
            )
        if order.status == PO_STATUS_CANCELLED:
            raise InvalidStateError(
                "Purchase order is already cancelled",
                {"order_id": order.id, "status": order.status},
            )

        order.status = PO_STATUS_CANCELLED
        order.notes = append_note(order.notes, f"Cancellation reason: {reason}")
        recompute_purchase_order(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Cancelled purchase order %s", order.order_number)
    return order


def delete_purchase_order(*, order_id: int) -> None:
    def _op():
        order = _get_order(order_id, lock=True)
        if order.status not in (PO_STATUS_PENDING, PO_STATUS_CANCELLED):
            raise InvalidStateError(
                "Only pending or cancelled purchase orders can be deleted",
                {"order_id": order.id, "status": order.status},
            )
        if any(line.received_quantity > 0 for line in order.lines):
            raise InvalidStateError(
                "Cannot delete a purchase order with received goods",
                {"order_id": order.id},
            )
        number = order.order_number
        db.session.delete(order)
        db.session.commit()
        return number

    number = run_with_retry(_op)
    logger.info("Deleted purchase order %s", number)


def record_purchase_order_payment(*, order_id: int, amount_cents: int, notes: str | None = None) -> PurchaseOrder:
    amount_cents = coerce_int(amount_cents, "amount_cents")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero")

    def _op():
        order = _get_order(order_id, lock=True)
        if order.status == PO_STATUS_CANCELLED:
            raise InvalidStateError(
                "Cannot record payment for a cancelled purchase order",
                {"order_id": order.id},
            )
        if order.paid_amount_cents + amount_cents > order.total_amount_cents:
            raise OverPaymentError(
                "Payment exceeds the remaining amount",
                {
                    "total_amount_cents": order.total_amount_cents,
                    "paid_amount_cents": order.paid_amount_cents,
                    "requested_cents": amount_cents,
                    "remaining_cents": order.remaining_amount_cents,
                },
            )

        order.paid_amount_cents += amount_cents
        line = f"Payment of {format_cents(amount_cents)} recorded"
        if notes:
            line = f"{line}: {notes}"
        order.notes = append_note(order.notes, line)
        recompute_purchase_order(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def get_purchase_order(order_id: int) -> PurchaseOrder:
    return _get_order(order_id)


def list_purchase_orders(
    *,
    status: str | None = None,
    supplier_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(PurchaseOrder)

    if status:
        if status not in PO_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(PO_STATUSES)}")
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)

    start, end = day_range(date_from, date_to)
    if start:
        query = query.filter(PurchaseOrder.order_date >= start)
    if end:
        query = query.filter(PurchaseOrder.order_date < end)

    query = query.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc())
    return paginate(query, page, per_page, serialize=lambda o: o.to_dict(include_lines=False))
