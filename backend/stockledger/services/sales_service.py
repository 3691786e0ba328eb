"""
Sales Service - invoice lifecycle over the stock ledger

Creation is an explicit two-step protocol inside ONE database transaction:
1. persist the sale with its lines and derived totals (flush)
2. apply one "sale" stock mutation per line, linking each line to its ledger
   entry
A failure in either step rolls back both, so a sale never exists without its
stock decrements.

Cancellation and return mirror it: one "return" mutation per line plus the
status change, committed together.

Line items are immutable after creation. update_sale covers only the
customer snapshot, payment method, due date, notes and draft <-> confirmed.
"""

from __future__ import annotations

import logging
from datetime import date

from ..extensions import db
from ..models import Product, Sale, SaleLine
from ..models.sales import (
    PAYMENT_METHODS,
    SALE_CLOSED_STATUSES,
    SALE_STATUS_CANCELLED,
    SALE_STATUS_CONFIRMED,
    SALE_STATUS_DRAFT,
    SALE_STATUS_RETURNED,
    SALE_STATUSES,
)
from ..validation import (
    MAX_TAX_RATE_BPS,
    ValidationError,
    coerce_date,
    coerce_int,
    validate_customer,
)
from stockledger.time_utils import day_range, utcnow
from .concurrency import lock_for_update, run_with_retry
from .document_service import INVOICE_PREFIX, next_daily_number
from .errors import (
    InsufficientStockError,
    InvalidStateError,
    OverPaymentError,
    ProductNotFoundError,
    SaleNotFoundError,
)
from .pagination import paginate
from .stock_service import mutate_stock, validate_quantity
from .totals_service import PAYMENT_STATUSES, append_note, format_cents, recompute_sale

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SALE_STATUS_DRAFT, SALE_STATUS_CONFIRMED)

SALE_UPDATABLE_FIELDS = {"customer", "payment_method", "due_date", "notes", "status"}


def _get_sale(sale_id: int, *, lock: bool = False) -> Sale:
    query = db.session.query(Sale).filter(Sale.id == sale_id)
    if lock:
        query = lock_for_update(query.populate_existing())
    sale = query.first()
    if sale is None:
        raise SaleNotFoundError(sale_id)
    return sale


def _require_payment_method(method) -> str:
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    return method


def _build_lines(items) -> list[SaleLine]:
    """
    Resolve products and build unsaved sale lines.

    Stock is checked per product against the sum of every line for it, so
    two lines of 3 against a stock of 5 fail up front instead of halfway
    through step 2.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("Sale must have at least one item")

    lines = []
    requested: dict[int, int] = {}
    products: dict[int, Product] = {}

    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {index} must be an object")
        if item.get("product_id") is None:
            raise ValidationError(f"Item {index}: product_id is required")
        product_id = coerce_int(item.get("product_id"), "product_id")

        product = products.get(product_id) or db.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        products[product_id] = product

        quantity = validate_quantity(item.get("quantity"))

        unit_price = item.get("unit_price_cents")
        unit_price = product.selling_price_cents if unit_price is None else coerce_int(unit_price, "unit_price_cents")
        if unit_price < 0:
            raise ValidationError(f"Item {index}: unit_price_cents must be >= 0")

        discount = coerce_int(item.get("discount_cents") or 0, "discount_cents")
        if discount < 0:
            raise ValidationError(f"Item {index}: discount_cents must be >= 0")
        if discount > quantity * unit_price:
            raise ValidationError(f"Item {index}: discount cannot exceed the line amount")

        tax_rate = item.get("tax_rate_bps")
        tax_rate = product.tax_rate_bps if tax_rate is None else coerce_int(tax_rate, "tax_rate_bps")
        if not 0 <= tax_rate <= MAX_TAX_RATE_BPS:
            raise ValidationError(f"Item {index}: tax_rate_bps must be between 0 and {MAX_TAX_RATE_BPS}")

        requested[product_id] = requested.get(product_id, 0) + quantity
        lines.append(
            SaleLine(
                line_number=index,
                product_id=product_id,
                quantity=quantity,
                unit_price_cents=unit_price,
                discount_cents=discount,
                tax_rate_bps=tax_rate,
            )
        )

    for product_id, total in requested.items():
        product = products[product_id]
        if total > product.current_stock:
            raise InsufficientStockError(
                product_id=product_id,
                available=product.current_stock,
                requested=total,
                product_name=product.name,
            )

    return lines


def create_sale(
    *,
    customer: dict,
    items: list,
    sold_by_user_id: int,
    payment_method: str = "cash",
    paid_amount_cents: int = 0,
    due_date=None,
    notes: str | None = None,
    status: str = SALE_STATUS_CONFIRMED,
) -> Sale:
    """
    Create a sale and take its stock, atomically.

    Raises:
        ValidationError: empty items, bad customer / amounts / method
        ProductNotFoundError, InvalidQuantityError
        InsufficientStockError: carries available vs requested
        OverPaymentError: paid_amount_cents above the grand total
    """
    if sold_by_user_id is None:
        raise ValidationError("sold_by_user_id is required")
    customer = validate_customer(customer)
    payment_method = _require_payment_method(payment_method)
    if status not in OPEN_STATUSES:
        raise ValidationError("A new sale must be draft or confirmed")
    paid_amount_cents = coerce_int(paid_amount_cents or 0, "paid_amount_cents")
    if paid_amount_cents < 0:
        raise ValidationError("paid_amount_cents must be >= 0")
    due_date = coerce_date(due_date, "due_date")

    def _op():
        lines = _build_lines(items)

        sale = Sale(
            customer_name=customer["name"],
            customer_phone=customer["phone"],
            customer_email=customer["email"],
            customer_address=customer["address"],
            customer_gst_number=customer["gst_number"],
            sale_date=utcnow(),
            due_date=due_date,
            payment_method=payment_method,
            paid_amount_cents=paid_amount_cents,
            status=status,
            notes=notes,
            sold_by_user_id=sold_by_user_id,
        )
        sale.lines = lines
        recompute_sale(sale)
        if sale.paid_amount_cents > sale.grand_total_cents:
            raise OverPaymentError(
                "Paid amount cannot exceed grand total",
                {"grand_total_cents": sale.grand_total_cents, "paid_amount_cents": sale.paid_amount_cents},
            )

        # Step 1: persist the sale
        sale.invoice_number = next_daily_number(prefix=INVOICE_PREFIX, number_column=Sale.invoice_number)
        db.session.add(sale)
        db.session.flush()

        # Step 2: take the stock, one ledger entry per line
        for line in sale.lines:
            result = mutate_stock(
                line.product_id,
                "sale",
                line.quantity,
                sold_by_user_id,
                unit_price_cents=line.unit_price_cents,
                reference=sale.invoice_number,
                notes=f"Sale {sale.invoice_number}",
                customer=customer,
                commit=False,
            )
            line.stock_transaction_id = result.transaction.id

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info(
        "Created sale %s lines=%d grand_total=%s",
        sale.invoice_number, len(sale.lines), sale.grand_total_cents,
    )
    return sale


def record_sale_payment(
    *,
    sale_id: int,
    amount_cents: int,
    payment_method: str | None = None,
    notes: str | None = None,
) -> Sale:
    """
    Add a payment. paid + amount == grand total is allowed and marks the sale
    paid; one cent more raises OverPaymentError.
    """
    amount_cents = coerce_int(amount_cents, "amount_cents")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if payment_method is not None:
        _require_payment_method(payment_method)

    def _op():
        sale = _get_sale(sale_id, lock=True)
        if sale.status in SALE_CLOSED_STATUSES:
            raise InvalidStateError(
                f"Cannot record payment for a {sale.status} sale",
                {"sale_id": sale.id, "status": sale.status},
            )
        if sale.paid_amount_cents + amount_cents > sale.grand_total_cents:
            raise OverPaymentError(
                "Payment amount exceeds remaining balance",
                {
                    "grand_total_cents": sale.grand_total_cents,
                    "paid_amount_cents": sale.paid_amount_cents,
                    "requested_cents": amount_cents,
                    "remaining_cents": sale.remaining_amount_cents,
                },
            )

        sale.paid_amount_cents += amount_cents
        if payment_method is not None:
            sale.payment_method = payment_method
        line = f"Payment of {format_cents(amount_cents)} via {sale.payment_method}"
        if notes:
            line = f"{line}: {notes}"
        sale.notes = append_note(sale.notes, line)
        recompute_sale(sale)
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info("Recorded payment on sale %s; payment_status=%s", sale.invoice_number, sale.payment_status)
    return sale


def _close_sale(*, sale_id: int, reason: str, actor_user_id: int, new_status: str, label: str) -> Sale:
    """Restore stock for every line and move the sale to a closed status."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(f"{label} reason is required")
    if actor_user_id is None:
        raise ValidationError("actor_user_id is required")

    def _op():
        sale = _get_sale(sale_id, lock=True)
        if sale.status in SALE_CLOSED_STATUSES:
            raise InvalidStateError(
                f"Sale is already {sale.status}",
                {"sale_id": sale.id, "status": sale.status},
            )

        for line in sale.lines:
            mutate_stock(
                line.product_id,
                "return",
                line.quantity,
                actor_user_id,
                unit_price_cents=line.unit_price_cents,
                reference=sale.invoice_number,
                notes=f"{label} of sale {sale.invoice_number}",
                customer=sale.customer,
                commit=False,
            )

        sale.status = new_status
        sale.cancelled_by_user_id = actor_user_id
        sale.cancelled_at = utcnow()
        sale.notes = append_note(sale.notes, f"{label} reason: {reason}")
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info("Sale %s %s by user %s", sale.invoice_number, new_status, actor_user_id)
    return sale


def cancel_sale(*, sale_id: int, reason: str, actor_user_id: int) -> Sale:
    return _close_sale(
        sale_id=sale_id,
        reason=reason,
        actor_user_id=actor_user_id,
        new_status=SALE_STATUS_CANCELLED,
        label="Cancellation",
    )


def return_sale(*, sale_id: int, reason: str, actor_user_id: int) -> Sale:
    """Full return: same stock restoration as cancellation, status returned."""
    return _close_sale(
        sale_id=sale_id,
        reason=reason,
        actor_user_id=actor_user_id,
        new_status=SALE_STATUS_RETURNED,
        label="Return",
    )


def update_sale(*, sale_id: int, payload: dict) -> Sale:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if "items" in payload:
        raise ValidationError("Sale items cannot be modified after creation")
    unknown = sorted(k for k in payload if k not in SALE_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    new_status = payload.get("status")
    if "status" in payload and new_status not in OPEN_STATUSES:
        if new_status in SALE_STATUSES:
            raise InvalidStateError(f"Use the {new_status} operation to close a sale")
        raise ValidationError(f"status must be one of: {', '.join(OPEN_STATUSES)}")

    def _op():
        sale = _get_sale(sale_id, lock=True)
        if sale.status in SALE_CLOSED_STATUSES:
            raise InvalidStateError(
                f"Cannot modify a {sale.status} sale",
                {"sale_id": sale.id, "status": sale.status},
            )

        if "customer" in payload:
            incoming = payload["customer"]
            if not isinstance(incoming, dict):
                raise ValidationError("customer must be an object")
            customer = validate_customer({**sale.customer, **incoming})
            sale.customer_name = customer["name"]
            sale.customer_phone = customer["phone"]
            sale.customer_email = customer["email"]
            sale.customer_address = customer["address"]
            sale.customer_gst_number = customer["gst_number"]
        if "payment_method" in payload:
            sale.payment_method = _require_payment_method(payload["payment_method"])
        if "due_date" in payload:
            sale.due_date = coerce_date(payload["due_date"], "due_date")
        if "notes" in payload:
            sale.notes = payload["notes"]
        if "status" in payload:
            sale.status = new_status

        recompute_sale(sale)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    return _get_sale(sale_id)


def list_sales(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    customer: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(Sale)

    if status:
        if status not in SALE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(SALE_STATUSES)}")
        query = query.filter(Sale.status == status)
    if payment_status:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError(f"payment_status must be one of: {', '.join(PAYMENT_STATUSES)}")
        query = query.filter(Sale.payment_status == payment_status)
    if customer:
        like = f"%{customer.strip()}%"
        query = query.filter(
            db.or_(
                Sale.customer_name.ilike(like),
                Sale.customer_phone.ilike(like),
                Sale.customer_email.ilike(like),
            )
        )

    start, end = day_range(date_from, date_to)
    if start:
        query = query.filter(Sale.sale_date >= start)
    if end:
        query = query.filter(Sale.sale_date < end)

    query = query.order_by(Sale.sale_date.desc(), Sale.id.desc())
    return paginate(query, page, per_page, serialize=lambda s: s.to_dict(include_lines=False))
