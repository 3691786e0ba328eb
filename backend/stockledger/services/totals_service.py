# Overview: Pure recomputation of document totals and derived statuses.

"""
Derived-field recomputation.

Purchase order and sale totals, purchase order receipt status and payment
status are never set by callers. The services call the recompute_* functions
right before every flush of the parent document, so stored values can't
drift from the lines they are computed from.

All amounts are integer cents. Tax rates are basis points (1/100 percent).
"""

from __future__ import annotations

from ..models.purchasing import (
    PO_STATUS_CANCELLED,
    PO_STATUS_PARTIAL,
    PO_STATUS_RECEIVED,
)

PAYMENT_PENDING = "pending"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PARTIAL, PAYMENT_PAID)

BPS_DENOMINATOR = 10_000


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded to nearest, halves away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    if numerator >= 0:
        return (numerator + denominator // 2) // denominator
    return -((-numerator + denominator // 2) // denominator)


def derive_payment_status(paid_cents: int, total_cents: int) -> str:
    if paid_cents >= total_cents:
        return PAYMENT_PAID
    if paid_cents > 0:
        return PAYMENT_PARTIAL
    return PAYMENT_PENDING


# =============================================================================
# Sales
# =============================================================================

def sale_line_amounts(quantity: int, unit_price_cents: int, discount_cents: int, tax_rate_bps: int) -> dict:
    """
    taxable = quantity * unit_price - discount
    tax     = taxable * rate (nearest cent, half-up)
    total   = taxable + tax
    """
    gross = quantity * unit_price_cents
    taxable = gross - discount_cents
    tax = round_half_up_div(taxable * tax_rate_bps, BPS_DENOMINATOR)
    return {
        "gross_cents": gross,
        "tax_amount_cents": tax,
        "total_price_cents": taxable + tax,
    }


def recompute_sale(sale) -> None:
    """Recompute every derived field on a Sale and its lines, in place."""
    subtotal = 0
    total_discount = 0
    total_tax = 0
    for line in sale.lines:
        amounts = sale_line_amounts(
            line.quantity,
            line.unit_price_cents,
            line.discount_cents or 0,
            line.tax_rate_bps or 0,
        )
        line.tax_amount_cents = amounts["tax_amount_cents"]
        line.total_price_cents = amounts["total_price_cents"]

        subtotal += amounts["gross_cents"]
        total_discount += line.discount_cents or 0
        total_tax += amounts["tax_amount_cents"]

    sale.subtotal_cents = subtotal
    sale.total_discount_cents = total_discount
    sale.total_tax_cents = total_tax
    sale.grand_total_cents = subtotal - total_discount + total_tax
    sale.payment_status = derive_payment_status(sale.paid_amount_cents or 0, sale.grand_total_cents)


# =============================================================================
# Purchase orders
# =============================================================================

def derive_receipt_status(current_status: str, lines) -> str:
    """
    Status after a receipt:
    - cancelled stays cancelled
    - every line received in full -> received
    - any line received at all -> partial_received
    - otherwise unchanged (pending / confirmed)
    """
    if current_status == PO_STATUS_CANCELLED or not lines:
        return current_status
    if all(line.received_quantity >= line.quantity for line in lines):
        return PO_STATUS_RECEIVED
    if any(line.received_quantity > 0 for line in lines):
        return PO_STATUS_PARTIAL
    return current_status


def recompute_purchase_order(order) -> None:
    """Recompute line totals, order totals, status and payment status in place."""
    subtotal = 0
    for line in order.lines:
        line.total_price_cents = line.quantity * line.unit_price_cents
        subtotal += line.total_price_cents

    order.subtotal_cents = subtotal
    order.total_amount_cents = subtotal + (order.tax_amount_cents or 0) - (order.discount_amount_cents or 0)
    order.status = derive_receipt_status(order.status, order.lines)
    order.payment_status = derive_payment_status(order.paid_amount_cents or 0, order.total_amount_cents)


# =============================================================================
# Notes
# =============================================================================

def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def append_note(existing: str | None, line: str) -> str:
    """Append a line to a document's free-text notes."""
    if existing:
        return f"{existing}\n{line}"
    return line
