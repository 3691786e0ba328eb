"""
Sales lifecycle tests.

Verifies:
- A sale and its stock decrements commit together or not at all
- Cancellation / return restore stock with "return" ledger entries
- Totals: line tax on (qty x price - discount), rounded half-up
- Payments cannot exceed the grand total
- Line items are immutable after creation
"""

import re

import pytest

from conftest import ACTOR_ID, MANAGER_ID
from stockledger.extensions import db
from stockledger.models import Product, Sale, StockTransaction
from stockledger.services import sales_service, stock_service
from stockledger.services.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    InvalidStateError,
    OverPaymentError,
    ProductNotFoundError,
    SaleNotFoundError,
)
from stockledger.validation import ValidationError

CUSTOMER = {"name": "Meera Iyer", "phone": "9876543210", "email": "meera@example.com"}


def _stock(product_id):
    return db.session.get(Product, product_id).current_stock


def _entries(product_id, transaction_type=None):
    query = db.session.query(StockTransaction).filter_by(product_id=product_id)
    if transaction_type:
        query = query.filter_by(transaction_type=transaction_type)
    return query.order_by(StockTransaction.id.asc()).all()


def _sell(product, quantity, **kwargs):
    return sales_service.create_sale(
        customer=kwargs.pop("customer", CUSTOMER),
        items=[{"product_id": product.id, "quantity": quantity}],
        sold_by_user_id=ACTOR_ID,
        **kwargs,
    )


# =============================================================================
# CREATE / CANCEL
# =============================================================================

class TestSaleStock:
    def test_sale_then_cancel_round_trip(self, product):
        sale = _sell(product, 5)

        assert _stock(product.id) == 10
        sale_entries = _entries(product.id, "sale")
        assert len(sale_entries) == 1
        assert sale_entries[0].quantity == 5
        assert sale_entries[0].reference == sale.invoice_number
        assert sale_entries[0].customer_name == "Meera Iyer"
        assert sale.lines[0].stock_transaction_id == sale_entries[0].id

        sale = sales_service.cancel_sale(sale_id=sale.id, reason="Customer changed mind", actor_user_id=MANAGER_ID)

        assert sale.status == "cancelled"
        assert sale.cancelled_by_user_id == MANAGER_ID
        assert sale.cancelled_at is not None
        assert "Cancellation reason: Customer changed mind" in sale.notes
        assert _stock(product.id) == 15
        return_entries = _entries(product.id, "return")
        assert len(return_entries) == 1
        assert return_entries[0].quantity == 5
        assert return_entries[0].performed_by_user_id == MANAGER_ID
        assert stock_service.verify_product_ledger(product.id)["ok"] is True

    def test_insufficient_stock_leaves_nothing(self, make_product):
        scarce = make_product(initial_stock=3)

        with pytest.raises(InsufficientStockError) as exc_info:
            _sell(scarce, 5)

        assert exc_info.value.details["available"] == 3
        assert exc_info.value.details["requested"] == 5
        assert _stock(scarce.id) == 3
        assert len(_entries(scarce.id)) == 1
        assert db.session.query(Sale).count() == 0

    def test_stock_checked_across_lines(self, make_product):
        scarce = make_product(initial_stock=5)

        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.create_sale(
                customer=CUSTOMER,
                items=[{"product_id": scarce.id, "quantity": 3}, {"product_id": scarce.id, "quantity": 3}],
                sold_by_user_id=ACTOR_ID,
            )
        assert exc_info.value.requested == 6
        assert _stock(scarce.id) == 5

    def test_failure_on_later_line_rolls_back_earlier_lines(self, make_product):
        plenty = make_product(initial_stock=10)
        scarce = make_product(initial_stock=1)

        with pytest.raises(InsufficientStockError):
            sales_service.create_sale(
                customer=CUSTOMER,
                items=[{"product_id": plenty.id, "quantity": 4}, {"product_id": scarce.id, "quantity": 2}],
                sold_by_user_id=ACTOR_ID,
            )
        assert _stock(plenty.id) == 10
        assert _entries(plenty.id, "sale") == []

    def test_return_restores_stock(self, product):
        sale = _sell(product, 6)
        sale = sales_service.return_sale(sale_id=sale.id, reason="Damaged on arrival", actor_user_id=ACTOR_ID)

        assert sale.status == "returned"
        assert "Return reason: Damaged on arrival" in sale.notes
        assert _stock(product.id) == 15

    def test_closed_sale_cannot_close_again(self, product):
        sale = _sell(product, 2)
        sales_service.cancel_sale(sale_id=sale.id, reason="Mistake", actor_user_id=ACTOR_ID)

        with pytest.raises(InvalidStateError):
            sales_service.cancel_sale(sale_id=sale.id, reason="Mistake again", actor_user_id=ACTOR_ID)
        with pytest.raises(InvalidStateError):
            sales_service.return_sale(sale_id=sale.id, reason="Return", actor_user_id=ACTOR_ID)
        assert _stock(product.id) == 15

    def test_cancel_requires_reason(self, product):
        sale = _sell(product, 2)
        with pytest.raises(ValidationError):
            sales_service.cancel_sale(sale_id=sale.id, reason="", actor_user_id=ACTOR_ID)
        assert _stock(product.id) == 13

    def test_draft_sale_also_takes_stock(self, product):
        sale = _sell(product, 1, status="draft")
        assert sale.status == "draft"
        assert _stock(product.id) == 14

    def test_missing_sale(self, db_session):
        with pytest.raises(SaleNotFoundError):
            sales_service.cancel_sale(sale_id=9999, reason="Gone", actor_user_id=ACTOR_ID)


# =============================================================================
# VALIDATION
# =============================================================================

class TestSaleValidation:
    def test_invoice_number_format(self, product):
        first = _sell(product, 1)
        second = _sell(product, 1)

        assert re.fullmatch(r"INV\d{8}\d{3}", first.invoice_number)
        assert int(second.invoice_number[-3:]) == int(first.invoice_number[-3:]) + 1

    def test_empty_items(self, product):
        with pytest.raises(ValidationError):
            sales_service.create_sale(customer=CUSTOMER, items=[], sold_by_user_id=ACTOR_ID)

    def test_customer_name_required(self, product):
        with pytest.raises(ValidationError):
            _sell(product, 1, customer={"name": "  "})

    def test_customer_email_checked(self, product):
        with pytest.raises(ValidationError):
            _sell(product, 1, customer={"name": "Ravi", "email": "not-an-email"})

    def test_unknown_product(self, db_session):
        with pytest.raises(ProductNotFoundError):
            sales_service.create_sale(
                customer=CUSTOMER,
                items=[{"product_id": 9999, "quantity": 1}],
                sold_by_user_id=ACTOR_ID,
            )

    def test_bad_quantity(self, product):
        with pytest.raises(InvalidQuantityError):
            _sell(product, 0)

    def test_unknown_payment_method(self, product):
        with pytest.raises(ValidationError):
            _sell(product, 1, payment_method="barter")

    def test_overpay_at_creation(self, product):
        with pytest.raises(OverPaymentError):
            _sell(product, 1, paid_amount_cents=1001)
        assert _stock(product.id) == 15

    def test_discount_above_line_amount(self, product):
        with pytest.raises(ValidationError):
            sales_service.create_sale(
                customer=CUSTOMER,
                items=[{"product_id": product.id, "quantity": 1, "discount_cents": 1001}],
                sold_by_user_id=ACTOR_ID,
            )


# =============================================================================
# TOTALS
# =============================================================================

class TestSaleTotals:
    def test_line_tax_after_discount(self, make_product):
        taxed = make_product(initial_stock=5, tax_rate_bps=1800)
        sale = sales_service.create_sale(
            customer=CUSTOMER,
            items=[{"product_id": taxed.id, "quantity": 2, "discount_cents": 100}],
            sold_by_user_id=ACTOR_ID,
        )

        line = sale.lines[0]
        assert line.unit_price_cents == 1000
        assert line.tax_rate_bps == 1800
        assert line.tax_amount_cents == 342
        assert line.total_price_cents == 2242
        assert sale.subtotal_cents == 2000
        assert sale.total_discount_cents == 100
        assert sale.total_tax_cents == 342
        assert sale.grand_total_cents == 2242

    def test_tax_rounds_half_up(self, product):
        sale = sales_service.create_sale(
            customer=CUSTOMER,
            items=[{"product_id": product.id, "quantity": 1, "unit_price_cents": 25, "tax_rate_bps": 1000}],
            sold_by_user_id=ACTOR_ID,
        )
        assert sale.lines[0].tax_amount_cents == 3
        assert sale.grand_total_cents == 28

    def test_multiple_lines(self, make_product):
        a = make_product(initial_stock=10, selling_price_cents=500)
        b = make_product(initial_stock=10, selling_price_cents=1200, tax_rate_bps=500)
        sale = sales_service.create_sale(
            customer=CUSTOMER,
            items=[{"product_id": a.id, "quantity": 3}, {"product_id": b.id, "quantity": 1}],
            sold_by_user_id=ACTOR_ID,
        )
        # 1500 + 1200 + 60 tax
        assert sale.grand_total_cents == 2760
        assert [line.line_number for line in sale.lines] == [1, 2]


# =============================================================================
# PAYMENTS
# =============================================================================

class TestSalePayments:
    def test_partial_then_exact(self, product):
        sale = _sell(product, 2)
        assert sale.payment_status == "pending"

        sale = sales_service.record_sale_payment(sale_id=sale.id, amount_cents=500)
        assert sale.payment_status == "partial"
        assert sale.remaining_amount_cents == 1500

        sale = sales_service.record_sale_payment(sale_id=sale.id, amount_cents=1500, payment_method="upi")
        assert sale.payment_status == "paid"
        assert sale.payment_method == "upi"
        assert "Payment of 15.00 via upi" in sale.notes

    def test_one_cent_over_rejected(self, product):
        sale = _sell(product, 2, paid_amount_cents=1000)

        with pytest.raises(OverPaymentError) as exc_info:
            sales_service.record_sale_payment(sale_id=sale.id, amount_cents=1001)
        assert exc_info.value.details["remaining_cents"] == 1000

        sale = sales_service.get_sale(sale.id)
        assert sale.paid_amount_cents == 1000
        assert sale.payment_status == "partial"

    def test_paid_in_full_at_creation(self, product):
        sale = _sell(product, 1, paid_amount_cents=1000)
        assert sale.payment_status == "paid"

    def test_no_payment_on_cancelled_sale(self, product):
        sale = _sell(product, 1)
        sales_service.cancel_sale(sale_id=sale.id, reason="Void", actor_user_id=ACTOR_ID)

        with pytest.raises(InvalidStateError):
            sales_service.record_sale_payment(sale_id=sale.id, amount_cents=100)


# =============================================================================
# UPDATE / LIST
# =============================================================================

class TestUpdateSale:
    def test_update_customer_and_status(self, product):
        sale = _sell(product, 1, status="draft")

        sale = sales_service.update_sale(
            sale_id=sale.id,
            payload={"customer": {"phone": "9000000000"}, "status": "confirmed", "due_date": "2026-12-01"},
        )
        assert sale.status == "confirmed"
        assert sale.customer_name == "Meera Iyer"
        assert sale.customer_phone == "9000000000"
        assert sale.due_date.isoformat() == "2026-12-01"

    def test_items_immutable(self, product):
        sale = _sell(product, 1)
        with pytest.raises(ValidationError):
            sales_service.update_sale(
                sale_id=sale.id,
                payload={"items": [{"product_id": product.id, "quantity": 9}]},
            )
        assert _stock(product.id) == 14

    def test_cannot_close_through_update(self, product):
        sale = _sell(product, 1)
        with pytest.raises(InvalidStateError):
            sales_service.update_sale(sale_id=sale.id, payload={"status": "cancelled"})
        assert _stock(product.id) == 14

    def test_closed_sale_not_editable(self, product):
        sale = _sell(product, 1)
        sales_service.return_sale(sale_id=sale.id, reason="Wrong size", actor_user_id=ACTOR_ID)
        with pytest.raises(InvalidStateError):
            sales_service.update_sale(sale_id=sale.id, payload={"notes": "late edit"})

    def test_list_filters(self, product):
        _sell(product, 1)
        paid = _sell(product, 1, paid_amount_cents=1000, customer={"name": "Arjun Rao"})

        by_payment = sales_service.list_sales(payment_status="paid")
        assert [s["invoice_number"] for s in by_payment["items"]] == [paid.invoice_number]

        by_customer = sales_service.list_sales(customer="arjun")
        assert by_customer["pagination"]["total"] == 1

        assert sales_service.list_sales()["pagination"]["total"] == 2

        with pytest.raises(ValidationError):
            sales_service.list_sales(status="lost")
