"""
Purchase order lifecycle tests.

Verifies:
- Creation: numbering, derived totals, input validation
- Receipt: partial then full receipt, over-receipt and unknown lines fail
  closed, each receipt entry lands in the ledger
- Cancellation keeps received stock; terminal states are enforced
- Payments cannot exceed the order total
"""

import re

import pytest

from conftest import ACTOR_ID, MANAGER_ID
from stockledger.extensions import db
from stockledger.models import Product, PurchaseOrder, StockTransaction, Supplier
from stockledger.services import purchase_order_service as po_service
from stockledger.services import stock_service
from stockledger.services.errors import (
    InvalidQuantityError,
    InvalidStateError,
    LineNotFoundError,
    OverPaymentError,
    OverReceiptError,
    ProductNotFoundError,
    PurchaseOrderNotFoundError,
    SupplierNotFoundError,
)
from stockledger.validation import ValidationError


@pytest.fixture
def two_products(make_product):
    return make_product(), make_product(cost_price_cents=250)


@pytest.fixture
def order(supplier, two_products):
    first, second = two_products
    return po_service.create_purchase_order(
        supplier_id=supplier.id,
        items=[
            {"product_id": first.id, "quantity": 10},
            {"product_id": second.id, "quantity": 20},
        ],
        created_by_user_id=MANAGER_ID,
    )


def _stock(product_id):
    return db.session.get(Product, product_id).current_stock


# =============================================================================
# CREATION
# =============================================================================

class TestCreatePurchaseOrder:
    def test_number_and_totals(self, order, two_products):
        first, second = two_products

        assert re.fullmatch(r"PO\d{8}\d{3}", order.order_number)
        assert order.order_number.endswith("001")
        assert order.status == "pending"
        assert order.payment_status == "pending"
        # 10 x 400 + 20 x 250
        assert order.subtotal_cents == 9000
        assert order.total_amount_cents == 9000
        assert [line.product_id for line in order.lines] == [first.id, second.id]
        assert [line.line_number for line in order.lines] == [1, 2]

    def test_creation_does_not_move_stock(self, order, two_products):
        for product in two_products:
            assert _stock(product.id) == 0
        assert db.session.query(StockTransaction).count() == 0

    def test_tax_and_discount(self, supplier, two_products):
        first, _ = two_products
        order = po_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": first.id, "quantity": 5, "unit_price_cents": 300}],
            created_by_user_id=MANAGER_ID,
            tax_amount_cents=270,
            discount_amount_cents=100,
        )
        assert order.subtotal_cents == 1500
        assert order.total_amount_cents == 1670

    def test_numbers_increment(self, order, supplier, two_products):
        first, _ = two_products
        second_order = po_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": first.id, "quantity": 1}],
            created_by_user_id=MANAGER_ID,
        )
        assert second_order.order_number[:-3] == order.order_number[:-3]
        assert int(second_order.order_number[-3:]) == int(order.order_number[-3:]) + 1

    def test_empty_items_rejected(self, supplier):
        with pytest.raises(ValidationError):
            po_service.create_purchase_order(supplier_id=supplier.id, items=[], created_by_user_id=MANAGER_ID)

    def test_duplicate_product_rejected(self, supplier, two_products):
        first, _ = two_products
        with pytest.raises(ValidationError):
            po_service.create_purchase_order(
                supplier_id=supplier.id,
                items=[{"product_id": first.id, "quantity": 1}, {"product_id": first.id, "quantity": 2}],
                created_by_user_id=MANAGER_ID,
            )

    def test_bad_quantity_rejected(self, supplier, two_products):
        first, _ = two_products
        with pytest.raises(InvalidQuantityError):
            po_service.create_purchase_order(
                supplier_id=supplier.id,
                items=[{"product_id": first.id, "quantity": 0}],
                created_by_user_id=MANAGER_ID,
            )

    def test_unknown_supplier_and_product(self, supplier, two_products):
        first, _ = two_products
        with pytest.raises(SupplierNotFoundError):
            po_service.create_purchase_order(
                supplier_id=9999,
                items=[{"product_id": first.id, "quantity": 1}],
                created_by_user_id=MANAGER_ID,
            )
        with pytest.raises(ProductNotFoundError):
            po_service.create_purchase_order(
                supplier_id=supplier.id,
                items=[{"product_id": 9999, "quantity": 1}],
                created_by_user_id=MANAGER_ID,
            )
        assert db.session.query(PurchaseOrder).count() == 0

    def test_inactive_supplier_rejected(self, db_session, two_products):
        first, _ = two_products
        dormant = Supplier(name="Dormant", code="DORM", is_active=False)
        db_session.add(dormant)
        db_session.commit()

        with pytest.raises(InvalidStateError):
            po_service.create_purchase_order(
                supplier_id=dormant.id,
                items=[{"product_id": first.id, "quantity": 1}],
                created_by_user_id=MANAGER_ID,
            )

    def test_discount_larger_than_total_rejected(self, supplier, two_products):
        first, _ = two_products
        with pytest.raises(ValidationError):
            po_service.create_purchase_order(
                supplier_id=supplier.id,
                items=[{"product_id": first.id, "quantity": 1}],
                created_by_user_id=MANAGER_ID,
                discount_amount_cents=401,
            )


# =============================================================================
# RECEIPT
# =============================================================================

class TestReceivePurchaseOrder:
    def test_partial_then_full_receipt(self, order, two_products):
        first, second = two_products

        order = po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[
                {"product_id": first.id, "received_quantity": 10},
                {"product_id": second.id, "received_quantity": 5},
            ],
            actor_user_id=ACTOR_ID,
        )
        assert order.status == "partial_received"
        assert [line.received_quantity for line in order.lines] == [10, 5]
        assert _stock(first.id) == 10
        assert _stock(second.id) == 5

        order = po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": second.id, "received_quantity": 15}],
            actor_user_id=ACTOR_ID,
        )
        assert order.status == "received"
        assert [line.received_quantity for line in order.lines] == [10, 20]
        assert _stock(second.id) == 20
        assert order.received_by_user_id == ACTOR_ID
        assert order.actual_delivery_date is not None

    def test_receipt_writes_purchase_entries(self, order, two_products, supplier):
        _, second = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": second.id, "quantity": 7}],
            actor_user_id=ACTOR_ID,
        )

        tx = db.session.query(StockTransaction).filter_by(product_id=second.id).one()
        assert tx.transaction_type == "purchase"
        assert tx.quantity == 7
        assert tx.unit_price_cents == 250
        assert tx.reference == order.order_number
        assert tx.supplier_id == supplier.id
        assert tx.performed_by_user_id == ACTOR_ID

    def test_over_receipt_fails_closed(self, order, two_products):
        first, second = two_products

        with pytest.raises(OverReceiptError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[
                    {"product_id": second.id, "received_quantity": 5},
                    {"product_id": first.id, "received_quantity": 11},
                ],
                actor_user_id=ACTOR_ID,
            )

        order = po_service.get_purchase_order(order.id)
        assert order.status == "pending"
        assert [line.received_quantity for line in order.lines] == [0, 0]
        assert _stock(second.id) == 0
        assert db.session.query(StockTransaction).count() == 0

    def test_duplicate_entries_checked_cumulatively(self, order, two_products):
        first, _ = two_products
        with pytest.raises(OverReceiptError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[
                    {"product_id": first.id, "received_quantity": 6},
                    {"product_id": first.id, "received_quantity": 6},
                ],
                actor_user_id=ACTOR_ID,
            )
        assert _stock(first.id) == 0

    def test_over_receipt_after_partial(self, order, two_products):
        first, _ = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": first.id, "received_quantity": 8}],
            actor_user_id=ACTOR_ID,
        )
        with pytest.raises(OverReceiptError) as exc_info:
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[{"product_id": first.id, "received_quantity": 3}],
                actor_user_id=ACTOR_ID,
            )
        assert exc_info.value.details["already_received"] == 8
        assert _stock(first.id) == 8

    def test_product_not_on_order(self, order, two_products, make_product):
        first, _ = two_products
        stranger = make_product()

        with pytest.raises(LineNotFoundError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[
                    {"product_id": first.id, "received_quantity": 2},
                    {"product_id": stranger.id, "received_quantity": 1},
                ],
                actor_user_id=ACTOR_ID,
            )
        assert _stock(first.id) == 0

    def test_bad_receipt_quantity(self, order, two_products):
        first, _ = two_products
        with pytest.raises(InvalidQuantityError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[{"product_id": first.id, "received_quantity": 0}],
                actor_user_id=ACTOR_ID,
            )

    def test_received_order_is_terminal(self, order, two_products):
        first, second = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[
                {"product_id": first.id, "received_quantity": 10},
                {"product_id": second.id, "received_quantity": 20},
            ],
            actor_user_id=ACTOR_ID,
        )

        with pytest.raises(InvalidStateError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[{"product_id": first.id, "received_quantity": 1}],
                actor_user_id=ACTOR_ID,
            )
        with pytest.raises(InvalidStateError):
            po_service.cancel_purchase_order(order_id=order.id, reason="Too late")

    def test_missing_order(self, db_session):
        with pytest.raises(PurchaseOrderNotFoundError):
            po_service.receive_purchase_order(
                order_id=9999,
                received_items=[{"product_id": 1, "received_quantity": 1}],
                actor_user_id=ACTOR_ID,
            )


# =============================================================================
# STATE CHANGES
# =============================================================================

class TestPurchaseOrderStates:
    def test_confirm(self, order):
        order = po_service.confirm_purchase_order(order_id=order.id)
        assert order.status == "confirmed"

        with pytest.raises(InvalidStateError):
            po_service.confirm_purchase_order(order_id=order.id)

    def test_cancel_keeps_received_stock(self, order, two_products):
        first, _ = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": first.id, "received_quantity": 4}],
            actor_user_id=ACTOR_ID,
        )

        order = po_service.cancel_purchase_order(order_id=order.id, reason="Supplier out of stock")
        assert order.status == "cancelled"
        assert "Cancellation reason: Supplier out of stock" in order.notes
        assert _stock(first.id) == 4
        assert stock_service.verify_product_ledger(first.id)["ok"] is True

        with pytest.raises(InvalidStateError):
            po_service.receive_purchase_order(
                order_id=order.id,
                received_items=[{"product_id": first.id, "received_quantity": 1}],
                actor_user_id=ACTOR_ID,
            )

    def test_cancel_twice_rejected(self, order):
        po_service.cancel_purchase_order(order_id=order.id, reason="Duplicate")
        with pytest.raises(InvalidStateError):
            po_service.cancel_purchase_order(order_id=order.id, reason="Again")

    def test_cancel_requires_reason(self, order):
        with pytest.raises(ValidationError):
            po_service.cancel_purchase_order(order_id=order.id, reason="  ")

    def test_update_header_fields(self, order):
        order = po_service.update_purchase_order(
            order_id=order.id,
            payload={"tax_amount_cents": 500, "expected_delivery_date": "2026-11-02", "notes": "Dock B"},
        )
        assert order.total_amount_cents == 9500
        assert order.expected_delivery_date.isoformat() == "2026-11-02"
        assert order.notes == "Dock B"

    def test_update_replaces_items(self, order, two_products):
        first, second = two_products
        order = po_service.update_purchase_order(
            order_id=order.id,
            payload={"items": [{"product_id": second.id, "quantity": 2}, {"product_id": first.id, "quantity": 1}]},
        )
        assert [(line.product_id, line.quantity) for line in order.lines] == [(second.id, 2), (first.id, 1)]
        assert order.subtotal_cents == 900

    def test_update_rejects_status(self, order):
        with pytest.raises(ValidationError):
            po_service.update_purchase_order(order_id=order.id, payload={"status": "received"})

    def test_items_frozen_after_receipt(self, order, two_products):
        first, _ = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": first.id, "received_quantity": 1}],
            actor_user_id=ACTOR_ID,
        )
        with pytest.raises(InvalidStateError):
            po_service.update_purchase_order(
                order_id=order.id,
                payload={"items": [{"product_id": first.id, "quantity": 3}]},
            )

    def test_delete_pending(self, order):
        po_service.delete_purchase_order(order_id=order.id)
        with pytest.raises(PurchaseOrderNotFoundError):
            po_service.get_purchase_order(order.id)

    def test_delete_confirmed_rejected(self, order):
        po_service.confirm_purchase_order(order_id=order.id)
        with pytest.raises(InvalidStateError):
            po_service.delete_purchase_order(order_id=order.id)

    def test_delete_cancelled_with_receipt_rejected(self, order, two_products):
        first, _ = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[{"product_id": first.id, "received_quantity": 3}],
            actor_user_id=ACTOR_ID,
        )
        po_service.cancel_purchase_order(order_id=order.id, reason="Supplier closed")

        with pytest.raises(InvalidStateError):
            po_service.delete_purchase_order(order_id=order.id)
        assert po_service.get_purchase_order(order.id).status == "cancelled"
        assert _stock(first.id) == 3

    def test_delete_cancelled_without_receipt(self, order):
        po_service.cancel_purchase_order(order_id=order.id, reason="Not needed")
        po_service.delete_purchase_order(order_id=order.id)
        with pytest.raises(PurchaseOrderNotFoundError):
            po_service.get_purchase_order(order.id)

    def test_update_cancelled_order_rejected(self, order):
        po_service.cancel_purchase_order(order_id=order.id, reason="Duplicate")
        with pytest.raises(InvalidStateError):
            po_service.update_purchase_order(order_id=order.id, payload={"notes": "late edit"})

    def test_update_received_order_rejected(self, order, two_products):
        first, second = two_products
        po_service.receive_purchase_order(
            order_id=order.id,
            received_items=[
                {"product_id": first.id, "received_quantity": 10},
                {"product_id": second.id, "received_quantity": 20},
            ],
            actor_user_id=ACTOR_ID,
        )
        with pytest.raises(InvalidStateError):
            po_service.update_purchase_order(order_id=order.id, payload={"tax_amount_cents": 100})

        order = po_service.get_purchase_order(order.id)
        assert order.status == "received"
        assert order.tax_amount_cents == 0

    def test_list_filters(self, order, supplier):
        po_service.cancel_purchase_order(order_id=order.id, reason="Changed mind")

        cancelled = po_service.list_purchase_orders(status="cancelled")
        assert cancelled["pagination"]["total"] == 1
        assert cancelled["items"][0]["order_number"] == order.order_number

        assert po_service.list_purchase_orders(status="pending")["pagination"]["total"] == 0
        assert po_service.list_purchase_orders(supplier_id=supplier.id)["pagination"]["total"] == 1

        with pytest.raises(ValidationError):
            po_service.list_purchase_orders(status="lost")


# =============================================================================
# PAYMENTS
# =============================================================================

class TestPurchaseOrderPayments:
    def test_exact_total_marks_paid(self, order):
        order = po_service.record_purchase_order_payment(order_id=order.id, amount_cents=4000)
        assert order.payment_status == "partial"

        order = po_service.record_purchase_order_payment(order_id=order.id, amount_cents=5000, notes="Wire")
        assert order.paid_amount_cents == 9000
        assert order.payment_status == "paid"
        assert "Payment of 50.00 recorded: Wire" in order.notes

    def test_one_cent_over_rejected(self, order):
        with pytest.raises(OverPaymentError):
            po_service.record_purchase_order_payment(order_id=order.id, amount_cents=9001)

        order = po_service.get_purchase_order(order.id)
        assert order.paid_amount_cents == 0

    def test_non_positive_payment_rejected(self, order):
        with pytest.raises(ValidationError):
            po_service.record_purchase_order_payment(order_id=order.id, amount_cents=0)
