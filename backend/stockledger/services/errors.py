# Overview: Typed failures raised by the ledger core; routes map them to HTTP responses.

"""
Stock ledger error taxonomy.

Every core operation fails closed with one of these. ``details`` carries the
machine-readable context (ids, available vs requested amounts) so callers do
not have to parse messages.
"""

from __future__ import annotations


class StockLedgerError(Exception):
    """Base class for ledger-core failures."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(StockLedgerError):
    """Referenced product / order / sale / line does not exist."""


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id):
        super().__init__(f"Product {product_id} not found", {"product_id": product_id})
        self.product_id = product_id


class SupplierNotFoundError(NotFoundError):
    def __init__(self, supplier_id):
        super().__init__(f"Supplier {supplier_id} not found", {"supplier_id": supplier_id})


class PurchaseOrderNotFoundError(NotFoundError):
    def __init__(self, order_id):
        super().__init__(f"Purchase order {order_id} not found", {"order_id": order_id})


class SaleNotFoundError(NotFoundError):
    def __init__(self, sale_id):
        super().__init__(f"Sale {sale_id} not found", {"sale_id": sale_id})


class LineNotFoundError(NotFoundError):
    """A receipt names a product that is not on the purchase order."""


class InvalidQuantityError(StockLedgerError):
    """Quantity is not a positive integer."""


class InsufficientStockError(StockLedgerError):
    """Requested more than the product currently has on hand."""

    def __init__(self, *, product_id, available: int, requested: int, product_name: str | None = None):
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Required: {requested}",
            {"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class OverReceiptError(StockLedgerError):
    """Receipt would push received quantity past the ordered quantity."""


class OverPaymentError(StockLedgerError):
    """Payment would push the paid amount past the document total."""


class InvalidStateError(StockLedgerError):
    """Operation not allowed in the document's current status."""


class DuplicateIdentifierError(StockLedgerError):
    """SKU, barcode or document number already in use."""
