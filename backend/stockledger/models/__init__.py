from .inventory import Supplier, Product, StockTransaction, LedgerImmutableError
from .purchasing import PurchaseOrder, PurchaseOrderLine
from .sales import Sale, SaleLine
from .documents import DocumentSequence

__all__ = [
    'Supplier', 'Product', 'StockTransaction', 'LedgerImmutableError',
    'PurchaseOrder', 'PurchaseOrderLine',
    'Sale', 'SaleLine',
    'DocumentSequence',
]
