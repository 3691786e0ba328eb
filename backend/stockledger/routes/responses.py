# Overview: Maps ledger-core exceptions to JSON error responses.

from ..services.errors import (
    DuplicateIdentifierError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidStateError,
    LineNotFoundError,
    NotFoundError,
    OverPaymentError,
    OverReceiptError,
    StockLedgerError,
)

# Checked in order; first match wins
ERROR_STATUS = (
    (LineNotFoundError, 400),
    (NotFoundError, 404),
    (InvalidQuantityError, 400),
    (InsufficientStockError, 409),
    (OverReceiptError, 409),
    (OverPaymentError, 409),
    (InvalidStateError, 409),
    (DuplicateIdentifierError, 409),
)


def ledger_error_response(exc: StockLedgerError):
    status = 400
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status = code
            break
    return {"error": str(exc), "details": exc.details}, status


def invalid_body_response():
    return {"error": "Request body must be a JSON object"}, 400
