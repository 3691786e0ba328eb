# Overview: Daily-scoped order and invoice numbering backed by an atomic counter.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from stockledger.time_utils import business_day

PURCHASE_ORDER_PREFIX = "PO"
INVOICE_PREFIX = "INV"


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def format_document_number(prefix: str, day: str, number: int, pad: int = 3) -> str:
    return f"{prefix}{day}{number:0{pad}d}"


def _highest_existing_suffix(prefix: str, day: str, number_column) -> int:
    """
    Highest numeric suffix among already-issued numbers for prefix+day.

    Only consulted when a day's counter row does not exist yet, so numbers
    issued outside the counter (imports, restored backups) are never reused.
    """
    stem = f"{prefix}{day}"
    rows = (
        db.session.query(number_column)
        .filter(number_column.like(f"{stem}%"))
        .all()
    )
    highest = 0
    for (value,) in rows:
        suffix = value[len(stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def next_daily_number(
    *,
    prefix: str,
    number_column=None,
    on: datetime | None = None,
    pad: int = 3,
) -> str:
    """
    Atomically allocate the next <prefix><YYYYMMDD><NNN> number.

    The counter row for (prefix, day) is advanced with one UPDATE statement,
    so concurrent allocations serialize in the database instead of racing on
    read-then-increment. The first allocation of a day inserts the row; if a
    concurrent insert wins the unique constraint, we fall back to the UPDATE.

    Runs inside the caller's transaction (flush only) so the number is
    released if the document insert fails.
    """
    if not prefix:
        raise DocumentSequenceError("prefix is required")

    day = business_day(on)

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.prefix == prefix,
            DocumentSequence.business_day == day,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _read_allocated() -> int:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(prefix=prefix, business_day=day)
            .scalar()
        )
        return current - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _read_allocated()
    else:
        start = 1
        if number_column is not None:
            start = _highest_existing_suffix(prefix, day, number_column) + 1
        seq = DocumentSequence(prefix=prefix, business_day=day, next_number=start + 1)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
            next_num = start
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise DocumentSequenceError(f"could not allocate {prefix} number for {day}")
            next_num = _read_allocated()

    return format_document_number(prefix, day, next_num, pad=pad)
