from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_iso_date, to_utc_z, utcnow


SALE_STATUS_DRAFT = "draft"
SALE_STATUS_CONFIRMED = "confirmed"
SALE_STATUS_CANCELLED = "cancelled"
SALE_STATUS_RETURNED = "returned"

SALE_STATUSES = (SALE_STATUS_DRAFT, SALE_STATUS_CONFIRMED, SALE_STATUS_CANCELLED, SALE_STATUS_RETURNED)
SALE_CLOSED_STATUSES = (SALE_STATUS_CANCELLED, SALE_STATUS_RETURNED)

PAYMENT_METHODS = ("cash", "card", "upi", "bank_transfer", "credit")


class Sale(db.Model):
    """
    Sale / invoice document.

    Creating a sale decrements stock for every line; cancelling or returning it
    restores stock for every line. Lines never change after creation.

    Totals and payment_status are derived (services.totals_service) and
    recomputed before every persist.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_sales_invoice_number"),
        db.Index("ix_sales_sale_date", "sale_date"),
        db.Index("ix_sales_payment_due", "payment_status", "due_date"),
        db.Index("ix_sales_sold_by_date", "sold_by_user_id", "sale_date"),
        db.CheckConstraint("paid_amount_cents <= grand_total_cents", name="paid_within_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # INV<YYYYMMDD><NNN>
    invoice_number = db.Column(db.String(32), nullable=False)

    customer_name = db.Column(db.String(100), nullable=False)
    customer_phone = db.Column(db.String(15), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_address = db.Column(db.String(200), nullable=True)
    customer_gst_number = db.Column(db.String(15), nullable=True)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = db.Column(db.Date, nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    total_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default="cash")
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_CONFIRMED, index=True)
    # Free text; cancellation reasons and payment notes are appended
    notes = db.Column(db.Text, nullable=True)

    sold_by_user_id = db.Column(db.Integer, nullable=False)
    # Set when the sale is cancelled or returned
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines = db.relationship(
        "SaleLine",
        back_populates="sale",
        order_by="SaleLine.line_number",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_amount_cents(self) -> int:
        return self.grand_total_cents - self.paid_amount_cents

    @property
    def customer(self) -> dict:
        return {
            "name": self.customer_name,
            "phone": self.customer_phone,
            "email": self.customer_email,
            "address": self.customer_address,
            "gst_number": self.customer_gst_number,
        }

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer": self.customer,
            "sale_date": to_utc_z(self.sale_date),
            "due_date": to_iso_date(self.due_date),
            "subtotal_cents": self.subtotal_cents,
            "total_discount_cents": self.total_discount_cents,
            "total_tax_cents": self.total_tax_cents,
            "grand_total_cents": self.grand_total_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_amount_cents": self.remaining_amount_cents,
            "status": self.status,
            "notes": self.notes,
            "sold_by_user_id": self.sold_by_user_id,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class SaleLine(db.Model):
    """Individual line items on a sale document."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("discount_cents >= 0", name="discount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False, default=1)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Ledger entry that took this line's stock out
    stock_transaction_id = db.Column(db.Integer, db.ForeignKey("stock_transactions.id"), nullable=True)

    sale = db.relationship("Sale", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_amount_cents": self.tax_amount_cents,
            "total_price_cents": self.total_price_cents,
            "stock_transaction_id": self.stock_transaction_id,
        }
