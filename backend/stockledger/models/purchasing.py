from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_iso_date, to_utc_z, utcnow


PO_STATUS_PENDING = "pending"
PO_STATUS_CONFIRMED = "confirmed"
PO_STATUS_PARTIAL = "partial_received"
PO_STATUS_RECEIVED = "received"
PO_STATUS_CANCELLED = "cancelled"

PO_STATUSES = (
    PO_STATUS_PENDING,
    PO_STATUS_CONFIRMED,
    PO_STATUS_PARTIAL,
    PO_STATUS_RECEIVED,
    PO_STATUS_CANCELLED,
)


class PurchaseOrder(db.Model):
    """
    Purchase order document.

    LIFECYCLE:
    pending -> confirmed -> partial_received -> received
    any non-terminal status -> cancelled

    DERIVED FIELDS (never assigned by callers):
    - subtotal_cents, total_amount_cents: recomputed from lines
    - status after a receipt: recomputed from received quantities
    - payment_status: recomputed from paid_amount_cents
    See services.totals_service.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchase_orders_order_number"),
        db.Index("ix_purchase_orders_status_date", "status", "order_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # PO<YYYYMMDD><NNN>
    order_number = db.Column(db.String(32), nullable=False)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default=PO_STATUS_PENDING, index=True)

    order_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expected_delivery_date = db.Column(db.Date, nullable=True)
    actual_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    # Free text; cancellation reasons and payment notes are appended
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=False)
    received_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    supplier = db.relationship("Supplier")
    lines = db.relationship(
        "PurchaseOrderLine",
        back_populates="purchase_order",
        order_by="PurchaseOrderLine.line_number",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_fully_received(self) -> bool:
        return bool(self.lines) and all(line.received_quantity >= line.quantity for line in self.lines)

    @property
    def remaining_amount_cents(self) -> int:
        return self.total_amount_cents - self.paid_amount_cents

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "order_date": to_utc_z(self.order_date),
            "expected_delivery_date": to_iso_date(self.expected_delivery_date),
            "actual_delivery_date": to_utc_z(self.actual_delivery_date),
            "subtotal_cents": self.subtotal_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "payment_status": self.payment_status,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_amount_cents": self.remaining_amount_cents,
            "is_fully_received": self.is_fully_received,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "received_by_user_id": self.received_by_user_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class PurchaseOrderLine(db.Model):
    """Ordered vs received quantity for one product on a purchase order."""
    __tablename__ = "purchase_order_lines"
    __table_args__ = (
        db.UniqueConstraint("purchase_order_id", "product_id", name="uq_po_lines_order_product"),
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("received_quantity >= 0", name="received_non_negative"),
        db.CheckConstraint("received_quantity <= quantity", name="received_within_ordered"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False, default=1)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False, default=0)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    purchase_order = db.relationship("PurchaseOrder", back_populates="lines")
    product = db.relationship("Product")

    @property
    def outstanding_quantity(self) -> int:
        return self.quantity - self.received_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
            "received_quantity": self.received_quantity,
            "outstanding_quantity": self.outstanding_quantity,
        }
