from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow


PRODUCT_UNITS = ("piece", "kg", "gram", "liter", "ml", "meter", "cm", "box", "pack", "dozen")
PRODUCT_STATUSES = ("active", "inactive", "discontinued")


class Supplier(db.Model):
    """
    Supplier reference for purchase orders and purchase ledger entries.

    Supplier maintenance lives outside the ledger core; this table only needs
    to exist so orders and stock transactions can point at something real.
    """
    __tablename__ = "suppliers"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_suppliers_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    contact_person = db.Column(db.String(100), nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "contact_person": self.contact_person,
            "phone": self.phone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product stock record: one SKU, its on-hand quantity and reorder thresholds.

    STOCK OWNERSHIP:
    current_stock is written ONLY by services.stock_service.mutate_stock, which
    appends the matching StockTransaction in the same DB transaction. Anything
    else that assigns current_stock breaks the ledger invariant:

        current_stock == SUM(StockTransaction.quantity_delta)

    version_id is the optimistic-lock counter. Two writers that read the same
    version cannot both commit; the loser gets StaleDataError and re-runs.

    IDENTIFIERS:
    - sku: required, unique, stored upper-cased
    - barcode: optional, unique when present (NULLs do not collide)
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.Index("ix_products_name_sku", "name", "sku"),
        db.Index("ix_products_stock_levels", "current_stock", "min_stock_level"),
        db.CheckConstraint("current_stock >= 0", name="current_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(50), nullable=False)
    barcode = db.Column(db.String(50), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    unit = db.Column(db.String(16), nullable=False, default="piece")

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    # Authoritative storage in cents
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)
    # Basis points: 1800 == 18.00%
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock_level = db.Column(db.Integer, nullable=False, default=5)
    max_stock_level = db.Column(db.Integer, nullable=False, default=1000)
    reorder_point = db.Column(db.Integer, nullable=False, default=10)

    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    supplier = db.relationship("Supplier", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.min_stock_level

    @property
    def is_out_of_stock(self) -> bool:
        return self.current_stock == 0

    @property
    def needs_reorder(self) -> bool:
        return self.current_stock <= self.reorder_point

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "supplier_id": self.supplier_id,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "current_stock": self.current_stock,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "reorder_point": self.reorder_point,
            "status": self.status,
            "is_low_stock": self.is_low_stock,
            "is_out_of_stock": self.is_out_of_stock,
            "needs_reorder": self.needs_reorder,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockTransaction(db.Model):
    """
    One immutable stock ledger entry.

    quantity is always positive; quantity_delta is the signed amount actually
    applied to Product.current_stock, so new_stock - previous_stock ==
    quantity_delta holds for every row. Rows are ordered per product by
    (created_at, id) and chain: new_stock of one row is previous_stock of the
    next.

    Rows are never updated or deleted (see the mapper events below).
    """
    __tablename__ = "stock_transactions"
    __table_args__ = (
        db.Index("ix_stocktx_product_created", "product_id", "created_at"),
        db.Index("ix_stocktx_type_created", "transaction_type", "created_at"),
        db.Index("ix_stocktx_actor_created", "performed_by_user_id", "created_at"),
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("previous_stock >= 0", name="previous_stock_non_negative"),
        db.CheckConstraint("new_stock >= 0", name="new_stock_non_negative"),
        db.CheckConstraint("new_stock - previous_stock = quantity_delta", name="delta_matches_stock"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    quantity_delta = db.Column(db.Integer, nullable=False)

    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    # Purchase order number, invoice number, "Initial Stock", ...
    reference = db.Column(db.String(100), nullable=True, index=True)
    notes = db.Column(db.String(500), nullable=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True)

    # Customer snapshot at the time of the movement (sales only)
    customer_name = db.Column(db.String(100), nullable=True)
    customer_phone = db.Column(db.String(15), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    performed_by_user_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("stock_transactions", lazy="dynamic"))
    supplier = db.relationship("Supplier")

    def to_dict(self) -> dict:
        customer = None
        if self.customer_name or self.customer_phone or self.customer_email:
            customer = {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "email": self.customer_email,
            }
        return {
            "id": self.id,
            "product_id": self.product_id,
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "unit_price_cents": self.unit_price_cents,
            "total_amount_cents": self.total_amount_cents,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reference": self.reference,
            "notes": self.notes,
            "supplier_id": self.supplier_id,
            "customer": customer,
            "performed_by_user_id": self.performed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to rewrite ledger history."""


@event.listens_for(StockTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError("stock transactions are append-only and cannot be updated")


@event.listens_for(StockTransaction, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError("stock transactions are append-only and cannot be deleted")
