from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z, utcnow


PRODUCT_STATUS_ACTIVE = "active"
PRODUCT_STATUS_INACTIVE = "inactive"


class Product(db.Model):
    """
    Catalog listing owned by a seller.

    Catalog CRUD lives outside this service; the commerce core only reads
    price/status/owner and writes `quantity`, and only through
    inventory_service.adjust_stock so every change has a ledger row.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("seller_id", "sku", name="uq_products_seller_sku"),
        db.Index("ix_products_seller_name", "seller_id", "name"),
        db.CheckConstraint("quantity >= 0", name="ck_products_quantity_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    # Projection of the inventory ledger; only inventory_service writes this
    quantity = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=PRODUCT_STATUS_ACTIVE)

    # NULL = DEFAULT_LOW_STOCK_THRESHOLD
    low_stock_threshold = db.Column(db.Integer, nullable=True)
    reorder_quantity = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    seller = db.relationship("User", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_active(self) -> bool:
        return self.status == PRODUCT_STATUS_ACTIVE

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} seller_id={self.seller_id} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "quantity": self.quantity,
            "status": self.status,
            "low_stock_threshold": self.low_stock_threshold,
            "reorder_quantity": self.reorder_quantity,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
