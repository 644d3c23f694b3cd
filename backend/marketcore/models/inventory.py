from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z, utcnow


class InventoryTransaction(db.Model):
    """
    Append-only stock movement.

    INVARIANT (enforced by inventory_service, backed by CHECK constraints):
        new_quantity == previous_quantity + (quantity if direction == "in" else -quantity)
        new_quantity >= 0

    Rows are never updated or deleted.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_invtx_product_created", "product_id", "created_at"),
        db.Index("ix_invtx_seller_created", "seller_id", "created_at"),
        db.CheckConstraint("quantity > 0", name="ck_invtx_quantity_positive"),
        db.CheckConstraint("new_quantity >= 0", name="ck_invtx_new_quantity_nonnegative"),
        db.CheckConstraint("direction IN ('in', 'out')", name="ck_invtx_direction"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # restock | sale | adjustment | return | correction
    type = db.Column(db.String(32), nullable=False, index=True)
    direction = db.Column(db.String(3), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    # Free-form pointer to the cause; sale and return rows hold the order id
    reference = db.Column(db.String(64), nullable=True, index=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    @property
    def signed_delta(self) -> int:
        return self.quantity if self.direction == "in" else -self.quantity

    def to_dict(self) -> dict:
        product = self.product
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": product.name if product else None,
            "product_sku": product.sku if product else None,
            "seller_id": self.seller_id,
            "type": self.type,
            "direction": self.direction,
            "quantity": self.quantity,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "reason": self.reason,
            "reference": self.reference,
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }
