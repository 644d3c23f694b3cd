# Overview: Service-layer operations for the inventory ledger; encapsulates business logic and database work.

# backend/marketcore/services/inventory_service.py

from __future__ import annotations

from ..extensions import db
from ..models import Product, InventoryTransaction, User
from ..validation import (
    InsufficientStock,
    NotFound,
    Unauthorized,
    ValidationError,
    require_int,
)
from .concurrency import lock_for_update, run_with_retry
"""
Inventory Ledger Invariants (authoritative)

Storage model:
- Product.quantity is the current on-hand projection.
- InventoryTransaction rows are the append-only explanation of every change.
- Replaying a product's rows in id order reproduces Product.quantity.

Invariants:
- new_quantity == previous_quantity + signed(quantity)
- new_quantity >= 0; a movement that would go negative is rejected and the
  product is left untouched.
- The quantity write and the ledger row are flushed in the same DB
  transaction; neither is committed without the other.

Locking:
- The product row is read with lock_for_update before the non-negative check.
  Product.version_id turns a lost race into StaleDataError (retried).
"""


DEFAULT_LOW_STOCK_THRESHOLD = 5

STOCK_IN_STOCK = "in_stock"
STOCK_LOW = "low_stock"
STOCK_OUT = "out_of_stock"
VALID_STOCK_STATUSES = (STOCK_IN_STOCK, STOCK_LOW, STOCK_OUT)

TX_RESTOCK = "restock"
TX_SALE = "sale"
TX_ADJUSTMENT = "adjustment"
TX_RETURN = "return"
TX_CORRECTION = "correction"
VALID_TX_TYPES = (TX_RESTOCK, TX_SALE, TX_ADJUSTMENT, TX_RETURN, TX_CORRECTION)

DIRECTION_IN = "in"
DIRECTION_OUT = "out"


def get_stock_status(quantity: int, threshold: int | None = None) -> str:
    """Pure classification for reporting; never stored."""
    if threshold is None:
        threshold = DEFAULT_LOW_STOCK_THRESHOLD
    if quantity <= 0:
        return STOCK_OUT
    if quantity <= threshold:
        return STOCK_LOW
    return STOCK_IN_STOCK


def _ensure_can_manage(actor: User, product: Product) -> None:
    if actor.is_admin:
        return
    if product.seller_id != actor.id:
        raise Unauthorized("You can only manage inventory for your own products")


def apply_movement(
    product: Product,
    delta: int,
    *,
    tx_type: str | None = None,
    reason: str | None = None,
    reference: str | None = None,
    actor_user_id: int | None = None,
    insufficient_message: str | None = None,
) -> InventoryTransaction:
    """
    Move stock on an already-locked product and append the ledger row.

    Flushes but does NOT commit; the caller owns the transaction.

    Raises:
        ValidationError: delta is zero or tx_type unknown
        InsufficientStock: the movement would take quantity below zero
    """
    require_int(delta, "delta")
    if delta == 0:
        raise ValidationError("Adjustment quantity cannot be zero")

    if tx_type is None:
        tx_type = TX_RESTOCK if delta > 0 else TX_ADJUSTMENT
    if tx_type not in VALID_TX_TYPES:
        raise ValidationError(f"Invalid transaction type: {tx_type}. Must be one of {list(VALID_TX_TYPES)}")

    previous = product.quantity
    new_quantity = previous + delta
    if new_quantity < 0:
        raise InsufficientStock(
            insufficient_message or "Insufficient stock for this adjustment",
            product_id=product.id,
            available=previous,
            requested=-delta,
        )

    product.quantity = new_quantity

    tx = InventoryTransaction(
        product_id=product.id,
        seller_id=product.seller_id,
        type=tx_type,
        direction=DIRECTION_IN if delta > 0 else DIRECTION_OUT,
        quantity=abs(delta),
        previous_quantity=previous,
        new_quantity=new_quantity,
        reason=reason,
        reference=reference,
        actor_user_id=actor_user_id,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def adjust_stock(
    actor: User,
    product_id: int,
    delta: int,
    *,
    reason: str | None = None,
    tx_type: str | None = None,
    reference: str | None = None,
) -> dict:
    """
    Seller/admin stock adjustment, committed as one unit.

    Returns:
        {"product": ..., "transaction": ..., "new_quantity": int}
    """
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFound(f"Product {product_id} not found")
        _ensure_can_manage(actor, product)

        tx = apply_movement(
            product,
            delta,
            tx_type=tx_type,
            reason=reason,
            reference=reference,
            actor_user_id=actor.id,
        )
        db.session.commit()
        return {
            "product": product.to_dict(),
            "transaction": tx.to_dict(),
            "new_quantity": product.quantity,
        }

    return run_with_retry(_op)


def update_thresholds(
    actor: User,
    product_id: int,
    *,
    low_stock_threshold: int | None = None,
    reorder_quantity: int | None = None,
) -> Product:
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFound(f"Product {product_id} not found")
        _ensure_can_manage(actor, product)

        if low_stock_threshold is not None:
            require_int(low_stock_threshold, "low_stock_threshold")
            if low_stock_threshold < 0:
                raise ValidationError("low_stock_threshold must be >= 0")
            product.low_stock_threshold = low_stock_threshold
        if reorder_quantity is not None:
            require_int(reorder_quantity, "reorder_quantity")
            if reorder_quantity < 0:
                raise ValidationError("reorder_quantity must be >= 0")
            product.reorder_quantity = reorder_quantity

        db.session.commit()
        return product

    return run_with_retry(_op)


# =============================================================================
# REPORTING
# =============================================================================

def list_inventory(seller: User, status: str | None = None) -> dict:
    """
    Seller's products with stock classification and value, sorted by name.

    Summary counts are computed over every product, before the status filter.
    """
    if status is not None and status not in VALID_STOCK_STATUSES:
        raise ValidationError(f"Invalid stock status: {status}")

    products = (
        db.session.query(Product)
        .filter_by(seller_id=seller.id)
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )

    rows = []
    summary = {
        "total_products": 0,
        STOCK_IN_STOCK: 0,
        STOCK_LOW: 0,
        STOCK_OUT: 0,
        "total_value_cents": 0,
    }
    for product in products:
        stock_status = get_stock_status(product.quantity, product.low_stock_threshold)
        stock_value = product.quantity * product.price_cents
        summary["total_products"] += 1
        summary[stock_status] += 1
        summary["total_value_cents"] += stock_value
        if status is not None and stock_status != status:
            continue
        row = product.to_dict()
        row["stock_status"] = stock_status
        row["stock_value_cents"] = stock_value
        row["effective_low_stock_threshold"] = (
            product.low_stock_threshold
            if product.low_stock_threshold is not None
            else DEFAULT_LOW_STOCK_THRESHOLD
        )
        rows.append(row)

    return {"items": rows, "summary": summary}


def list_transactions(seller: User, product_id: int | None = None, limit: int = 50) -> list[InventoryTransaction]:
    """Newest first. Admins see every seller's movements."""
    query = db.session.query(InventoryTransaction)
    if not seller.is_admin:
        query = query.filter(InventoryTransaction.seller_id == seller.id)
    if product_id is not None:
        query = query.filter(InventoryTransaction.product_id == product_id)
    return (
        query.order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .limit(limit)
        .all()
    )


def replay_quantity(product_id: int) -> int | None:
    """
    Rebuild on-hand quantity from the ledger (audit/consistency checks).

    The opening balance is the first row's previous_quantity, so products
    imported with stock before their first movement still reconcile.
    Returns None when the product has no movements.
    """
    rows = (
        db.session.query(InventoryTransaction)
        .filter_by(product_id=product_id)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )
    if not rows:
        return None
    return rows[0].previous_quantity + sum(row.signed_delta for row in rows)
