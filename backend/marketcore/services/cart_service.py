# Overview: Service-layer operations for the buyer cart.

from __future__ import annotations

from ..extensions import db
from ..models import CartItem, Product, User
from ..validation import (
    InsufficientStock,
    NotFound,
    ProductUnavailable,
    Unauthorized,
    ValidationError,
    require_int,
    require_positive_int,
)
from .checkout_service import buyer_fee_cents, clear_cart_inner
from .concurrency import run_with_retry
from .idempotency_service import claim_unique


def _find_item(user_id: int, product_id: int) -> CartItem | None:
    return db.session.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()


def _get_owned_item(user: User, item_id: int) -> CartItem:
    item = db.session.get(CartItem, item_id)
    if not item:
        raise NotFound(f"Cart item {item_id} not found")
    if item.user_id != user.id:
        raise Unauthorized("You can only modify your own cart")
    return item


def _check_stock(product: Product, quantity: int) -> None:
    if quantity > product.quantity:
        raise InsufficientStock(
            f"Insufficient stock for {product.name}",
            product_id=product.id,
            available=product.quantity,
            requested=quantity,
        )


def list_cart(user: User) -> dict:
    """Cart lines at live prices with subtotal, buyer fee and total."""
    items = (
        db.session.query(CartItem)
        .filter_by(user_id=user.id)
        .order_by(CartItem.id.asc())
        .all()
    )
    subtotal = sum(
        item.product.price_cents * item.quantity
        for item in items
        if item.product is not None
    )
    fee = buyer_fee_cents(subtotal)
    return {
        "items": [item.to_dict() for item in items],
        "subtotal_cents": subtotal,
        "buyer_fee_cents": fee,
        "total_cents": subtotal + fee,
    }


def add_to_cart(user: User, product_id: int, quantity: int) -> CartItem:
    """
    Add a product, merging into an existing line for the same product.

    Sellers cannot buy their own listings. The merged quantity must fit
    current stock.
    """
    require_positive_int(quantity, "quantity")

    def _op():
        product = db.session.get(Product, product_id)
        if not product:
            raise NotFound(f"Product {product_id} not found")
        if product.seller_id == user.id:
            raise ValidationError("You can't purchase your own products")
        if not product.is_active:
            raise ProductUnavailable(f"Product {product.name} is no longer available", product_id=product.id)

        existing = _find_item(user.id, product_id)
        if existing is None:
            _check_stock(product, quantity)
            item, created = claim_unique(
                CartItem(user_id=user.id, product_id=product_id, quantity=quantity),
                lambda: _find_item(user.id, product_id),
            )
            if created:
                return item
            # A concurrent add for the same product won the insert; merge into it
            existing = item

        merged = existing.quantity + quantity
        _check_stock(product, merged)
        existing.quantity = merged
        db.session.commit()
        return existing

    return run_with_retry(_op)


def update_cart_item(user: User, item_id: int, quantity: int) -> CartItem | None:
    """Set a line's quantity. quantity <= 0 removes the line and returns None."""
    require_int(quantity, "quantity")

    def _op():
        item = _get_owned_item(user, item_id)
        if quantity <= 0:
            db.session.delete(item)
            db.session.commit()
            return None

        product = item.product
        if product is None or not product.is_active:
            raise ProductUnavailable("Product is no longer available", product_id=item.product_id)
        _check_stock(product, quantity)
        item.quantity = quantity
        db.session.commit()
        return item

    return run_with_retry(_op)


def remove_cart_item(user: User, item_id: int) -> None:
    def _op():
        item = _get_owned_item(user, item_id)
        db.session.delete(item)
        db.session.commit()

    run_with_retry(_op)


def clear_cart(user: User) -> int:
    """Returns the number of lines removed."""
    def _op():
        removed = clear_cart_inner(user.id)
        db.session.commit()
        return removed

    return run_with_retry(_op)
