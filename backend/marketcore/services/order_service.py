# Overview: Service-layer operations for orders after checkout.

from __future__ import annotations

from ..extensions import db
from ..models import Order, Product, User
from ..models.commerce import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    VALID_ORDER_STATUSES,
)
from ..validation import NotFound, Unauthorized, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import TX_RETURN, apply_movement


TERMINAL_ORDER_STATUSES = (ORDER_STATUS_COMPLETED, ORDER_STATUS_CANCELLED)

# Seller-driven fulfilment transitions
SELLER_TRANSITIONS = {
    ORDER_STATUS_PENDING: (ORDER_STATUS_PROCESSING, ORDER_STATUS_COMPLETED, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PROCESSING: (ORDER_STATUS_COMPLETED, ORDER_STATUS_CANCELLED),
}


def _validate_status_filter(status: str | None) -> None:
    if status is not None and status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {status}. Must be one of {list(VALID_ORDER_STATUSES)}")


def list_purchases(user: User, status: str | None = None) -> list[Order]:
    _validate_status_filter(status)
    query = db.session.query(Order).filter(Order.buyer_id == user.id)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def list_sales(user: User, status: str | None = None) -> list[Order]:
    _validate_status_filter(status)
    query = db.session.query(Order).filter(Order.seller_id == user.id)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def get_order(user: User, order_id: int) -> Order:
    """Visible to the order's buyer, its seller, and admins."""
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFound(f"Order {order_id} not found")
    if user.is_admin or user.id in (order.buyer_id, order.seller_id):
        return order
    raise Unauthorized("You can only view your own orders")


def _restock_order_inner(order: Order, actor: User) -> None:
    """Return every item's quantity to stock through the ledger."""
    for item in order.items:
        product = lock_for_update(db.session.query(Product).filter_by(id=item.product_id)).first()
        if product is None:
            continue
        apply_movement(
            product,
            item.quantity,
            tx_type=TX_RETURN,
            reason=f"Order {order.id} cancelled",
            reference=str(order.id),
            actor_user_id=actor.id,
        )


def update_order_status(user: User, order_id: int, status: str) -> Order:
    """
    Move an order through fulfilment.

    - Seller: pending -> processing/completed/cancelled, processing -> completed/cancelled
    - Buyer: may only cancel while pending
    - Completed and cancelled orders are frozen

    Cancelling returns the items to stock.
    """
    if status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {status}. Must be one of {list(VALID_ORDER_STATUSES)}")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound(f"Order {order_id} not found")

        if order.status == status:
            return order
        if order.status in TERMINAL_ORDER_STATUSES:
            raise ValidationError(f"Order is already {order.status}")

        if user.is_admin or user.id == order.seller_id:
            allowed = SELLER_TRANSITIONS.get(order.status, ())
        elif user.id == order.buyer_id:
            allowed = (ORDER_STATUS_CANCELLED,) if order.status == ORDER_STATUS_PENDING else ()
        else:
            raise Unauthorized("You can only update your own orders")

        if status not in allowed:
            raise ValidationError(f"Cannot move order from {order.status} to {status}")

        if status == ORDER_STATUS_CANCELLED:
            _restock_order_inner(order, user)

        order.status = status
        db.session.commit()
        return order

    return run_with_retry(_op)


def delete_order(user: User, order_id: int) -> None:
    """
    Buyer removes a pending direct-checkout order.

    Stock goes back through the ledger; orders created from a payment
    cannot be deleted.
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise NotFound(f"Order {order_id} not found")
        if order.buyer_id != user.id:
            raise Unauthorized("Only the buyer can delete an order")
        if order.status != ORDER_STATUS_PENDING:
            raise ValidationError("Only pending orders can be deleted")
        if order.payment_id is not None:
            raise ValidationError("Paid orders cannot be deleted")

        _restock_order_inner(order, user)
        db.session.delete(order)
        db.session.commit()

    run_with_retry(_op)
