# Overview: Service-layer operations for checkout; splits a cart into one order per seller.

"""
Checkout / Order-Splitting Engine

WHY: A buyer's cart mixes products from several sellers. Each seller must
receive its own order, priced from item snapshots, with stock decremented
through the inventory ledger, all-or-nothing across the whole cart.

TWO ENTRY POINTS:
- checkout(buyer): direct checkout from the live cart at current prices.
  Orders start as "pending".
- fulfil_order_intent_inner(payment, intent): fulfilment of a successful
  payment from its frozen cart snapshot. Orders start as "processing".
  Prices come from the snapshot; stock and availability are re-validated.

ALGORITHM (both paths):
1. Validate every line against current product state (row-locked).
2. Group lines by seller, keeping each order's items in cart order.
3. Per seller: create Order + OrderItems, one ledger "sale" per item.
4. Clear the buyer's cart.

Validation completes for every line before the first write, so a failure
never leaves partial orders or partial stock movements behind.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import CartItem, Order, OrderItem, Product, User
from ..models.commerce import ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING
from ..validation import EmptyCart, InsufficientStock, ProductUnavailable
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import TX_SALE, apply_movement
from .payment_intents import CartLine, OrderIntent
from . import plan_limits_service


# =============================================================================
# FEES & QUOTES
# =============================================================================

def buyer_fee_cents(subtotal_cents: int, fee_bps: int | None = None) -> int:
    """
    Buyer service fee, rounded half-up to the cent.

    1% of 35000 cents (350.00) is 350 cents (3.50).
    """
    if fee_bps is None:
        fee_bps = current_app.config.get("BUYER_FEE_BPS", 100)
    return (subtotal_cents * fee_bps + 5000) // 10000


def quote_lines(lines: list[CartLine] | tuple[CartLine, ...]) -> dict:
    subtotal = sum(line.line_total_cents for line in lines)
    fee = buyer_fee_cents(subtotal)
    return {
        "subtotal_cents": subtotal,
        "buyer_fee_cents": fee,
        "total_cents": subtotal + fee,
        "item_count": len(lines),
        "seller_count": len({line.seller_id for line in lines}),
    }


# =============================================================================
# CART READS
# =============================================================================

def _cart_items(buyer_id: int) -> list[CartItem]:
    return (
        db.session.query(CartItem)
        .filter_by(user_id=buyer_id)
        .order_by(CartItem.id.asc())
        .all()
    )


def cart_lines(buyer: User) -> list[CartLine]:
    """
    Current cart priced at live product prices, validated.

    Raises:
        EmptyCart, ProductUnavailable, InsufficientStock
    """
    items = _cart_items(buyer.id)
    if not items:
        raise EmptyCart()

    lines = []
    for item in items:
        product = item.product
        if product is None:
            raise ProductUnavailable(f"Product {item.product_id} is no longer available", product_id=item.product_id)
        lines.append(CartLine(
            product_id=product.id,
            quantity=item.quantity,
            unit_price_cents=product.price_cents,
            seller_id=product.seller_id,
            product_name=product.name,
        ))
    _validate_lines(lines, lock=False)
    return lines


def quote_cart(buyer: User) -> dict:
    return quote_lines(cart_lines(buyer))


def snapshot_cart(buyer: User) -> OrderIntent:
    """Freeze the cart (product, quantity, price, seller, name) for a payment."""
    return OrderIntent(items=tuple(cart_lines(buyer)))


# =============================================================================
# CORE
# =============================================================================

def _validate_lines(lines, *, lock: bool) -> dict[int, Product]:
    """
    Re-read every referenced product and check availability and stock.

    Quantities are summed per product, so one product spread across lines is
    checked against its combined demand.
    """
    demand: dict[int, int] = {}
    names: dict[int, str] = {}
    for line in lines:
        demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity
        names.setdefault(line.product_id, line.product_name)

    products: dict[int, Product] = {}
    for product_id in sorted(demand):
        query = db.session.query(Product).filter_by(id=product_id)
        product = (lock_for_update(query) if lock else query).first()
        name = product.name if product else names[product_id]
        if product is None or not product.is_active:
            raise ProductUnavailable(f"Product {name} is no longer available", product_id=product_id)
        if product.quantity < demand[product_id]:
            raise InsufficientStock(
                f"Insufficient stock for {name}",
                product_id=product_id,
                available=product.quantity,
                requested=demand[product_id],
            )
        products[product_id] = product
    return products


def _group_by_seller(lines) -> dict[int, list[CartLine]]:
    groups: dict[int, list[CartLine]] = {}
    for line in lines:
        groups.setdefault(line.seller_id, []).append(line)
    return groups


def _create_orders_inner(
    buyer: User,
    lines,
    products: dict[int, Product],
    *,
    status: str,
    currency: str,
    payment_id: int | None = None,
    description_suffix: str = "",
) -> list[Order]:
    """Create orders, items and ledger movements. Flushes, no commit."""
    orders = []
    for seller_id, group in _group_by_seller(lines).items():
        seller = db.session.get(User, seller_id)
        seller_label = seller.display_name if seller else f"seller {seller_id}"
        order = Order(
            buyer_id=buyer.id,
            seller_id=seller_id,
            payment_id=payment_id,
            title=f"Order from {seller_label}",
            customer=buyer.display_name,
            amount_cents=sum(line.line_total_cents for line in group),
            currency=currency,
            status=status,
            description=f"Order containing {len(group)} item(s){description_suffix}",
        )
        db.session.add(order)
        db.session.flush()

        for line in group:
            db.session.add(OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
            ))
            apply_movement(
                products[line.product_id],
                -line.quantity,
                tx_type=TX_SALE,
                reason=f"Sold to {buyer.display_name}",
                reference=str(order.id),
                actor_user_id=buyer.id,
                insufficient_message=f"Insufficient stock for {line.product_name}",
            )
        orders.append(order)

    db.session.flush()
    return orders


def clear_cart_inner(buyer_id: int) -> int:
    return db.session.query(CartItem).filter_by(user_id=buyer_id).delete(synchronize_session=False)


def checkout(buyer: User) -> list[Order]:
    """
    Direct checkout at current prices. One pending order per seller.

    Each seller's monthly order limit is enforced before anything is written.

    Raises:
        EmptyCart, ProductUnavailable, InsufficientStock, PlanLimitExceeded
    """
    def _op():
        items = _cart_items(buyer.id)
        if not items:
            raise EmptyCart()

        lines = []
        for item in items:
            product = item.product
            if product is None:
                raise ProductUnavailable(f"Product {item.product_id} is no longer available", product_id=item.product_id)
            lines.append(CartLine(
                product_id=product.id,
                quantity=item.quantity,
                unit_price_cents=product.price_cents,
                seller_id=product.seller_id,
                product_name=product.name,
            ))

        products = _validate_lines(lines, lock=True)
        for seller_id in _group_by_seller(lines):
            plan_limits_service.enforce_limit(plan_limits_service.LIMIT_MONTHLY_ORDERS, seller_id=seller_id)

        orders = _create_orders_inner(
            buyer,
            lines,
            products,
            status=ORDER_STATUS_PENDING,
            currency=current_app.config.get("DEFAULT_CURRENCY", "ETB"),
        )
        clear_cart_inner(buyer.id)
        db.session.commit()
        return orders

    return run_with_retry(_op)


def fulfil_order_intent_inner(buyer: User, intent: OrderIntent, *, payment) -> list[Order]:
    """
    Create orders for a successful payment from its frozen snapshot.

    Runs inside payment_service.update_status's transaction; no commit.
    Validation errors propagate before any write so the caller can record
    the failure and keep the payment's success status.
    """
    products = _validate_lines(intent.items, lock=True)
    orders = _create_orders_inner(
        buyer,
        intent.items,
        products,
        status=ORDER_STATUS_PROCESSING,
        currency=payment.currency,
        payment_id=payment.id,
        description_suffix=f" - Payment ref: {payment.tx_ref}",
    )
    clear_cart_inner(buyer.id)
    return orders
