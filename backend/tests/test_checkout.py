# Overview: Pytest coverage for the cart, buyer fee, checkout order splitting and order lifecycle.

import pytest

from conftest import commit_from_other_session

from marketcore.models import CartItem, InventoryTransaction, Order, Product
from marketcore.services import cart_service, checkout_service, order_service
from marketcore.validation import (
    EmptyCart,
    InsufficientStock,
    ProductUnavailable,
    Unauthorized,
    ValidationError,
)


@pytest.fixture
def seller_b(make_user):
    return make_user("seller", name="Seller B")


@pytest.fixture
def split_cart(buyer, seller, seller_b, make_product, add_to_cart):
    """p1 (A, 2 x 100), p2 (B, 1 x 50), p3 (A, 3 x 75)"""
    p1 = make_product(seller, name="Green beans", price_cents=100, quantity=10)
    p2 = make_product(seller_b, name="Honey", price_cents=50, quantity=10)
    p3 = make_product(seller, name="Roasted beans", price_cents=75, quantity=10)
    add_to_cart(buyer, p1, 2)
    add_to_cart(buyer, p2, 1)
    add_to_cart(buyer, p3, 3)
    return p1, p2, p3


class TestBuyerFee:

    def test_one_percent_fee(self, app):
        assert checkout_service.buyer_fee_cents(35000) == 350

    def test_fee_rounds_half_up(self, app):
        assert checkout_service.buyer_fee_cents(450) == 5
        assert checkout_service.buyer_fee_cents(449) == 4
        assert checkout_service.buyer_fee_cents(0) == 0

    def test_quote_matches_fee_rounding(self, db_session, buyer, seller, make_product, add_to_cart):
        a = make_product(seller, price_cents=10000, quantity=5)
        b = make_product(seller, price_cents=5000, quantity=5)
        add_to_cart(buyer, a, 2)
        add_to_cart(buyer, b, 3)

        quote = checkout_service.quote_cart(buyer)

        assert quote["subtotal_cents"] == 35000
        assert quote["buyer_fee_cents"] == 350
        assert quote["total_cents"] == 35350
        assert quote["item_count"] == 2
        assert quote["seller_count"] == 1


class TestCart:

    def test_add_merges_into_existing_line(self, db_session, buyer, seller, make_product):
        product = make_product(seller, quantity=10)

        cart_service.add_to_cart(buyer, product.id, 2)
        item = cart_service.add_to_cart(buyer, product.id, 3)

        assert item.quantity == 5
        assert db_session.query(CartItem).filter_by(user_id=buyer.id).count() == 1

    def test_merged_quantity_must_fit_stock(self, db_session, buyer, seller, make_product):
        product = make_product(seller, quantity=4)
        cart_service.add_to_cart(buyer, product.id, 3)

        with pytest.raises(InsufficientStock):
            cart_service.add_to_cart(buyer, product.id, 2)

    def test_cannot_buy_own_product(self, db_session, seller, make_product):
        product = make_product(seller)

        with pytest.raises(ValidationError, match="You can't purchase your own products"):
            cart_service.add_to_cart(seller, product.id, 1)

    def test_inactive_product_rejected(self, db_session, buyer, seller, make_product):
        product = make_product(seller, status="inactive")

        with pytest.raises(ProductUnavailable):
            cart_service.add_to_cart(buyer, product.id, 1)

    def test_non_positive_quantity_rejected(self, db_session, buyer, seller, make_product):
        product = make_product(seller)

        with pytest.raises(ValidationError):
            cart_service.add_to_cart(buyer, product.id, 0)

    def test_update_to_zero_removes_line(self, db_session, buyer, seller, make_product):
        product = make_product(seller)
        item = cart_service.add_to_cart(buyer, product.id, 2)

        assert cart_service.update_cart_item(buyer, item.id, 0) is None
        assert db_session.query(CartItem).count() == 0

    def test_cannot_touch_another_buyers_line(self, db_session, buyer, make_user, seller, make_product):
        product = make_product(seller)
        item = cart_service.add_to_cart(buyer, product.id, 2)
        intruder = make_user()

        with pytest.raises(Unauthorized):
            cart_service.update_cart_item(intruder, item.id, 1)
        with pytest.raises(Unauthorized):
            cart_service.remove_cart_item(intruder, item.id)

    def test_list_cart_totals(self, db_session, split_cart, buyer):
        cart = cart_service.list_cart(buyer)

        assert len(cart["items"]) == 3
        assert cart["subtotal_cents"] == 475
        assert cart["buyer_fee_cents"] == 5
        assert cart["total_cents"] == 480

    def test_clear_cart_returns_count(self, db_session, split_cart, buyer):
        assert cart_service.clear_cart(buyer) == 3
        assert cart_service.list_cart(buyer)["items"] == []


class TestCheckout:

    def test_splits_cart_into_one_order_per_seller(self, db_session, split_cart, buyer, seller, seller_b):
        p1, p2, p3 = split_cart

        orders = checkout_service.checkout(buyer)

        assert len(orders) == 2
        by_seller = {order.seller_id: order for order in orders}
        assert by_seller[seller.id].amount_cents == 425
        assert by_seller[seller_b.id].amount_cents == 50
        assert [item.product_id for item in by_seller[seller.id].items] == [p1.id, p3.id]
        assert all(order.status == "pending" for order in orders)
        assert by_seller[seller.id].title == "Order from Seller A"
        assert by_seller[seller.id].description == "Order containing 2 item(s)"
        assert by_seller[seller.id].customer == "Abebe Buyer"

        for product, expected in ((p1, 8), (p2, 9), (p3, 7)):
            db_session.refresh(product)
            assert product.quantity == expected

        sale_rows = db_session.query(InventoryTransaction).filter_by(type="sale").all()
        assert len(sale_rows) == 3
        assert {row.reference for row in sale_rows} == {str(order.id) for order in orders}
        assert db_session.query(CartItem).filter_by(user_id=buyer.id).count() == 0

    def test_empty_cart(self, db_session, buyer):
        with pytest.raises(EmptyCart):
            checkout_service.checkout(buyer)

    def test_one_bad_line_aborts_everything(self, db_session, split_cart, buyer):
        p1, p2, p3 = split_cart
        p2.quantity = 0
        db_session.commit()

        with pytest.raises(InsufficientStock, match="Insufficient stock for Honey"):
            checkout_service.checkout(buyer)

        assert db_session.query(Order).count() == 0
        assert db_session.query(InventoryTransaction).count() == 0
        assert db_session.query(CartItem).filter_by(user_id=buyer.id).count() == 3
        db_session.refresh(p1)
        assert p1.quantity == 10

    def test_inactive_product_aborts_checkout(self, db_session, split_cart, buyer):
        p1, p2, p3 = split_cart
        p3.status = "inactive"
        db_session.commit()

        with pytest.raises(ProductUnavailable, match="Roasted beans"):
            checkout_service.checkout(buyer)
        assert db_session.query(Order).count() == 0


class TestOrders:

    def test_buyer_cancel_restocks(self, db_session, split_cart, buyer, seller):
        p1, p2, p3 = split_cart
        orders = checkout_service.checkout(buyer)
        order = next(o for o in orders if o.seller_id == seller.id)

        order_service.update_order_status(buyer, order.id, "cancelled")

        db_session.refresh(p1)
        db_session.refresh(p3)
        assert p1.quantity == 10
        assert p3.quantity == 10
        returns = db_session.query(InventoryTransaction).filter_by(type="return").count()
        assert returns == 2

    def test_buyer_cannot_complete(self, db_session, split_cart, buyer):
        order = checkout_service.checkout(buyer)[0]

        with pytest.raises(ValidationError):
            order_service.update_order_status(buyer, order.id, "completed")

    def test_completed_orders_are_frozen(self, db_session, split_cart, buyer, seller):
        orders = checkout_service.checkout(buyer)
        order = next(o for o in orders if o.seller_id == seller.id)

        order_service.update_order_status(seller, order.id, "processing")
        order_service.update_order_status(seller, order.id, "completed")

        with pytest.raises(ValidationError):
            order_service.update_order_status(seller, order.id, "cancelled")

    def test_sales_and_purchases_views(self, db_session, split_cart, buyer, seller, seller_b):
        checkout_service.checkout(buyer)

        assert len(order_service.list_purchases(buyer)) == 2
        assert len(order_service.list_sales(seller)) == 1
        assert len(order_service.list_sales(seller_b)) == 1
        assert order_service.list_sales(buyer) == []

    def test_outsider_cannot_view_order(self, db_session, split_cart, buyer, make_user):
        order = checkout_service.checkout(buyer)[0]

        with pytest.raises(Unauthorized):
            order_service.get_order(make_user(), order.id)

    def test_delete_pending_order_restocks(self, db_session, split_cart, buyer, seller_b):
        p1, p2, p3 = split_cart
        orders = checkout_service.checkout(buyer)
        order = next(o for o in orders if o.seller_id == seller_b.id)

        order_service.delete_order(buyer, order.id)

        assert db_session.get(Order, order.id) is None
        db_session.refresh(p2)
        assert p2.quantity == 10


class TestCheckoutLostRace:

    @pytest.fixture
    def race_after_validation(self, monkeypatch):
        """Commit a stock change for one product right after the first validation pass."""
        passes = []
        real_validate = checkout_service._validate_lines

        def install(product, quantity):
            def raced_validate(lines, *, lock):
                products = real_validate(lines, lock=lock)
                passes.append(products[product.id].quantity)
                if len(passes) == 1:
                    commit_from_other_session(product.id, quantity=quantity)
                return products

            monkeypatch.setattr(checkout_service, "_validate_lines", raced_validate)
            return passes

        return install

    def test_retry_sells_from_fresh_stock(self, db_session, split_cart, buyer, race_after_validation):
        p1, p2, p3 = split_cart
        passes = race_after_validation(p1, 4)

        orders = checkout_service.checkout(buyer)

        assert passes == [10, 4]
        assert len(orders) == 2
        row = db_session.query(InventoryTransaction).filter_by(product_id=p1.id, type="sale").one()
        assert (row.previous_quantity, row.new_quantity) == (4, 2)
        db_session.refresh(p1)
        assert p1.quantity == 2

    def test_retry_never_oversells(self, db_session, split_cart, buyer, race_after_validation):
        p1, p2, p3 = split_cart
        passes = race_after_validation(p1, 1)

        with pytest.raises(InsufficientStock) as exc_info:
            checkout_service.checkout(buyer)

        assert passes == [10]
        assert exc_info.value.extra["available"] == 1
        assert exc_info.value.extra["requested"] == 2
        db_session.expire_all()
        assert db_session.query(Order).count() == 0
        assert db_session.query(InventoryTransaction).count() == 0
        assert db_session.query(CartItem).filter_by(user_id=buyer.id).count() == 3
        assert db_session.get(Product, p1.id).quantity == 1
