# Overview: Pytest coverage for the HTTP surface: identity headers, roles, status codes and payloads.

import pytest

from conftest import auth_headers
from marketcore.models import Payment, PaymentAuditLog, User


@pytest.fixture
def stocked_cart(buyer, seller, make_product, add_to_cart):
    product = make_product(seller, name="Sidamo beans", price_cents=35000, quantity=5)
    add_to_cart(buyer, product, 1)
    return product


class TestIdentity:

    def test_anonymous_requests_rejected(self, client, db_session):
        for method, url in (("get", "/api/cart"), ("post", "/api/checkout"), ("get", "/api/payments")):
            response = getattr(client, method)(url)
            assert response.status_code == 401
            assert response.get_json()["code"] == "not_authenticated"

    def test_first_request_provisions_buyer(self, client, db_session):
        response = client.get("/api/cart", headers={
            "X-User-Id": "idp|42",
            "X-User-Email": "new@example.com",
            "X-User-Name": "New Buyer",
        })

        assert response.status_code == 200
        user = db_session.query(User).filter_by(external_id="idp|42").one()
        assert user.role == "buyer"
        assert user.name == "New Buyer"

    def test_claims_refresh_profile(self, client, db_session, buyer):
        headers = {**auth_headers(buyer), "X-User-Name": "Renamed"}

        client.get("/api/cart", headers=headers)

        db_session.refresh(buyer)
        assert buyer.name == "Renamed"


class TestRoles:

    def test_buyer_cannot_read_inventory(self, client, db_session, buyer):
        response = client.get("/api/inventory", headers=auth_headers(buyer))

        assert response.status_code == 403
        assert response.get_json()["required_role"] == ["seller"]

    def test_seller_reads_inventory(self, client, db_session, seller, make_product):
        make_product(seller, quantity=0)

        response = client.get("/api/inventory", headers=auth_headers(seller))

        assert response.status_code == 200
        assert response.get_json()["summary"]["out_of_stock"] == 1

    def test_admin_routes_require_admin(self, client, db_session, seller, admin):
        assert client.get("/api/admin/payments", headers=auth_headers(seller)).status_code == 403
        assert client.get("/api/admin/payments", headers=auth_headers(admin)).status_code == 200


class TestCartAndCheckout:

    def test_cart_totals(self, client, db_session, buyer, stocked_cart):
        response = client.get("/api/cart", headers=auth_headers(buyer))

        body = response.get_json()
        assert body["subtotal_cents"] == 35000
        assert body["buyer_fee_cents"] == 350
        assert body["total_cents"] == 35350

    def test_add_item_requires_product(self, client, db_session, buyer):
        response = client.post("/api/cart/items", json={}, headers=auth_headers(buyer))

        assert response.status_code == 400

    def test_add_item_created(self, client, db_session, buyer, seller, make_product):
        product = make_product(seller)

        response = client.post(
            "/api/cart/items",
            json={"product_id": product.id, "quantity": 2},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 201
        assert response.get_json()["item"]["quantity"] == 2

    def test_empty_checkout(self, client, db_session, buyer):
        response = client.post("/api/checkout", headers=auth_headers(buyer))

        assert response.status_code == 400
        assert response.get_json()["code"] == "empty_cart"

    def test_checkout_creates_orders(self, client, db_session, buyer, stocked_cart):
        response = client.post("/api/checkout", headers=auth_headers(buyer))

        assert response.status_code == 201
        orders = response.get_json()["orders"]
        assert len(orders) == 1
        assert orders[0]["amount_cents"] == 35000
        assert orders[0]["status"] == "pending"

    def test_insufficient_stock_reports_availability(self, client, db_session, buyer, seller, make_product,
                                                     add_to_cart):
        product = make_product(seller, quantity=1)
        add_to_cart(buyer, product, 3)

        response = client.post("/api/checkout", headers=auth_headers(buyer))

        assert response.status_code == 400
        body = response.get_json()
        assert body["code"] == "insufficient_stock"
        assert body["available"] == 1
        assert body["requested"] == 3


class TestPaymentRoutes:

    def test_idempotent_create(self, client, db_session, buyer, stocked_cart):
        headers = {**auth_headers(buyer), "Idempotency-Key": "checkout-1"}
        payload = {"amount_cents": 35350, "currency": "etb", "payment_type": "order"}

        first = client.post("/api/payments", json=payload, headers=headers)
        second = client.post("/api/payments", json=payload, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["created"] is False
        assert second.get_json()["payment"]["id"] == first.get_json()["payment"]["id"]
        assert db_session.query(Payment).count() == 1

        by_key = client.get("/api/payments/by-key/checkout-1", headers=auth_headers(buyer))
        assert by_key.status_code == 200

    def test_missing_fields(self, client, db_session, buyer):
        response = client.post("/api/payments", json={"currency": "ETB"}, headers=auth_headers(buyer))

        assert response.status_code == 400
        assert "amount_cents" in response.get_json()["error"]

    def test_amount_mismatch_reports_expected(self, client, db_session, buyer, stocked_cart):
        response = client.post(
            "/api/payments",
            json={"amount_cents": 35000, "currency": "ETB", "payment_type": "order"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 400
        assert response.get_json()["expected_cents"] == 35350

    def test_other_users_payment_hidden(self, client, db_session, buyer, make_user, stocked_cart):
        created = client.post(
            "/api/payments",
            json={"amount_cents": 35350, "currency": "ETB", "payment_type": "order"},
            headers=auth_headers(buyer),
        )
        tx_ref = created.get_json()["payment"]["tx_ref"]

        response = client.get(f"/api/payments/{tx_ref}", headers=auth_headers(make_user()))

        assert response.status_code == 403

    def test_creation_is_rate_limited_per_user(self, app, client, db_session, monkeypatch, buyer, make_user, stocked_cart):
        monkeypatch.setitem(app.config, "RATE_LIMIT_PAYMENT_INIT_PER_MINUTE", 1)
        payload = {"amount_cents": 35350, "currency": "ETB", "payment_type": "order"}

        first = client.post("/api/payments", json=payload, headers=auth_headers(buyer))
        second = client.post("/api/payments", json=payload, headers=auth_headers(buyer))
        other_user = client.post("/api/payments", json={"currency": "ETB"}, headers=auth_headers(make_user()))

        assert first.status_code == 201
        assert second.status_code == 429
        assert second.get_json()["code"] == "rate_limited"
        assert "Retry-After" in second.headers
        assert other_user.status_code == 400
        assert db_session.query(Payment).count() == 1
        entry = db_session.query(PaymentAuditLog).filter_by(action="create", status="rate_limited").one()
        assert entry.user_id == buyer.id


class TestPlansAndUsage:

    def test_public_catalog(self, client, db_session, plans):
        response = client.get("/api/plans")

        assert [p["slug"] for p in response.get_json()["plans"]] == ["starter", "growth", "pro", "enterprise"]

    def test_price_quote(self, client, db_session, plans):
        response = client.get(f"/api/plans/{plans['starter'].id}/price?billing_cycle=annual")

        assert response.get_json()["savings_cents"] == 360000

    def test_unknown_plan(self, client, db_session):
        assert client.get("/api/plans/slug/platinum").status_code == 404

    def test_usage_for_owned_business(self, client, db_session, seller, make_business, make_user):
        business = make_business(seller)

        mine = client.get(f"/api/subscriptions/business/{business.id}/usage", headers=auth_headers(seller))
        theirs = client.get(
            f"/api/subscriptions/business/{business.id}/usage",
            headers=auth_headers(make_user("seller")),
        )

        assert mine.status_code == 200
        assert mine.get_json()["active"] is False
        assert mine.get_json()["usage"]["origin_calculations"]["limit"] == 5
        assert theirs.status_code == 403


def test_health(client, db_session):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["checks"]["database"]["status"] == "healthy"
