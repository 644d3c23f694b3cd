# Overview: Pytest coverage for plan limits, plan catalog rules and metered usage.

import pytest

from marketcore.services import checkout_service, plan_limits_service, plan_service, subscription_service
from marketcore.services.plan_limits_service import DEFAULT_PLAN_LIMITS, PlanLimits, is_within_limit
from marketcore.validation import PlanLimitExceeded, Unauthorized, ValidationError


class TestLimitMath:

    def test_within_limit(self):
        assert is_within_limit(4, 5) is True
        assert is_within_limit(5, 5) is False
        assert is_within_limit(10_000, -1) is True

    def test_limits_json_falls_back_field_by_field(self):
        starter = DEFAULT_PLAN_LIMITS["starter"]

        parsed = PlanLimits.from_json('{"max_products": "lots", "max_monthly_orders": 7}', starter)

        assert parsed.max_monthly_orders == 7
        assert parsed.max_products == starter.max_products
        assert PlanLimits.from_json("not json", starter) == starter
        assert PlanLimits.from_json("[1, 2]", starter) == starter


class TestCheckLimit:

    def test_no_subscription_uses_starter_limits(self, db_session, seller, make_product):
        make_product(seller)
        make_product(seller)

        result = plan_limits_service.check_limit("products", seller_id=seller.id)

        assert result.allowed is True
        assert result.current == 2
        assert result.limit == 10

    def test_trialing_plan_limits_apply(self, db_session, seller, make_business, plans):
        business = make_business(seller)
        subscription_service.create_subscription(seller, business.id, plans["enterprise"].id, start_trial=True)

        result = plan_limits_service.check_limit("origin_calculations", business_id=business.id)

        assert result.unlimited is True
        assert result.allowed is True

    def test_pending_units_count(self, db_session, seller, make_business):
        business = make_business(seller)

        result = plan_limits_service.check_limit("origin_calculations", business_id=business.id, pending=5)

        assert result.allowed is False

    def test_unknown_kind(self, db_session, seller):
        with pytest.raises(ValidationError):
            plan_limits_service.check_limit("team_members", seller_id=seller.id)


class TestOriginCalculations:

    def test_metered_per_business(self, db_session, seller, make_business):
        business = make_business(seller)
        for _ in range(5):
            subscription_service.record_origin_calculation(
                seller, business.id, origin_country="et", destination_country="ke"
            )

        with pytest.raises(PlanLimitExceeded) as exc_info:
            subscription_service.record_origin_calculation(seller, business.id)

        assert "(5/5)" in exc_info.value.message
        assert exc_info.value.to_dict()["feature"] == "origin calculation"
        usage = subscription_service.get_usage_stats(business.id)
        assert usage["origin_calculations"] == {"used": 5, "limit": 5, "unlimited": False}

    def test_country_codes_normalized(self, db_session, seller, make_business):
        business = make_business(seller)

        row = subscription_service.record_origin_calculation(
            seller, business.id, origin_country="et", destination_country="ke"
        )

        assert (row.origin_country, row.destination_country) == ("ET", "KE")

    def test_owner_only(self, db_session, seller, make_user, make_business):
        business = make_business(seller)

        with pytest.raises(Unauthorized):
            subscription_service.record_origin_calculation(make_user("seller"), business.id)


class TestMonthlyOrderLimit:

    def test_checkout_blocked_at_limit(
        self, db_session, admin, buyer, seller, make_business, make_product, add_to_cart, plans
    ):
        tiny = plan_service.create_plan(admin, {
            "slug": "tiny",
            "name": "Tiny",
            "monthly_price_cents": 100,
            "annual_price_cents": 1000,
            "limits": {"max_monthly_orders": 1},
        })
        business = make_business(seller)
        subscription_service.create_subscription(seller, business.id, tiny.id, start_trial=True)
        product = make_product(seller, quantity=10)

        add_to_cart(buyer, product, 1)
        checkout_service.checkout(buyer)
        add_to_cart(buyer, product, 1)

        with pytest.raises(PlanLimitExceeded) as exc_info:
            checkout_service.checkout(buyer)

        assert exc_info.value.limit == 1
        db_session.refresh(product)
        assert product.quantity == 9


class TestPlanCatalog:

    def test_seed_is_idempotent(self, db_session):
        assert plan_service.seed_default_plans() == 4
        assert plan_service.seed_default_plans() == 0
        assert [p.slug for p in plan_service.list_plans()] == ["starter", "growth", "pro", "enterprise"]

    def test_annual_savings(self, db_session, plans):
        price = plan_service.calculate_price(plans["starter"], "annual")

        assert price["price_cents"] == 1440000
        assert price["savings_cents"] == 360000
        assert price["savings_percent"] == 20

    def test_monthly_price_has_no_savings(self, db_session, plans):
        price = plan_service.calculate_price(plans["growth"], "monthly")

        assert price["price_cents"] == 400000
        assert price["savings_cents"] == 0

    @pytest.mark.parametrize("payload, message", [
        ({"slug": "Bad Slug", "name": "X", "monthly_price_cents": 100, "annual_price_cents": 1000}, "kebab-case"),
        ({"slug": "pricey", "name": "X", "monthly_price_cents": 100, "annual_price_cents": 1300}, "12 x"),
        ({"slug": "neg", "name": "X", "monthly_price_cents": -1, "annual_price_cents": 0}, ">= 0"),
        ({"slug": "nameless", "monthly_price_cents": 100, "annual_price_cents": 1000}, "Missing required"),
        ({"slug": "odd", "name": "X", "monthly_price_cents": 100, "annual_price_cents": 1000, "owner": 1},
         "not allowed"),
    ])
    def test_plan_rules(self, db_session, admin, payload, message):
        with pytest.raises(ValidationError, match=message):
            plan_service.create_plan(admin, payload)

    def test_duplicate_slug(self, db_session, admin, plans):
        with pytest.raises(ValidationError, match="already exists"):
            plan_service.create_plan(admin, {
                "slug": "starter", "name": "Again", "monthly_price_cents": 1, "annual_price_cents": 1,
            })

    def test_partial_update_cannot_invert_pricing(self, db_session, admin, plans):
        with pytest.raises(ValidationError):
            plan_service.update_plan(admin, plans["starter"].id, {"annual_price_cents": 99_000_000})

    def test_admin_only(self, db_session, seller, plans):
        with pytest.raises(Unauthorized):
            plan_service.create_plan(seller, {
                "slug": "x", "name": "X", "monthly_price_cents": 1, "annual_price_cents": 1,
            })
        with pytest.raises(Unauthorized):
            plan_service.deactivate_plan(seller, plans["starter"].id)

    def test_deactivated_plans_hidden(self, db_session, admin, plans):
        plan_service.deactivate_plan(admin, plans["pro"].id)

        assert "pro" not in [p.slug for p in plan_service.list_plans()]
        assert "pro" in [p.slug for p in plan_service.list_plans(active_only=False)]

    def test_delete_all_blocked_while_live(self, db_session, admin, seller, make_business, plans):
        business = make_business(seller)
        subscription_service.create_subscription(seller, business.id, plans["starter"].id, start_trial=True)

        with pytest.raises(ValidationError):
            plan_service.delete_all_plans(admin)

    def test_delete_all(self, db_session, admin, plans):
        assert plan_service.delete_all_plans(admin) == 4
        assert plan_service.list_plans(active_only=False) == []
