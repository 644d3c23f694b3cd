# Overview: Pytest coverage for the subscription billing state machine and its periodic sweep.

from datetime import datetime, timedelta

import pytest

from marketcore.models import Payment, Subscription
from marketcore.services import maintenance_service, plan_service, subscription_service
from marketcore.time_utils import utcnow
from marketcore.validation import NotFound, Unauthorized, ValidationError


@pytest.fixture
def business(seller, make_business):
    return make_business(seller)


def _subscription(db_session, business, plan, *, status, period_end, cancel_at_period_end=False):
    row = Subscription(
        business_id=business.id,
        plan_id=plan.id,
        status=status,
        billing_cycle="monthly",
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
    )
    db_session.add(row)
    db_session.commit()
    return row


class TestPeriods:

    def test_cycle_lengths(self):
        start = datetime(2026, 1, 1)

        assert subscription_service.period_for("monthly", start) == (start, datetime(2026, 1, 31))
        assert subscription_service.period_for("annual", start) == (start, datetime(2027, 1, 1))

    def test_unknown_cycle(self):
        with pytest.raises(ValidationError):
            subscription_service.period_for("weekly", datetime(2026, 1, 1))


class TestCreate:

    def test_trial(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(
            seller, business.id, plans["growth"].id, "monthly", start_trial=True
        )

        assert subscription.status == "trialing"
        assert subscription.trial_ends_at == subscription.current_period_end
        assert (subscription.current_period_end - subscription.current_period_start).days == 14

    def test_without_payment_awaits_payment(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(seller, business.id, plans["starter"].id)

        assert subscription.status == "past_due"
        assert subscription_service.has_active_subscription(business.id) is False

    def test_with_successful_payment_is_active(self, db_session, seller, business, plans):
        payment = Payment(
            user_id=seller.id,
            tx_ref="MC-1-SUBPAY",
            amount_cents=plans["starter"].annual_price_cents,
            currency="ETB",
            status="success",
            payment_type="subscription",
        )
        db_session.add(payment)
        db_session.commit()

        subscription = subscription_service.create_subscription(
            seller, business.id, plans["starter"].id, "annual", payment_id=payment.id
        )

        assert subscription.status == "active"
        assert subscription.last_payment_id == payment.id
        assert (subscription.current_period_end - subscription.current_period_start).days == 365
        db_session.refresh(payment)
        assert payment.subscription_id == subscription.id

    def test_foreign_or_pending_payment_rejected(self, db_session, seller, business, plans, buyer):
        payment = Payment(
            user_id=buyer.id,
            tx_ref="MC-1-NOTMINE",
            amount_cents=150000,
            currency="ETB",
            status="success",
            payment_type="subscription",
        )
        db_session.add(payment)
        db_session.commit()

        with pytest.raises(ValidationError):
            subscription_service.create_subscription(
                seller, business.id, plans["starter"].id, payment_id=payment.id
            )

    def test_live_subscription_blocks_another(self, db_session, seller, business, plans):
        subscription_service.create_subscription(seller, business.id, plans["starter"].id, start_trial=True)

        with pytest.raises(ValidationError, match="already has an active subscription"):
            subscription_service.create_subscription(seller, business.id, plans["growth"].id, start_trial=True)

    def test_lapsed_subscription_is_superseded(self, db_session, seller, business, plans):
        subscription_service.create_subscription(seller, business.id, plans["starter"].id)

        fresh = subscription_service.create_subscription(
            seller, business.id, plans["growth"].id, start_trial=True
        )

        assert fresh.status == "trialing"
        assert db_session.query(Subscription).filter_by(business_id=business.id).count() == 1

    def test_inactive_plan(self, db_session, seller, business, plans, admin):
        plan_service.deactivate_plan(admin, plans["pro"].id)

        with pytest.raises(ValidationError, match="Invalid or inactive plan"):
            subscription_service.create_subscription(seller, business.id, plans["pro"].id)

    def test_owner_only(self, db_session, business, plans, make_user):
        with pytest.raises(Unauthorized):
            subscription_service.create_subscription(make_user("seller"), business.id, plans["starter"].id)

    def test_unknown_business(self, db_session, seller, plans):
        with pytest.raises(NotFound):
            subscription_service.create_subscription(seller, 9999, plans["starter"].id)


class TestCancellation:

    def test_cancel_keeps_access_until_period_end(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(
            seller, business.id, plans["starter"].id, start_trial=True
        )

        cancelled = subscription_service.cancel_subscription(seller, subscription.id)

        assert cancelled.status == "trialing"
        assert cancelled.cancel_at_period_end is True
        assert cancelled.cancelled_at is not None

    def test_reactivate_clears_pending_cancellation(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(
            seller, business.id, plans["starter"].id, start_trial=True
        )
        subscription_service.cancel_subscription(seller, subscription.id)

        reactivated = subscription_service.reactivate_subscription(seller, subscription.id)

        assert reactivated.cancel_at_period_end is False
        assert reactivated.cancelled_at is None
        with pytest.raises(ValidationError, match="not pending cancellation"):
            subscription_service.reactivate_subscription(seller, subscription.id)

    def test_terminal_subscription_cannot_be_reactivated(self, db_session, seller, business, plans):
        subscription = _subscription(
            db_session, business, plans["starter"], status="cancelled", period_end=utcnow()
        )

        with pytest.raises(ValidationError):
            subscription_service.reactivate_subscription(seller, subscription.id)
        with pytest.raises(ValidationError):
            subscription_service.cancel_subscription(seller, subscription.id)

    def test_change_plan_keeps_period(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(
            seller, business.id, plans["starter"].id, start_trial=True
        )
        period_end = subscription.current_period_end

        changed = subscription_service.change_plan(seller, subscription.id, plans["pro"].id)

        assert changed.plan_id == plans["pro"].id
        assert changed.current_period_end == period_end

    def test_change_plan_requires_live_subscription(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(seller, business.id, plans["starter"].id)

        with pytest.raises(ValidationError):
            subscription_service.change_plan(seller, subscription.id, plans["growth"].id)


class TestSweep:

    def test_elapsed_subscriptions_advance(self, db_session, make_user, make_business, plans):
        now = utcnow()
        elapsed = now - timedelta(minutes=1)
        starter = plans["starter"]

        trial = _subscription(db_session, make_business(make_user("seller")), starter,
                              status="trialing", period_end=elapsed)
        cancelling = _subscription(db_session, make_business(make_user("seller")), starter,
                                   status="active", period_end=elapsed, cancel_at_period_end=True)
        lapsed = _subscription(db_session, make_business(make_user("seller")), starter,
                               status="active", period_end=elapsed)
        current = _subscription(db_session, make_business(make_user("seller")), starter,
                                status="active", period_end=now + timedelta(days=10))

        result = subscription_service.process_expired_subscriptions(now=now)

        assert result == {"processed": 3, "expired": 1, "cancelled": 1, "past_due": 1}
        for row in (trial, cancelling, lapsed, current):
            db_session.refresh(row)
        assert trial.status == "expired"
        assert cancelling.status == "cancelled"
        assert cancelling.cancelled_at is not None
        assert lapsed.status == "past_due"
        assert current.status == "active"

    def test_sweep_is_idempotent(self, db_session, seller, business, plans):
        _subscription(db_session, business, plans["starter"], status="trialing",
                      period_end=utcnow() - timedelta(days=1))

        first = maintenance_service.process_subscriptions()
        second = maintenance_service.process_subscriptions()

        assert first["processed"] == 1
        assert second == {"processed": 0, "expired": 0, "cancelled": 0, "past_due": 0}

    def test_cancelled_trial_expires_first(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(
            seller, business.id, plans["starter"].id, start_trial=True
        )
        subscription_service.cancel_subscription(seller, subscription.id)

        result = subscription_service.process_expired_subscriptions(now=utcnow() + timedelta(days=15))

        db_session.refresh(subscription)
        assert subscription.status == "expired"
        assert result["processed"] == 1


class TestAdminOverride:

    def test_enterprise_activation(self, db_session, seller, business, plans):
        subscription = subscription_service.create_subscription(seller, business.id, plans["enterprise"].id)

        activated = subscription_service.update_status(subscription.id, "active")

        assert activated.status == "active"
        assert subscription_service.has_active_subscription(business.id) is True

    def test_invalid_status(self, db_session):
        with pytest.raises(ValidationError):
            subscription_service.update_status(1, "paused")
