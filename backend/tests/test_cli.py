# Overview: Pytest coverage for the flask CLI command groups.

from datetime import timedelta

from marketcore.models import SubscriptionPlan, WebhookEvent
from marketcore.time_utils import utcnow


def test_seed_plans_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["plans", "seed"])
    second = runner.invoke(args=["plans", "seed", "--currency", "usd"])

    assert first.exit_code == 0
    assert "Created 4 plan(s) in ETB" in first.output
    assert "already exist" in second.output
    assert db_session.query(SubscriptionPlan).count() == 4


def test_list_plans(app, db_session, plans):
    result = app.test_cli_runner().invoke(args=["plans", "list"])

    assert result.exit_code == 0
    assert "enterprise" in result.output
    assert "150000" in result.output


def test_set_role(app, db_session, buyer):
    runner = app.test_cli_runner()

    ok = runner.invoke(args=["users", "set-role", str(buyer.id), "seller"])
    missing = runner.invoke(args=["users", "set-role", "9999", "seller"])

    assert ok.exit_code == 0
    db_session.refresh(buyer)
    assert buyer.role == "seller"
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_cleanup_runs_every_batch(app, db_session):
    for i in range(3):
        db_session.add(WebhookEvent(
            tx_ref=f"MC-CLI-{i}",
            event_type="payment.success",
            processed_at=utcnow() - timedelta(days=60),
        ))
    db_session.commit()

    result = app.test_cli_runner().invoke(
        args=["maintenance", "cleanup-webhook-events", "--batch-size", "1"]
    )

    assert result.exit_code == 0
    assert "Deleted 3 webhook events older than 30 days." in result.output
    assert db_session.query(WebhookEvent).count() == 0


def test_process_subscriptions(app, db_session):
    result = app.test_cli_runner().invoke(args=["maintenance", "process-subscriptions"])

    assert result.exit_code == 0
    assert "Processed 0 subscription(s)" in result.output
