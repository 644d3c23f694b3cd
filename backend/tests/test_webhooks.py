# Overview: Pytest coverage for processor callbacks: verification, dedup and settlement.

import json
from datetime import timedelta

import pytest

from conftest import signed_webhook_headers
from marketcore.models import Payment, PaymentAuditLog, WebhookEvent
from marketcore.services import idempotency_service, payment_service
from marketcore.services.processor_service import map_processor_status, verify_signature
from marketcore.time_utils import epoch_millis, utcnow


WEBHOOK_URL = "/api/payments/webhook"


@pytest.fixture
def pending_payment(db_session, buyer):
    payment = Payment(
        user_id=buyer.id,
        tx_ref="MC-1700000000000-ABC123",
        amount_cents=5000,
        currency="ETB",
        status="pending",
        payment_type="order",
    )
    db_session.add(payment)
    db_session.commit()
    return payment


def _body(tx_ref, status="success", processor_ref="CH-REF-1"):
    return json.dumps({"tx_ref": tx_ref, "status": status, "processor_ref": processor_ref}).encode()


def _post(client, body, headers=None):
    return client.post(WEBHOOK_URL, data=body, headers=headers or signed_webhook_headers(body))


class TestSignature:

    def test_prefix_and_case_tolerated(self):
        from marketcore.services.processor_service import compute_signature
        digest = compute_signature(b"{}", "s3cret")

        assert verify_signature(b"{}", digest, "s3cret")
        assert verify_signature(b"{}", f"sha256={digest.upper()}", "s3cret")
        assert not verify_signature(b"{ }", digest, "s3cret")

    def test_missing_signature(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        response = client.post(WEBHOOK_URL, data=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert response.get_json()["reason"] == "missing_signature"

    def test_invalid_signature(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        response = _post(client, body, {"X-Webhook-Signature": "0" * 64})

        assert response.status_code == 401
        assert response.get_json()["reason"] == "invalid_signature"
        db_session.refresh(pending_payment)
        assert pending_payment.status == "pending"
        assert db_session.query(PaymentAuditLog).filter_by(action="webhook", status="invalid_signature").count() == 1

    def test_malformed_signatures_are_mismatches(self):
        assert not verify_signature(b"{}", "éabc", "s3cret")
        assert not verify_signature(b"{}", "g" * 64, "s3cret")
        assert not verify_signature(b"{}", "sha256=" + "a" * 63, "s3cret")
        assert not verify_signature(b"{}", "é" * 64, "s3cret")

    def test_non_ascii_signature_is_rejected_not_crashed(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        response = _post(client, body, {"X-Webhook-Signature": "éabc"})

        assert response.status_code == 401
        assert response.get_json()["reason"] == "invalid_signature"
        assert db_session.query(PaymentAuditLog).filter_by(action="webhook", status="invalid_signature").count() == 1

    def test_signature_covers_exact_bytes(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)
        headers = signed_webhook_headers(body)

        response = _post(client, body + b" ", headers)

        assert response.status_code == 401

    def test_unconfigured_secret_refuses(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "PAYMENT_WEBHOOK_SECRET", None)
        body = _body(pending_payment.tx_ref)

        response = _post(client, body)

        assert response.status_code == 500
        assert response.get_json()["reason"] == "config_error"


class TestFreshness:

    def test_stale_timestamp(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)
        sent = epoch_millis(utcnow() - timedelta(minutes=10))

        response = _post(client, body, signed_webhook_headers(body, timestamp=str(sent)))

        assert response.status_code == 400
        assert response.get_json()["reason"] == "stale"
        assert db_session.query(WebhookEvent).count() == 0

    def test_fresh_timestamp(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        response = _post(client, body, signed_webhook_headers(body, timestamp=str(epoch_millis())))

        assert response.status_code == 200

    def test_unparseable_timestamp(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        response = _post(client, body, signed_webhook_headers(body, timestamp="yesterday"))

        assert response.status_code == 400


class TestSettlement:

    def test_success_then_duplicate(self, client, db_session, pending_payment):
        body = _body(pending_payment.tx_ref)

        first = _post(client, body)
        second = _post(client, body)

        assert first.status_code == 200
        assert first.get_json()["duplicate"] is False
        assert first.get_json()["payment"]["status"] == "success"
        assert first.get_json()["payment"]["processor_ref"] == "CH-REF-1"
        assert second.status_code == 200
        assert second.get_json()["duplicate"] is True
        assert db_session.query(WebhookEvent).filter_by(tx_ref=pending_payment.tx_ref).count() == 1
        assert db_session.query(PaymentAuditLog).filter_by(
            action="status_update", tx_ref=pending_payment.tx_ref
        ).count() == 1

    def test_worker_death_mid_settlement_leaves_retry_admissible(
        self, client, db_session, monkeypatch, pending_payment
    ):
        """The dedup claim commits with the settlement or not at all."""
        real_fulfil = payment_service._fulfil_inner
        calls = []

        def dying_fulfil(payment):
            calls.append(payment.tx_ref)
            if len(calls) == 1:
                raise SystemExit("worker timeout")
            return real_fulfil(payment)

        monkeypatch.setattr(payment_service, "_fulfil_inner", dying_fulfil)
        body = _body(pending_payment.tx_ref)

        with pytest.raises(SystemExit):
            _post(client, body)
        # The dead worker's connection never commits
        db_session.rollback()

        assert db_session.query(WebhookEvent).count() == 0
        assert db_session.get(Payment, pending_payment.id).status == "pending"

        retry = _post(client, body)

        assert retry.status_code == 200
        assert retry.get_json()["duplicate"] is False
        assert retry.get_json()["payment"]["status"] == "success"
        assert db_session.query(WebhookEvent).filter_by(tx_ref=pending_payment.tx_ref).count() == 1

    def test_pending_does_not_claim_the_slot(self, client, db_session, pending_payment):
        pending_body = _body(pending_payment.tx_ref, status="pending")
        success_body = _body(pending_payment.tx_ref, status="successful")

        pending = _post(client, pending_body)
        success = _post(client, success_body)

        assert pending.status_code == 200
        assert success.status_code == 200
        assert success.get_json()["duplicate"] is False
        db_session.refresh(pending_payment)
        assert pending_payment.status == "success"

    def test_late_pending_after_success_is_ignored(self, client, db_session, pending_payment):
        _post(client, _body(pending_payment.tx_ref))

        late = _post(client, _body(pending_payment.tx_ref, status="pending"))

        assert late.status_code == 200
        assert late.get_json()["duplicate"] is True
        db_session.refresh(pending_payment)
        assert pending_payment.status == "success"

    def test_failed_callback(self, client, db_session, pending_payment):
        response = _post(client, _body(pending_payment.tx_ref, status="failed"))

        assert response.status_code == 200
        db_session.refresh(pending_payment)
        assert pending_payment.status == "failed"
        assert pending_payment.completed_at is None

    def test_unknown_payment_leaves_no_claim(self, client, db_session):
        body = _body("MC-0-MISSING")

        response = _post(client, body)

        assert response.status_code == 404
        assert db_session.query(WebhookEvent).count() == 0
        assert db_session.query(PaymentAuditLog).filter_by(action="webhook", status="error").count() == 1

    def test_retry_after_failure_is_admitted(self, client, db_session, buyer):
        body = _body("MC-2-LATE")
        assert _post(client, body).status_code == 404

        db_session.add(Payment(
            user_id=buyer.id,
            tx_ref="MC-2-LATE",
            amount_cents=5000,
            currency="ETB",
            status="pending",
            payment_type="order",
        ))
        db_session.commit()
        retried = _post(client, body)

        assert retried.status_code == 200
        assert retried.get_json()["duplicate"] is False

    def test_malformed_payload(self, client, db_session):
        for body in (b"not json", b"[]", json.dumps({"status": "success"}).encode()):
            response = _post(client, body)
            assert response.status_code == 400
            assert response.get_json()["reason"] == "invalid_payload"


def test_status_mapping():
    assert map_processor_status("SUCCESS") == "success"
    assert map_processor_status("successful") == "success"
    assert map_processor_status("canceled") == "cancelled"
    assert map_processor_status("pending") == "pending"
    assert map_processor_status("reversed") == "failed"
    assert map_processor_status(None) == "failed"


class TestDedupLayer:

    def test_first_claim_wins(self, db_session):
        first = idempotency_service.mark_processed("MC-9-DEDUP", "payment.success", "a" * 64)
        db_session.commit()
        second = idempotency_service.mark_processed("MC-9-DEDUP", "payment.success")

        assert first["already_processed"] is False
        assert second == {"already_processed": True, "event_id": first["event_id"]}
        assert idempotency_service.is_processed("MC-9-DEDUP") is True
        assert len(db_session.get(WebhookEvent, first["event_id"]).signature) == 32

    def test_racing_insert_is_a_duplicate(self, db_session, monkeypatch):
        """Pre-check misses, so the unique constraint decides the winner."""
        idempotency_service.mark_processed("MC-9-RACE", "payment.success")
        db_session.commit()
        monkeypatch.setattr(idempotency_service, "_find_event", lambda tx_ref: None)

        with pytest.raises(idempotency_service.DuplicateEvent):
            idempotency_service.mark_processed("MC-9-RACE", "payment.success")
        db_session.rollback()

        assert db_session.query(WebhookEvent).filter_by(tx_ref="MC-9-RACE").count() == 1

    def test_claim_rolls_back_with_its_transaction(self, db_session):
        idempotency_service.mark_processed("MC-9-RB", "payment.success")

        db_session.rollback()

        assert idempotency_service.is_processed("MC-9-RB") is False
        assert idempotency_service.mark_processed("MC-9-RB", "payment.success")["already_processed"] is False


class TestSourceAllowlist:

    def test_unlisted_source_is_refused(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "WEBHOOK_ALLOWED_IPS", ["196.188.0.10"])
        body = _body(pending_payment.tx_ref)

        response = client.post(
            WEBHOOK_URL,
            data=body,
            headers=signed_webhook_headers(body),
            environ_base={"REMOTE_ADDR": "203.0.113.9"},
        )

        assert response.status_code == 403
        assert response.get_json()["reason"] == "unauthorized_ip"
        entry = db_session.query(PaymentAuditLog).filter_by(action="webhook", status="unauthorized_ip").one()
        assert entry.ip_address == "203.0.113.9"
        db_session.refresh(pending_payment)
        assert pending_payment.status == "pending"

    def test_forwarded_header_cannot_spoof_source(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "WEBHOOK_ALLOWED_IPS", ["196.188.0.10"])
        body = _body(pending_payment.tx_ref)
        headers = dict(signed_webhook_headers(body), **{"X-Forwarded-For": "196.188.0.10"})

        response = client.post(WEBHOOK_URL, data=body, headers=headers, environ_base={"REMOTE_ADDR": "203.0.113.9"})

        assert response.status_code == 403

    def test_listed_source_is_admitted(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "WEBHOOK_ALLOWED_IPS", ["196.188.0.10"])
        body = _body(pending_payment.tx_ref)

        response = client.post(
            WEBHOOK_URL,
            data=body,
            headers=signed_webhook_headers(body),
            environ_base={"REMOTE_ADDR": "196.188.0.10"},
        )

        assert response.status_code == 200
        assert response.get_json()["payment"]["status"] == "success"


class TestWebhookRateLimit:

    def test_burst_past_limit_gets_429(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "RATE_LIMIT_WEBHOOK_PER_MINUTE", 2)
        body = _body(pending_payment.tx_ref, status="pending")

        statuses = [_post(client, body).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]
        throttled = _post(client, body)
        assert int(throttled.headers["Retry-After"]) >= 1
        assert throttled.get_json()["code"] == "rate_limited"
        entries = db_session.query(PaymentAuditLog).filter_by(action="webhook", status="rate_limited").all()
        assert len(entries) == 2
        assert entries[0].ip_address == "127.0.0.1"

    def test_limit_is_per_source(self, app, client, db_session, monkeypatch, pending_payment):
        monkeypatch.setitem(app.config, "RATE_LIMIT_WEBHOOK_PER_MINUTE", 1)
        body = _body(pending_payment.tx_ref, status="pending")

        first = client.post(WEBHOOK_URL, data=body, headers=signed_webhook_headers(body),
                            environ_base={"REMOTE_ADDR": "196.188.0.10"})
        other = client.post(WEBHOOK_URL, data=body, headers=signed_webhook_headers(body),
                            environ_base={"REMOTE_ADDR": "196.188.0.11"})

        assert first.status_code == 200
        assert other.status_code == 200
