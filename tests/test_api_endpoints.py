"""
Tests for API Endpoints

Exercises the FastAPI surface end to end against a temporary database.
Queue workers are disabled; request handlers drain the lanes they touch.
"""
import json
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from main import app
from gomflow.core.auth import create_access_token
from gomflow.core.config import GatewaySettings
from gomflow.di.container import container
from gomflow.services.gateway_clients import PayMongoClient
from gomflow.services.metrics import reset_metrics
from gomflow.services.submission_state import TransitionRequest

from conftest import (
    SERVICE_SECRET,
    FakeTransport,
    billplz_fields,
    paymongo_event,
    png_bytes,
    sign_billplz,
    sign_paymongo,
    vision_payment,
)

SERVICE_HEADERS = {"X-Service-Secret": SERVICE_SECRET}


@pytest.fixture()
def client(db):
    with TestClient(app) as test_client:
        yield test_client


def _bearer(user_id, role):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def _to_review(submission, key="review"):
    container.state_machine().transition(
        TransitionRequest(
            submission_id=submission["id"],
            to_state="under_review",
            actor_type="system",
            actor_id="matcher",
            idempotency_key=key,
        )
    )


class TestHealthEndpoints:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["workers_running"] is False
        assert data["queue"] == {"unfinished": 0, "dead_letter": 0}

    def test_metrics(self, client, make_submission, transport):
        reset_metrics()
        submission = make_submission()
        body = json.dumps(paymongo_event(submission["id"])).encode()
        client.post("/webhooks/paymongo", content=body, headers={"Paymongo-Signature": sign_paymongo(body)})

        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        assert data["requests"]["by_endpoint"]["POST /webhooks/paymongo"] == 1
        assert data["queue"]["gateway_webhook:done"] == 1
        assert data["transitions"]["confirmed:applied"] == 1


class TestWebhookEndpoints:
    def test_paymongo_payment_confirms_submission(self, client, make_submission, transport):
        submission = make_submission()
        body = json.dumps(paymongo_event(submission["id"])).encode()

        response = client.post("/webhooks/paymongo", content=body, headers={"Paymongo-Signature": sign_paymongo(body)})

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        assert container.db().get_submission(submission["id"])["status"] == "confirmed"

    def test_redelivered_webhook_is_acknowledged(self, client, make_submission, transport):
        submission = make_submission()
        body = json.dumps(paymongo_event(submission["id"])).encode()
        headers = {"Paymongo-Signature": sign_paymongo(body)}

        client.post("/webhooks/paymongo", content=body, headers=headers)
        response = client.post("/webhooks/paymongo", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert len(container.db().list_outbox_messages(submission_id=submission["id"])) == 1

    def test_bad_signature_is_rejected(self, client, make_submission):
        submission = make_submission()
        body = json.dumps(paymongo_event(submission["id"])).encode()

        response = client.post(
            "/webhooks/paymongo",
            content=body,
            headers={"Paymongo-Signature": sign_paymongo(body, secret="whsk_wrong")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SIGNATURE"
        assert container.db().list_payment_events() == []
        assert container.db().get_submission(submission["id"])["status"] == "pending_payment"

    def test_billplz_form_callback(self, client, make_submission, transport):
        submission = make_submission(currency="MYR", unit_price="85.50", buyer_identity="whatsapp:60123")
        fields = billplz_fields(submission["id"], amount_minor="8550")

        response = client.post(
            "/webhooks/billplz",
            content=urlencode(fields),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Signature": sign_billplz(fields),
            },
        )

        assert response.status_code == 200
        stored = container.db().get_submission(submission["id"])
        assert stored["status"] == "confirmed"
        assert stored["verified_by"] == "gateway:billplz"


class TestScreenshotEndpoints:
    def test_upload_auto_confirms(self, client, make_submission, vision, transport):
        submission = make_submission(payment_reference="GOMF789123")
        vision.payments = [vision_payment()]

        response = client.post(
            "/api/payments/screenshots",
            files={"file": ("proof.png", png_bytes(), "image/png")},
            data={"gom_id": "gom_1", "channel": "telegram"},
            headers=SERVICE_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "auto_approved"
        assert data["submission_ids"] == [submission["id"]]

        status = client.get(f"/api/payments/screenshots/{data['event_id']}", headers=SERVICE_HEADERS)
        assert status.json()["outcome"] == "auto_approved"

    def test_upload_requires_service_secret(self, client):
        response = client.post(
            "/api/payments/screenshots",
            files={"file": ("proof.png", png_bytes(), "image/png")},
            data={"gom_id": "gom_1"},
        )
        assert response.status_code == 401

    def test_upload_rejects_non_images(self, client, vision):
        response = client.post(
            "/api/payments/screenshots",
            files={"file": ("proof.png", b"not an image", "image/png")},
            data={"gom_id": "gom_1"},
            headers=SERVICE_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"
        assert vision.calls == []

    def test_upload_rejects_oversized_images(self, client, monkeypatch):
        monkeypatch.setenv("MAX_IMAGE_SIZE", "100")
        container.reset()

        response = client.post(
            "/api/payments/screenshots",
            files={"file": ("proof.png", png_bytes(size=(400, 400)), "image/png")},
            data={"gom_id": "gom_1"},
            headers=SERVICE_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"
        assert "100" in response.json()["detail"]


class TestDecisionEndpoints:
    def test_gom_confirms_submission_under_review(self, client, make_submission, transport):
        submission = make_submission()
        _to_review(submission)

        response = client.post(
            f"/api/submissions/{submission['id']}/decision",
            json={"decision": "confirmed", "notes": "seen in bank app"},
            headers=_bearer("gom_1", "gom"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "applied"
        assert data["submission"]["status"] == "confirmed"
        assert data["submission"]["verified_by"] == "gom:gom_1"

    def test_repeated_decision_returns_first_result(self, client, make_submission, transport):
        submission = make_submission()
        _to_review(submission)
        url = f"/api/submissions/{submission['id']}/decision"
        headers = {**_bearer("gom_1", "gom"), "Idempotency-Key": "click-1"}

        first = client.post(url, json={"decision": "rejected"}, headers=headers)
        second = client.post(url, json={"decision": "rejected"}, headers=headers)

        assert first.status_code == second.status_code == 200
        assert second.json()["duplicate_request"] is True
        assert second.json()["event_id"] == first.json()["event_id"]

    def test_decision_on_closed_submission_conflicts(self, client, make_submission, transport):
        submission = make_submission()
        _to_review(submission)
        url = f"/api/submissions/{submission['id']}/decision"
        client.post(url, json={"decision": "confirmed"}, headers=_bearer("gom_1", "gom"))

        response = client.post(url, json={"decision": "rejected"}, headers=_bearer("gom_1", "gom"))

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "INVALID_TRANSITION"
        assert data["current_state"] == "confirmed"
        assert data["requested_state"] == "rejected"

    def test_gom_cannot_confirm_pending_submission(self, client, make_submission):
        submission = make_submission()

        response = client.post(
            f"/api/submissions/{submission['id']}/decision",
            json={"decision": "confirmed"},
            headers=_bearer("gom_1", "gom"),
        )

        assert response.status_code == 409
        assert response.json()["current_state"] == "pending_payment"

    def test_other_gom_is_forbidden(self, client, make_submission):
        submission = make_submission()
        _to_review(submission)

        response = client.post(
            f"/api/submissions/{submission['id']}/decision",
            json={"decision": "confirmed"},
            headers=_bearer("gom_2", "gom"),
        )

        assert response.status_code == 403

    def test_buyer_cannot_decide(self, client, make_submission):
        submission = make_submission()

        response = client.post(
            f"/api/submissions/{submission['id']}/decision",
            json={"decision": "confirmed"},
            headers=_bearer(submission["buyer_identity"], "buyer"),
        )

        assert response.status_code == 403

    def test_unknown_submission(self, client, db):
        response = client.post(
            "/api/submissions/sub_missing/decision",
            json={"decision": "rejected"},
            headers=_bearer("gom_1", "gom"),
        )
        assert response.status_code == 404

    def test_invalid_decision_value(self, client, make_submission):
        submission = make_submission()

        response = client.post(
            f"/api/submissions/{submission['id']}/decision",
            json={"decision": "maybe"},
            headers=_bearer("gom_1", "gom"),
        )

        assert response.status_code == 422

    def test_missing_token(self, client, make_submission):
        submission = make_submission()

        response = client.post(f"/api/submissions/{submission['id']}/decision", json={"decision": "rejected"})

        assert response.status_code == 401

    def test_buyer_cancels_own_submission(self, client, make_submission, transport):
        submission = make_submission()

        response = client.post(
            f"/api/submissions/{submission['id']}/cancel",
            json={"reason": "changed my mind"},
            headers=_bearer(submission["buyer_identity"], "buyer"),
        )

        assert response.status_code == 200
        assert response.json()["submission"]["status"] == "cancelled"


class TestSubmissionReads:
    def test_buyer_sees_own_submission_with_trail(self, client, make_submission):
        submission = make_submission()

        response = client.get(
            f"/api/submissions/{submission['id']}",
            headers=_bearer(submission["buyer_identity"], "buyer"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == submission["id"]
        assert data["audit_trail"][0]["event_type"] == "submission_created"

    def test_other_buyer_is_forbidden(self, client, make_submission):
        submission = make_submission()

        response = client.get(f"/api/submissions/{submission['id']}", headers=_bearer("telegram:999", "buyer"))

        assert response.status_code == 403


class TestGomEndpoints:
    def test_review_queue_shows_matcher_evidence(self, client, make_submission, vision, transport):
        submission = make_submission()
        vision.payments = [vision_payment(confidence=0.6)]
        client.post(
            "/api/payments/screenshots",
            files={"file": ("proof.png", png_bytes(), "image/png")},
            data={"gom_id": "gom_1", "submission_id": submission["id"]},
            headers=SERVICE_HEADERS,
        )

        response = client.get("/api/gom/review-queue", headers=_bearer("gom_1", "gom"))

        assert response.status_code == 200
        items = response.json()["under_review"]
        assert [item["submission"]["id"] for item in items] == [submission["id"]]
        assert "low_extraction_confidence" in items[0]["reasons"]
        assert items[0]["match_score"] is not None

    def test_bulk_decision(self, client, make_submission, transport):
        first = make_submission()
        second = make_submission()
        foreign = make_submission(gom_id="gom_2")
        for index, submission in enumerate((first, second, foreign)):
            _to_review(submission, key=f"review-{index}")

        response = client.post(
            "/api/gom/bulk-decision",
            json={"submission_ids": [first["id"], second["id"], foreign["id"]], "decision": "confirmed"},
            headers=_bearer("gom_1", "gom"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["requested"] == 3
        assert data["applied"] == 2
        assert data["results"][2]["error"]["error"] == "FORBIDDEN"
        assert "submission" not in data["results"][0]


class TestInternalEndpoints:
    def test_order_service_creates_submission(self, client, db):
        response = client.post(
            "/api/internal/submissions",
            json={
                "order_id": "order_9",
                "gom_id": "gom_1",
                "buyer_identity": "discord:77",
                "quantity": 2,
                "unit_price": "750.00",
                "currency": "PHP",
            },
            headers=SERVICE_HEADERS,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending_payment"
        assert data["payment_reference"].startswith("PH-")

    def test_checkout_for_php_submission(self, client, make_submission):
        submission = make_submission()
        transport = FakeTransport()
        transport.payload = {"data": {"id": "pi_1", "attributes": {"client_key": "pi_1_key"}}}
        container._paymongo = PayMongoClient(GatewaySettings(paymongo_secret_key="sk_test"), http_post=transport)

        response = client.post(f"/api/internal/submissions/{submission['id']}/checkout", headers=SERVICE_HEADERS)

        assert response.status_code == 200
        assert response.json()["checkout_id"] == "pi_1"
        sent = transport.calls[0]["json"]["data"]["attributes"]
        assert sent["metadata"]["submission_id"] == submission["id"]


class TestOpsEndpoints:
    def test_dead_letters_and_requeue(self, client, db):
        queue = container.queue()
        enqueued = queue.enqueue("unknown_source", "ops-key", {})
        queue.drain()

        listing = client.get("/api/ops/dead-letters", headers=SERVICE_HEADERS)
        assert listing.json()["count"] == 1

        requeued = client.post(f"/api/ops/dead-letters/{enqueued.event_id}/requeue", headers=SERVICE_HEADERS)
        assert requeued.status_code == 200
        assert requeued.json()["status"] == "pending"

        again = client.post(f"/api/ops/dead-letters/{enqueued.event_id}/requeue", headers=SERVICE_HEADERS)
        assert again.status_code == 400

        stats = client.get("/api/ops/queue-stats", headers=SERVICE_HEADERS).json()
        assert stats["by_status"] == {"pending": 1}
        assert stats["unfinished"] == 1

    def test_flush_notifications(self, client, make_submission, transport):
        submission = make_submission()
        container.notifier().emit(submission, "confirmed", "gateway:paymongo")

        response = client.post(f"/api/ops/notifications/{submission['id']}/flush", headers=SERVICE_HEADERS)

        assert response.status_code == 200
        assert response.json()["results"] == {"delivered": 1}

    def test_ops_requires_service_secret(self, client):
        assert client.get("/api/ops/queue-stats").status_code == 401
