import hashlib
import hmac
import io
import sys
import time
from pathlib import Path

import httpx
import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from gomflow.core import database as db_module
from gomflow.di.container import container
from gomflow.services.errors import TransientExternalError
from gomflow.services.submissions import SubmissionService
from gomflow.services.webhook_adapter import billplz_signature_source

SERVICE_SECRET = "test-service-secret"
PAYMONGO_SECRET = "whsk_test_paymongo"
BILLPLZ_KEY = "S-test-billplz-key"


def png_bytes(color=(200, 30, 30), size=(12, 12)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def vision_payment(amount="1000.00", currency="PHP", reference="GOMF789123", method="gcash", confidence=0.97):
    return {
        "amount": amount,
        "currency": currency,
        "reference": reference,
        "method": method,
        "timestamp": "2025-01-15 14:32",
        "confidence": {
            "amount": confidence,
            "currency": confidence,
            "reference": confidence,
            "method": confidence,
            "timestamp": confidence,
        },
    }


def paymongo_event(submission_id, amount_minor=100000, event_type="payment.paid", event_id="evt_1"):
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": {
                    "id": "pay_abc123",
                    "type": "payment",
                    "attributes": {
                        "amount": amount_minor,
                        "currency": "PHP",
                        "status": "paid" if event_type == "payment.paid" else "failed",
                        "paid_at": 1736951520,
                        "metadata": {"submission_id": submission_id} if submission_id else {},
                    },
                },
            },
        }
    }


def sign_paymongo(body: bytes, timestamp=None, secret=PAYMONGO_SECRET) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},te={digest},li="


def billplz_fields(submission_id, amount_minor="100000", paid="true", bill_id="bill_w8e3"):
    return {
        "id": bill_id,
        "collection_id": "col_1",
        "paid": paid,
        "state": "paid" if paid == "true" else "due",
        "amount": amount_minor,
        "paid_amount": amount_minor if paid == "true" else "0",
        "due_at": "2025-01-15",
        "email": "buyer@example.com",
        "mobile": "",
        "name": "Aina",
        "url": f"https://www.billplz.com/bills/{bill_id}",
        "paid_at": "2025-01-15 14:32:00 +0800" if paid == "true" else "",
        "reference_1_label": "submission_id",
        "reference_1": submission_id,
    }


def sign_billplz(fields, key=BILLPLZ_KEY) -> str:
    return hmac.new(key.encode(), billplz_signature_source(fields).encode(), hashlib.sha256).hexdigest()


class FakeVision:
    """Stands in for the Claude Vision client; ``failures`` transient errors come first."""

    is_available = True

    def __init__(self):
        self.payments = []
        self.raw_text = ""
        self.failures = 0
        self.calls = []

    def read_payment_screenshot(self, image_base64, content_type, context_hint=None):
        self.calls.append({"content_type": content_type, "context_hint": context_hint})
        if self.failures:
            self.failures -= 1
            raise TransientExternalError("anthropic", "HTTP 529")
        return {
            "payments": list(self.payments),
            "raw_text": self.raw_text,
            "notes": "",
            "provider": "fake",
            "model": "fake-vision",
        }


class FakeOcr:
    """Stands in for the Tesseract reader."""

    is_available = True

    def __init__(self, text=""):
        self.text = text
        self.calls = 0

    def read_text(self, image_bytes):
        self.calls += 1
        return self.text


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


class FakeTransport:
    """Records outgoing POSTs; ``status_codes`` are returned in order, then 200."""

    def __init__(self):
        self.calls = []
        self.status_codes = []
        self.raise_connect_errors = 0
        self.payload = {}

    def __call__(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.raise_connect_errors:
            self.raise_connect_errors -= 1
            raise httpx.ConnectError("connection refused")
        status = self.status_codes.pop(0) if self.status_codes else 200
        return FakeResponse(status, self.payload)


@pytest.fixture()
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("GOMFLOW_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("SERVICE_SECRET", SERVICE_SECRET)
    monkeypatch.setenv("GOMFLOW_SECRET_KEY", "test-jwt-secret")
    monkeypatch.setenv("PAYMONGO_WEBHOOK_SECRET", PAYMONGO_SECRET)
    monkeypatch.setenv("BILLPLZ_X_SIGNATURE_KEY", BILLPLZ_KEY)
    monkeypatch.setenv("TELEGRAM_SERVICE_URL", "http://telegram.test")
    monkeypatch.setenv("QUEUE_WORKERS_ENABLED", "false")
    monkeypatch.setenv("QUEUE_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("QUEUE_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("QUEUE_SYNC_WAIT_SECONDS", "2")
    monkeypatch.setenv("EXTRACTION_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("OCR_ENABLED", "false")
    db_module._DB_INSTANCE = None
    container.reset()
    db = db_module.get_db()
    db.initialize()
    yield db
    container.reset()
    db_module._DB_INSTANCE = None


@pytest.fixture()
def vision(db):
    fake = FakeVision()
    container._vision = fake
    container.extraction().vision = fake
    return fake


@pytest.fixture()
def transport(db):
    fake = FakeTransport()
    container.notifier().http_post = fake
    return fake


@pytest.fixture()
def make_submission(db):
    service = SubmissionService(db)
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "order_id": "order_1",
            "gom_id": "gom_1",
            "buyer_identity": f"telegram:{1000 + counter['n']}",
            "buyer_name": "Mika",
            "quantity": 1,
            "unit_price": "1000.00",
            "currency": "PHP",
            "payment_method": "gcash",
        }
        fields.update(overrides)
        return service.create_submission(**fields)

    return _make


@pytest.fixture()
def ocr(db):
    fake = FakeOcr()
    container._ocr = fake
    container.extraction().ocr = fake
    return fake
