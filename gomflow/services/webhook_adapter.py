"""
Gateway Webhook Adapter

Verifies PayMongo and Billplz callbacks and normalizes them into gateway
payment events. The signature check runs first, over the raw request body,
before any field is trusted.

PayMongo:
- Header ``Paymongo-Signature: t=<unix>,te=<test sig>,li=<live sig>``
- Signature = HMAC-SHA256(webhook secret, "<t>.<raw body>")
- Amounts in centavos

Billplz:
- ``X-Signature`` header or ``x_signature`` field
- Signature = HMAC-SHA256(X-Signature key, source) where source is every
  other field rendered as key+value, sorted case-insensitively, joined by "|"
- Amounts in sen; submission id carried in reference_1
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl

from gomflow.core.config import GatewaySettings
from gomflow.services.errors import InvalidInputError, SignatureError
from gomflow.services.reconciliation_queue import make_idempotency_key

logger = logging.getLogger(__name__)


PAYMONGO_PAID_EVENTS = {"payment.paid", "payment_intent.succeeded"}
PAYMONGO_FAILED_EVENTS = {"payment.failed", "payment_intent.payment_failed"}

SUBMISSION_REFERENCE_LABEL = "submission_id"


@dataclass
class GatewayPayment:
    provider: str
    event_type: str
    external_id: str
    submission_id: Optional[str]
    amount: Optional[Decimal]
    currency: str
    paid: bool
    paid_at: Optional[str] = None
    gateway_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return make_idempotency_key("gateway_webhook", self.provider, self.external_id)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "event_type": self.event_type,
            "external_id": self.external_id,
            "submission_id": self.submission_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "paid": self.paid,
            "paid_at": self.paid_at,
            "gateway_reference": self.gateway_reference,
        }


def minor_to_major(value: Any) -> Optional[Decimal]:
    """Centavos/sen -> Decimal major units."""
    if value is None or value == "":
        return None
    try:
        return (Decimal(str(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def verify_paymongo_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    if not secret:
        raise SignatureError("paymongo", "webhook secret not configured")
    if not signature:
        raise SignatureError("paymongo", "missing Paymongo-Signature header")

    elements: Dict[str, str] = {}
    for item in signature.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            elements[key] = value
    timestamp = elements.get("t", "")
    candidates = [sig for sig in (elements.get("te"), elements.get("li")) if sig]
    if not timestamp or not candidates:
        raise SignatureError("paymongo", "malformed signature header")
    try:
        ts = int(timestamp)
    except ValueError as exc:
        raise SignatureError("paymongo", "malformed signature timestamp") from exc
    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - ts) > tolerance_seconds:
        raise SignatureError("paymongo", "signature timestamp outside tolerance")

    signed_payload = timestamp.encode() + b"." + payload
    computed = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(computed, candidate) for candidate in candidates):
        raise SignatureError("paymongo", "signature mismatch")


def billplz_signature_source(fields: Dict[str, Any]) -> str:
    parts = []
    for key, value in fields.items():
        if key == "x_signature":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif value is None:
            value = ""
        parts.append(f"{key}{value}")
    return "|".join(sorted(parts, key=str.lower))


def verify_billplz_signature(fields: Dict[str, Any], signature: Optional[str], key: Optional[str]) -> None:
    if not key:
        raise SignatureError("billplz", "X-Signature key not configured")
    if not signature:
        raise SignatureError("billplz", "missing X-Signature")
    computed = hmac.new(
        key.encode(),
        billplz_signature_source(fields).encode(),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(computed, signature):
        raise SignatureError("billplz", "signature mismatch")


class WebhookAdapter:
    def __init__(self, settings: GatewaySettings, clock: Optional[Callable[[], float]] = None) -> None:
        self.settings = settings
        self.clock = clock or time.time

    def verify(
        self,
        provider: str,
        raw_body: bytes,
        signature_header: Optional[str],
    ) -> Optional[GatewayPayment]:
        """
        Verify and normalize one callback.

        Raises ``SignatureError`` on a missing or bad signature and
        ``InvalidInputError`` on an unparseable body. Returns None for
        verified events this service does not act on.
        """
        provider = provider.lower()
        if provider == "paymongo":
            return self._paymongo(raw_body, signature_header)
        if provider == "billplz":
            return self._billplz(raw_body, signature_header)
        raise InvalidInputError(f"unknown payment gateway '{provider}'", field="provider")

    def _paymongo(self, raw_body: bytes, signature: Optional[str]) -> Optional[GatewayPayment]:
        verify_paymongo_signature(
            raw_body,
            signature,
            self.settings.paymongo_webhook_secret,
            tolerance_seconds=self.settings.paymongo_signature_tolerance_seconds,
            now=self.clock(),
        )
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidInputError("PayMongo body is not valid JSON", field="body") from exc

        event = body.get("data") or {}
        attributes = event.get("attributes") or {}
        event_type = str(attributes.get("type") or "")
        if event_type not in PAYMONGO_PAID_EVENTS | PAYMONGO_FAILED_EVENTS:
            logger.info("PayMongo webhook %s acknowledged without action", event_type or "<untyped>")
            return None

        resource = attributes.get("data") or {}
        resource_attrs = resource.get("attributes") or {}
        metadata = resource_attrs.get("metadata") or {}
        paid_at = resource_attrs.get("paid_at")
        return GatewayPayment(
            provider="paymongo",
            event_type=event_type,
            external_id=str(event.get("id") or resource.get("id") or ""),
            submission_id=metadata.get("submission_id"),
            amount=minor_to_major(resource_attrs.get("amount")),
            currency=str(resource_attrs.get("currency") or "PHP").upper(),
            paid=event_type in PAYMONGO_PAID_EVENTS,
            paid_at=str(paid_at) if paid_at is not None else None,
            gateway_reference=resource.get("id"),
            raw={"livemode": attributes.get("livemode"), "status": resource_attrs.get("status")},
        )

    def _billplz(self, raw_body: bytes, signature: Optional[str]) -> Optional[GatewayPayment]:
        fields = _parse_billplz_body(raw_body)
        verify_billplz_signature(
            fields,
            signature or fields.get("x_signature"),
            self.settings.billplz_x_signature_key,
        )
        bill_id = str(fields.get("id") or "")
        if not bill_id:
            raise InvalidInputError("Billplz callback without bill id", field="id")

        paid = str(fields.get("paid")).lower() == "true"
        submission_id = None
        for slot in ("1", "2"):
            if fields.get(f"reference_{slot}_label") == SUBMISSION_REFERENCE_LABEL:
                submission_id = fields.get(f"reference_{slot}") or None
                break
        amount = minor_to_major(fields.get("paid_amount") if paid else fields.get("amount"))
        return GatewayPayment(
            provider="billplz",
            event_type="bill.paid" if paid else "bill.unpaid",
            external_id=f"{bill_id}:{'paid' if paid else fields.get('state') or 'unpaid'}",
            submission_id=submission_id,
            amount=amount,
            currency="MYR",
            paid=paid,
            paid_at=fields.get("paid_at") or None,
            gateway_reference=fields.get("transaction_id") or bill_id,
            raw={"state": fields.get("state"), "collection_id": fields.get("collection_id")},
        )


def _parse_billplz_body(raw_body: bytes) -> Dict[str, Any]:
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidInputError("Billplz body is not UTF-8", field="body") from exc
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except ValueError as exc:
            raise InvalidInputError("Billplz body is not valid JSON", field="body") from exc
        if not isinstance(data, dict):
            raise InvalidInputError("Billplz body must be an object", field="body")
        return data
    return dict(parse_qsl(text, keep_blank_values=True))
