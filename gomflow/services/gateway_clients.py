"""
PayMongo and Billplz checkout clients.

Checkouts carry the submission id in gateway metadata so webhooks correlate
back without parsing provider ids: PayMongo ``metadata.submission_id``,
Billplz ``reference_1_label="submission_id"`` / ``reference_1``.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx

from gomflow.core.config import GatewaySettings
from gomflow.services.errors import InvalidInputError, TransientExternalError
from gomflow.services.webhook_adapter import SUBMISSION_REFERENCE_LABEL

logger = logging.getLogger(__name__)


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))


def build_payment_intent_payload(submission: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "data": {
            "attributes": {
                "amount": to_minor_units(submission["total_amount"]),
                "currency": submission["currency"],
                "payment_method_allowed": ["gcash", "paymaya", "card"],
                "description": f"GOMFLOW order {submission['payment_reference']}",
                "statement_descriptor": "GOMFLOW",
                "metadata": {
                    "submission_id": submission["id"],
                    "payment_reference": submission["payment_reference"],
                },
            }
        }
    }


def build_bill_payload(submission: Dict[str, Any], settings: GatewaySettings) -> Dict[str, Any]:
    metadata = submission.get("metadata") or {}
    payload = {
        "collection_id": settings.billplz_collection_id,
        "name": submission.get("buyer_name") or submission["buyer_identity"],
        "amount": to_minor_units(submission["total_amount"]),
        "description": f"GOMFLOW order {submission['payment_reference']}",
        "callback_url": f"{settings.callback_base_url.rstrip('/')}/webhooks/billplz",
        "reference_1_label": SUBMISSION_REFERENCE_LABEL,
        "reference_1": submission["id"],
        "reference_2_label": "payment_reference",
        "reference_2": submission["payment_reference"],
    }
    if metadata.get("email"):
        payload["email"] = metadata["email"]
    if metadata.get("mobile"):
        payload["mobile"] = metadata["mobile"]
    return payload


class _GatewayClient:
    provider = ""

    def __init__(self, settings: GatewaySettings, http_post: Optional[Callable[..., Any]] = None) -> None:
        self.settings = settings
        self.http_post = http_post or httpx.post

    def _post(self, url: str, auth_key: Optional[str], **kwargs) -> Dict[str, Any]:
        if not auth_key:
            raise InvalidInputError(f"{self.provider} is not configured", field="provider")
        try:
            response = self.http_post(url, auth=(auth_key, ""), timeout=self.settings.timeout_seconds, **kwargs)
        except httpx.TransportError as exc:
            raise TransientExternalError(self.provider, str(exc)) from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(self.provider, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise InvalidInputError(f"{self.provider} rejected checkout: HTTP {response.status_code} {response.text[:200]}")
        return response.json()


class PayMongoClient(_GatewayClient):
    provider = "paymongo"

    def create_payment_intent(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        data = self._post(
            f"{self.settings.paymongo_api_url}/payment_intents",
            self.settings.paymongo_secret_key,
            json=build_payment_intent_payload(submission),
        )
        intent = data.get("data") or {}
        logger.info("Created PayMongo payment intent %s for %s", intent.get("id"), submission["id"])
        return {
            "provider": self.provider,
            "checkout_id": intent.get("id"),
            "client_key": (intent.get("attributes") or {}).get("client_key"),
        }


class BillplzClient(_GatewayClient):
    provider = "billplz"

    def create_bill(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        data = self._post(
            f"{self.settings.billplz_api_url}/bills",
            self.settings.billplz_api_key,
            data=build_bill_payload(submission, self.settings),
        )
        logger.info("Created Billplz bill %s for %s", data.get("id"), submission["id"])
        return {"provider": self.provider, "checkout_id": data.get("id"), "url": data.get("url")}


def create_checkout(submission: Dict[str, Any], paymongo: PayMongoClient, billplz: BillplzClient) -> Dict[str, Any]:
    if submission["currency"] == "PHP":
        return paymongo.create_payment_intent(submission)
    if submission["currency"] == "MYR":
        return billplz.create_bill(submission)
    raise InvalidInputError(f"no gateway for currency {submission['currency']}", field="currency")
