"""
Notification Dispatcher boundary.

Each committed transition writes one outbox row keyed
``notify:<submission_id>:<new_state>`` and schedules a ``notification``
event on the reconciliation queue. Delivery POSTs to the bot service for the
buyer's platform; transport failures raise ``TransientExternalError`` so the
queue retries delivery without re-applying the transition.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx

from gomflow.core.config import NotificationSettings
from gomflow.core.database import GomflowDB
from gomflow.services.errors import NotFoundError, TransientExternalError
from gomflow.services.reconciliation_queue import ReconciliationQueue, make_idempotency_key

logger = logging.getLogger(__name__)


BUYER_MESSAGES = {
    "confirmed": "Payment confirmed! Your order {reference} ({amount} {currency}) is locked in.",
    "under_review": "We're reviewing your payment for {reference}. Your GOM will confirm it shortly.",
    "rejected": (
        "We couldn't match this payment to {reference}. "
        "Please check your reference number and amount, then send a new screenshot."
    ),
    "cancelled": "Your order {reference} has been cancelled.",
}

NO_MATCH_MESSAGE = "We couldn't match this payment. Please check your reference number and amount."


def outbox_key(submission_id: str, new_state: str) -> str:
    return f"notify:{submission_id}:{new_state}"


def split_identity(buyer_identity: str) -> tuple:
    platform, sep, external_id = (buyer_identity or "").partition(":")
    if not sep:
        return "web", buyer_identity
    return platform.lower(), external_id


class NotificationDispatcher:
    def __init__(
        self,
        db: GomflowDB,
        settings: NotificationSettings,
        queue: ReconciliationQueue,
        http_post: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.queue = queue
        self.http_post = http_post or httpx.post

    def emit(self, submission: Dict[str, Any], new_state: str, actor: str, reason: str = "") -> str:
        """Write the outbox row (at most one per submission and state) and schedule delivery."""
        key = outbox_key(submission["id"], new_state)
        channel, recipient = split_identity(submission.get("buyer_identity") or "")
        template = BUYER_MESSAGES.get(new_state, "Your order {reference} is now {state}.")
        message = template.format(
            reference=submission.get("payment_reference"),
            amount=Decimal(str(submission.get("total_amount") or "0")),
            currency=submission.get("currency"),
            state=new_state,
        )
        inserted = self.db.insert_outbox_message({
            "idempotency_key": key,
            "submission_id": submission["id"],
            "new_state": new_state,
            "actor": actor,
            "channel": channel,
            "recipient": recipient,
            "message": message,
        })
        if inserted:
            self.queue.enqueue(
                "notification",
                make_idempotency_key("notification", key),
                {"outbox_key": key, "submission_id": submission["id"], "reason": reason},
            )
        return key

    def deliver(self, key: str) -> Dict[str, Any]:
        row = self.db.get_outbox_message(key)
        if row is None:
            raise NotFoundError("notification", key)
        if row["status"] != "pending":
            return {"status": row["status"], "idempotency_key": key}

        url = self.settings.service_urls.get(row["channel"] or "")
        if not url:
            logger.warning("No notification service configured for channel %s; skipping %s", row["channel"], key)
            self.db.record_outbox_attempt(key, "skipped", f"no service url for {row['channel']}")
            return {"status": "skipped", "idempotency_key": key}

        headers = {"Idempotency-Key": key}
        if self.settings.service_secret:
            headers["X-Service-Secret"] = self.settings.service_secret
        body = {
            "submission_id": row["submission_id"],
            "new_state": row["new_state"],
            "actor": row["actor"],
            "timestamp": row["created_at"],
            "idempotency_key": key,
            "recipient": row["recipient"],
            "message": row["message"],
        }
        try:
            response = self.http_post(
                f"{url.rstrip('/')}/api/notifications",
                json=body,
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        except httpx.TransportError as exc:
            self.db.record_outbox_attempt(key, "pending", str(exc))
            raise TransientExternalError(f"{row['channel']} notifications", str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            self.db.record_outbox_attempt(key, "pending", f"HTTP {response.status_code}")
            raise TransientExternalError(f"{row['channel']} notifications", f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error("Notification %s rejected by %s: HTTP %s", key, row["channel"], response.status_code)
            self.db.record_outbox_attempt(key, "failed", f"HTTP {response.status_code}")
            return {"status": "failed", "idempotency_key": key}

        self.db.record_outbox_attempt(key, "delivered")
        logger.info("Delivered %s via %s", key, row["channel"])
        return {"status": "delivered", "idempotency_key": key}

    def flush(self, submission_id: str) -> Dict[str, int]:
        """Deliver every pending row for one submission; stops at the first transient failure."""
        counts: Dict[str, int] = {}
        for row in self.db.list_outbox_messages(submission_id=submission_id, status="pending"):
            status = self.deliver(row["idempotency_key"])["status"]
            counts[status] = counts.get(status, 0) + 1
        return counts

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self.deliver(event["payload"]["outbox_key"])
