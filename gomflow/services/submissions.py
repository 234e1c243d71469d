"""Submission creation and GOM review views."""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from gomflow.core.database import INTEGRITY_DB_ERRORS, GomflowDB
from gomflow.services.errors import ForbiddenError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)


CURRENCY_COUNTRY = {"PHP": "PH", "MYR": "MY"}
CENT = Decimal("0.01")


def generate_payment_reference(prefix: str) -> str:
    """``<prefix>-<8 upper hex>``, e.g. ``PH-1A2B3C4D``."""
    return f"{prefix}-{secrets.token_hex(4).upper()}"


def compute_total(quantity: int, unit_price: Decimal) -> Decimal:
    return (Decimal(quantity) * unit_price).quantize(CENT)


class SubmissionService:
    def __init__(self, db: GomflowDB) -> None:
        self.db = db

    def create_submission(
        self,
        order_id: str,
        gom_id: str,
        buyer_identity: str,
        quantity: int,
        unit_price: Any,
        currency: str,
        payment_method: Optional[str] = None,
        buyer_name: Optional[str] = None,
        payment_reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        currency = (currency or "").upper()
        if currency not in CURRENCY_COUNTRY:
            raise InvalidInputError(f"unsupported currency '{currency}'", field="currency")
        if int(quantity) <= 0:
            raise InvalidInputError("quantity must be positive", field="quantity")
        try:
            price = Decimal(str(unit_price))
        except InvalidOperation as exc:
            raise InvalidInputError(f"invalid unit price '{unit_price}'", field="unit_price") from exc
        if not price.is_finite() or price <= 0:
            raise InvalidInputError("unit price must be positive", field="unit_price")
        if price != price.quantize(CENT):
            raise InvalidInputError("unit price has more than 2 decimal places", field="unit_price")
        price = price.quantize(CENT)

        if payment_reference:
            if self.db.get_submission_by_reference(payment_reference):
                raise InvalidInputError(
                    f"payment reference {payment_reference} already in use", field="payment_reference"
                )
        else:
            prefix = CURRENCY_COUNTRY[currency]
            payment_reference = generate_payment_reference(prefix)
            while self.db.get_submission_by_reference(payment_reference):
                payment_reference = generate_payment_reference(prefix)

        try:
            submission = self.db.create_submission({
                "order_id": order_id,
                "gom_id": gom_id,
                "buyer_identity": buyer_identity,
                "buyer_name": buyer_name,
                "quantity": int(quantity),
                "unit_price": price,
                "currency": currency,
                "total_amount": compute_total(int(quantity), price),
                "payment_method": payment_method,
                "payment_reference": payment_reference,
                "metadata": metadata or {},
            })
        except INTEGRITY_DB_ERRORS as exc:
            # Lost a race with another submission for the same reference.
            raise InvalidInputError(
                f"payment reference {payment_reference} already in use", field="payment_reference"
            ) from exc
        self.db.append_audit_event({
            "submission_id": submission["id"],
            "event_type": "submission_created",
            "to_state": submission["status"],
            "actor_type": "service",
            "actor_id": "order_service",
            "payload": {"total_amount": submission["total_amount"], "currency": currency},
            "source": "submissions",
        })
        logger.info("Created submission %s (%s)", submission["id"], payment_reference)
        return submission

    def get(self, submission_id: str) -> Dict[str, Any]:
        submission = self.db.get_submission(submission_id)
        if not submission:
            raise NotFoundError("submission", submission_id)
        return submission

    def get_for_viewer(self, submission_id: str, role: str, user_id: str) -> Dict[str, Any]:
        submission = self.get(submission_id)
        if role == "gom" and submission["gom_id"] == user_id:
            pass
        elif role == "buyer" and submission["buyer_identity"] == user_id:
            pass
        elif role != "service":
            raise ForbiddenError("not your submission")
        return {
            **submission,
            "audit_trail": self.db.list_audit_events(submission_id),
            "proofs": self.db.list_payment_proofs(submission["gom_id"], submission_id=submission_id),
        }

    def review_queue(self, gom_id: str, limit: int = 100) -> Dict[str, Any]:
        """Under-review submissions with their latest proof, plus unmatched proofs."""
        items = []
        for submission in self.db.list_submissions(gom_id, statuses=["under_review"], limit=limit):
            proofs = self.db.list_payment_proofs(gom_id, submission_id=submission["id"], limit=1)
            latest = proofs[0] if proofs else None
            match_result = (latest or {}).get("match_result") or {}
            items.append({
                "submission": submission,
                "latest_proof": latest,
                "match_score": ((match_result.get("chosen") or {}).get("score")
                                if match_result.get("chosen")
                                else _first_score(match_result)),
                "reasons": match_result.get("reasons") or [],
            })
        unmatched = self.db.list_payment_proofs(gom_id, outcome="no_match", limit=limit)
        return {
            "gom_id": gom_id,
            "under_review": items,
            "unmatched_proofs": unmatched,
            "counts": self.db.count_submissions_by_status(gom_id),
        }


def _first_score(match_result: Dict[str, Any]) -> Optional[float]:
    candidates = match_result.get("candidates") or []
    return candidates[0].get("score") if candidates else None
