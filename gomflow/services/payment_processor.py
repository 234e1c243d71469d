"""
Payment event handlers.

Every path that can change a submission's status enters the reconciliation
queue and is applied here, one event at a time per submission:

- ``screenshot``: extraction + matching for an uploaded proof. Resolved
  decisions are re-enqueued as ``screenshot_match`` events on the matched
  submission's lane so they serialize with webhooks and GOM decisions.
- ``screenshot_match``: commits an auto-approve or a routing to review.
- ``gateway_webhook``: a verified PayMongo/Billplz payment.
- ``gom_decision`` / ``cancellation``: human actions.

Handlers return structured results (stored on the event). Business outcomes
such as an invalid transition are results, not failures; only transient
errors are raised back to the queue for retry.
"""
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from gomflow.core.database import GomflowDB
from gomflow.models.payments import ExtractedPayment
from gomflow.services.errors import (
    ExtractionError,
    ForbiddenError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from gomflow.services.extraction import ExtractionEngine, validate_image
from gomflow.services.matching import (
    AUTO_APPROVE,
    MATCHABLE_STATES,
    NEEDS_REVIEW,
    NO_MATCH,
    Matcher,
)
from gomflow.services.notifications import NO_MATCH_MESSAGE
from gomflow.services.reconciliation_queue import (
    FINAL_EVENT_STATES,
    EnqueueResult,
    ReconciliationQueue,
    make_idempotency_key,
)
from gomflow.services.submission_state import TransitionRequest, is_terminal
from gomflow.services.verification import (
    APPLIED,
    DUPLICATE,
    INVALID_TRANSITION,
    LOST_RACE,
    TransitionResult,
    VerificationStateMachine,
)
from gomflow.services.webhook_adapter import WebhookAdapter

logger = logging.getLogger(__name__)


GOM_DECISIONS = {"confirmed", "rejected"}

SCREENSHOT_MESSAGES = {
    "auto_approved": "Payment confirmed! Your order is locked in.",
    "needs_review": "We're reviewing your payment. Your GOM will confirm it shortly.",
    "no_match": NO_MATCH_MESSAGE,
    "abandoned": "This order is already closed. Your GOM can see the screenshot you sent.",
    "extraction_failed": "We couldn't read this screenshot. Please send a clearer image.",
    "processing": "We received your screenshot and are still checking it.",
}


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class PaymentProcessor:
    def __init__(
        self,
        db: GomflowDB,
        queue: ReconciliationQueue,
        state_machine: VerificationStateMachine,
        extraction_engine: ExtractionEngine,
        matcher: Matcher,
        adapter: WebhookAdapter,
    ) -> None:
        self.db = db
        self.queue = queue
        self.state_machine = state_machine
        self.engine = extraction_engine
        self.matcher = matcher
        self.adapter = adapter

    def register(self) -> None:
        self.queue.register("screenshot", self.handle_screenshot)
        self.queue.register("screenshot_match", self.handle_screenshot_match)
        self.queue.register("gateway_webhook", self.handle_gateway_payment)
        self.queue.register("gom_decision", self.handle_gom_decision)
        self.queue.register("cancellation", self.handle_cancellation)

    # ==================== PRODUCERS ====================

    def submit_screenshot(
        self,
        image_bytes: bytes,
        gom_id: str,
        order_id: Optional[str] = None,
        submission_id: Optional[str] = None,
        channel: str = "web",
    ) -> EnqueueResult:
        """Store the proof and enqueue it. The same image for the same target is enqueued once."""
        content_type = validate_image(image_bytes, self.engine.settings)
        if submission_id:
            submission = self.db.get_submission(submission_id)
            if not submission:
                raise NotFoundError("submission", submission_id)
            if submission["gom_id"] != gom_id:
                raise ForbiddenError("submission belongs to a different GOM")

        image_sha = hashlib.sha256(image_bytes).hexdigest()
        key = make_idempotency_key("screenshot", image_sha, submission_id or gom_id)
        existing = self.db.get_payment_event_by_key(key)
        if existing:
            logger.info("Screenshot %s already submitted as event %s", image_sha[:12], existing["id"])
            return EnqueueResult(event=existing, duplicate=True)

        proof = self.db.create_payment_proof({
            "gom_id": gom_id,
            "order_id": order_id,
            "submission_id": submission_id,
            "submission_id_hint": submission_id,
            "channel": channel,
            "content_type": content_type,
            "file_size": len(image_bytes),
            "image_sha256": image_sha,
            "image_base64": base64.b64encode(image_bytes).decode("ascii"),
        })
        result = self.queue.enqueue(
            "screenshot",
            key,
            {
                "proof_id": proof["id"],
                "gom_id": gom_id,
                "order_id": order_id,
                "submission_id_hint": submission_id,
                "channel": channel,
            },
            submission_id=submission_id,
        )
        if result.duplicate:
            self.db.update_payment_proof(proof["id"], outcome="duplicate")
        else:
            self.db.update_payment_proof(proof["id"], event_id=result.event_id)
        return result

    def receive_webhook(self, provider: str, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        payment = self.adapter.verify(provider, raw_body, signature)
        if payment is None:
            return {"status": "ignored"}
        if not payment.submission_id:
            logger.warning(
                "%s %s event %s has no submission_id; acknowledged without action",
                payment.provider,
                payment.event_type,
                payment.external_id,
            )
            return {"status": "ignored", "reason": "missing submission_id"}
        result = self.queue.enqueue(
            "gateway_webhook",
            payment.idempotency_key,
            payment.to_payload(),
            submission_id=payment.submission_id,
        )
        return {
            "status": "duplicate" if result.duplicate else "queued",
            "event_id": result.event.get("id"),
            "submission_id": payment.submission_id,
        }

    def submit_decision(
        self,
        submission_id: str,
        decision: str,
        gom_id: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        wait: bool = True,
    ) -> Dict[str, Any]:
        if decision not in GOM_DECISIONS:
            raise InvalidInputError(f"decision must be one of {sorted(GOM_DECISIONS)}", field="decision")
        submission = self.db.get_submission(submission_id)
        if not submission:
            raise NotFoundError("submission", submission_id)
        if submission["gom_id"] != gom_id:
            raise ForbiddenError("submission belongs to a different GOM")

        if idempotency_key:
            key = make_idempotency_key("gom_decision", submission_id, idempotency_key)
        else:
            key = self._decision_key(submission, decision)
        enqueued = self.queue.enqueue(
            "gom_decision",
            key,
            {"submission_id": submission_id, "decision": decision, "gom_id": gom_id, "notes": notes},
            submission_id=submission_id,
        )
        return self._await_transition(enqueued, submission_id, wait)

    def _decision_key(self, submission: Dict[str, Any], decision: str) -> str:
        """
        Default key for a GOM decision sent without an Idempotency-Key.

        Repeats of the same decision share a key. A decision refused in a
        state the submission has since left is spent, so the next attempt
        takes a fresh key and is evaluated against the current state.
        """
        round_no = 0
        while True:
            parts = ["gom_decision", submission["id"], decision]
            if round_no:
                parts.append(round_no)
            key = make_idempotency_key(*parts)
            previous = self.db.get_payment_event_by_key(key)
            if previous is None or previous.get("status") != "done":
                return key
            result = previous.get("result") or {}
            if result.get("outcome") != INVALID_TRANSITION or result.get("current_state") == submission["status"]:
                return key
            round_no += 1

    def submit_bulk_decision(
        self,
        submission_ids: List[str],
        decision: str,
        gom_id: str,
        notes: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        results = []
        for submission_id in submission_ids:
            try:
                results.append(self.submit_decision(submission_id, decision, gom_id, notes=notes))
            except (NotFoundError, ForbiddenError, InvalidInputError) as exc:
                results.append({"submission_id": submission_id, "outcome": "error", "error": exc.to_dict()})
        return results

    def submit_cancellation(
        self,
        submission_id: str,
        actor_type: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        submission = self.db.get_submission(submission_id)
        if not submission:
            raise NotFoundError("submission", submission_id)
        if actor_type == "gom" and submission["gom_id"] != actor_id:
            raise ForbiddenError("submission belongs to a different GOM")
        if actor_type == "buyer" and submission["buyer_identity"] != actor_id:
            raise ForbiddenError("not your submission")
        if actor_type not in {"gom", "buyer"}:
            raise ForbiddenError(f"{actor_type} cannot cancel submissions")

        key = make_idempotency_key("cancellation", submission_id)
        enqueued = self.queue.enqueue(
            "cancellation",
            key,
            {"submission_id": submission_id, "actor_type": actor_type, "actor_id": actor_id, "reason": reason},
            submission_id=submission_id,
        )
        return self._await_transition(enqueued, submission_id, wait=True)

    def _await_transition(self, enqueued: EnqueueResult, submission_id: str, wait: bool) -> Dict[str, Any]:
        event = enqueued.event
        if wait and event.get("id"):
            event = self.queue.wait_for(str(event["id"]))
        result = dict(event.get("result") or {})
        if event.get("status") == "dead_letter":
            result = {"outcome": "failed", "error": {"message": event.get("last_error")}}
        elif event.get("status") not in FINAL_EVENT_STATES:
            result = {"outcome": "processing"}
        result.setdefault("submission_id", submission_id)
        result["event_id"] = event.get("id")
        result["duplicate_request"] = enqueued.duplicate
        result["submission"] = self.db.get_submission(submission_id)
        return result

    def screenshot_outcome(self, event_id: str, wait: bool = True) -> Dict[str, Any]:
        """Wait for a screenshot and its commits, then summarize the proof for the buyer."""
        event = self.queue.wait_for(event_id) if wait else self.db.get_payment_event(event_id)
        if event is None:
            raise NotFoundError("payment_event", event_id)
        result = event.get("result") or {}
        commits_final = True
        for commit_id in result.get("commit_event_ids") or []:
            commit = self.queue.wait_for(commit_id) if wait else self.db.get_payment_event(commit_id)
            if not commit or commit["status"] not in FINAL_EVENT_STATES:
                commits_final = False

        proof = self.db.get_payment_proof(event["payload"]["proof_id"], include_image=False) or {}
        outcome = proof.get("outcome") or "pending"
        if event["status"] not in FINAL_EVENT_STATES or not commits_final or outcome == "pending":
            outcome = "processing"
        return {
            "outcome": outcome,
            "message": SCREENSHOT_MESSAGES.get(outcome, SCREENSHOT_MESSAGES["processing"]),
            "submission_ids": result.get("submission_ids") or [],
            "event_id": event["id"],
            "proof_id": proof.get("id"),
        }

    # ==================== HANDLERS ====================

    def handle_screenshot(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = event["payload"]
        proof_id = payload["proof_id"]
        proof = self.db.get_payment_proof(proof_id)
        if not proof:
            raise NotFoundError("payment_proof", proof_id)
        self.db.increment_proof_attempts(proof_id)

        gom_id = payload["gom_id"]
        hint_id = payload.get("submission_id_hint")
        hinted = self.db.get_submission(hint_id) if hint_id else None
        if hint_id and hinted is None:
            raise NotFoundError("submission", hint_id)

        if hinted is not None:
            if is_terminal(hinted["status"]):
                return self._abandon(proof_id, hinted, "screenshot for closed submission", event)
            pool = [hinted]
        else:
            pool = self.db.list_submissions(
                gom_id, statuses=sorted(MATCHABLE_STATES), order_id=payload.get("order_id")
            )

        try:
            extraction = self.engine.extract(base64.b64decode(proof["image_base64"]), _context_hint(hinted, pool))
        except ExtractionError:
            self.db.update_payment_proof(proof_id, outcome="extraction_failed")
            raise

        decision = self.matcher.decide(extraction.candidates, pool, gom_id=gom_id)
        targets = []
        if decision.outcome == AUTO_APPROVE:
            targets = [(decision.chosen.submission_id, "confirmed")]
        elif decision.outcome == NEEDS_REVIEW:
            targets = [(candidate.submission_id, "under_review") for candidate in decision.review]
        elif hinted is not None:
            # Nothing usable on a screenshot sent for a specific order: a human looks at it.
            targets = [(hinted["id"], "under_review")]

        proof_updates: Dict[str, Any] = {
            "extraction": extraction.model_dump(mode="json"),
            "match_result": decision.to_dict(),
        }
        if len(targets) == 1:
            proof_updates["submission_id"] = targets[0][0]
        if not targets:
            proof_updates["outcome"] = NO_MATCH
        self.db.update_payment_proof(proof_id, **proof_updates)

        best = extraction.best
        commit_ids = []
        for submission_id, to_state in targets:
            candidate = next((c for c in decision.ranked if c.submission_id == submission_id), None)
            enqueued = self.queue.enqueue(
                "screenshot_match",
                make_idempotency_key("screenshot_match", event["idempotency_key"], submission_id),
                {
                    "proof_id": proof_id,
                    "to_state": to_state,
                    "score": candidate.score if candidate else 0.0,
                    "overall_confidence": best.overall_confidence if best else 0.0,
                    "reasons": decision.reasons if decision.outcome != NO_MATCH else ["unreadable_screenshot"],
                    "ambiguous": decision.ambiguous,
                },
                submission_id=submission_id,
            )
            commit_ids.append(enqueued.event_id)

        logger.info(
            "Screenshot %s: %s over %d candidate submission(s) -> %s",
            proof_id,
            decision.outcome,
            len(pool),
            [sid for sid, _ in targets] or "no match",
        )
        return {
            "decision": decision.outcome,
            "submission_ids": [sid for sid, _ in targets],
            "commit_event_ids": commit_ids,
            "proof_id": proof_id,
        }

    def handle_screenshot_match(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = event["payload"]
        submission_id = event["submission_id"]
        submission = self._require_submission(submission_id)
        to_state = payload["to_state"]
        proof_id = payload["proof_id"]
        metadata = {
            "proof_id": proof_id,
            "score": payload.get("score"),
            "overall_confidence": payload.get("overall_confidence"),
            "reasons": payload.get("reasons"),
        }

        if is_terminal(submission["status"]):
            return self._abandon(proof_id, submission, "submission closed before commit", event)
        if to_state == "under_review" and submission["status"] == "under_review":
            self.state_machine.record_evidence(
                submission_id,
                "additional_payment_proof",
                "system",
                "matcher",
                metadata,
                idempotency_key=event["idempotency_key"],
            )
            self.db.update_payment_proof(proof_id, outcome="needs_review")
            return {"outcome": "recorded", "submission_id": submission_id, "current_state": "under_review"}

        if to_state == "confirmed":
            request = TransitionRequest(
                submission_id=submission_id,
                to_state="confirmed",
                actor_type="system",
                actor_id="auto",
                reason="auto_approved",
                idempotency_key=event["idempotency_key"],
                expected_from="pending_payment",
                notes=(
                    f"Auto-approved: match score {payload.get('score')}, "
                    f"extraction confidence {payload.get('overall_confidence')}"
                ),
                metadata=metadata,
            )
        else:
            request = TransitionRequest(
                submission_id=submission_id,
                to_state="under_review",
                actor_type="system",
                actor_id="matcher",
                reason=",".join(payload.get("reasons") or []) or "needs_review",
                idempotency_key=event["idempotency_key"],
                expected_from=submission["status"],
                metadata=metadata,
            )

        result = self.state_machine.transition(request)
        if result.outcome == LOST_RACE:
            result = self._redecide_screenshot(request, result)

        if result.outcome in (APPLIED, DUPLICATE):
            outcome = "auto_approved" if result.to_state == "confirmed" else "needs_review"
        elif is_terminal(result.current_state):
            outcome = "abandoned"
        else:
            outcome = "needs_review"
        self.db.update_payment_proof(proof_id, outcome=outcome, submission_id=submission_id)
        return {**result.to_dict(), "proof_outcome": outcome}

    def _redecide_screenshot(self, request: TransitionRequest, lost: TransitionResult) -> TransitionResult:
        """One re-read after a lost CAS: auto-approval only holds while still pending."""
        current = lost.current_state
        if is_terminal(current):
            return lost
        if request.to_state == "confirmed" and current != "pending_payment":
            self.state_machine.record_evidence(
                request.submission_id,
                "auto_approval_superseded",
                "system",
                "auto",
                {**(request.metadata or {}), "observed_state": current},
                idempotency_key=request.idempotency_key,
            )
            return lost
        if request.to_state == current:
            return lost
        return self.state_machine.transition(replace(request, expected_from=current))

    def handle_gateway_payment(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = event["payload"]
        submission_id = payload["submission_id"]
        submission = self._require_submission(submission_id)
        provider = payload["provider"]
        evidence = {
            "provider": provider,
            "event_type": payload.get("event_type"),
            "external_id": payload.get("external_id"),
            "amount": payload.get("amount"),
            "currency": payload.get("currency"),
            "gateway_reference": payload.get("gateway_reference"),
        }

        if not payload.get("paid"):
            self.state_machine.record_evidence(
                submission_id, "gateway_payment_failed", "gateway", provider, evidence,
                idempotency_key=event["idempotency_key"],
            )
            return {"outcome": "recorded", "submission_id": submission_id, "current_state": submission["status"]}

        return self._apply_gateway_payment(event, submission, evidence, retry_on_race=True)

    def _apply_gateway_payment(
        self,
        event: Dict[str, Any],
        submission: Dict[str, Any],
        evidence: Dict[str, Any],
        retry_on_race: bool,
    ) -> Dict[str, Any]:
        payload = event["payload"]
        provider = payload["provider"]
        submission_id = submission["id"]
        current = submission["status"]

        if is_terminal(current):
            # Money arrived for a closed order; the GOM sees it in the trail.
            self.state_machine.record_evidence(
                submission_id, "gateway_payment_after_close", "gateway", provider, evidence,
                idempotency_key=event["idempotency_key"],
            )
            logger.warning("Gateway payment for %s submission %s recorded without transition", current, submission_id)
            return {"outcome": INVALID_TRANSITION, "submission_id": submission_id, "current_state": current}

        amount = _decimal_or_none(payload.get("amount"))
        exact = amount is not None and amount > 0 and self.matcher.amount_matches(
            ExtractedPayment(amount=amount, currency=payload.get("currency")), submission
        )
        if exact:
            request = TransitionRequest(
                submission_id=submission_id,
                to_state="confirmed",
                actor_type="gateway",
                actor_id=provider,
                reason="gateway_payment_paid",
                idempotency_key=event["idempotency_key"],
                expected_from=current,
                notes=f"{provider} payment {payload.get('gateway_reference')}",
                metadata=evidence,
            )
        elif current == "pending_payment":
            request = TransitionRequest(
                submission_id=submission_id,
                to_state="under_review",
                actor_type="gateway",
                actor_id=provider,
                reason="gateway_amount_mismatch",
                idempotency_key=event["idempotency_key"],
                expected_from=current,
                notes=(
                    f"{provider} paid {payload.get('amount')} {payload.get('currency')}, "
                    f"expected {submission['total_amount']} {submission['currency']}"
                ),
                metadata=evidence,
            )
        else:
            self.state_machine.record_evidence(
                submission_id, "gateway_amount_mismatch", "gateway", provider, evidence,
                idempotency_key=event["idempotency_key"],
            )
            return {"outcome": "recorded", "submission_id": submission_id, "current_state": current}

        result = self.state_machine.transition(request)
        if result.outcome == LOST_RACE and retry_on_race:
            return self._apply_gateway_payment(event, result.submission, evidence, retry_on_race=False)
        return result.to_dict()

    def handle_gom_decision(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = event["payload"]
        submission = self._require_submission(payload["submission_id"])
        request = TransitionRequest(
            submission_id=submission["id"],
            to_state=payload["decision"],
            actor_type="gom",
            actor_id=payload["gom_id"],
            reason="gom_decision",
            idempotency_key=event["idempotency_key"],
            expected_from=submission["status"],
            notes=payload.get("notes"),
        )
        return self._transition_or_refuse(request)

    def handle_cancellation(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = event["payload"]
        submission = self._require_submission(payload["submission_id"])
        request = TransitionRequest(
            submission_id=submission["id"],
            to_state="cancelled",
            actor_type=payload["actor_type"],
            actor_id=payload["actor_id"],
            reason="cancelled",
            idempotency_key=event["idempotency_key"],
            expected_from=submission["status"],
            notes=payload.get("reason"),
        )
        return self._transition_or_refuse(request)

    def _transition_or_refuse(self, request: TransitionRequest) -> Dict[str, Any]:
        """Human actions: a disallowed edge is an answer for the caller, not a queue failure."""
        try:
            return self.state_machine.transition(request).to_dict()
        except ForbiddenError as exc:
            # e.g. a GOM confirming a submission that never reached review
            refused = InvalidTransitionError(request.submission_id, request.expected_from or "", request.to_state)
            return {
                "outcome": INVALID_TRANSITION,
                "submission_id": request.submission_id,
                "from_state": request.expected_from,
                "to_state": request.to_state,
                "current_state": request.expected_from,
                "error": {**refused.to_dict(), "detail": exc.detail or exc.message},
            }

    # ==================== HELPERS ====================

    def _require_submission(self, submission_id: str) -> Dict[str, Any]:
        submission = self.db.get_submission(submission_id)
        if not submission:
            raise NotFoundError("submission", submission_id)
        return submission

    def _abandon(self, proof_id: str, submission: Dict[str, Any], why: str, event: Dict[str, Any]) -> Dict[str, Any]:
        self.state_machine.record_evidence(
            submission["id"],
            "payment_proof_abandoned",
            "system",
            "matcher",
            {"proof_id": proof_id, "reason": why},
            idempotency_key=event["idempotency_key"],
        )
        self.db.update_payment_proof(proof_id, outcome="abandoned", submission_id=submission["id"])
        logger.info("Proof %s abandoned: %s (%s)", proof_id, why, submission["status"])
        return {
            "outcome": "abandoned",
            "submission_ids": [submission["id"]],
            "commit_event_ids": [],
            "proof_id": proof_id,
            "current_state": submission["status"],
        }


def _context_hint(hinted: Optional[Dict[str, Any]], pool: List[Dict[str, Any]]) -> Dict[str, Any]:
    if hinted is not None:
        return {
            "currency": hinted["currency"],
            "payment_reference": hinted["payment_reference"],
            "total_amount": hinted["total_amount"],
            "payment_method": hinted.get("payment_method"),
        }
    currencies = {s["currency"] for s in pool}
    return {"currency": currencies.pop()} if len(currencies) == 1 else {}
