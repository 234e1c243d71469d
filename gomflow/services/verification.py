"""
Verification state machine with compare-and-swap commits.

Every status change of a submission goes through ``VerificationStateMachine``.
The commit is one conditional UPDATE: it succeeds only if the row still holds
the state the caller read. Losing that race is reported, never retried here;
the event handler that asked for the transition re-reads and decides.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from gomflow.core.database import GomflowDB
from gomflow.services.errors import InvalidTransitionError, NotFoundError
from gomflow.services.logging import log_transition
from gomflow.services.metrics import record_transition
from gomflow.services.submission_state import (
    TransitionRequest,
    assert_actor_allowed,
    assert_valid_transition,
)

logger = logging.getLogger(__name__)


APPLIED = "applied"
DUPLICATE = "duplicate"
INVALID_TRANSITION = "invalid_transition"
LOST_RACE = "lost_race"


@dataclass
class TransitionResult:
    outcome: str
    submission: Dict[str, Any]
    from_state: str
    to_state: str
    idempotency_key: str
    error: Optional[Dict[str, Any]] = None
    notification_key: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED

    @property
    def current_state(self) -> str:
        return str(self.submission.get("status") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "submission_id": self.submission.get("id"),
            "from_state": self.from_state,
            "to_state": self.to_state,
            "current_state": self.current_state,
            "error": self.error,
        }


class VerificationStateMachine:
    def __init__(self, db: GomflowDB, notifier=None) -> None:
        self.db = db
        self.notifier = notifier

    def transition(self, request: TransitionRequest) -> TransitionResult:
        """
        Apply one transition. Returns a structured result:

        - ``applied``: the CAS matched; audit and outbox rows written.
        - ``duplicate``: this idempotency key already committed; nothing done.
        - ``invalid_transition``: illegal edge (for example from a terminal
          state); no state change, no notification.
        - ``lost_race``: another writer moved the submission between read and
          commit; ``submission`` holds the fresh row.
        """
        key = request.idempotency_key or f"adhoc:{uuid.uuid4().hex}"
        audit_key = f"transition:{key}"

        existing = self.db.get_audit_event_by_key(audit_key)
        submission = self.db.get_submission(request.submission_id)
        if not submission:
            raise NotFoundError("submission", request.submission_id)
        if existing:
            return TransitionResult(
                outcome=DUPLICATE,
                submission=submission,
                from_state=str(existing.get("from_state") or ""),
                to_state=str(existing.get("to_state") or request.to_state),
                idempotency_key=key,
            )

        current = str(submission["status"])
        if submission.get("last_transition_key") == key and current == request.to_state:
            # Committed earlier but the process died before the audit/outbox writes.
            from_state = request.expected_from or ""
            notification_key = self._record_commit(request, submission, from_state, audit_key, key)
            return TransitionResult(
                outcome=DUPLICATE,
                submission=submission,
                from_state=from_state,
                to_state=request.to_state,
                idempotency_key=key,
                notification_key=notification_key,
            )

        from_state = request.expected_from or current
        try:
            assert_valid_transition(request.submission_id, from_state, request.to_state)
        except InvalidTransitionError as exc:
            log_transition(request.submission_id, from_state, request.to_state, request.actor, INVALID_TRANSITION, key)
            record_transition(request.to_state, INVALID_TRANSITION)
            return TransitionResult(
                outcome=INVALID_TRANSITION,
                submission=submission,
                from_state=from_state,
                to_state=request.to_state,
                idempotency_key=key,
                error=exc.to_dict(),
            )
        assert_actor_allowed(from_state, request.to_state, request.actor_type)

        swapped = self.db.compare_and_set_submission_status(
            request.submission_id,
            expected_status=from_state,
            new_status=request.to_state,
            verified_by=request.actor,
            transition_key=key,
            verification_notes=request.notes or request.reason or None,
        )
        fresh = self.db.get_submission(request.submission_id) or submission

        if not swapped:
            self.db.append_audit_event({
                "submission_id": request.submission_id,
                "event_type": "transition_lost_race",
                "from_state": from_state,
                "to_state": request.to_state,
                "actor_type": request.actor_type,
                "actor_id": request.actor_id,
                "payload": {
                    "reason": request.reason,
                    "observed_state": fresh.get("status"),
                    "idempotency_key": key,
                },
                "source": "verification_state_machine",
            })
            log_transition(request.submission_id, from_state, request.to_state, request.actor, LOST_RACE, key)
            record_transition(request.to_state, LOST_RACE)
            return TransitionResult(
                outcome=LOST_RACE,
                submission=fresh,
                from_state=from_state,
                to_state=request.to_state,
                idempotency_key=key,
            )

        notification_key = self._record_commit(request, fresh, from_state, audit_key, key)
        log_transition(request.submission_id, from_state, request.to_state, request.actor, APPLIED, key)
        record_transition(request.to_state, APPLIED)
        return TransitionResult(
            outcome=APPLIED,
            submission=fresh,
            from_state=from_state,
            to_state=request.to_state,
            idempotency_key=key,
            notification_key=notification_key,
        )

    def _record_commit(
        self,
        request: TransitionRequest,
        submission: Dict[str, Any],
        from_state: str,
        audit_key: str,
        key: str,
    ) -> Optional[str]:
        self.db.append_audit_event({
            "submission_id": request.submission_id,
            "event_type": "state_transition",
            "from_state": from_state,
            "to_state": request.to_state,
            "actor_type": request.actor_type,
            "actor_id": request.actor_id,
            "payload": {
                "reason": request.reason,
                "notes": request.notes,
                "event_key": key,
                **(request.metadata or {}),
            },
            "idempotency_key": audit_key,
            "source": "verification_state_machine",
        })
        if self.notifier is None:
            return None
        return self.notifier.emit(
            submission=submission,
            new_state=request.to_state,
            actor=request.actor,
            reason=request.reason,
        )

    def record_evidence(
        self,
        submission_id: str,
        event_type: str,
        actor_type: str,
        actor_id: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Audit-only note for events that must not change state (late payments, extra proofs)."""
        submission = self.db.get_submission(submission_id)
        return self.db.append_audit_event({
            "submission_id": submission_id,
            "event_type": event_type,
            "from_state": (submission or {}).get("status"),
            "to_state": (submission or {}).get("status"),
            "actor_type": actor_type,
            "actor_id": actor_id,
            "payload": payload,
            "idempotency_key": f"evidence:{idempotency_key}" if idempotency_key else None,
            "source": "verification_state_machine",
        })
