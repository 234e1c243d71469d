"""Submission payment state machine and transition helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from gomflow.services.errors import ForbiddenError, InvalidTransitionError


SUBMISSION_STATES = {
    "pending_payment",
    "under_review",
    "confirmed",
    "rejected",
    "cancelled",
}

TERMINAL_STATES = {"confirmed", "rejected", "cancelled"}


VALID_TRANSITIONS: Dict[str, set[str]] = {
    "pending_payment": {"under_review", "confirmed", "cancelled"},
    "under_review": {"confirmed", "rejected", "cancelled"},
    "confirmed": set(),
    "rejected": set(),
    "cancelled": set(),
}


# (from_state, to_state) -> actor types allowed to take the edge.
# system: the auto-approve path; gateway: signature-verified PSP settlement.
ALLOWED_ACTORS: Dict[tuple, set[str]] = {
    ("pending_payment", "under_review"): {"system", "gateway"},
    ("pending_payment", "confirmed"): {"system", "gateway"},
    ("pending_payment", "cancelled"): {"buyer", "gom"},
    ("under_review", "confirmed"): {"gom", "gateway"},
    ("under_review", "rejected"): {"gom"},
    ("under_review", "cancelled"): {"buyer", "gom"},
}


@dataclass(frozen=True)
class TransitionRequest:
    submission_id: str
    to_state: str
    actor_type: str
    actor_id: str
    reason: str = ""
    idempotency_key: Optional[str] = None
    expected_from: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict] = None

    @property
    def actor(self) -> str:
        return f"{self.actor_type}:{self.actor_id}"


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def assert_valid_transition(submission_id: str, from_state: str, to_state: str) -> None:
    if from_state not in SUBMISSION_STATES or to_state not in SUBMISSION_STATES:
        raise InvalidTransitionError(submission_id, from_state, to_state)
    if to_state not in VALID_TRANSITIONS.get(from_state, set()):
        raise InvalidTransitionError(submission_id, from_state, to_state)


def assert_actor_allowed(from_state: str, to_state: str, actor_type: str) -> None:
    allowed = ALLOWED_ACTORS.get((from_state, to_state), set())
    if actor_type not in allowed:
        raise ForbiddenError(
            f"actor type '{actor_type}' may not move a submission from {from_state} to {to_state}"
        )
