"""
Reconciliation Queue

Durable, partitioned work queue for payment events. Events for one
submission always land in the same lane and are handled strictly in arrival
order; different submissions proceed independently. Each event carries an
idempotency key: a key that was already processed is never handled twice.

Event lifecycle:
    pending -> processing -> done
                          -> retrying -> processing ...
                          -> dead_letter (operator-visible, requeue-able)
"""
from __future__ import annotations

import hashlib
import logging
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from gomflow.core.config import QueueSettings
from gomflow.core.database import TRANSIENT_DB_ERRORS, UNFINISHED_EVENT_STATES, GomflowDB
from gomflow.services.errors import (
    GomflowError,
    InvalidInputError,
    NotFoundError,
    QueueExhaustedError,
    TransientExternalError,
)
from gomflow.services.logging import log_error
from gomflow.services.metrics import record_queue_outcome
from gomflow.services.retry import backoff_delay

logger = logging.getLogger(__name__)


FINAL_EVENT_STATES = {"done", "dead_letter"}

Handler = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def make_idempotency_key(*parts: Any) -> str:
    """Stable sha256 over the event's source and external identifiers."""
    joined = ":".join(str(part) for part in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class EnqueueResult:
    event: Dict[str, Any]
    duplicate: bool

    @property
    def event_id(self) -> str:
        return str(self.event.get("id"))


class ReconciliationQueue:
    def __init__(
        self,
        db: GomflowDB,
        settings: QueueSettings,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep or time.sleep
        self._handlers: Dict[str, Handler] = {}

    def register(self, source_type: str, handler: Handler) -> None:
        self._handlers[source_type] = handler

    def lane_for(self, routing_key: str) -> int:
        return zlib.crc32(routing_key.encode("utf-8")) % self.settings.lanes

    # ==================== PRODUCERS ====================

    def enqueue(
        self,
        source_type: str,
        idempotency_key: str,
        payload: Dict[str, Any],
        submission_id: Optional[str] = None,
    ) -> EnqueueResult:
        """
        Insert-if-absent on the idempotency key.

        ``duplicate`` is True when the key was seen before (still queued or
        already processed); the original event is returned and nothing new
        is scheduled.
        """
        existing = self.db.get_payment_event_by_key(idempotency_key)
        if existing or self.db.is_key_processed(idempotency_key):
            logger.info("Duplicate %s event ignored (key=%s)", source_type, idempotency_key[:16])
            return EnqueueResult(event=existing or {"idempotency_key": idempotency_key}, duplicate=True)

        lane = self.lane_for(submission_id or idempotency_key)
        row, inserted = self.db.insert_payment_event({
            "idempotency_key": idempotency_key,
            "source_type": source_type,
            "submission_id": submission_id,
            "lane": lane,
            "payload": payload,
        })
        if inserted:
            logger.info("Enqueued %s event %s on lane %d", source_type, row.get("id"), lane)
        return EnqueueResult(event=row, duplicate=not inserted)

    # ==================== CONSUMERS ====================

    def process_next(self, lane: int) -> Optional[Dict[str, Any]]:
        """
        Claim and handle the oldest runnable event in ``lane``.

        An event is runnable when it is due and no earlier event for the same
        submission is still unfinished. Returns the event row after handling,
        or None when nothing in the lane can run right now.
        """
        now = self.clock()
        blocked: set = set()
        for event in self.db.list_unfinished_lane_events(lane):
            submission_id = event.get("submission_id")
            if submission_id and submission_id in blocked:
                continue
            if not self._is_due(event, now):
                if submission_id:
                    blocked.add(submission_id)
                continue
            attempts = int(event.get("attempts") or 0) + 1
            if not self.db.claim_payment_event(event["id"], event["status"], attempts):
                # Another worker got there first.
                if submission_id:
                    blocked.add(submission_id)
                continue
            event["attempts"] = attempts
            event["status"] = "processing"
            return self._run(event)
        return None

    def _is_due(self, event: Dict[str, Any], now: datetime) -> bool:
        if event["status"] == "pending":
            return True
        if event["status"] == "retrying":
            next_attempt = _parse_ts(event.get("next_attempt_at"))
            return next_attempt is None or next_attempt <= now
        return False

    def _run(self, event: Dict[str, Any]) -> Dict[str, Any]:
        source_type = event["source_type"]
        handler = self._handlers.get(source_type)
        if handler is None:
            return self._dead_letter(event, f"no handler registered for {source_type}")
        try:
            result = handler(event) or {}
        except TransientExternalError as exc:
            return self._retry_or_dead_letter(event, f"{exc.message}: {exc.detail}")
        except TRANSIENT_DB_ERRORS as exc:
            return self._retry_or_dead_letter(event, f"database: {exc}")
        except GomflowError as exc:
            # Permanent: bad input, provider rejection, missing submission.
            return self._dead_letter(event, f"{exc.code.value}: {exc.message} {exc.detail or ''}".strip())
        except Exception as exc:
            log_error(
                "queue_handler_crash",
                f"{source_type} handler raised for event {event['id']}",
                {"event_id": event["id"], "attempts": event["attempts"]},
                exception=exc,
            )
            return self._retry_or_dead_letter(event, f"{type(exc).__name__}: {exc}")

        now = self.clock().isoformat()
        self.db.update_payment_event(
            event["id"],
            status="done",
            result=result,
            last_error=None,
            completed_at=now,
        )
        self.db.mark_key_processed(event["idempotency_key"], event["id"])
        record_queue_outcome(source_type, "done")
        return self.db.get_payment_event(event["id"]) or event

    def _retry_or_dead_letter(self, event: Dict[str, Any], error: str) -> Dict[str, Any]:
        attempts = int(event["attempts"])
        if attempts >= self.settings.max_attempts:
            return self._dead_letter(event, error)
        delay = backoff_delay(attempts - 1, self.settings.backoff_base_seconds, self.settings.backoff_max_seconds)
        next_attempt = self.clock() + timedelta(seconds=delay)
        self.db.update_payment_event(
            event["id"],
            status="retrying",
            last_error=error,
            next_attempt_at=next_attempt.isoformat(),
        )
        logger.warning(
            "Event %s (%s) attempt %d/%d failed: %s. Retrying in %.1fs",
            event["id"],
            event["source_type"],
            attempts,
            self.settings.max_attempts,
            error,
            delay,
        )
        record_queue_outcome(event["source_type"], "retrying")
        return self.db.get_payment_event(event["id"]) or event

    def _dead_letter(self, event: Dict[str, Any], error: str) -> Dict[str, Any]:
        exhausted = QueueExhaustedError(event["id"], int(event.get("attempts") or 0), error)
        self.db.update_payment_event(
            event["id"],
            status="dead_letter",
            last_error=error,
            completed_at=self.clock().isoformat(),
        )
        log_error(
            exhausted.code.value,
            exhausted.message,
            {
                "event_id": event["id"],
                "source_type": event["source_type"],
                "submission_id": event.get("submission_id"),
                "last_error": error,
            },
        )
        record_queue_outcome(event["source_type"], "dead_letter")
        return self.db.get_payment_event(event["id"]) or event

    def drain(self, lane: Optional[int] = None, max_events: int = 1000) -> int:
        """Handle runnable events until none are left; returns how many ran."""
        lanes = [lane] if lane is not None else list(range(self.settings.lanes))
        handled = 0
        progress = True
        while progress and handled < max_events:
            progress = False
            for current in lanes:
                if self.process_next(current) is not None:
                    handled += 1
                    progress = True
        return handled

    def wait_for(self, event_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Block until ``event_id`` is done or dead-lettered, or ``timeout`` passes.

        The caller helps drain the event's lane while waiting, so this works
        with or without a running worker pool.
        """
        timeout = self.settings.sync_wait_seconds if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            event = self.db.get_payment_event(event_id)
            if event is None:
                raise NotFoundError("payment_event", event_id)
            if event["status"] in FINAL_EVENT_STATES or time.monotonic() >= deadline:
                return event
            if self.process_next(int(event["lane"])) is None:
                self.sleep(self.settings.poll_interval_seconds)

    def release_stale_claims(self, max_age_seconds: float = 600.0) -> int:
        cutoff = (self.clock() - timedelta(seconds=max_age_seconds)).isoformat()
        released = self.db.release_stale_claims(cutoff)
        if released:
            logger.warning("Released %d stale queue claim(s)", released)
        return released

    # ==================== OPERATOR SURFACE ====================

    def list_dead_letters(self, limit: int = 100):
        return self.db.list_payment_events(status="dead_letter", limit=limit)

    def requeue(self, event_id: str) -> Dict[str, Any]:
        event = self.db.get_payment_event(event_id)
        if event is None:
            raise NotFoundError("payment_event", event_id)
        if event["status"] != "dead_letter":
            raise InvalidInputError(
                f"event {event_id} is {event['status']}; only dead-lettered events can be requeued",
                field="event_id",
            )
        self.db.update_payment_event(
            event_id,
            status="pending",
            attempts=0,
            next_attempt_at=self.clock().isoformat(),
            completed_at=None,
        )
        logger.info("Requeued dead-lettered event %s", event_id)
        return self.db.get_payment_event(event_id) or event

    def stats(self) -> Dict[str, Any]:
        counts = self.db.count_payment_events_by_status()
        return {
            "by_status": counts,
            "unfinished": sum(counts.get(state, 0) for state in UNFINISHED_EVENT_STATES),
            "dead_letter": counts.get("dead_letter", 0),
            "lanes": self.settings.lanes,
        }
