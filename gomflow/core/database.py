"""
GOMFLOW payment verification database

Single source of truth for submissions, reconciliation queue events, the
processed-key set, audit events, payment proofs and the notification outbox.
Money is stored as decimal strings; timestamps as ISO-8601 UTC strings.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False


UNFINISHED_EVENT_STATES = ("pending", "processing", "retrying")

if HAS_POSTGRES:
    TRANSIENT_DB_ERRORS: tuple = (sqlite3.OperationalError, psycopg.OperationalError)
else:  # pragma: no cover
    TRANSIENT_DB_ERRORS = (sqlite3.OperationalError,)

# Unique-constraint violations, e.g. two writers claiming one payment reference.
if HAS_POSTGRES:
    INTEGRITY_DB_ERRORS: tuple = (sqlite3.IntegrityError, psycopg.IntegrityError)
else:  # pragma: no cover
    INTEGRITY_DB_ERRORS = (sqlite3.IntegrityError,)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class GomflowDB:
    def __init__(self, db_path: str = "gomflow.db"):
        self.dsn = os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.allow_sqlite_fallback = str(
            os.getenv("GOMFLOW_DB_FALLBACK_SQLITE", "true")
        ).strip().lower() not in {"0", "false", "no", "off"}
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except psycopg.OperationalError as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logging.getLogger(__name__).warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set GOMFLOW_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                self._initialized = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            conn.commit()
            return cur.rowcount

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def initialize(self) -> None:
        if self._initialized:
            return
        seq_column = "BIGSERIAL PRIMARY KEY" if self.use_postgres else "INTEGER PRIMARY KEY AUTOINCREMENT"
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    gom_id TEXT NOT NULL,
                    buyer_identity TEXT NOT NULL,
                    buyer_name TEXT,
                    quantity INTEGER NOT NULL,
                    unit_price TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    payment_method TEXT,
                    payment_reference TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    verified_by TEXT,
                    verified_at TEXT,
                    verification_notes TEXT,
                    last_transition_key TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_submissions_gom_status ON submissions(gom_id, status)"
            )

            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS payment_events (
                    seq {seq_column},
                    id TEXT NOT NULL UNIQUE,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    source_type TEXT NOT NULL,
                    submission_id TEXT,
                    lane INTEGER NOT NULL,
                    payload TEXT,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT,
                    last_error TEXT,
                    result TEXT,
                    received_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_payment_events_lane ON payment_events(lane, status, seq)"
            )

            cur.execute("""
                CREATE TABLE IF NOT EXISTS processed_keys (
                    idempotency_key TEXT PRIMARY KEY,
                    event_id TEXT,
                    processed_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id TEXT PRIMARY KEY,
                    submission_id TEXT,
                    event_type TEXT NOT NULL,
                    from_state TEXT,
                    to_state TEXT,
                    actor_type TEXT,
                    actor_id TEXT,
                    payload_json TEXT,
                    idempotency_key TEXT UNIQUE,
                    source TEXT,
                    ts TEXT NOT NULL
                )
            """)
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_events_submission ON audit_events(submission_id, ts)"
            )

            cur.execute("""
                CREATE TABLE IF NOT EXISTS payment_proofs (
                    id TEXT PRIMARY KEY,
                    gom_id TEXT NOT NULL,
                    order_id TEXT,
                    submission_id TEXT,
                    submission_id_hint TEXT,
                    channel TEXT,
                    content_type TEXT,
                    file_size INTEGER,
                    image_sha256 TEXT NOT NULL,
                    image_base64 TEXT NOT NULL,
                    extraction TEXT,
                    match_result TEXT,
                    outcome TEXT NOT NULL,
                    event_id TEXT,
                    processing_attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS notification_outbox (
                    idempotency_key TEXT PRIMARY KEY,
                    submission_id TEXT NOT NULL,
                    new_state TEXT NOT NULL,
                    actor TEXT,
                    channel TEXT,
                    recipient TEXT,
                    message TEXT,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    delivered_at TEXT
                )
            """)

            conn.commit()
        self._initialized = True

    @staticmethod
    def _decode_json(raw: Any) -> Any:
        if raw is None or raw == "":
            return None
        if isinstance(raw, (dict, list)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None

    # ==================== SUBMISSIONS ====================

    def create_submission(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        submission_id = payload.get("id") or f"sub_{uuid.uuid4().hex[:20]}"
        self._execute(
            """
            INSERT INTO submissions
            (id, order_id, gom_id, buyer_identity, buyer_name, quantity, unit_price, currency,
             total_amount, payment_method, payment_reference, status, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                submission_id,
                payload["order_id"],
                payload["gom_id"],
                payload["buyer_identity"],
                payload.get("buyer_name"),
                int(payload["quantity"]),
                str(payload["unit_price"]),
                payload["currency"],
                str(payload["total_amount"]),
                payload.get("payment_method"),
                payload["payment_reference"],
                payload.get("status") or "pending_payment",
                json.dumps(payload.get("metadata") or {}),
                payload.get("created_at") or now,
                now,
            ),
        )
        return self.get_submission(submission_id) or {}

    def _deserialize_submission(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        row["metadata"] = self._decode_json(row.get("metadata")) or {}
        return row

    def get_submission(self, submission_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone("SELECT * FROM submissions WHERE id = ?", (submission_id,))
        return self._deserialize_submission(row)

    def get_submission_by_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone(
            "SELECT * FROM submissions WHERE payment_reference = ?", (payment_reference,)
        )
        return self._deserialize_submission(row)

    def list_submissions(
        self,
        gom_id: str,
        statuses: Optional[Iterable[str]] = None,
        order_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        self.initialize()
        sql = "SELECT * FROM submissions WHERE gom_id = ?"
        params: List[Any] = [gom_id]
        statuses = list(statuses or [])
        if statuses:
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if order_id:
            sql += " AND order_id = ?"
            params.append(order_id)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        return [self._deserialize_submission(row) for row in self._fetchall(sql, params)]

    def count_submissions_by_status(self, gom_id: str) -> Dict[str, int]:
        self.initialize()
        rows = self._fetchall(
            "SELECT status, COUNT(*) AS n FROM submissions WHERE gom_id = ? GROUP BY status",
            (gom_id,),
        )
        return {str(row["status"]): int(row["n"]) for row in rows}

    def compare_and_set_submission_status(
        self,
        submission_id: str,
        expected_status: str,
        new_status: str,
        verified_by: str,
        transition_key: str,
        verification_notes: Optional[str] = None,
    ) -> bool:
        """Single-statement status swap; True only if the row still held ``expected_status``."""
        self.initialize()
        now = _now()
        rowcount = self._execute(
            """
            UPDATE submissions
            SET status = ?, verified_by = ?, verified_at = ?, verification_notes = ?,
                last_transition_key = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                new_status,
                verified_by,
                now,
                verification_notes,
                transition_key,
                now,
                submission_id,
                expected_status,
            ),
        )
        return rowcount == 1

    # ==================== AUDIT EVENTS ====================

    def append_audit_event(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.initialize()
        now = payload.get("ts") or _now()
        event_id = payload.get("id") or f"EVT-{uuid.uuid4().hex}"
        key = payload.get("idempotency_key")

        if key:
            existing = self.get_audit_event_by_key(key)
            if existing:
                return existing

        conflict = " ON CONFLICT (idempotency_key) DO NOTHING" if key else ""
        inserted = self._execute(
            f"""
            INSERT INTO audit_events
            (id, submission_id, event_type, from_state, to_state, actor_type, actor_id,
             payload_json, idempotency_key, source, ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?){conflict}
            """,
            (
                event_id,
                payload.get("submission_id"),
                payload.get("event_type"),
                payload.get("from_state"),
                payload.get("to_state"),
                payload.get("actor_type"),
                payload.get("actor_id"),
                json.dumps(payload.get("payload") or {}, default=str),
                key,
                payload.get("source"),
                now,
            ),
        )
        if not inserted and key:
            return self.get_audit_event_by_key(key)
        return self.get_audit_event(event_id)

    def _deserialize_audit_event(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        row["payload"] = self._decode_json(row.pop("payload_json", None)) or {}
        return row

    def get_audit_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone("SELECT * FROM audit_events WHERE id = ?", (event_id,))
        return self._deserialize_audit_event(row)

    def get_audit_event_by_key(self, idempotency_key: Optional[str]) -> Optional[Dict[str, Any]]:
        if not idempotency_key:
            return None
        self.initialize()
        row = self._fetchone(
            "SELECT * FROM audit_events WHERE idempotency_key = ?", (idempotency_key,)
        )
        return self._deserialize_audit_event(row)

    def list_audit_events(self, submission_id: str) -> List[Dict[str, Any]]:
        self.initialize()
        rows = self._fetchall(
            "SELECT * FROM audit_events WHERE submission_id = ? ORDER BY ts ASC, id ASC",
            (submission_id,),
        )
        return [self._deserialize_audit_event(row) for row in rows]

    # ==================== RECONCILIATION QUEUE ====================

    def insert_payment_event(self, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Insert-if-absent on ``idempotency_key``. Returns (row, inserted)."""
        self.initialize()
        now = _now()
        event_id = payload.get("id") or f"pev_{uuid.uuid4().hex[:20]}"
        inserted = self._execute(
            """
            INSERT INTO payment_events
            (id, idempotency_key, source_type, submission_id, lane, payload, status, attempts,
             next_attempt_at, received_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            (
                event_id,
                payload["idempotency_key"],
                payload["source_type"],
                payload.get("submission_id"),
                int(payload["lane"]),
                json.dumps(payload.get("payload") or {}, default=str),
                now,
                payload.get("received_at") or now,
                now,
            ),
        )
        row = self.get_payment_event_by_key(payload["idempotency_key"]) or {}
        return row, bool(inserted)

    def _deserialize_payment_event(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        row["payload"] = self._decode_json(row.get("payload")) or {}
        row["result"] = self._decode_json(row.get("result"))
        return row

    def get_payment_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone("SELECT * FROM payment_events WHERE id = ?", (event_id,))
        return self._deserialize_payment_event(row)

    def get_payment_event_by_key(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone(
            "SELECT * FROM payment_events WHERE idempotency_key = ?", (idempotency_key,)
        )
        return self._deserialize_payment_event(row)

    def list_unfinished_lane_events(self, lane: int, limit: int = 200) -> List[Dict[str, Any]]:
        self.initialize()
        rows = self._fetchall(
            """
            SELECT * FROM payment_events
            WHERE lane = ? AND status IN ('pending', 'processing', 'retrying')
            ORDER BY seq ASC
            LIMIT ?
            """,
            (lane, limit),
        )
        return [self._deserialize_payment_event(row) for row in rows]

    def claim_payment_event(self, event_id: str, expected_status: str, attempts: int) -> bool:
        """Move an event to ``processing`` only if nobody else claimed it first."""
        self.initialize()
        rowcount = self._execute(
            """
            UPDATE payment_events
            SET status = 'processing', attempts = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (attempts, _now(), event_id, expected_status),
        )
        return rowcount == 1

    def update_payment_event(self, event_id: str, **kwargs) -> bool:
        self.initialize()
        if not kwargs:
            return False
        kwargs["updated_at"] = _now()
        if "result" in kwargs and not isinstance(kwargs["result"], (str, type(None))):
            kwargs["result"] = json.dumps(kwargs["result"], default=str)
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        return self._execute(
            f"UPDATE payment_events SET {set_clause} WHERE id = ?",
            (*kwargs.values(), event_id),
        ) > 0

    def list_payment_events(
        self, status: Optional[str] = None, submission_id: Optional[str] = None, limit: int = 200
    ) -> List[Dict[str, Any]]:
        self.initialize()
        sql = "SELECT * FROM payment_events WHERE 1 = 1"
        params: List[Any] = []
        if status:
            sql += " AND status = ?"
            params.append(status)
        if submission_id:
            sql += " AND submission_id = ?"
            params.append(submission_id)
        sql += " ORDER BY seq ASC LIMIT ?"
        params.append(limit)
        return [self._deserialize_payment_event(row) for row in self._fetchall(sql, params)]

    def count_payment_events_by_status(self) -> Dict[str, int]:
        self.initialize()
        rows = self._fetchall("SELECT status, COUNT(*) AS n FROM payment_events GROUP BY status")
        return {str(row["status"]): int(row["n"]) for row in rows}

    def release_stale_claims(self, claimed_before: str) -> int:
        """Hand ``processing`` events abandoned by a dead worker back to the lane."""
        self.initialize()
        return self._execute(
            """
            UPDATE payment_events
            SET status = 'retrying', next_attempt_at = ?, updated_at = ?
            WHERE status = 'processing' AND updated_at < ?
            """,
            (_now(), _now(), claimed_before),
        )

    def mark_key_processed(self, idempotency_key: str, event_id: str) -> bool:
        self.initialize()
        return self._execute(
            """
            INSERT INTO processed_keys (idempotency_key, event_id, processed_at)
            VALUES (?, ?, ?)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            (idempotency_key, event_id, _now()),
        ) > 0

    def is_key_processed(self, idempotency_key: str) -> bool:
        self.initialize()
        return self._fetchone(
            "SELECT idempotency_key FROM processed_keys WHERE idempotency_key = ?",
            (idempotency_key,),
        ) is not None

    # ==================== PAYMENT PROOFS ====================

    def create_payment_proof(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        proof_id = payload.get("id") or f"proof_{uuid.uuid4().hex[:20]}"
        self._execute(
            """
            INSERT INTO payment_proofs
            (id, gom_id, order_id, submission_id, submission_id_hint, channel, content_type,
             file_size, image_sha256, image_base64, outcome, processing_attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
            """,
            (
                proof_id,
                payload["gom_id"],
                payload.get("order_id"),
                payload.get("submission_id"),
                payload.get("submission_id_hint"),
                payload.get("channel"),
                payload.get("content_type"),
                payload.get("file_size"),
                payload["image_sha256"],
                payload["image_base64"],
                now,
                now,
            ),
        )
        return self.get_payment_proof(proof_id) or {}

    def _deserialize_proof(self, row: Optional[Dict[str, Any]], include_image: bool = True) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        row["extraction"] = self._decode_json(row.get("extraction"))
        row["match_result"] = self._decode_json(row.get("match_result"))
        if not include_image:
            row.pop("image_base64", None)
        return row

    def get_payment_proof(self, proof_id: str, include_image: bool = True) -> Optional[Dict[str, Any]]:
        self.initialize()
        row = self._fetchone("SELECT * FROM payment_proofs WHERE id = ?", (proof_id,))
        return self._deserialize_proof(row, include_image=include_image)

    def update_payment_proof(self, proof_id: str, **kwargs) -> bool:
        self.initialize()
        if not kwargs:
            return False
        kwargs["updated_at"] = _now()
        for key in ("extraction", "match_result"):
            if key in kwargs and not isinstance(kwargs[key], (str, type(None))):
                kwargs[key] = json.dumps(kwargs[key], default=str)
        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        return self._execute(
            f"UPDATE payment_proofs SET {set_clause} WHERE id = ?",
            (*kwargs.values(), proof_id),
        ) > 0

    def increment_proof_attempts(self, proof_id: str) -> None:
        self.initialize()
        self._execute(
            "UPDATE payment_proofs SET processing_attempts = processing_attempts + 1, updated_at = ? WHERE id = ?",
            (_now(), proof_id),
        )

    def list_payment_proofs(
        self,
        gom_id: str,
        outcome: Optional[str] = None,
        submission_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        self.initialize()
        sql = "SELECT * FROM payment_proofs WHERE gom_id = ?"
        params: List[Any] = [gom_id]
        if outcome:
            sql += " AND outcome = ?"
            params.append(outcome)
        if submission_id:
            sql += " AND submission_id = ?"
            params.append(submission_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [self._deserialize_proof(row, include_image=False) for row in self._fetchall(sql, params)]

    # ==================== NOTIFICATION OUTBOX ====================

    def insert_outbox_message(self, payload: Dict[str, Any]) -> bool:
        self.initialize()
        return self._execute(
            """
            INSERT INTO notification_outbox
            (idempotency_key, submission_id, new_state, actor, channel, recipient, message,
             status, attempts, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            (
                payload["idempotency_key"],
                payload["submission_id"],
                payload["new_state"],
                payload.get("actor"),
                payload.get("channel"),
                payload.get("recipient"),
                payload.get("message"),
                payload.get("created_at") or _now(),
            ),
        ) > 0

    def get_outbox_message(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        return self._fetchone(
            "SELECT * FROM notification_outbox WHERE idempotency_key = ?", (idempotency_key,)
        )

    def list_outbox_messages(
        self, submission_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self.initialize()
        sql = "SELECT * FROM notification_outbox WHERE 1 = 1"
        params: List[Any] = []
        if submission_id:
            sql += " AND submission_id = ?"
            params.append(submission_id)
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC"
        return self._fetchall(sql, params)

    def record_outbox_attempt(self, idempotency_key: str, status: str, error: Optional[str] = None) -> None:
        """Count one delivery attempt; 'pending' keeps the row eligible for another try."""
        self.initialize()
        delivered_at = _now() if status == "delivered" else None
        self._execute(
            """
            UPDATE notification_outbox
            SET status = ?, attempts = attempts + 1, last_error = ?, delivered_at = ?
            WHERE idempotency_key = ? AND status = 'pending'
            """,
            (status, error, delivered_at, idempotency_key),
        )


_DB_INSTANCE: Optional[GomflowDB] = None


def get_db() -> GomflowDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = GomflowDB(db_path=os.getenv("GOMFLOW_DB_PATH", "gomflow.db"))
    return _DB_INSTANCE
