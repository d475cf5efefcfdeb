"""
SQLite persistence for device records, admissions and the audit log.

The per-device counter is the only shared mutable state in the pipeline.
It is advanced with a compare-and-swap inside a ``BEGIN IMMEDIATE``
transaction, which serializes writers across threads and across processes
sharing the same database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from capturetrust.models import AttestationLevel, Device

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS devices (
        device_id TEXT PRIMARY KEY,
        public_key BLOB NOT NULL,
        attestation_level TEXT NOT NULL,
        attestation_reason TEXT,
        counter INTEGER NOT NULL DEFAULT 0,
        model TEXT NOT NULL DEFAULT '',
        platform TEXT NOT NULL DEFAULT 'ios',
        registered_at TEXT NOT NULL,
        last_seen_at TEXT
    );""",
    """
    CREATE TABLE IF NOT EXISTS admissions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL,
        counter INTEGER NOT NULL,
        request_id TEXT NOT NULL,
        body_hash TEXT NOT NULL,
        admitted_at TEXT NOT NULL,
        UNIQUE (device_id, counter)
    );""",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL,
        device_id TEXT,
        event TEXT NOT NULL,
        outcome TEXT NOT NULL,
        code TEXT,
        detail TEXT,
        created_at TEXT NOT NULL
    );""",
    "CREATE INDEX IF NOT EXISTS idx_audit_request ON audit_log(request_id);",
    "CREATE INDEX IF NOT EXISTS idx_audit_device ON audit_log(device_id);",
    """
    CREATE TABLE IF NOT EXISTS challenges (
        challenge BLOB PRIMARY KEY,
        client_id TEXT NOT NULL,
        issued_at REAL NOT NULL,
        expires_at REAL NOT NULL,
        used INTEGER NOT NULL DEFAULT 0
    );""",
    "CREATE INDEX IF NOT EXISTS idx_challenges_expires ON challenges(expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_challenges_client ON challenges(client_id, issued_at);",
)


_REGISTER_SQL = """
    INSERT INTO devices (device_id, public_key, attestation_level, attestation_reason,
                         counter, model, platform, registered_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(device_id) """

# SET expressions see the old row, so the CASE compares stored and new keys
_REPLACE_SQL = """DO UPDATE SET
    counter = CASE WHEN devices.public_key = excluded.public_key
                   THEN devices.counter ELSE excluded.counter END,
    public_key = excluded.public_key,
    attestation_level = excluded.attestation_level,
    attestation_reason = excluded.attestation_reason,
    model = excluded.model,
    platform = excluded.platform
"""


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite handle with per-thread connections.

    An in-memory database cannot be shared between connections, so for
    ``:memory:`` a single connection is used and guarded by a lock.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._local = threading.local()
        self._shared: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._init_schema()

    @property
    def in_memory(self) -> bool:
        return self.path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        if self.in_memory:
            if self._shared is None:
                self._shared = self._open()
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open()
            self._local.conn = conn
        return conn

    def _open(self) -> sqlite3.Connection:
        if not self.in_memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if not self.in_memory:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; commits on success, rolls back on failure."""
        with self._lock if self.in_memory else nullcontext():
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock if self.in_memory else nullcontext():
            yield self._connect()

    def _init_schema(self) -> None:
        with self.transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


class _StaleCounter(Exception):
    """Counter compare-and-swap matched no row."""


class DeviceStore:
    """Device records, counter compare-and-swap and admission audit trail."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, device_id: str) -> Device | None:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        return self._row_to_device(row) if row else None

    def upsert_registration(
        self,
        device_id: str,
        public_key: bytes,
        level: AttestationLevel,
        reason: str | None = None,
        model: str = "",
        platform: str = "ios",
        initial_counter: int = 0,
        replace: bool = True,
        now: datetime | None = None,
    ) -> Device | None:
        """Create a device or re-register it with a newly verified key.

        A new key starts from its attested counter; assertions made with the
        old key no longer verify. Re-attesting the same key keeps the stored
        counter so its earlier assertions cannot be replayed.

        With ``replace=False`` an existing record is left untouched and None
        is returned.
        """
        now = now or datetime.now(UTC)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                _REGISTER_SQL + (_REPLACE_SQL if replace else "DO NOTHING"),
                (device_id, public_key, level.value, reason, initial_counter, model, platform, now.isoformat()),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        logger.info("Device %s registered with level %s", device_id, level.value)
        return self._row_to_device(row)

    def admit(
        self,
        device_id: str,
        counter: int,
        request_id: str,
        body_hash: str,
        now: datetime | None = None,
    ) -> Device | None:
        """Atomically advance the counter and record the admission.

        Returns the updated device, or None when the stored counter is
        already >= ``counter`` (a concurrent request won the race).
        """
        now = now or datetime.now(UTC)
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_log (request_id, device_id, event, outcome, code, detail, created_at)
                    VALUES (?, ?, 'authenticate', 'accepted', NULL, ?, ?)
                    """,
                    (request_id, device_id, json.dumps({"counter": counter}), now.isoformat()),
                )
                cursor = conn.execute(
                    "UPDATE devices SET counter = ?, last_seen_at = ? WHERE device_id = ? AND counter < ?",
                    (counter, now.isoformat(), device_id, counter),
                )
                if cursor.rowcount != 1:
                    raise _StaleCounter()
                conn.execute(
                    """
                    INSERT INTO admissions (device_id, counter, request_id, body_hash, admitted_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (device_id, counter, request_id, body_hash, now.isoformat()),
                )
                row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        except _StaleCounter:
            return None
        return self._row_to_device(row)

    def record_attempt(
        self,
        request_id: str,
        device_id: str | None,
        event: str,
        outcome: str,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit entry; used for every rejected attempt."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (request_id, device_id, event, outcome, code, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    device_id,
                    event,
                    outcome,
                    code,
                    json.dumps(detail, sort_keys=True) if detail else None,
                    datetime.now(UTC).isoformat(),
                ),
            )

    def audit_entries(self, request_id: str | None = None, device_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM audit_log"
        clauses: list[str] = []
        params: list[Any] = []
        if request_id is not None:
            clauses.append("request_id = ?")
            params.append(request_id)
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq"
        with self.db.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def admissions(self, device_id: str) -> list[dict[str, Any]]:
        with self.db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM admissions WHERE device_id = ? ORDER BY seq", (device_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> Device:
        return Device(
            device_id=row["device_id"],
            public_key=bytes(row["public_key"]),
            attestation_level=AttestationLevel(row["attestation_level"]),
            attestation_reason=row["attestation_reason"],
            counter=row["counter"],
            model=row["model"],
            platform=row["platform"],
            registered_at=_parse_iso(row["registered_at"]),
            last_seen_at=_parse_iso(row["last_seen_at"]),
        )
