from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, TypeVar

import structlog

from ..errors import PersistenceError
from ..models import CheckDescriptor, HealthCheckRecord, Incident


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2

T = TypeVar("T")


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str | None:
    if obj is None:
        return None
    try:
        return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return json.dumps(str(obj), ensure_ascii=False)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise PersistenceError("Missing database_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    if p != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS health_checks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          tenant_id TEXT NOT NULL,
          check_kind TEXT NOT NULL,
          status TEXT NOT NULL,
          latency_ms REAL,
          checked_at_ts REAL NOT NULL,
          http_status INTEGER,
          error_message TEXT,
          error_code TEXT,
          error_payload_json TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_health_checks_lookup
          ON health_checks (tenant_id, check_kind, checked_at_ts);
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id TEXT PRIMARY KEY,
          tenant_id TEXT NOT NULL,
          check_kind TEXT NOT NULL,
          start_time_ts REAL NOT NULL,
          end_time_ts REAL,
          duration_ms REAL,
          details TEXT NOT NULL DEFAULT ''
        );
        """
    )


def _apply_v2(conn: sqlite3.Connection) -> None:
    # At most one open incident per descriptor, enforced by the database too.
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
          ON incidents (tenant_id, check_kind) WHERE end_time_ts IS NULL;
        """
    )


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
    elif cur == 1:
        _apply_v2(conn)
    else:
        raise PersistenceError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")
    conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=str(row["id"]),
        descriptor=CheckDescriptor(tenant_id=row["tenant_id"], kind=row["check_kind"]),
        start_time=float(row["start_time_ts"]),
        end_time=float(row["end_time_ts"]) if row["end_time_ts"] is not None else None,
        duration_ms=float(row["duration_ms"]) if row["duration_ms"] is not None else None,
        details=str(row["details"] or ""),
    )


class SqliteStore:
    """SQLite-backed Store. Blocking calls run in a worker thread."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = _connect(self.db_path)
            _ensure_schema_conn(conn)
            self._conn = conn
        return self._conn

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self._lock:
                try:
                    return fn(self._connection())
                except sqlite3.Error as exc:
                    raise PersistenceError(f"sqlite: {exc}") from exc

        return await asyncio.to_thread(call)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def insert_health_check(self, record: HealthCheckRecord) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO health_checks (
                  tenant_id, check_kind, status, latency_ms, checked_at_ts,
                  http_status, error_message, error_code, error_payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.descriptor.tenant_id,
                    record.descriptor.kind.value,
                    record.status.value,
                    record.latency_ms,
                    float(record.checked_at),
                    record.http_status,
                    record.error_message,
                    record.error_code,
                    _json_dumps(record.error_payload),
                ),
            )

        await self._run(op)

    async def insert_incident(self, descriptor: CheckDescriptor, start_time: float, details: str) -> Incident:
        incident = Incident(
            id=_uuid(),
            descriptor=descriptor,
            start_time=float(start_time),
            details=str(details or ""),
        )

        def op(conn: sqlite3.Connection) -> Incident:
            conn.execute(
                """
                INSERT INTO incidents (id, tenant_id, check_kind, start_time_ts, details)
                VALUES (?, ?, ?, ?, ?)
                """,
                (incident.id, descriptor.tenant_id, descriptor.kind.value, incident.start_time, incident.details),
            )
            return incident

        return await self._run(op)

    async def update_incident_end_time(self, incident_id: str, end_time: float) -> Incident | None:
        def op(conn: sqlite3.Connection) -> Incident | None:
            # Closed incidents are immutable: only rows still open are updated.
            conn.execute(
                """
                UPDATE incidents
                   SET end_time_ts = MAX(?, start_time_ts),
                       duration_ms = (MAX(?, start_time_ts) - start_time_ts) * 1000.0
                 WHERE id = ? AND end_time_ts IS NULL
                """,
                (float(end_time), float(end_time), str(incident_id)),
            )
            row = conn.execute("SELECT * FROM incidents WHERE id = ?", (str(incident_id),)).fetchone()
            return _row_to_incident(row) if row else None

        return await self._run(op)

    async def get_open_incident(self, descriptor: CheckDescriptor) -> Incident | None:
        def op(conn: sqlite3.Connection) -> Incident | None:
            row = conn.execute(
                """
                SELECT * FROM incidents
                 WHERE tenant_id = ? AND check_kind = ? AND end_time_ts IS NULL
                 ORDER BY start_time_ts DESC
                 LIMIT 1
                """,
                (descriptor.tenant_id, descriptor.kind.value),
            ).fetchone()
            return _row_to_incident(row) if row else None

        return await self._run(op)

    async def get_all_open_incidents(self, tenant_id: str | None = None) -> list[Incident]:
        def op(conn: sqlite3.Connection) -> list[Incident]:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT * FROM incidents WHERE end_time_ts IS NULL ORDER BY start_time_ts ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM incidents WHERE end_time_ts IS NULL AND tenant_id = ? ORDER BY start_time_ts ASC",
                    (tenant_id,),
                ).fetchall()
            return [_row_to_incident(r) for r in rows]

        return await self._run(op)

    async def list_incidents(self, tenant_id: str | None = None, *, limit: int = 50) -> list[Incident]:
        limit = max(1, min(int(limit), 1000))

        def op(conn: sqlite3.Connection) -> list[Incident]:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT * FROM incidents ORDER BY start_time_ts DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM incidents WHERE tenant_id = ? ORDER BY start_time_ts DESC LIMIT ?",
                    (tenant_id, limit),
                ).fetchall()
            return [_row_to_incident(r) for r in rows]

        return await self._run(op)

    async def count_health_checks(self, descriptor: CheckDescriptor) -> int:
        def op(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM health_checks WHERE tenant_id = ? AND check_kind = ?",
                (descriptor.tenant_id, descriptor.kind.value),
            ).fetchone()
            return int(row["n"]) if row else 0

        return await self._run(op)

    async def prune_before(self, before_ts: float) -> int:
        cutoff = float(before_ts)

        def op(conn: sqlite3.Connection) -> int:
            checks = conn.execute("DELETE FROM health_checks WHERE checked_at_ts < ?", (cutoff,)).rowcount
            # Open incidents are kept regardless of age.
            incidents = conn.execute(
                "DELETE FROM incidents WHERE start_time_ts < ? AND end_time_ts IS NOT NULL", (cutoff,)
            ).rowcount
            return int(checks or 0) + int(incidents or 0)

        removed = await self._run(op)
        logger.info("Pruned persisted records", before_ts=cutoff, removed=removed)
        return removed
