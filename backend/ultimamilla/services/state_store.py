"""SQLite-backed document store for dispatches, routes and carriers."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ultimamilla.core.config import get_settings
from ultimamilla.core.logging import logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return utc_now().isoformat()


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


class StateStore:
    """Durable state shared by the dispatch, route and carrier stores.

    Every public operation of the core runs inside ``transaction()``. The
    outermost call opens a ``BEGIN IMMEDIATE`` transaction while holding a
    lock shared by every store pointed at the same database file; nested calls
    become savepoints so an inner failure never leaks partial writes.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        path = (db_path or settings.db_path or "").strip() or "./data/ultimamilla.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._timeline_retention = max(100, int(settings.timeline_retention))
        self._idempotency_retention = max(100, int(settings.idempotency_retention))
        self._depth = 0
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS carriers (
                    carrier_id TEXT PRIMARY KEY,
                    rut TEXT NOT NULL UNIQUE,
                    usuario_cuenta TEXT UNIQUE,
                    slug TEXT UNIQUE,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS dispatches (
                    dispatch_id TEXT PRIMARY KEY,
                    folio_num INTEGER NOT NULL UNIQUE,
                    estado TEXT NOT NULL,
                    ruta_asignada TEXT,
                    empresa_reparto TEXT,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_dispatches_estado ON dispatches (estado);
                CREATE INDEX IF NOT EXISTS idx_dispatches_ruta ON dispatches (ruta_asignada);

                CREATE TABLE IF NOT EXISTS routes (
                    route_id TEXT PRIMARY KEY,
                    numero_ruta TEXT NOT NULL UNIQUE,
                    estado TEXT NOT NULL,
                    empresa_reparto TEXT NOT NULL,
                    conductor TEXT,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_routes_estado ON routes (estado);
                CREATE INDEX IF NOT EXISTS idx_routes_empresa ON routes (empresa_reparto);
                CREATE INDEX IF NOT EXISTS idx_routes_conductor ON routes (conductor);

                CREATE TABLE IF NOT EXISTS timeline (
                    event_id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_entity ON timeline (entity_type, entity_id);
                CREATE INDEX IF NOT EXISTS idx_timeline_ts ON timeline (timestamp DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_time ON idempotency (stored_at);
                """
            )

    @contextmanager
    def transaction(self) -> Iterator["StateStore"]:
        """Run the enclosed block as one atomic unit."""
        with self._lock:
            savepoint = None
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                savepoint = f"sp_{self._depth}"
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if savepoint is None:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                self._depth -= 1
                if savepoint is None:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def next_sequence(self, key: str, start: int = 1) -> int:
        """Atomically read and increment a named counter."""
        with self.transaction():
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = start
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            return current

    def record_event(
        self,
        entity_type: str,
        entity_id: str,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self.transaction():
            event = {
                "event_id": f"EVT-{self.next_sequence('event'):08d}",
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_type": event_type,
                "actor": actor,
                "timestamp": _utc_now_iso(),
                "details": details or {},
            }
            self._conn.execute(
                """
                INSERT INTO timeline (event_id, entity_type, entity_id, event_type, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event["event_id"],
                    entity_type,
                    entity_id,
                    event_type,
                    actor,
                    event["timestamp"],
                    json_dumps(event["details"]),
                ),
            )
            self._conn.execute(
                """
                DELETE FROM timeline
                WHERE entity_type = ? AND entity_id = ? AND event_id NOT IN (
                    SELECT event_id FROM timeline
                    WHERE entity_type = ? AND entity_id = ?
                    ORDER BY event_id DESC
                    LIMIT ?
                )
                """,
                (entity_type, entity_id, entity_type, entity_id, self._timeline_retention),
            )
        return event

    def list_timeline(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 300,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 2000)))
        rows = self.fetchall(
            f"""
            SELECT event_id, entity_type, entity_id, event_type, actor, timestamp, details_json
            FROM timeline
            {where}
            ORDER BY event_id DESC
            LIMIT ?
            """,
            params,
        )
        return [
            {
                "event_id": row["event_id"],
                "entity_type": row["entity_type"],
                "entity_id": row["entity_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        row = self.fetchone(
            "SELECT response_json FROM idempotency WHERE key_name = ?",
            (key,),
        )
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT ?
                )
                """,
                (self._idempotency_retention,),
            )

    def reset_operational_data(self) -> None:
        """Clear every table so a seed or test starts from a clean scenario."""
        with self.transaction():
            for table in ("dispatches", "routes", "carriers", "timeline", "idempotency", "sequences"):
                self._conn.execute(f"DELETE FROM {table}")
        logger.info("Operational data reset", db_path=str(self._db_path))


state_store = StateStore()
