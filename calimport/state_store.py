from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from calimport.models import EventType, LocalEvent


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


EVENT_COLUMNS = (
    "id",
    "start_ts",
    "end_ts",
    "title",
    "description",
    "reminder_1",
    "reminder_2",
    "reminder_3",
    "repeat_interval",
    "import_id",
    "flags",
    "repeat_limit",
    "repeat_rule",
    "event_type_id",
    "last_updated",
)


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    return LocalEvent(**{column: row[column] for column in EVENT_COLUMNS})


class StateStore:
    """SQLite-backed local event store plus sync bookkeeping.

    Events are keyed by ``import_id``; ``insert_event`` upserts on that key so
    a resynced remote event keeps its local id.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS event_types (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            start_ts INTEGER NOT NULL,
            end_ts INTEGER NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            reminder_1 INTEGER NOT NULL DEFAULT -1,
            reminder_2 INTEGER NOT NULL DEFAULT -1,
            reminder_3 INTEGER NOT NULL DEFAULT -1,
            repeat_interval INTEGER NOT NULL DEFAULT 0,
            import_id TEXT NOT NULL UNIQUE,
            flags INTEGER NOT NULL DEFAULT 0,
            repeat_limit INTEGER NOT NULL DEFAULT 0,
            repeat_rule INTEGER NOT NULL DEFAULT 0,
            event_type_id INTEGER NOT NULL,
            last_updated INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            inserted INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            skipped INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            import_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Event types

    def list_event_types(self) -> list[EventType]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, title, color FROM event_types ORDER BY id").fetchall()
        return [EventType(id=int(row["id"]), title=str(row["title"]), color=str(row["color"])) for row in rows]

    def insert_event_type(self, event_type: EventType) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO event_types(title, color) VALUES (?, ?)",
                    (event_type.title, event_type.color),
                )
                conn.commit()
                return int(cursor.lastrowid)

    # Events

    def list_import_ids(self) -> set[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT import_id FROM events").fetchall()
        return {str(row["import_id"]) for row in rows}

    def get_event_by_import_id(self, import_id: str) -> LocalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE import_id = ?",
                    (import_id,),
                ).fetchone()
        return _row_to_event(row) if row else None

    def insert_event(self, event: LocalEvent) -> int:
        columns = EVENT_COLUMNS[1:]
        values = tuple(getattr(event, column) for column in columns)
        assignments = ",\n                        ".join(
            f"{column} = excluded.{column}" for column in columns if column != "import_id"
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO events({', '.join(columns)})
                    VALUES ({', '.join('?' for _ in columns)})
                    ON CONFLICT(import_id) DO UPDATE SET
                        {assignments}
                    """,
                    values,
                )
                row = conn.execute(
                    "SELECT id FROM events WHERE import_id = ?",
                    (event.import_id,),
                ).fetchone()
                conn.commit()
                return int(row["id"])

    def list_events(self, limit: int = 100) -> list[LocalEvent]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {', '.join(EVENT_COLUMNS)}
                    FROM events
                    ORDER BY start_ts DESC, id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [_row_to_event(row) for row in rows]

    def count_events(self) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) AS total FROM events").fetchone()
        return int(row["total"])

    # Sync bookkeeping

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, inserted, updated, skipped)
                    VALUES (?, ?, 'running', ?, 0, 0, 0, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        inserted: int,
        updated: int,
        skipped: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, inserted = ?, updated = ?, skipped = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(inserted),
                        int(updated),
                        int(skipped),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, inserted, updated, skipped
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        import_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, import_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), import_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_id, created_at, import_id, action, details_json
            FROM audit_events
        """
        params: tuple[Any, ...]
        if run_id is None:
            query += " ORDER BY id DESC LIMIT ?"
            params = (max(1, limit),)
        else:
            query += " WHERE run_id = ? ORDER BY id DESC LIMIT ?"
            params = (int(run_id), max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # Meta

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                conn.commit()
