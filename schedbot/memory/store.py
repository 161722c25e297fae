"""SQLite task store for schedbot.

Three tables:
    tasks, execution_results, notification_prefs

Every write is a single short transaction; the run lock (``active_run_id``)
and the sweep guard (``next_run_at``) are claimed with conditional UPDATEs so
concurrent callers cannot both win.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, get_args

from loguru import logger

from schedbot.core.clock import SYSTEM_CLOCK, Clock
from schedbot.core.cron.types import (
    ExecutionResult,
    NotificationChannel,
    NotificationPreference,
    Task,
    TaskStats,
    TaskStatus,
)

_TASK_FIELDS = frozenset({
    "name", "type", "prompt", "schedule", "engine", "tools", "timezone",
    "owner_id", "status", "last_run_at", "last_run_status", "next_run_at",
    "consecutive_failures", "active_run_id",
})
_RESULT_FIELDS = frozenset({
    "run_id", "status", "result", "usage", "completed_at", "duration_ms", "error",
})
_JSON_FIELDS = frozenset({"tools", "result", "usage"})
_TASK_STATUSES = frozenset(get_args(TaskStatus))


def _encode(field: str, value: Any) -> Any:
    if field in _JSON_FIELDS and value is not None:
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


def _decode(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class TaskStore:
    """SQLite persistence for tasks, runs and notification preferences."""

    def __init__(
        self,
        db_path: str = "data/schedbot.db",
        history_limit: int = 100,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.db_path = db_path
        self.history_limit = history_limit
        self.clock = clock
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"TaskStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # TASKS
    # ════════════════════════════════════════════════════════════

    def create_task(
        self,
        name: str,
        prompt: str,
        schedule: str,
        engine: str,
        tools: list[Any] | None = None,
        timezone: str | None = None,
        owner_id: str | None = None,
        type: str = "research",
        next_run_at: int | None = None,
    ) -> Task:
        task_id = str(uuid.uuid4())[:8]
        now = self.clock.now_ms()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO tasks
                   (task_id, owner_id, name, type, prompt, schedule, timezone,
                    engine, tools, status, next_run_at, consecutive_failures,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, 0, ?, ?)""",
                (
                    task_id, owner_id, name, type, prompt, schedule, timezone,
                    engine, _encode("tools", tools or []), next_run_at, now, now,
                ),
            )
            conn.commit()
        return self.get_task(task_id)

    def get_task(self, task_id: str) -> Task | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(self, owner_id: str | None = None) -> list[Task]:
        with self._get_conn() as conn:
            if owner_id:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE owner_id = ? ORDER BY created_at, rowid",
                    (owner_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM tasks ORDER BY created_at, rowid").fetchall()
        return [_row_to_task(r) for r in rows]

    def count_tasks(self, owner_id: str | None = None) -> int:
        with self._get_conn() as conn:
            if owner_id:
                row = conn.execute(
                    "SELECT COUNT(*) FROM tasks WHERE owner_id = ?", (owner_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return row[0]

    def task_stats(self, owner_id: str | None = None) -> TaskStats:
        where, params = ("WHERE owner_id = ?", (owner_id,)) if owner_id else ("", ())
        with self._get_conn() as conn:
            row = conn.execute(
                f"""SELECT COUNT(*) AS total,
                           COALESCE(SUM(status = 'active'), 0) AS active,
                           COALESCE(SUM(status = 'error'), 0) AS errored,
                           COALESCE(SUM(active_run_id IS NOT NULL), 0) AS running
                    FROM tasks {where}""",
                params,
            ).fetchone()
        return TaskStats(**dict(row))

    def update_task(self, task_id: str, **fields: Any) -> Task | None:
        """Patch the given columns. ``None`` values are written as NULL."""
        unknown = set(fields) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in _TASK_STATUSES:
            raise ValueError(f"Invalid task status: {fields['status']!r}")
        fields["updated_at"] = self.clock.now_ms()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        values = [_encode(k, v) for k, v in fields.items()]
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE task_id = ?",
                (*values, task_id),
            )
            conn.commit()
        return self.get_task(task_id)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task with its execution results and notification prefs."""
        with self._get_conn() as conn:
            conn.execute("DELETE FROM execution_results WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM notification_prefs WHERE task_id = ?", (task_id,))
            cursor = conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            conn.commit()
        return cursor.rowcount > 0

    # ── Scheduling ─────────────────────────────────────────────

    def get_schedulable_tasks(self) -> list[Task]:
        """Active, not running, with a next run time."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM tasks
                   WHERE status = 'active' AND active_run_id IS NULL
                     AND next_run_at IS NOT NULL
                   ORDER BY next_run_at"""
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def claim_due(self, task_id: str, now: int, guard_until: int) -> bool:
        """Stamp ``next_run_at`` far ahead if the task is still due. Returns True if claimed."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                """UPDATE tasks SET next_run_at = ?, updated_at = ?
                   WHERE task_id = ? AND status = 'active'
                     AND active_run_id IS NULL
                     AND next_run_at IS NOT NULL AND next_run_at <= ?""",
                (guard_until, self.clock.now_ms(), task_id, now),
            )
            conn.commit()
        return cursor.rowcount > 0

    def unclaim_due(self, task_id: str, guard_until: int, previous: int | None) -> bool:
        """Put back ``previous`` if the guard stamp from ``claim_due`` is still in place."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                """UPDATE tasks SET next_run_at = ?, updated_at = ?
                   WHERE task_id = ? AND next_run_at = ?""",
                (previous, self.clock.now_ms(), task_id, guard_until),
            )
            conn.commit()
        return cursor.rowcount > 0

    def claim_run(self, task_id: str, token: str) -> bool:
        """Take the run lock. Returns False if another run holds it."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                """UPDATE tasks SET active_run_id = ?, updated_at = ?
                   WHERE task_id = ? AND active_run_id IS NULL""",
                (token, self.clock.now_ms(), task_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def set_active_run(self, task_id: str, token: str, run_id: str, started_at: int) -> None:
        """Swap the local lock token for the external run id."""
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE tasks SET active_run_id = ?, last_run_at = ?, updated_at = ?
                   WHERE task_id = ? AND active_run_id = ?""",
                (run_id, started_at, self.clock.now_ms(), task_id, token),
            )
            conn.commit()

    def release_run(self, task_id: str, holders: list[str]) -> bool:
        """Clear the run lock if it is still held by one of ``holders``."""
        if not holders:
            return False
        placeholders = ",".join("?" for _ in holders)
        with self._get_conn() as conn:
            cursor = conn.execute(
                f"""UPDATE tasks SET active_run_id = NULL, updated_at = ?
                    WHERE task_id = ? AND active_run_id IN ({placeholders})""",
                (self.clock.now_ms(), task_id, *holders),
            )
            conn.commit()
        return cursor.rowcount > 0

    def finish_run(
        self,
        task_id: str,
        last_run_status: str,
        failed: bool,
        next_run_at: int | None,
        failure_threshold: int,
    ) -> Task | None:
        """Apply a run outcome: counter, lock release, auto-disable, next run.

        The counter is incremented (or reset) in SQL so a concurrent edit to
        the task cannot lose an update. Returns the updated task.
        """
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE tasks
                   SET last_run_status = ?,
                       consecutive_failures = CASE WHEN ? THEN consecutive_failures + 1 ELSE 0 END,
                       active_run_id = NULL,
                       next_run_at = ?,
                       updated_at = ?
                   WHERE task_id = ?""",
                (last_run_status, int(failed), next_run_at, self.clock.now_ms(), task_id),
            )
            conn.execute(
                """UPDATE tasks SET status = 'error'
                   WHERE task_id = ? AND consecutive_failures >= ?""",
                (task_id, failure_threshold),
            )
            conn.commit()
        return self.get_task(task_id)

    # ════════════════════════════════════════════════════════════
    # EXECUTION RESULTS
    # ════════════════════════════════════════════════════════════

    def add_execution_result(
        self,
        task_id: str,
        status: str,
        started_at: int,
        run_id: str = "",
        **fields: Any,
    ) -> int:
        """Insert a run record, evicting the oldest beyond ``history_limit``."""
        unknown = set(fields) - _RESULT_FIELDS
        if unknown:
            raise ValueError(f"Unknown execution result fields: {sorted(unknown)}")
        columns = {"task_id": task_id, "run_id": run_id, "status": status, "started_at": started_at}
        columns.update({k: _encode(k, v) for k, v in fields.items()})

        with self._get_conn() as conn:
            existing = conn.execute(
                "SELECT COUNT(*) FROM execution_results WHERE task_id = ?", (task_id,)
            ).fetchone()[0]
            if existing >= self.history_limit:
                overflow = existing - (self.history_limit - 1)
                conn.execute(
                    """DELETE FROM execution_results WHERE id IN (
                           SELECT id FROM execution_results WHERE task_id = ?
                           ORDER BY started_at ASC, id ASC LIMIT ?)""",
                    (task_id, overflow),
                )
            placeholders = ", ".join("?" for _ in columns)
            cursor = conn.execute(
                f"INSERT INTO execution_results ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(columns.values()),
            )
            conn.commit()
            return cursor.lastrowid

    def update_execution_result(self, result_id: int, **fields: Any) -> None:
        """Patch a run record; ``None`` values are skipped."""
        unknown = set(fields) - _RESULT_FIELDS
        if unknown:
            raise ValueError(f"Unknown execution result fields: {sorted(unknown)}")
        patch = {k: _encode(k, v) for k, v in fields.items() if v is not None}
        if not patch:
            return
        assignments = ", ".join(f"{k} = ?" for k in patch)
        with self._get_conn() as conn:
            conn.execute(
                f"UPDATE execution_results SET {assignments} WHERE id = ?",
                (*patch.values(), result_id),
            )
            conn.commit()

    def get_execution_result(self, result_id: int) -> ExecutionResult | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM execution_results WHERE id = ?", (result_id,)
            ).fetchone()
        return _row_to_result(row) if row else None

    def list_execution_results(
        self, task_id: str, limit: int | None = 20
    ) -> list[ExecutionResult]:
        """Newest first."""
        sql = """SELECT * FROM execution_results WHERE task_id = ?
                 ORDER BY started_at DESC, id DESC"""
        params: tuple[Any, ...] = (task_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_result(r) for r in rows]

    def count_execution_results(self, task_id: str) -> int:
        with self._get_conn() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM execution_results WHERE task_id = ?", (task_id,)
            ).fetchone()[0]

    # ════════════════════════════════════════════════════════════
    # NOTIFICATION PREFERENCES
    # ════════════════════════════════════════════════════════════

    def get_notification_preference(self, task_id: str) -> NotificationPreference | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM notification_prefs WHERE task_id = ?", (task_id,)
            ).fetchone()
        if not row:
            return None
        return NotificationPreference(
            task_id=row["task_id"],
            enabled=bool(row["enabled"]),
            channels=[NotificationChannel(**c) for c in json.loads(row["channels"])],
        )

    def upsert_notification_preference(
        self,
        task_id: str,
        enabled: bool,
        channels: list[NotificationChannel],
    ) -> None:
        data = json.dumps([c.model_dump() for c in channels], ensure_ascii=False)
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO notification_prefs (task_id, enabled, channels, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(task_id) DO UPDATE SET
                       enabled = excluded.enabled,
                       channels = excluded.channels,
                       updated_at = excluded.updated_at""",
                (task_id, int(enabled), data, self.clock.now_ms()),
            )
            conn.commit()


# ════════════════════════════════════════════════════════════
# ROW MAPPING
# ════════════════════════════════════════════════════════════


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["task_id"],
        owner_id=row["owner_id"],
        name=row["name"],
        type=row["type"],
        prompt=row["prompt"],
        schedule=row["schedule"],
        timezone=row["timezone"],
        engine=row["engine"],
        tools=_decode(row["tools"]) or [],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_run_at=row["last_run_at"],
        last_run_status=row["last_run_status"],
        next_run_at=row["next_run_at"],
        consecutive_failures=row["consecutive_failures"],
        active_run_id=row["active_run_id"],
    )


def _row_to_result(row: sqlite3.Row) -> ExecutionResult:
    return ExecutionResult(
        id=row["id"],
        task_id=row["task_id"],
        run_id=row["run_id"],
        status=row["status"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        duration_ms=row["duration_ms"],
        result=_decode(row["result"]),
        usage=_decode(row["usage"]),
        error=row["error"],
    )


# ════════════════════════════════════════════════════════════
# SQL SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Tasks (timestamps are epoch milliseconds)
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    type TEXT DEFAULT 'research',
    prompt TEXT NOT NULL,
    schedule TEXT NOT NULL,
    timezone TEXT,
    engine TEXT NOT NULL,
    tools TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'active',
    last_run_at INTEGER,
    last_run_status TEXT,
    next_run_at INTEGER,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    active_run_id TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, next_run_at);

-- 2. Execution results (bounded history per task)
CREATE TABLE IF NOT EXISTS execution_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    result TEXT,
    usage TEXT,
    started_at INTEGER NOT NULL,
    completed_at INTEGER,
    duration_ms INTEGER,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_results_task_started
    ON execution_results(task_id, started_at);

-- 3. Notification preferences (one per task)
CREATE TABLE IF NOT EXISTS notification_prefs (
    task_id TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL DEFAULT 0,
    channels TEXT NOT NULL DEFAULT '[]',
    updated_at INTEGER
);
"""
