# src/battle_plan/tasks/task_store.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

from ..core.errors import NotFoundError
from .task_models import Setting, SubItem, Task, TaskKind, TaskStatus, Urgency, lenient_time_of_day, parse_date

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskPredicate = Callable[[Task], bool]
TaskSortKey = Callable[[Task], Any]


class ChangeOp(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    CLEAR = "clear"
    BULK_ADD = "bulk_add"
    PURGE = "purge"


@dataclass(slots=True, frozen=True)
class StoreChange:
    op: ChangeOp
    task_ids: tuple[int, ...] = ()


StoreListener = Callable[[StoreChange], None]


class TaskStore:
    """
    SQLite record store for Tasks and Settings.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Every public method is a coroutine. The blocking SQLite work runs in a worker
    thread under a single asyncio.Lock, so a read awaited after a write always
    sees that write. Each call opens its own short-lived connection.
    """

    def __init__(self, db_path: str | Path = "battle_plan.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._listeners: list[StoreListener] = []
        self._ensure_schema()
        logger.info("TaskStore ready db=%s", self._db_path)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        self._listeners.clear()

    # ---- change notification ----

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener for Task-collection mutations. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed op=%s", change.op.value)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.DatabaseError):
            conn.execute("PRAGMA journal_mode=WAL")

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL DEFAULT '',
                    kind TEXT NOT NULL DEFAULT 'task',
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at INTEGER NOT NULL
                )
                """
            )

            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("description", "TEXT NOT NULL DEFAULT ''")
            add_col("internal_notes", "TEXT NOT NULL DEFAULT ''")
            add_col("scheduled_date", "TEXT")
            add_col("deadline_date", "TEXT")
            add_col("start_time", "TEXT")
            add_col("urgency", "INTEGER NOT NULL DEFAULT 3")
            add_col("sub_items", "TEXT NOT NULL DEFAULT '[]'")
            add_col("progress", "INTEGER NOT NULL DEFAULT 0")
            add_col("remaining_duration", "INTEGER")
            add_col("total_duration", "INTEGER")
            add_col("origin_external_id", "TEXT")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_kind ON tasks(kind)")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _sub_items_to_str(items: list[SubItem]) -> str:
        return json.dumps([s.to_dict() for s in items], ensure_ascii=False)

    @staticmethod
    def _str_to_start_time(s: str | None) -> str | None:
        parsed = lenient_time_of_day(s)
        if parsed is None and s:
            logger.warning("Unreadable start_time %r; treating as unset.", s)
        return parsed.strftime("%H:%M") if parsed is not None else None

    @staticmethod
    def _str_to_sub_items(s: str | None) -> list[SubItem]:
        if not s:
            return []
        try:
            val = json.loads(s)
        except Exception:
            logger.warning("Corrupt sub_items JSON; treating as empty.")
            return []
        if not isinstance(val, list):
            return []
        return [SubItem.from_dict(v) for v in val if isinstance(v, dict)]

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            title=str(row["title"] or ""),
            description=str(row["description"] or ""),
            internal_notes=str(row["internal_notes"] or ""),
            kind=TaskKind.from_raw(row["kind"]),
            status=TaskStatus.from_db(row["status"]),
            scheduled_date=parse_date(row["scheduled_date"]),
            deadline_date=parse_date(row["deadline_date"]),
            start_time=self._str_to_start_time(row["start_time"]),
            urgency=Urgency.coerce(row["urgency"]),
            sub_items=self._str_to_sub_items(row["sub_items"]),
            progress=int(row["progress"] or 0),
            remaining_duration=row["remaining_duration"],
            total_duration=row["total_duration"],
            created_at=int(row["created_at"] or 0),
            origin_external_id=row["origin_external_id"],
        )

    def _task_values(self, task: Task) -> tuple[Any, ...]:
        return (
            task.title,
            task.description,
            task.internal_notes,
            task.kind.value,
            task.status.value,
            task.scheduled_date.isoformat() if task.scheduled_date else None,
            task.deadline_date.isoformat() if task.deadline_date else None,
            task.start_time,
            int(task.urgency),
            self._sub_items_to_str(task.sub_items),
            int(task.progress),
            task.remaining_duration,
            task.total_duration,
            int(task.created_at),
            task.origin_external_id,
        )

    _COLUMNS = (
        "title, description, internal_notes, kind, status, scheduled_date, deadline_date, "
        "start_time, urgency, sub_items, progress, remaining_duration, total_duration, "
        "created_at, origin_external_id"
    )

    def _insert(self, cur: sqlite3.Cursor, task: Task) -> int:
        cur.execute(
            f"INSERT INTO tasks({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._task_values(task),
        )
        rowid = cur.lastrowid
        if rowid is None:
            raise RuntimeError("SQLite did not return lastrowid for tasks insert")
        return int(rowid)

    # ---- sync bodies (run in worker thread) ----

    def _add_sync(self, task: Task) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            task_id = self._insert(cur, task)
            conn.commit()
            return task_id
        finally:
            conn.close()

    def _bulk_add_sync(self, tasks: list[Task]) -> list[int]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            ids = [self._insert(cur, t) for t in tasks]
            conn.commit()
            return ids
        finally:
            conn.close()

    def _get_sync(self, task_id: int) -> Task | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),))
            row = cur.fetchone()
            return self._row_to_task(row) if row else None
        finally:
            conn.close()

    def _all_sync(self) -> list[Task]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tasks ORDER BY id ASC")
            return [self._row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def _count_sync(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM tasks")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def _update_sync(self, task_id: int, fields: Mapping[str, Any]) -> Task:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),))
            row = cur.fetchone()
            if row is None:
                raise NotFoundError(f"task {task_id} not found")
            updated = self._row_to_task(row).merged(fields)
            assignments = ", ".join(f"{c.strip()} = ?" for c in self._COLUMNS.split(","))
            cur.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                (*self._task_values(updated), int(task_id)),
            )
            conn.commit()
            return updated
        finally:
            conn.close()

    def _delete_sync(self, task_id: int) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))
            conn.commit()
            if cur.rowcount != 1:
                raise NotFoundError(f"task {task_id} not found")
        finally:
            conn.close()

    def _clear_sync(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM tasks")
            conn.commit()
            return int(cur.rowcount)
        finally:
            conn.close()

    def _purge_sync(self, cutoff_ms: int) -> list[int]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT id FROM tasks WHERE status = 'completed' AND created_at < ?",
                (int(cutoff_ms),),
            )
            ids = [int(r["id"]) for r in cur.fetchall()]
            if ids:
                placeholders = ",".join("?" for _ in ids)
                cur.execute(f"DELETE FROM tasks WHERE id IN ({placeholders})", ids)
                conn.commit()
            return ids
        finally:
            conn.close()

    def _put_setting_sync(self, key: str, value: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO settings(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def _get_setting_sync(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cur.fetchone()
            return str(row["value"]) if row else None
        finally:
            conn.close()

    def _delete_setting_sync(self, key: str) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def _list_settings_sync(self) -> list[Setting]:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT key, value FROM settings ORDER BY key ASC")
            return [Setting(key=str(r["key"]), value=str(r["value"])) for r in cur.fetchall()]
        finally:
            conn.close()

    # ---- public API: tasks ----

    async def add(self, task: Task) -> int:
        """Insert a local record and return its new id. Any `task.id` is ignored."""
        if not task.title or not task.title.strip():
            raise ValueError("title is required")
        task_id = await self._run(self._add_sync, task)
        logger.debug("Task added id=%s kind=%s status=%s", task_id, task.kind.value, task.status.value)
        self._emit(StoreChange(ChangeOp.ADD, (task_id,)))
        return task_id

    async def bulk_add(self, tasks: Iterable[Task]) -> list[int]:
        batch = list(tasks)
        if not batch:
            return []
        ids = await self._run(self._bulk_add_sync, batch)
        logger.debug("Bulk-added %d tasks", len(ids))
        self._emit(StoreChange(ChangeOp.BULK_ADD, tuple(ids)))
        return ids

    async def update(self, task_id: int, fields: Mapping[str, Any]) -> Task:
        """
        Shallow merge `fields` into the stored record.

        Raises NotFoundError for an unknown id. Derived fields (progress,
        remaining_duration) are recomputed by Task.merged.
        """
        if not fields:
            task = await self.get(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            return task
        updated = await self._run(self._update_sync, task_id, dict(fields))
        self._emit(StoreChange(ChangeOp.UPDATE, (int(task_id),)))
        return updated

    async def delete(self, task_id: int) -> None:
        await self._run(self._delete_sync, task_id)
        logger.debug("Task deleted id=%s", task_id)
        self._emit(StoreChange(ChangeOp.DELETE, (int(task_id),)))

    async def get(self, task_id: int) -> Task | None:
        return await self._run(self._get_sync, task_id)

    async def query(
        self,
        predicate: TaskPredicate | None = None,
        sort_key: TaskSortKey | None = None,
        *,
        reverse: bool = False,
    ) -> list[Task]:
        tasks = await self._run(self._all_sync)
        if predicate is not None:
            tasks = [t for t in tasks if predicate(t)]
        if sort_key is not None:
            tasks.sort(key=sort_key, reverse=reverse)
        return tasks

    async def count(self, predicate: TaskPredicate | None = None) -> int:
        if predicate is None:
            return await self._run(self._count_sync)
        return len(await self.query(predicate))

    async def clear_tasks(self) -> int:
        removed = await self._run(self._clear_sync)
        logger.info("Cleared %d local tasks", removed)
        self._emit(StoreChange(ChangeOp.CLEAR))
        return removed

    async def purge_completed_before(self, cutoff_ms: int) -> int:
        ids = await self._run(self._purge_sync, cutoff_ms)
        if ids:
            logger.info("Purged %d completed tasks older than %s", len(ids), cutoff_ms)
            self._emit(StoreChange(ChangeOp.PURGE, tuple(ids)))
        return len(ids)

    # ---- public API: settings ----

    async def put_setting(self, key: str, value: str) -> None:
        if not key:
            raise ValueError("setting key is required")
        await self._run(self._put_setting_sync, key, str(value))

    async def get_setting(self, key: str) -> str | None:
        return await self._run(self._get_setting_sync, key)

    async def delete_setting(self, key: str) -> bool:
        return await self._run(self._delete_setting_sync, key)

    async def list_settings(self) -> list[Setting]:
        return await self._run(self._list_settings_sync)
