#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SQLite-backed task and profile stores for todocup.

Rows cross a validation boundary on the way out: a task row that does not
decode raises TaskDataError, a settings blob that does not decode raises
SettingsDecodeError. Writes go through validate_task_input /
validate_profile_input first.
"""
from __future__ import annotations
import os
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Iterator, TypeVar

import todocup_core as core
from todocup_core import (
    Clock,
    StoreError,
    TaskDataError,
    TaskNotFoundError,
    SettingsDecodeError,
    DEFAULT_PROFILE_NAME,
)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    priority INTEGER,
    date TEXT,
    time TEXT,
    repeatDaily INTEGER DEFAULT 0,
    isCompleted INTEGER DEFAULT 0,
    createdAt TEXT,
    updatedAt TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_title_date_time ON tasks (title, date, time);

CREATE TABLE IF NOT EXISTS profile (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    avatar TEXT,
    settingsJson TEXT
);
"""


# ==============================================================================
# SECTION: Records
# ==============================================================================
@dataclass
class Task:
    id: int
    title: str
    description: str
    priority: int
    date: str
    time: str
    repeat_daily: bool
    is_completed: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Task":
        try:
            task = cls(
                id=int(row["id"]),
                title=str(row["title"]),
                description=row["description"] or "",
                priority=int(row["priority"]),
                date=row["date"],
                time=row["time"],
                repeat_daily=bool(row["repeatDaily"]),
                is_completed=bool(row["isCompleted"]),
                created_at=row["createdAt"] or "",
                updated_at=row["updatedAt"] or "",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TaskDataError(f"task row does not decode: {e}") from e
        if not isinstance(task.date, str) or not isinstance(task.time, str):
            raise TaskDataError(f"task {task.id} has no date/time")
        if not core.is_priority(task.priority):
            raise TaskDataError(f"task {task.id} has invalid priority {row['priority']!r}")
        return task

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Profile:
    id: int
    name: str
    avatar: str | None = None
    settings: dict = field(default_factory=dict)


def clone_for_date(task: Task, target_date: str, timestamp: str) -> dict:
    """Insert payload for a new occurrence of `task` on `target_date`."""
    return {
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "date": target_date,
        "time": task.time,
        "repeat_daily": task.repeat_daily,
        "is_completed": False,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


# ==============================================================================
# SECTION: Connection & transactions
# ==============================================================================
class Database:
    """Thin wrapper over one sqlite3 connection with joinable transactions."""

    def __init__(self, conn: sqlite3.Connection, path: str = ":memory:"):
        self.conn = conn
        self.path = path
        self._tx_depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """All-or-nothing scope; nested use joins the outermost transaction."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self._exec("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._tx_depth = 0
            try:
                self.conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                core.diag(f"rollback failed: {e}", "store")
            raise
        self._tx_depth = 0
        self._exec("COMMIT")

    def with_transaction(self, fn: Callable[["Database"], T]) -> T:
        with self.transaction():
            return fn(self)

    def _exec(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"{e} (sql: {sql.split()[0]})") from e

    def run(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self._exec(sql, params)

    def get_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._exec(sql, params).fetchall()

    def get_first(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._exec(sql, params).fetchone()

    def close(self) -> None:
        self.conn.close()


def _migrate(db: Database) -> None:
    cols = {r["name"] for r in db.get_all("PRAGMA table_info(tasks)")}
    if "isCompleted" not in cols:
        db.run("ALTER TABLE tasks ADD COLUMN isCompleted INTEGER DEFAULT 0")
        core.diag("migrated tasks table: added isCompleted", "store")


def open_database(path: str | None = None, timeout: float | None = None) -> Database:
    """Open (and create) the database; ':memory:' is accepted."""
    path = path or core.db_path()
    if timeout is None:
        timeout = core.conf_float("store_timeout", 5.0, min_value=0.1, max_value=60.0)
    if path != ":memory:":
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    try:
        conn = sqlite3.connect(path, timeout=timeout, isolation_level=None)
    except sqlite3.Error as e:
        raise StoreError(f"cannot open database {path}: {e}") from e
    conn.row_factory = sqlite3.Row
    db = Database(conn, path)
    if path != ":memory:":
        db.run("PRAGMA journal_mode = WAL")
    db.run("PRAGMA foreign_keys = ON")
    try:
        conn.executescript(_SCHEMA)
    except sqlite3.Error as e:
        raise StoreError(f"schema setup failed: {e}") from e
    _migrate(db)
    core.diag(f"database ready: {path}", "store")
    return db


# ==============================================================================
# SECTION: TaskStore
# ==============================================================================
_TASK_COLUMNS = "title, description, priority, date, time, repeatDaily, isCompleted, createdAt, updatedAt"


def _sanitize(data: dict, base: Task | None = None) -> dict:
    """Trim text fields and fill unspecified fields from `base` (or defaults)."""
    default_priority = core.conf_int("default_priority", 2, min_value=1, max_value=3)

    def pick(key, fallback):
        v = data.get(key)
        return v if v is not None else fallback

    title = data.get("title")
    if isinstance(title, str):
        title = title.strip()
    elif base is not None:
        title = base.title

    if "description" in data:
        description = (data.get("description") or "").strip()
    else:
        description = base.description if base is not None else ""

    return {
        "title": title,
        "description": description,
        "priority": pick("priority", base.priority if base is not None else default_priority),
        "date": pick("date", base.date if base is not None else None),
        "time": pick("time", base.time if base is not None else None),
        "repeat_daily": bool(pick("repeat_daily", base.repeat_daily if base is not None else False)),
        "is_completed": bool(pick("is_completed", base.is_completed if base is not None else False)),
    }


class TaskStore:
    def __init__(self, db: Database, clock: Clock | None = None):
        self.db = db
        self.clock = clock

    def _stamp(self) -> str:
        return core.now_iso(self.clock)

    # -- transactions ---------------------------------------------------------
    def transaction(self):
        return self.db.transaction()

    def with_transaction(self, fn: Callable[["TaskStore"], T]) -> T:
        with self.db.transaction():
            return fn(self)

    # -- queries --------------------------------------------------------------
    def fetch_tasks(self, day: str) -> list[Task]:
        rows = self.db.get_all(
            "SELECT * FROM tasks WHERE date = ? ORDER BY date ASC, time ASC, createdAt DESC",
            (day,),
        )
        return [Task.from_row(r) for r in rows]

    def fetch_range(self, start: str, end: str) -> list[Task]:
        """Tasks with start <= date <= end (ISO strings compare in date order)."""
        rows = self.db.get_all(
            "SELECT * FROM tasks WHERE date >= ? AND date <= ? ORDER BY date ASC, time ASC",
            (start, end),
        )
        return [Task.from_row(r) for r in rows]

    def fetch_task(self, task_id: int) -> Task | None:
        row = self.db.get_first("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return Task.from_row(row) if row else None

    def get_task(self, task_id: int) -> Task:
        task = self.fetch_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found.")
        return task

    def query_repeating(self) -> list[Task]:
        rows = self.db.get_all("SELECT * FROM tasks WHERE repeatDaily = 1 ORDER BY id ASC")
        return [Task.from_row(r) for r in rows]

    def exists_by_title_date_time(self, title: str, day: str, hhmm: str) -> bool:
        row = self.db.get_first(
            "SELECT id FROM tasks WHERE title = ? AND date = ? AND time = ? LIMIT 1",
            (title, day, hhmm),
        )
        return row is not None

    # -- writes ---------------------------------------------------------------
    def insert(self, payload: dict) -> Task:
        """Raw insert of a complete payload (see clone_for_date)."""
        stamp = self._stamp()
        cur = self.db.run(
            f"INSERT INTO tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                payload["title"],
                payload.get("description") or None,
                payload["priority"],
                payload["date"],
                payload["time"],
                1 if payload.get("repeat_daily") else 0,
                1 if payload.get("is_completed") else 0,
                payload.get("created_at") or stamp,
                payload.get("updated_at") or stamp,
            ),
        )
        inserted = self.fetch_task(cur.lastrowid)
        if inserted is None:
            raise StoreError("Saving the task failed.")
        return inserted

    def create_task(self, data: dict) -> Task:
        clean = _sanitize(data)
        core.validate_task_input(clean)
        task = self.insert(clean)
        core.diag(f"task created: id={task.id}", "store", task.to_dict())
        return task

    def update_task(self, task_id: int, changes: dict) -> Task:
        current = self.get_task(task_id)
        nxt = _sanitize(changes, current)
        core.validate_task_input(nxt)
        self.db.run(
            "UPDATE tasks SET title = ?, description = ?, priority = ?, date = ?, time = ?, "
            "repeatDaily = ?, isCompleted = ?, updatedAt = ? WHERE id = ?",
            (
                nxt["title"],
                nxt["description"] or None,
                nxt["priority"],
                nxt["date"],
                nxt["time"],
                1 if nxt["repeat_daily"] else 0,
                1 if nxt["is_completed"] else 0,
                self._stamp(),
                task_id,
            ),
        )
        return self.get_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        cur = self.db.run("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cur.rowcount > 0

    def toggle_repeat(self, task_id: int) -> Task:
        current = self.get_task(task_id)
        self.db.run(
            "UPDATE tasks SET repeatDaily = ?, updatedAt = ? WHERE id = ?",
            (0 if current.repeat_daily else 1, self._stamp(), task_id),
        )
        return self.get_task(task_id)

    def toggle_completed(self, task_id: int, force: bool | None = None) -> Task:
        current = self.get_task(task_id)
        value = (not current.is_completed) if force is None else bool(force)
        self.db.run(
            "UPDATE tasks SET isCompleted = ?, updatedAt = ? WHERE id = ?",
            (1 if value else 0, self._stamp(), task_id),
        )
        return self.get_task(task_id)

    def clone_task_for_date(self, task: Task, target_date: str) -> Task:
        return self.insert(clone_for_date(task, target_date, self._stamp()))


# ==============================================================================
# SECTION: ProfileStore
# ==============================================================================
def _parse_settings(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise SettingsDecodeError(f"settings are not valid JSON: {e}") from e
    return core.check_settings(data)


class ProfileStore:
    def __init__(self, db: Database):
        self.db = db

    def _profile_from_row(self, row: sqlite3.Row) -> Profile:
        return Profile(
            id=int(row["id"]),
            name=row["name"] or DEFAULT_PROFILE_NAME,
            avatar=row["avatar"],
            settings=_parse_settings(row["settingsJson"]),
        )

    def _first_row(self) -> sqlite3.Row | None:
        return self.db.get_first("SELECT * FROM profile ORDER BY id ASC LIMIT 1")

    def fetch_profile(self) -> Profile | None:
        row = self._first_row()
        return self._profile_from_row(row) if row else None

    def upsert_profile(self, data: dict) -> Profile:
        core.validate_profile_input(data)
        existing = self.fetch_profile()
        settings = dict(existing.settings if existing else {})
        settings.update(data.get("settings") or {})
        name = data.get("name")
        name = name.strip() if isinstance(name, str) else (existing.name if existing else DEFAULT_PROFILE_NAME)
        avatar = data.get("avatar") if data.get("avatar") is not None else (existing.avatar if existing else None)
        blob = json.dumps(settings, ensure_ascii=False)

        if existing:
            self.db.run(
                "UPDATE profile SET name = ?, avatar = ?, settingsJson = ? WHERE id = ?",
                (name, avatar, blob, existing.id),
            )
        else:
            self.db.run(
                "INSERT INTO profile (name, avatar, settingsJson) VALUES (?, ?, ?)",
                (name, avatar, blob),
            )
        saved = self.fetch_profile()
        if saved is None:
            raise StoreError("Saving the profile failed.")
        return saved

    def ensure_profile(self) -> Profile:
        return self.fetch_profile() or self.upsert_profile({"name": DEFAULT_PROFILE_NAME})

    def get_setting(self, key: str, default: Any = None) -> Any:
        profile = self.fetch_profile()
        if profile is None:
            return default
        return profile.settings.get(key, default)

    def set_setting(self, key: str, value: Any) -> Profile:
        return self.upsert_profile({"settings": {key: value}})

    def reset_settings(self) -> None:
        """Overwrite the settings blob without reading it (recovers from SettingsDecodeError)."""
        row = self._first_row()
        if row is None:
            self.upsert_profile({"name": DEFAULT_PROFILE_NAME})
            return
        self.db.run("UPDATE profile SET settingsJson = ? WHERE id = ?", ("{}", row["id"]))
        core.diag("profile settings reset", "store")
