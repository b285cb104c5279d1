#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Daily repeat reconciliation.

Every task flagged repeat_daily gets exactly one occurrence dated tomorrow.
The (title, date, time) triple is the dedup key, the whole batch runs in one
store transaction, and the profile's lastRepeatCheck watermark makes the
check effectively once per calendar day. Only tomorrow is projected: a week
away from the app still yields one new occurrence per template.
"""
from __future__ import annotations
import os
import threading
from dataclasses import dataclass
from typing import Iterable

import todocup_core as core
from todocup_core import Clock, RepeatCheckError, TaskDataError, TodocupError
from todocup_store import Task, TaskStore, ProfileStore, clone_for_date

WATERMARK_KEY = "lastRepeatCheck"

# One reconciliation at a time inside this process; the file lock covers other processes.
_IN_FLIGHT = threading.Lock()


@dataclass(frozen=True)
class RepeatCheckResult:
    created: int
    last_checked: str | None
    skipped: bool = False


def _check_template(task: Task) -> None:
    if not isinstance(task.title, str) or not task.title.strip():
        raise TaskDataError(f"repeating task {task.id} has an empty title")
    if not core.is_hhmm(task.time):
        raise TaskDataError(f"repeating task {task.id} has invalid time {task.time!r}")
    if not core.is_iso_date(task.date):
        raise TaskDataError(f"repeating task {task.id} has invalid date {task.date!r}")
    if not core.is_priority(task.priority):
        raise TaskDataError(f"repeating task {task.id} has invalid priority {task.priority!r}")


class RepeatReconciler:
    def __init__(self, task_store: TaskStore, clock: Clock | None = None):
        self.task_store = task_store
        self.clock = clock

    def reconcile(self, today: str, watermark: str | None, repeating_tasks: Iterable[Task]) -> RepeatCheckResult:
        """Materialize tomorrow's occurrences; returns how many rows were inserted."""
        if watermark == today:
            return RepeatCheckResult(0, today)

        templates = list(repeating_tasks)
        if not templates:
            return RepeatCheckResult(0, today)

        tomorrow = core.next_day_iso(today)
        stamp = core.now_iso(self.clock)

        def _batch(store: TaskStore) -> int:
            created = 0
            for task in templates:
                _check_template(task)
                if store.exists_by_title_date_time(task.title, tomorrow, task.time):
                    continue
                store.insert(clone_for_date(task, tomorrow, stamp))
                created += 1
            return created

        created = self.task_store.with_transaction(_batch)
        core.diag(
            f"repeat reconcile: today={today} tomorrow={tomorrow} "
            f"templates={len(templates)} created={created}",
            "repeat",
        )
        return RepeatCheckResult(created, today)

    def run(self, watermark: str | None) -> RepeatCheckResult:
        """Reconcile against the clock's today; the store is not touched when the watermark is current."""
        today = core.today_iso(self.clock)
        if watermark == today:
            return RepeatCheckResult(0, today)
        return self.reconcile(today, watermark, self.task_store.query_repeating())


def _default_lock_path(task_store: TaskStore) -> str:
    path = getattr(task_store.db, "path", "") or ""
    if not path or path == ":memory:":
        return ""
    return path + ".repeat.lock"


def run_daily_repeat_check(
    task_store: TaskStore,
    profile_store: ProfileStore,
    clock: Clock | None = None,
    lock_path: str | None = None,
) -> RepeatCheckResult:
    """
    Caller side of the reconciler: read the watermark, reconcile, persist the
    new watermark. On failure the watermark stays put and RepeatCheckError is
    raised so the next start retries.
    """
    profile = profile_store.ensure_profile()
    watermark = profile.settings.get(WATERMARK_KEY)

    if not _IN_FLIGHT.acquire(blocking=False):
        core.diag("repeat check already running in this process; skipped", "repeat")
        return RepeatCheckResult(0, watermark, skipped=True)
    try:
        path = _default_lock_path(task_store) if lock_path is None else lock_path
        stale = core.conf_float("repeat_lock_stale_after", 30.0, min_value=1.0)
        with core.safe_lock(path, stale_after=stale) as acquired:
            if path and not acquired:
                core.diag(f"repeat lock busy: {os.path.basename(path)}; skipped", "repeat")
                return RepeatCheckResult(0, watermark, skipped=True)
            # another process may have finished while we waited for the lock
            watermark = profile_store.get_setting(WATERMARK_KEY)
            try:
                result = RepeatReconciler(task_store, clock).run(watermark)
            except TodocupError as e:
                core.diag(f"repeat check failed: {e}", "repeat")
                raise RepeatCheckError(f"Could not materialize repeating tasks today: {e}") from e

            if result.last_checked != watermark:
                profile_store.set_setting(WATERMARK_KEY, result.last_checked)
            return result
    finally:
        _IN_FLIGHT.release()
