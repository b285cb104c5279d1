#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Operational health check for the todocup database and repeat watermark."""

from __future__ import annotations

import argparse
import json
import os
import sqlite3
import sys
import time
from datetime import date
from pathlib import Path

HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(HERE))

import todocup_core as core


def _safe_stat(path: Path) -> tuple[int, float]:
    try:
        if not path.exists():
            return 0, 0.0
        st = path.stat()
        return int(st.st_size), float(st.st_mtime)
    except OSError:
        return -1, 0.0


def _connect_ro(path: Path) -> sqlite3.Connection | None:
    if not path.exists():
        return None
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=2.0)
    except sqlite3.Error:
        return None
    conn.row_factory = sqlite3.Row
    return conn


def _count(conn: sqlite3.Connection | None, sql: str) -> int:
    if conn is None:
        return -1
    try:
        row = conn.execute(sql).fetchone()
        return int(row[0] or 0) if row else 0
    except sqlite3.Error:
        return -1


def _watermark(conn: sqlite3.Connection | None) -> str:
    if conn is None:
        return ""
    try:
        row = conn.execute("SELECT settingsJson FROM profile ORDER BY id ASC LIMIT 1").fetchone()
    except sqlite3.Error:
        return ""
    if not row or not row[0]:
        return ""
    try:
        settings = json.loads(row[0])
    except ValueError:
        return "!"
    lrc = settings.get("lastRepeatCheck") if isinstance(settings, dict) else None
    return str(lrc) if lrc else ""


def _watermark_lag_days(lrc: str, today: str) -> int | None:
    """Days since the last repeat check; negative when the watermark is ahead of today, None when unreadable."""
    if not lrc:
        return 0
    last = core.parse_iso_date(lrc)
    now = core.parse_iso_date(today)
    if last is None or now is None:
        return None
    return (now - last).days


def _add_check(checks: list[dict], name: str, value: int | float | None, warn: int | float, crit: int | float) -> None:
    if value is None or value < 0:
        checks.append({"name": name, "value": value, "status": "warn", "message": "unreadable"})
        return
    if value >= crit:
        status = "crit"
    elif value >= warn:
        status = "warn"
    else:
        status = "ok"
    checks.append({"name": name, "value": value, "status": status, "warn": warn, "crit": crit})


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="todocup database / repeat watermark health check")
    ap.add_argument("--db", default=None, help="Database path (default from config)")
    ap.add_argument("--today", default=None, help="Override today (YYYY-MM-DD)")
    ap.add_argument("--json", action="store_true", help="emit JSON only")
    ap.add_argument("--watermark-warn-days", type=int, default=2)
    ap.add_argument("--watermark-crit-days", type=int, default=30)
    ap.add_argument("--duplicate-warn", type=int, default=1)
    ap.add_argument("--duplicate-crit", type=int, default=50)
    ap.add_argument("--bad-row-warn", type=int, default=1)
    ap.add_argument("--bad-row-crit", type=int, default=10)
    ap.add_argument("--lock-stale-warn-seconds", type=int, default=60)
    ap.add_argument("--lock-stale-crit-seconds", type=int, default=3600)
    args = ap.parse_args(argv)

    db = Path(args.db or core.db_path()).expanduser().resolve()
    lock = Path(str(db) + ".repeat.lock")
    diag_log = Path(core.data_dir()) / ".todocup_diag.jsonl"
    today = args.today or date.today().isoformat()

    db_bytes, _ = _safe_stat(db)
    lock_bytes, lock_mtime = _safe_stat(lock)
    conn = _connect_ro(db)
    try:
        total = _count(conn, "SELECT COUNT(*) FROM tasks")
        repeating = _count(conn, "SELECT COUNT(*) FROM tasks WHERE repeatDaily = 1")
        # rows sharing a (title, date, time) key beyond the first
        duplicates = _count(
            conn,
            "SELECT COALESCE(SUM(n - 1), 0) FROM "
            "(SELECT COUNT(*) AS n FROM tasks GROUP BY title, date, time HAVING n > 1)",
        )
        bad_rows = _count(
            conn,
            "SELECT COUNT(*) FROM tasks WHERE date IS NULL OR time IS NULL "
            "OR date NOT GLOB '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]' "
            "OR time NOT GLOB '[0-2][0-9]:[0-5][0-9]' "
            "OR priority IS NULL OR priority NOT IN (1, 2, 3) OR length(trim(title)) = 0",
        )
        lrc = _watermark(conn)
    finally:
        if conn is not None:
            conn.close()

    lag = None if lrc == "!" else _watermark_lag_days(lrc, today)
    lock_age_s = 0
    if lock_bytes > 0 and lock_mtime > 0:
        lock_age_s = max(0, int(time.time() - lock_mtime))

    checks: list[dict] = []
    if conn is None:
        checks.append({"name": "database", "value": str(db), "status": "crit", "message": "missing or unreadable"})
    if lag is not None and lag < 0:
        # the next check runs anyway and moves the watermark back to today
        checks.append({"name": "watermark_lag_days", "value": lag, "status": "warn", "message": "watermark is in the future"})
    else:
        _add_check(checks, "watermark_lag_days", lag, args.watermark_warn_days, args.watermark_crit_days)
    _add_check(checks, "duplicate_rows", duplicates, args.duplicate_warn, args.duplicate_crit)
    _add_check(checks, "bad_rows", bad_rows, args.bad_row_warn, args.bad_row_crit)
    _add_check(checks, "repeat_lock_age_s", lock_age_s, args.lock_stale_warn_seconds, args.lock_stale_crit_seconds)

    status = "ok"
    for chk in checks:
        st = chk.get("status")
        if st == "crit":
            status = "crit"
            break
        if st == "warn" and status == "ok":
            status = "warn"

    payload = {
        "status": status,
        "db": str(db),
        "today": today,
        "metrics": {
            "db_bytes": db_bytes,
            "tasks": total,
            "repeating_tasks": repeating,
            "duplicate_rows": duplicates,
            "bad_rows": bad_rows,
            "last_repeat_check": "" if lrc == "!" else lrc,
            "watermark_lag_days": lag,
            "repeat_lock_age_s": lock_age_s,
            "diag_log_enabled_hint": "set TODOCUP_DIAG_LOG=1 to persist diagnostics",
            "diag_log_path": str(diag_log),
        },
        "checks": checks,
    }

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))
    else:
        print(f"status={payload['status']} db={payload['db']}")
        for k, v in payload["metrics"].items():
            print(f"{k}={v}")
        print("checks:")
        for chk in checks:
            print(f"  - {chk.get('name')}: {chk.get('status')} (value={chk.get('value')})")

    if status == "crit":
        return 2
    if status == "warn":
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
