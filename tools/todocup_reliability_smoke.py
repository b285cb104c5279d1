#!/usr/bin/env python3
"""Reliability smoke test for the todocup CLI (safe temp database)."""
from __future__ import annotations

import os
import subprocess
import sys
import sqlite3
import tempfile
import time
from datetime import date, timedelta
from pathlib import Path
import argparse
import json
import multiprocessing as mp

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

import todocup_core as core

CLI = str(ROOT / "todocup.py")


def _run(cmd, env=None, check=True):
    p = subprocess.run(cmd, capture_output=True, text=True, env=env)
    if check and p.returncode != 0:
        raise RuntimeError(f"cmd failed: {cmd}\nstdout={p.stdout}\nstderr={p.stderr}")
    return p


def _todo(db: str, today: str, cmd, env=None, check=True):
    return _run([sys.executable, CLI, "--db", db, "--today", today] + cmd, env=env, check=check)


def _rows(db: str, day: str) -> list[tuple]:
    conn = sqlite3.connect(db)
    try:
        return conn.execute(
            "SELECT title, time FROM tasks WHERE date = ? ORDER BY time, title", (day,)
        ).fetchall()
    finally:
        conn.close()


def _watermark(db: str) -> str | None:
    conn = sqlite3.connect(db)
    try:
        row = conn.execute("SELECT settingsJson FROM profile ORDER BY id LIMIT 1").fetchone()
    finally:
        conn.close()
    if not row or not row[0]:
        return None
    return json.loads(row[0]).get("lastRepeatCheck")


def _day(start: str, n: int) -> str:
    return (date.fromisoformat(start) + timedelta(days=n)).isoformat()


def _start_worker(db: str, today: str) -> tuple[bool, str]:
    env = os.environ.copy()
    try:
        p = _todo(db, today, ["check-repeat"], env=env, check=False)
        return (p.returncode == 0, (p.stderr or "").strip())
    except Exception as e:
        return (False, str(e))


def _assert_one_per_key(db: str, day: str) -> None:
    rows = _rows(db, day)
    if len(rows) != len(set(rows)):
        raise RuntimeError(f"duplicate occurrences on {day}: {rows}")


def main() -> int:
    parser = argparse.ArgumentParser(description="todocup reliability smoke test")
    parser.add_argument("--start", default="2024-03-19", help="first simulated day")
    parser.add_argument("--days", type=int, default=0, help="simulate N further daily starts")
    parser.add_argument("--workers", type=int, default=4, help="parallel starts for the race test")
    args = parser.parse_args()

    env = os.environ.copy()
    env.setdefault("TODOCUP_DIAG", "1")

    with tempfile.TemporaryDirectory(prefix="todocup-smoke-") as td:
        db = str(Path(td) / "todocup.db")
        d0 = args.start
        print(f"[smoke] db={db}")

        # Test 1: happy path (first start checks, task added, next start projects it)
        _todo(db, d0, ["add", "ورزش", "--time", "07:00", "--repeat"], env=env)
        _todo(db, d0, ["add", "خرید", "--time", "18:00", "--date", "tomorrow"], env=env)
        if _watermark(db) != d0:
            raise RuntimeError(f"watermark not set on first start: {_watermark(db)}")
        d1 = _day(d0, 1)
        _todo(db, d1, ["list"], env=env)
        if ("ورزش", "07:00") not in _rows(db, _day(d0, 2)):
            raise RuntimeError("repeating task not projected on the next start")
        print("[smoke] happy path ok")

        # Test 2: lock contention leaves the watermark alone
        d2 = _day(d0, 2)
        with core.safe_lock(db + ".repeat.lock") as held:
            if not held:
                raise RuntimeError("could not hold the repeat lock")
            _todo(db, d2, ["check-repeat"], env=env)
            if _watermark(db) != d1:
                raise RuntimeError("watermark moved while the lock was held")
        print("[smoke] lock contention ok")

        # Test 3: parallel starts on the same day create one occurrence per key
        workers = max(1, args.workers)
        with mp.Pool(processes=workers) as pool:
            results = pool.starmap(_start_worker, [(db, d2)] * workers)
        errs = [r[1] for r in results if not r[0]]
        if errs:
            raise RuntimeError(f"parallel start failed: {errs[:3]}")
        _assert_one_per_key(db, _day(d2, 1))
        if len(_rows(db, _day(d2, 1))) != 1:
            raise RuntimeError(f"expected one occurrence, got {_rows(db, _day(d2, 1))}")
        print("[smoke] parallel starts ok")

        # Test 4: undecodable settings fail loudly and reset recovers
        conn = sqlite3.connect(db)
        conn.execute("UPDATE profile SET settingsJson = '{bad-json'")
        conn.commit()
        conn.close()
        p = _todo(db, d2, ["list"], env=env, check=False)
        if p.returncode == 0:
            raise RuntimeError("corrupt settings were not reported")
        _todo(db, d2, ["profile", "--reset-settings"], env=env)
        if _watermark(db) != d2:
            raise RuntimeError("reset did not let the check run again")
        _assert_one_per_key(db, _day(d2, 1))
        print("[smoke] settings recovery ok")

        if args.days:
            t0 = time.time()
            for i in range(args.days):
                day = _day(d2, i + 1)
                _todo(db, day, ["list"], env=env)
                _assert_one_per_key(db, _day(day, 1))
            dt = time.time() - t0
            print(f"[smoke] {args.days} daily starts ok ({dt:.2f}s)")

        print("[smoke] all tests completed")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
