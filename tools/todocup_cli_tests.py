#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
todocup CLI Tests
 - Date argument parsing (ISO, Jalali, today/tomorrow, dateutil text)
 - main() end to end against a temp database with a pinned --today
 - The health check over a healthy and a damaged database

Run:
  python3 todocup_cli_tests.py
Optional:
  python3 todocup_cli_tests.py --only health --verbose
"""

import importlib
import json
import sys, os
import tempfile
from contextlib import redirect_stdout
from io import StringIO

HERE = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(HERE)
sys.path.insert(0, ROOT)
sys.path.insert(0, HERE)

core = importlib.import_module("todocup_core")
store = importlib.import_module("todocup_store")
cli = importlib.import_module("todocup")
health = importlib.import_module("todocup_health_check")

# -------- Helpers -------------------------------------------------------------

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def run_cli(db, today, *argv):
    """main() return code; _fail's SystemExit is folded into the code."""
    try:
        return cli.main(["--db", db, "--today", today] + list(argv))
    except SystemExit as e:
        return int(e.code or 0)

def rows_on(db, day):
    conn = store.open_database(db)
    try:
        return store.TaskStore(conn).fetch_tasks(day)
    finally:
        conn.close()

def quiet(fn, *a):
    with redirect_stdout(StringIO()):
        return fn(*a)

# -------- Date arguments ------------------------------------------------------

def test_parse_date_arg_forms():
    clock = core.fixed_clock("2024-03-19")
    cases = [
        (None, "2024-03-19"),
        ("today", "2024-03-19"),
        ("امروز", "2024-03-19"),
        ("tomorrow", "2024-03-20"),
        ("فردا", "2024-03-20"),
        ("1403/01/01", "2024-03-20"),
        ("1403/1/1", "2024-03-20"),
        ("2024-03-20", "2024-03-20"),
        ("2024/03/20", "2024-03-20"),
        ("March 20 2024", "2024-03-20"),
    ]
    for raw, want in cases:
        got = cli.parse_date_arg(raw, clock)
        expect(got == want, f"{raw!r} -> {got}, want {want}")

def test_parse_date_arg_rejects():
    for raw in ("1404/12/30", "gibberish", "2024-02-30"):
        try:
            cli.parse_date_arg(raw, core.fixed_clock("2024-03-19"))
            raise AssertionError(f"{raw!r} must be rejected")
        except core.ValidationError:
            pass

# -------- main() --------------------------------------------------------------

def test_add_then_next_start_projects():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        code = quiet(run_cli, db, "2024-03-19", "add", "ورزش", "--time", "07:00", "--repeat")
        expect(code == 0, f"add exit {code}")
        expect(len(rows_on(db, "2024-03-19")) == 1, "task stored for today")
        expect(rows_on(db, "2024-03-20") == [], "first start checked before the add")
        code = quiet(run_cli, db, "2024-03-20", "list")
        expect(code == 0, f"list exit {code}")
        got = rows_on(db, "2024-03-21")
        expect(len(got) == 1 and got[0].title == "ورزش", "next start projected tomorrow")

def test_add_with_jalali_date_and_edit():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        code = quiet(run_cli, db, "2024-03-19", "add", "دیدار", "--time", "10:00", "--date", "1403/01/01", "--priority", "3")
        expect(code == 0, f"add exit {code}")
        t = rows_on(db, "2024-03-20")
        expect(len(t) == 1 and t[0].priority == 3, "stored on Nowruz with priority 3")
        code = quiet(run_cli, db, "2024-03-19", "edit", str(t[0].id), "--time", "11:30")
        expect(code == 0 and rows_on(db, "2024-03-20")[0].time == "11:30", "edited time")
        code = quiet(run_cli, db, "2024-03-19", "done", str(t[0].id))
        expect(code == 0 and rows_on(db, "2024-03-20")[0].is_completed, "completed")
        code = quiet(run_cli, db, "2024-03-19", "done", str(t[0].id), "--undo")
        expect(code == 0 and not rows_on(db, "2024-03-20")[0].is_completed, "reopened")
        code = quiet(run_cli, db, "2024-03-19", "delete", str(t[0].id))
        expect(code == 0 and rows_on(db, "2024-03-20") == [], "deleted")

def test_errors_exit_one():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        expect(quiet(run_cli, db, "2024-03-19", "add", "x", "--time", "07:00") == 1, "short title")
        expect(quiet(run_cli, db, "2024-03-19", "add", "ورزش", "--time", "7am") == 1, "bad time")
        expect(quiet(run_cli, db, "2024-03-19", "delete", "42") == 1, "missing id")
        expect(quiet(run_cli, db, "2024-03-19", "edit", "1") == 1, "nothing to change")
        expect(quiet(run_cli, db, "2024-03-19", "calendar", "--month", "1403/13") == 1, "bad month")

def test_calendar_profile_and_self_check():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        expect(quiet(run_cli, db, "2024-03-19", "calendar", "--month", "1403/01") == 0, "calendar month")
        expect(quiet(run_cli, db, "2024-03-19", "calendar", "--date", "1402/12/29", "--latin") == 0, "calendar date")
        code = quiet(run_cli, db, "2024-03-19", "profile", "--name", "سارا", "--theme", "light", "--age", "30")
        expect(code == 0, f"profile exit {code}")
        conn = store.open_database(db)
        try:
            p = store.ProfileStore(conn).fetch_profile()
        finally:
            conn.close()
        expect(p.name == "سارا" and p.settings.get("theme") == "light" and p.settings.get("age") == 30, f"{p}")
        expect(p.settings.get("lastRepeatCheck") == "2024-03-19", "watermark kept alongside profile fields")
        expect(quiet(run_cli, db, "2024-03-19", "check-repeat") == 0, "check-repeat")
        expect(quiet(run_cli, db, "2024-03-19", "self-check") == 0, "self-check on a healthy db")

def test_pick_date_stops_at_calendar_edge():
    answers = iter(["n", "", "q"])
    real_prompt = cli.prompt
    cli.prompt = lambda *a, **kw: next(answers)
    try:
        with tempfile.TemporaryDirectory() as tmp:
            app = cli.TodoApp(os.path.join(tmp, "t.db"), core.fixed_clock("2024-03-19"))
            try:
                edge = cli.JalaliMonthCursor(3177, 12, 1)
                chosen = quiet(cli.pick_date, app, edge)
            finally:
                app.close()
    finally:
        cli.prompt = real_prompt
    expect(chosen == edge.selected_iso, f"stays on the last month after a refused step, got {chosen}")

def test_plain_panel_mode():
    with tempfile.TemporaryDirectory() as tmp:
        cfg = os.path.join(tmp, "todocup.toml")
        with open(cfg, "w", encoding="utf-8") as f:
            f.write('panel_mode = "fast"\n')
        old = os.environ.get("TODOCUP_CONFIG")
        os.environ["TODOCUP_CONFIG"] = cfg
        try:
            core.reload_config()
            task = store.Task(id=7, title="ورزش", description="", priority=2, date="2024-03-20", time="07:00",
                              repeat_daily=False, is_completed=False, created_at="", updated_at="")
            out = cli.render_task_panel(task, "Task")
            expect(isinstance(out, cli.Text), f"fast mode renders plain text, got {type(out).__name__}")
            expect("1403/01/01" in out.plain and "07:00" in out.plain, out.plain)
        finally:
            if old is None:
                os.environ.pop("TODOCUP_CONFIG", None)
            else:
                os.environ["TODOCUP_CONFIG"] = old
            core.reload_config()
        expect(isinstance(cli.render_task_panel(task, "Task"), cli.Panel), "rich mode renders a panel")


# -------- Health check --------------------------------------------------------

def test_health_check_ok_and_warn():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        quiet(run_cli, db, "2024-03-19", "add", "ورزش", "--time", "07:00", "--repeat")
        code = quiet(health.main, ["--db", db, "--today", "2024-03-19", "--json"])
        expect(code == 0, f"healthy db exit {code}")
        conn = store.open_database(db)
        try:
            conn.run("INSERT INTO tasks (title, priority, date, time) VALUES ('ورزش', 2, '2024-03-19', '07:00')")
        finally:
            conn.close()
        code = quiet(health.main, ["--db", db, "--today", "2024-03-19", "--json"])
        expect(code == 1, f"duplicate row should warn, got {code}")
        code = quiet(health.main, ["--db", db, "--today", "2024-06-01", "--json"])
        expect(code == 2, f"stale watermark should be critical, got {code}")

def test_future_watermark_reported_as_warning():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "t.db")
        quiet(run_cli, db, "2024-03-25", "add", "ورزش", "--time", "07:00", "--repeat")
        buf = StringIO()
        with redirect_stdout(buf):
            code = health.main(["--db", db, "--today", "2024-03-19", "--json"])
        payload = json.loads(buf.getvalue())
        expect(code == 1, f"future watermark warns, got {code}")
        expect(payload["metrics"]["watermark_lag_days"] == -6, f"negative lag kept: {payload['metrics']}")
        chk = [c for c in payload["checks"] if c["name"] == "watermark_lag_days"][0]
        expect(chk["status"] == "warn" and "future" in chk["message"], f"{chk}")
        with cli.console.capture() as cap:
            cli.self_check(db, core.fixed_clock("2024-03-19"))
        out = cap.get()
        expect("resets it to today" in out and "waits" not in out, out)

def test_health_check_missing_db():
    with tempfile.TemporaryDirectory() as tmp:
        code = quiet(health.main, ["--db", os.path.join(tmp, "nope.db"), "--json"])
        expect(code == 2, f"missing db is critical, got {code}")


TESTS = [
    test_parse_date_arg_forms,
    test_parse_date_arg_rejects,
    test_add_then_next_start_projects,
    test_add_with_jalali_date_and_edit,
    test_errors_exit_one,
    test_calendar_profile_and_self_check,
    test_pick_date_stops_at_calendar_edge,
    test_plain_panel_mode,
    test_health_check_ok_and_warn,
    test_future_watermark_reported_as_warning,
    test_health_check_missing_db,
]

def main():
    import argparse
    ap = argparse.ArgumentParser()
    ap.add_argument("--only", help="substring filter for test names")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    selected = TESTS
    if args.only:
        selected = [fn for fn in TESTS if args.only.lower() in fn.__name__.lower()]

    fails = 0
    for fn in selected:
        try:
            fn()
            if args.verbose:
                print(f"✓ {fn.__name__}")
        except AssertionError as e:
            fails += 1
            print(f"✗ {fn.__name__}: {e}")
        except Exception as e:
            fails += 1
            print(f"✗ {fn.__name__}: unexpected error {e}")

    total = len(selected)
    print(f"\nDone: {total - fails}/{total} passing")
    sys.exit(1 if fails else 0)

if __name__ == "__main__":
    main()
