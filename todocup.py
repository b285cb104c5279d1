#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
todocup: a Jalali-calendar to-do list for the terminal.

Every command (except self-check) first runs the app init sequence: load or
create the profile, load today's tasks, run the daily repeat check. A failed
repeat check is reported and the command still runs; the watermark is left
alone so the next start retries.

Dates on the command line may be ISO (2024-03-20), Jalali (1403/01/01),
today/tomorrow (also امروز/فردا), or anything dateutil can parse.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from rich import box
from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from prompt_toolkit import prompt
from prompt_toolkit.completion import FuzzyCompleter, WordCompleter

import todocup_core as core
from todocup_core import (
    Clock,
    TodocupError,
    ValidationError,
    RepeatCheckError,
    SettingsDecodeError,
    THEMES,
)
from todocup_calendar import (
    CalendarRangeError,
    JalaliMonthCursor,
    WEEKDAYS_FA,
    WEEKDAYS_LATIN,
    FRIDAY_COLUMN,
    MONTH_NAMES_LATIN,
    format_jalali_date,
    format_jalali_long,
    jalali_parts_to_iso,
    parse_jalali,
)
from todocup_store import Task, TaskStore, ProfileStore, Profile, open_database
from todocup_repeat import RepeatCheckResult, run_daily_repeat_check, WATERMARK_KEY


# ──────────────────────────────────────────────────────────────────────────────
# Constants / styling
# ──────────────────────────────────────────────────────────────────────────────
console = Console()

PALETTES = {
    "dark": {
        "primary": "bright_cyan",
        "secondary": "bright_blue",
        "success": "green",
        "warning": "bright_yellow",
        "error": "bright_red",
        "muted": "grey58",
        "accent": "bright_magenta",
        "friday": "red",
    },
    "light": {
        "primary": "dark_cyan",
        "secondary": "blue",
        "success": "dark_green",
        "warning": "dark_orange3",
        "error": "red3",
        "muted": "grey42",
        "accent": "magenta",
        "friday": "red3",
    },
}
COLORS = dict(PALETTES["dark"])

PRIORITY_LABELS = {1: "low", 2: "medium", 3: "high"}
PRIORITY_STYLES = {1: "muted", 2: "warning", 3: "error"}

_TODAY_WORDS = {"today", "امروز"}
_TOMORROW_WORDS = {"tomorrow", "فردا"}


def _apply_theme(theme: str | None) -> None:
    name = (theme or "system").lower()
    if name not in PALETTES:
        name = "dark"
    COLORS.clear()
    COLORS.update(PALETTES[name])


def _c(key: str) -> str:
    return COLORS.get(key, "white")


# ──────────────────────────────────────────────────────────────────────────────
# Input helpers
# ──────────────────────────────────────────────────────────────────────────────
def parse_date_arg(value: str | None, clock: Clock | None = None) -> str:
    """CLI date -> ISO. Slash dates with a year below 1700 are read as Jalali."""
    if value is None or not str(value).strip():
        return core.today_iso(clock)
    s = str(value).strip()
    if s.lower() in _TODAY_WORDS:
        return core.today_iso(clock)
    if s.lower() in _TOMORROW_WORDS:
        return core.tomorrow_iso(clock)
    if "/" in s:
        head = s.split("/", 1)[0].lstrip("-")
        if head.isdigit() and int(head) < 1700:
            parts = parse_jalali(s)
            if parts is None:
                raise ValidationError(f"Not a Jalali date: {s}")
            return jalali_parts_to_iso(parts)
    iso = core.normalize_iso_date(s, clock=clock)
    if iso is None:
        raise ValidationError(f"Cannot read date: {s}")
    return iso


def _parse_month_arg(value: str) -> JalaliMonthCursor:
    s = value.strip().replace("-", "/")
    bits = s.split("/")
    if len(bits) != 2 or not all(b.strip().isdigit() for b in bits):
        raise ValidationError(f"Month must look like 1403/01, got: {value}")
    try:
        return JalaliMonthCursor(int(bits[0]), int(bits[1]), 1)
    except CalendarRangeError as e:
        raise ValidationError(str(e))


def _fail(title: str, msg: str) -> None:
    console.print(Panel(Text(msg), title=f"❌ {title}", border_style=_c("error"), expand=False))
    sys.exit(1)


# ──────────────────────────────────────────────────────────────────────────────
# App state (the init sequence)
# ──────────────────────────────────────────────────────────────────────────────
class TodoApp:
    def __init__(self, db_path: str | None = None, clock: Clock | None = None):
        self.clock = clock
        self.db = open_database(db_path)
        self.tasks = TaskStore(self.db, clock)
        self.profiles = ProfileStore(self.db)
        self.profile: Optional[Profile] = None
        self.today_tasks: List[Task] = []
        self.initialized = False
        self.init_result: RepeatCheckResult | None = None

    @property
    def today(self) -> str:
        return core.today_iso(self.clock)

    def load_profile(self) -> Profile:
        self.profile = self.profiles.ensure_profile()
        _apply_theme(self.profile.settings.get("theme") or core.conf_str("theme", "system"))
        return self.profile

    def load_tasks(self) -> List[Task]:
        self.today_tasks = self.tasks.fetch_tasks(self.today)
        self.initialized = True
        return self.today_tasks

    def run_daily_repeat_check(self) -> RepeatCheckResult:
        result = run_daily_repeat_check(self.tasks, self.profiles, self.clock)
        if result.created > 0 or not self.initialized:
            self.load_tasks()
        if not result.skipped:
            self.profile = self.profiles.fetch_profile() or self.profile
        return result

    def init(self) -> RepeatCheckResult | None:
        self.load_profile()
        self.load_tasks()
        try:
            return self.run_daily_repeat_check()
        except RepeatCheckError as e:
            console.print(Panel(Text(str(e)), title="⚠️  Repeat check", border_style=_c("warning"), expand=False))
            return None

    def close(self) -> None:
        self.db.close()


# ──────────────────────────────────────────────────────────────────────────────
# Rendering
# ──────────────────────────────────────────────────────────────────────────────
def _priority_text(p: int) -> Text:
    return Text(PRIORITY_LABELS.get(p, str(p)), style=_c(PRIORITY_STYLES.get(p, "muted")))


def render_task_table(tasks: List[Task], iso_day: str) -> Panel:
    title = f"📋 {format_jalali_long(iso_day)}  ·  {format_jalali_date(iso_day)}  ·  {iso_day}"
    if not tasks:
        return Panel(Align.center(Text("No tasks for this day.", style=_c("muted"))),
                     title=title, border_style=_c("secondary"), expand=False)
    table = Table(box=box.SIMPLE_HEAD, show_lines=False, expand=False)
    table.add_column("#", justify="right", style=_c("muted"))
    table.add_column("Time", style=_c("primary"))
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("🔁", justify="center")
    table.add_column("✓", justify="center")
    for t in tasks:
        title_text = Text(t.title, style="strike " + _c("muted") if t.is_completed else "")
        if t.description:
            title_text.append(f"\n{t.description}", style=_c("muted"))
        table.add_row(
            str(t.id),
            t.time,
            title_text,
            _priority_text(t.priority),
            "🔁" if t.repeat_daily else "",
            "✅" if t.is_completed else "",
        )
    done = sum(1 for t in tasks if t.is_completed)
    return Panel(table, title=title, subtitle=f"{done}/{len(tasks)} done",
                 border_style=_c("secondary"), expand=False)


def _kv_panel(title: str, rows: list, kind: str = "success"):
    """Label/value panel; panel_mode "fast" (or "plain") prints bare lines instead of a box."""
    mode = core.conf_str("panel_mode", "rich").lower()
    if mode in ("fast", "plain"):
        width = max((len(k) for k, _v in rows), default=0)
        out = Text(title, style="bold")
        for k, v in rows:
            out.append(f"\n{k.rjust(width)}  ")
            out.append(v if isinstance(v, Text) else Text(str(v)))
        return out
    t = Table.grid(padding=(0, 1))
    t.add_column(style=f"bold {_c('primary')}", justify="right", no_wrap=True)
    t.add_column()
    for k, v in rows:
        t.add_row(k, v)
    return Panel(t, title=title, border_style=_c(kind), expand=False)


def render_task_panel(task: Task, heading: str):
    rows = [("Id", str(task.id)), ("Title", task.title)]
    if task.description:
        rows.append(("Description", task.description))
    rows += [
        ("Date", f"{format_jalali_date(task.date)}  ({task.date})"),
        ("Time", task.time),
        ("Priority", _priority_text(task.priority)),
        ("Repeat", "daily" if task.repeat_daily else "no"),
        ("Done", "yes" if task.is_completed else "no"),
    ]
    return _kv_panel(heading, rows, "success")


def render_month(cursor: JalaliMonthCursor, today_iso: str, marked: set[str] | None = None,
                 latin: bool = False) -> Panel:
    """Saturday-first month grid; Fridays in red, today reversed, selected day in the accent color, task days dotted."""
    marked = marked or set()
    labels = WEEKDAYS_LATIN if latin else WEEKDAYS_FA
    table = Table(show_header=True, box=None, padding=(0, 1))
    for idx, label in enumerate(labels):
        style = _c("friday") if idx == FRIDAY_COLUMN else _c("muted")
        table.add_column(label, justify="center", min_width=3, header_style=f"bold {style}")
    for week in cursor.weeks():
        row = []
        for col, day in enumerate(week):
            if day is None:
                row.append("")
                continue
            iso = cursor.iso_for(day)
            style = _c("friday") if col == FRIDAY_COLUMN else ""
            if iso in marked:
                style = f"{style} underline".strip()
            if iso == today_iso:
                style = f"{style} reverse".strip()
            if day == cursor.day:
                style = f"bold {_c('accent')} {style}".strip()
            cell = Text(f"{day:2d}", style=style)
            if iso in marked:
                cell.append("•", style=_c("success"))
            row.append(cell)
        table.add_row(*row)
    title = f"📅 {cursor.title}  ({MONTH_NAMES_LATIN[cursor.jm - 1]})"
    footer = f"selected {format_jalali_date(cursor.selected_iso)} · {cursor.selected_iso}"
    return Panel(table, title=title, subtitle=footer, border_style=_c("primary"), expand=False)


def _marked_days(app: TodoApp, cursor: JalaliMonthCursor) -> set[str]:
    start = cursor.iso_for(1)
    end = cursor.iso_for(cursor.days_in_month)
    return {t.date for t in app.tasks.fetch_range(start, end)}


def render_repeat_result(result: RepeatCheckResult | None, today_iso: str):
    rows: list = []
    if result is None:
        rows.append(("Status", Text("failed (will retry on next start)", style=_c("error"))))
    elif result.skipped:
        rows.append(("Status", Text("skipped: another check is running", style=_c("warning"))))
    else:
        rows.append(("Created", str(result.created)))
        rows.append(("Checked", f"{format_jalali_date(result.last_checked or '')}  ({result.last_checked})"))
    rows.append(("Today", f"{format_jalali_date(today_iso)}  ({today_iso})"))
    return _kv_panel("🔁 Daily repeat", rows, "secondary")


def render_profile(profile: Profile):
    s = profile.settings
    rows: list = [("Name", profile.name), ("Theme", str(s.get("theme") or "system"))]
    if s.get("email"):
        rows.append(("Email", str(s["email"])))
    if s.get("age") is not None:
        rows.append(("Age", str(s["age"])))
    lrc = s.get(WATERMARK_KEY)
    rows.append(("Last repeat", f"{format_jalali_date(lrc)}  ({lrc})" if lrc else "never"))
    return _kv_panel("👤 Profile", rows, "accent")


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────
def cmd_list(app: TodoApp, args) -> int:
    day = parse_date_arg(args.date, app.clock)
    tasks = app.today_tasks if day == app.today else app.tasks.fetch_tasks(day)
    console.print(render_task_table(tasks, day))
    return 0


def cmd_add(app: TodoApp, args) -> int:
    data = {
        "title": args.title,
        "description": args.description,
        "priority": args.priority,
        "date": parse_date_arg(args.date, app.clock),
        "time": args.time,
        "repeat_daily": args.repeat,
    }
    task = app.tasks.create_task(data)
    console.print(render_task_panel(task, "✨ Task added"))
    return 0


def cmd_edit(app: TodoApp, args) -> int:
    changes: dict = {}
    if args.title is not None:
        changes["title"] = args.title
    if args.description is not None:
        changes["description"] = args.description
    if args.priority is not None:
        changes["priority"] = args.priority
    if args.date is not None:
        changes["date"] = parse_date_arg(args.date, app.clock)
    if args.time is not None:
        changes["time"] = args.time
    if not changes:
        raise ValidationError("Nothing to change.")
    task = app.tasks.update_task(args.id, changes)
    console.print(render_task_panel(task, "📝 Task updated"))
    return 0


def cmd_done(app: TodoApp, args) -> int:
    task = app.tasks.toggle_completed(args.id, force=not args.undo)
    console.print(render_task_panel(task, "✅ Completed" if task.is_completed else "↩️  Reopened"))
    return 0


def cmd_repeat(app: TodoApp, args) -> int:
    task = app.tasks.toggle_repeat(args.id)
    console.print(render_task_panel(task, "🔁 Repeat on" if task.repeat_daily else "⏹  Repeat off"))
    return 0


def cmd_delete(app: TodoApp, args) -> int:
    task = app.tasks.get_task(args.id)
    app.tasks.delete_task(task.id)
    console.print(f"[{_c('error')}]🗑️  Deleted[/] {task.title} ({format_jalali_date(task.date)})")
    return 0


def _cursor_for(app: TodoApp, args) -> JalaliMonthCursor:
    if getattr(args, "month", None):
        return _parse_month_arg(args.month)
    iso = parse_date_arg(getattr(args, "date", None), app.clock)
    return JalaliMonthCursor.from_iso(iso, fallback_iso=app.today)


def cmd_calendar(app: TodoApp, args) -> int:
    cursor = _cursor_for(app, args)
    console.print(render_month(cursor, app.today, _marked_days(app, cursor), latin=args.latin))
    return 0


def pick_date(app: TodoApp, cursor: JalaliMonthCursor, latin: bool = False) -> str | None:
    """Interactive month cursor; returns the confirmed ISO date or None when cancelled."""
    completer = FuzzyCompleter(WordCompleter(["n", "p", "t", "q"]))
    console.print(Panel("n/p: next/previous month · t: today · <day>: select · enter: confirm · q: cancel",
                        title="Date picker", border_style=_c("primary"), expand=False))
    while True:
        console.print(render_month(cursor, app.today, _marked_days(app, cursor), latin=latin))
        try:
            answer = prompt("❯ ", completer=completer).strip().lower()
        except (KeyboardInterrupt, EOFError):
            return None
        if answer == "":
            return cursor.selected_iso
        if answer == "q":
            return None
        if answer in ("n", "p"):
            try:
                cursor = cursor.next_month() if answer == "n" else cursor.prev_month()
            except CalendarRangeError as e:
                console.print(f"[{_c('error')}]{e}[/]")
        elif answer == "t":
            cursor = JalaliMonthCursor.today(app.clock)
        elif answer.isdigit():
            try:
                cursor = cursor.select(int(answer))
            except CalendarRangeError as e:
                console.print(f"[{_c('error')}]{e}[/]")
        else:
            console.print(f"[{_c('error')}]Unknown input: {answer}[/]")


def cmd_pick_date(app: TodoApp, args) -> int:
    chosen = pick_date(app, _cursor_for(app, args), latin=args.latin)
    if chosen is None:
        console.print(f"[{_c('warning')}]Cancelled[/]")
        return 1
    console.print(chosen)
    return 0


def cmd_profile(app: TodoApp, args) -> int:
    settings: dict = {}
    if args.theme is not None:
        settings["theme"] = args.theme
    if args.email is not None:
        settings["email"] = args.email
    if args.age is not None:
        settings["age"] = args.age
    data: dict = {}
    if args.name is not None:
        data["name"] = args.name
    if settings:
        data["settings"] = settings
    profile = app.profiles.upsert_profile(data) if data else app.profiles.ensure_profile()
    _apply_theme(profile.settings.get("theme"))
    console.print(render_profile(profile))
    return 0


def cmd_check_repeat(app: TodoApp, args) -> int:
    console.print(render_repeat_result(app.init_result, app.today))
    return 0 if app.init_result is not None else 1


def _emit_check(status: str, label: str, detail: str) -> None:
    color = {"OK": _c("success"), "WARN": _c("warning"), "FAIL": _c("error")}.get(status, _c("muted"))
    console.print(f"[{color}]{status:>4}[/] {label}: {detail}")


def self_check(db_path: str | None, clock: Clock | None) -> int:
    console.print("[bold]todocup self-check[/bold]")
    ok = True

    existing = [p for p in core._config_paths() if os.path.exists(p)]
    if existing:
        try:
            data = core._read_toml(existing[0])
            _emit_check("OK" if data else "WARN", "config", existing[0] + ("" if data else " (empty or parse error)"))
        except RuntimeError as e:
            ok = False
            _emit_check("FAIL", "config", str(e))
    else:
        _emit_check("WARN", "config", "no config file found; defaults in use")
    if core.tomllib is None:
        _emit_check("WARN", "toml", "no TOML parser (install tomli or use Python 3.11+)")

    path = db_path or core.db_path()
    try:
        db = open_database(path)
    except TodocupError as e:
        _emit_check("FAIL", "database", str(e))
        return 1
    _emit_check("OK", "database", path)

    try:
        tasks = TaskStore(db, clock)
        repeating = tasks.query_repeating()
        _emit_check("OK", "repeating tasks", str(len(repeating)))
    except TodocupError as e:
        ok = False
        _emit_check("FAIL", "tasks", str(e))

    today = core.today_iso(clock)
    try:
        lrc = ProfileStore(db).get_setting(WATERMARK_KEY)
        if lrc is None:
            _emit_check("WARN", "watermark", "repeat check never ran")
        elif lrc == today:
            _emit_check("OK", "watermark", f"{lrc} (current)")
        elif lrc > today:
            _emit_check("WARN", "watermark", f"{lrc} is in the future; the next check runs and resets it to today")
        else:
            _emit_check("WARN", "watermark", f"{lrc} (stale; runs on next start)")
    except SettingsDecodeError as e:
        ok = False
        _emit_check("FAIL", "profile settings", f"{e} (fix: todocup profile --reset-settings)")
    finally:
        db.close()

    return 0 if ok else 1


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="todocup",
        description="Jalali-calendar to-do list",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", help="Database path (default from config / TODOCUP_DATA)")
    parser.add_argument("--today", help=argparse.SUPPRESS)
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("list", help="Show tasks for a day")
    p.add_argument("--date", help="Day to show (default today)")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("add", help="Add a task")
    p.add_argument("title")
    p.add_argument("--time", required=True, help="HH:MM")
    p.add_argument("--date", help="Day (default today)")
    p.add_argument("--priority", type=int, choices=[1, 2, 3], default=None)
    p.add_argument("--description", default=None)
    p.add_argument("--repeat", action="store_true", help="Repeat daily")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("edit", help="Edit a task")
    p.add_argument("id", type=int)
    p.add_argument("--title")
    p.add_argument("--time")
    p.add_argument("--date")
    p.add_argument("--priority", type=int, choices=[1, 2, 3])
    p.add_argument("--description")
    p.set_defaults(func=cmd_edit)

    p = sub.add_parser("done", help="Mark a task completed")
    p.add_argument("id", type=int)
    p.add_argument("--undo", action="store_true", help="Mark as not completed")
    p.set_defaults(func=cmd_done)

    p = sub.add_parser("repeat", help="Toggle daily repeat")
    p.add_argument("id", type=int)
    p.set_defaults(func=cmd_repeat)

    p = sub.add_parser("delete", help="Delete a task")
    p.add_argument("id", type=int)
    p.set_defaults(func=cmd_delete)

    for name, func, helptext in (
        ("calendar", cmd_calendar, "Show a Jalali month"),
        ("pick-date", cmd_pick_date, "Pick a date interactively"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument("--month", help="Jalali month, e.g. 1403/01")
        p.add_argument("--date", help="Day inside the month to show")
        p.add_argument("--latin", action="store_true", help="Latin weekday labels")
        p.set_defaults(func=func)

    p = sub.add_parser("profile", help="Show or update the profile")
    p.add_argument("--name")
    p.add_argument("--theme", choices=list(THEMES))
    p.add_argument("--email")
    p.add_argument("--age", type=int)
    p.add_argument("--reset-settings", action="store_true", help="Discard stored settings (also resets the repeat watermark)")
    p.set_defaults(func=cmd_profile)

    p = sub.add_parser("check-repeat", help="Run the daily repeat check and report")
    p.set_defaults(func=cmd_check_repeat)

    sub.add_parser("self-check", help="Run diagnostics")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    clock = None
    if args.today:
        if not core.is_iso_date(args.today):
            _fail("Invalid --today", f"expected YYYY-MM-DD, got {args.today}")
        clock = core.fixed_clock(args.today)

    if args.command == "self-check":
        return self_check(args.db, clock)

    try:
        app = TodoApp(args.db, clock)
    except TodocupError as e:
        _fail("Database", str(e))

    try:
        if getattr(args, "reset_settings", False):
            app.profiles.reset_settings()
            console.print(f"[{_c('warning')}]Profile settings reset.[/]")
        app.init_result = app.init()
        if args.command is None:
            console.print(render_task_table(app.today_tasks, app.today))
            return 0
        return args.func(app, args)
    except SettingsDecodeError as e:
        _fail("Profile settings", f"{e}\nRun: todocup profile --reset-settings")
    except ValidationError as e:
        _fail("Invalid input", str(e))
    except TodocupError as e:
        _fail("Error", str(e))
    except KeyboardInterrupt:
        console.print(f"\n[{_c('warning')}]Operation cancelled[/]")
        return 0
    finally:
        app.close()
    return 1


if __name__ == "__main__":
    sys.exit(main())
