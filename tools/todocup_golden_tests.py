#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
todocup Golden Tests
 - Imports local todocup_calendar.py / todocup_core.py
 - Verifies Gregorian <-> Jalali conversion against known dates, leap years,
   month lengths, Saturday-first weekday offsets and the month cursor
 - Covers the core helpers the other modules lean on: ISO parsing, HH:mm,
   clock helpers, config accessors, diag redaction

Run:
  python3 todocup_golden_tests.py
Optional:
  python3 todocup_golden_tests.py --only leap --verbose
"""

import importlib
import sys, os, re
import tempfile
from datetime import date, timedelta

HERE = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(HERE)
sys.path.insert(0, ROOT)

cal = importlib.import_module("todocup_calendar")
core = importlib.import_module("todocup_core")

# -------- Helpers -------------------------------------------------------------

def expect(cond, msg):
    if not cond:
        raise AssertionError(msg)

def jparts(jy, jm, jd):
    return cal.JalaliDateParts(jy, jm, jd)

# Known conversions (Gregorian ISO, Jalali y/m/d)
KNOWN = [
    ("1979-02-11", (1357, 11, 22)),
    ("1989-06-04", (1368, 3, 14)),
    ("2000-01-01", (1378, 10, 11)),
    ("2023-03-21", (1402, 1, 1)),
    ("2024-03-19", (1402, 12, 29)),
    ("2024-03-20", (1403, 1, 1)),
    ("2024-09-22", (1403, 7, 1)),
    ("2025-03-20", (1403, 12, 30)),
    ("2025-03-21", (1404, 1, 1)),
]

# -------- Conversion ----------------------------------------------------------

def test_known_dates():
    for iso, (jy, jm, jd) in KNOWN:
        got = cal.iso_to_jalali_parts(iso)
        expect(got == jparts(jy, jm, jd), f"{iso} -> {got}, want {jy}/{jm}/{jd}")
        back = cal.jalali_parts_to_iso(jparts(jy, jm, jd))
        expect(back == iso, f"{jy}/{jm}/{jd} -> {back}, want {iso}")

def test_round_trip_1900_2100():
    d = date(1900, 1, 1)
    end = date(2100, 12, 31)
    prev = None
    while d <= end:
        parts = cal.date_to_jalali_parts(d)
        expect(cal.jalali_parts_to_date(parts) == d, f"round trip broke at {d}")
        if prev is not None:
            # consecutive Gregorian days map to consecutive Jalali days
            if parts.jd != 1:
                expect(parts.jy == prev.jy and parts.jm == prev.jm and parts.jd == prev.jd + 1,
                       f"{d}: {prev} -> {parts} is not the next day")
            else:
                expect(prev.jd == cal.jalali_month_length(prev.jy, prev.jm),
                       f"{d}: month rolled over early from {prev}")
        prev = parts
        d += timedelta(days=1)

def test_format_pads_month_and_day():
    expect(cal.format_jalali_date("2024-03-20") == "1403/01/01", "Nowruz 1403 formatting")
    expect(cal.format_jalali_date("2000-01-01") == "1378/10/11", "Y2K formatting")
    expect(str(jparts(1403, 7, 5)) == "1403/07/05", "JalaliDateParts str")
    expect(cal.format_date_to_jalali(date(2025, 3, 20)) == "1403/12/30", "Esfand 30 formatting")

def test_format_fallback_returns_input():
    for bad in ("not-a-date", "2024-02-30", "2024-13-01", "", "2024/03/20"):
        expect(cal.format_jalali_date(bad) == bad, f"fallback must echo {bad!r}")
        expect(cal.format_jalali_long(bad) == bad, f"long fallback must echo {bad!r}")

def test_format_long():
    expect(cal.format_jalali_long("2024-03-20", latin=True) == "1 Farvardin 1403", "latin long label")
    expect(cal.format_jalali_long("2024-03-20") == "1 فروردین 1403", "persian long label")

def test_invalid_gregorian_rejected():
    expect(cal.iso_to_jalali_parts("2024-02-30") is None, "Feb 30 must not normalize")
    expect(cal.iso_to_jalali_parts("2023-02-29") is None, "Feb 29 on a common year")
    expect(cal.iso_to_jalali_parts("2024-2-3") is None, "unpadded ISO is malformed")
    expect(cal.iso_to_jalali_parts(None) is None, "None input")
    expect(cal.iso_to_jalali_parts("2024-02-29") == jparts(1402, 12, 10), "real leap day converts")

def test_out_of_range_years():
    expect(cal.iso_to_jalali_parts("3800-01-01") is None, "beyond the break table")
    try:
        cal.jalali_parts_to_iso(jparts(3200, 1, 1))
        raise AssertionError("year 3200 must raise CalendarRangeError")
    except cal.CalendarRangeError:
        pass

def test_invalid_jalali_parts():
    for jy, jm, jd in ((1404, 12, 30), (1403, 13, 1), (1403, 0, 1), (1403, 7, 31), (1403, 1, 0)):
        expect(not cal.is_valid_jalali_date(jy, jm, jd), f"{jy}/{jm}/{jd} must be invalid")
        try:
            cal.jalali_parts_to_iso(jparts(jy, jm, jd))
            raise AssertionError(f"{jy}/{jm}/{jd} must raise")
        except cal.CalendarRangeError:
            pass

def test_parse_jalali():
    expect(cal.parse_jalali("1403/1/1") == jparts(1403, 1, 1), "short form")
    expect(cal.parse_jalali("1403-01-01") == jparts(1403, 1, 1), "dashed form")
    expect(cal.parse_jalali(" 1403/12/30 ") == jparts(1403, 12, 30), "whitespace, leap Esfand")
    expect(cal.parse_jalali("1404/12/30") is None, "non-leap Esfand 30")
    expect(cal.parse_jalali("farvardin") is None, "garbage")

# -------- Leap years & month lengths ------------------------------------------

def test_leap_years():
    leap = (1370, 1375, 1379, 1383, 1387, 1391, 1395, 1399, 1403, 1408)
    common = (1400, 1401, 1402, 1404, 1405, 1406, 1407)
    for y in leap:
        expect(cal.is_jalali_leap_year(y), f"{y} should be leap")
    for y in common:
        expect(not cal.is_jalali_leap_year(y), f"{y} should not be leap")

def test_leap_matches_year_length():
    for jy in range(1300, 1500):
        start = cal.jalali_parts_to_date(jparts(jy, 1, 1))
        nxt = cal.jalali_parts_to_date(jparts(jy + 1, 1, 1))
        length = (nxt - start).days
        want = 366 if cal.is_jalali_leap_year(jy) else 365
        expect(length == want, f"{jy} has {length} days, leap flag says {want}")

def test_month_lengths():
    for jm in range(1, 7):
        expect(cal.jalali_month_length(1402, jm) == 31, f"month {jm} has 31 days")
    for jm in range(7, 12):
        expect(cal.jalali_month_length(1402, jm) == 30, f"month {jm} has 30 days")
    expect(cal.jalali_month_length(1402, 12) == 29, "Esfand 1402 has 29 days")
    expect(cal.jalali_month_length(1403, 12) == 30, "Esfand 1403 has 30 days")
    try:
        cal.jalali_month_length(1403, 13)
        raise AssertionError("month 13 must raise")
    except cal.CalendarRangeError:
        pass

# -------- Week layout ---------------------------------------------------------

def test_weekday_offsets():
    expect(cal.jalali_weekday_offset(1403, 1) == 4, "1403/1/1 is a Wednesday")
    expect(cal.jalali_weekday_offset(1402, 1) == 3, "1402/1/1 is a Tuesday")
    expect(cal.jalali_weekday_offset(1404, 1) == 6, "1404/1/1 is a Friday")
    expect(cal.jalali_weekday_offset(1403, 7) == 1, "1403/7/1 is a Sunday")
    expect(cal.saturday_first_column(date(2024, 3, 16)) == 0, "Saturday is column 0")

def test_is_friday():
    expect(cal.is_friday("2025-03-21"), "Nowruz 1404 is a Friday")
    expect(not cal.is_friday("2024-03-20"), "Nowruz 1403 is a Wednesday")
    expect(not cal.is_friday("garbage"), "bad input is not a Friday")

def test_month_grid():
    weeks = cal.JalaliMonthCursor(1403, 1).weeks()
    expect(len(weeks) == 5, f"Farvardin 1403 spans 5 rows, got {len(weeks)}")
    expect(weeks[0] == [None, None, None, None, 1, 2, 3], f"first row {weeks[0]}")
    expect(weeks[-1][cal.FRIDAY_COLUMN] == 31, "1403/1/31 falls on a Friday")
    expect(all(len(w) == 7 for w in weeks), "rows are 7 wide")

# -------- Month cursor --------------------------------------------------------

def test_cursor_clamps_day():
    c = cal.JalaliMonthCursor(1403, 6, 31).next_month()
    expect((c.jy, c.jm, c.day) == (1403, 7, 30), f"31 Shahrivar -> {c}")
    c = cal.JalaliMonthCursor(1403, 12, 30).next_month()
    expect((c.jy, c.jm, c.day) == (1404, 1, 30), f"Esfand 30 -> {c}")
    c = cal.JalaliMonthCursor(1404, 1, 30).prev_month()
    expect((c.jy, c.jm, c.day) == (1403, 12, 30), f"leap Esfand keeps 30: {c}")
    c = cal.JalaliMonthCursor(1405, 1, 30).prev_month()
    expect((c.jy, c.jm, c.day) == (1404, 12, 29), f"common Esfand clamps to 29: {c}")

def test_cursor_year_rollover():
    c = cal.JalaliMonthCursor(1403, 1, 15).prev_month()
    expect((c.jy, c.jm) == (1402, 12), f"prev of Farvardin: {c}")
    c = cal.JalaliMonthCursor(1403, 1).shift(-13)
    expect((c.jy, c.jm) == (1401, 12), f"shift(-13): {c}")
    c = cal.JalaliMonthCursor(1403, 11).shift(14)
    expect((c.jy, c.jm) == (1405, 1), f"shift(14): {c}")

def test_cursor_select_and_iso():
    c = cal.JalaliMonthCursor.from_iso("2024-03-19")
    expect((c.jy, c.jm, c.day) == (1402, 12, 29), f"from_iso: {c}")
    expect(c.selected_iso == "2024-03-19", "selected_iso round trips")
    expect(c.select(1).selected_iso == "2024-02-20", "1 Esfand 1402")
    try:
        c.select(30)
        raise AssertionError("Esfand 1402 has no 30th")
    except cal.CalendarRangeError:
        pass
    fb = cal.JalaliMonthCursor.from_iso("bad", fallback_iso="2024-03-20")
    expect((fb.jy, fb.jm, fb.day) == (1403, 1, 1), "fallback cursor")
    t = cal.JalaliMonthCursor.today(core.fixed_clock("2025-03-20"))
    expect((t.jy, t.jm, t.day) == (1403, 12, 30), f"today cursor {t}")

def test_add_days_iso():
    expect(cal.add_days_iso("2024-03-19", 1) == "2024-03-20", "+1")
    expect(cal.add_days_iso("2024-03-01", -1) == "2024-02-29", "-1 across leap Feb")
    try:
        cal.add_days_iso("1403/01/01", 1)
        raise AssertionError("non-ISO must raise")
    except ValueError:
        pass

# -------- Core helpers --------------------------------------------------------

def test_iso_and_time_helpers():
    expect(core.is_iso_date("2024-02-29") and not core.is_iso_date("2023-02-29"), "leap day check")
    expect(core.is_hhmm("07:00") and core.is_hhmm("23:59"), "valid times")
    for bad in ("7:00", "24:00", "12:60", "0700", None):
        expect(not core.is_hhmm(bad), f"{bad!r} is not HH:mm")
    expect(core.next_day_iso("2024-12-31") == "2025-01-01", "year rollover")
    expect(core.next_day_iso("2024-02-28") == "2024-02-29", "leap rollover")
    try:
        core.next_day_iso("2024-02-30")
        raise AssertionError("next_day_iso must reject impossible dates")
    except ValueError:
        pass

def test_normalize_iso_date():
    clock = core.fixed_clock("2024-03-19")
    expect(core.normalize_iso_date("2024-03-20") == "2024-03-20", "ISO passes through")
    expect(core.normalize_iso_date("March 20, 2024") == "2024-03-20", "dateutil text")
    expect(core.normalize_iso_date(date(2024, 3, 20)) == "2024-03-20", "date object")
    expect(core.normalize_iso_date("2024-02-30") is None, "impossible ISO is not guessed")
    expect(core.normalize_iso_date("", fallback_to_today=True, clock=clock) == "2024-03-19", "fallback")
    expect(core.normalize_iso_date("zzz", fallback_to_today=True, clock=clock) == "2024-03-19", "garbage fallback")

def test_clock_helpers():
    clock = core.fixed_clock("2024-03-19", "23:30")
    expect(core.today_iso(clock) == "2024-03-19", "today")
    expect(core.tomorrow_iso(clock) == "2024-03-20", "tomorrow")
    expect(core.today_jalali(clock) == "1402/12/29", "today in Jalali")
    expect(core.tomorrow_jalali(clock) == "1403/01/01", "tomorrow in Jalali")
    stamp = core.now_iso(clock)
    expect(re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", stamp), f"now_iso shape {stamp}")

def test_config_from_env_path():
    old = os.environ.get("TODOCUP_CONFIG")
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "todocup.toml")
        with open(path, "w", encoding="utf-8") as f:
            f.write('Default_Priority = 9\ntheme = "dark"\nstore_timeout = "oops"\n')
        os.environ["TODOCUP_CONFIG"] = path
        try:
            core.reload_config()
            expect(core.conf_str("theme", "system") == "dark", "theme from file")
            expect(core.conf_int("default_priority", 2, min_value=1, max_value=3) == 3, "clamped + case-folded key")
            expect(core.conf_float("store_timeout", 5.0) == 5.0, "bad float falls back")
        finally:
            if old is None:
                os.environ.pop("TODOCUP_CONFIG", None)
            else:
                os.environ["TODOCUP_CONFIG"] = old
            core.reload_config()

def test_diag_redaction():
    red = core.diag_log_redact({"title": "ورزش", "email": "a@b.c", "id": 4})
    expect(red["title"] == "[redacted]" and red["email"] == "[redacted]", "personal fields redacted")
    expect(red["id"] == 4, "ids kept")

def test_task_validation():
    ok = {"title": "ورزش", "priority": 2, "date": "2024-03-19", "time": "07:00"}
    core.validate_task_input(ok)
    cases = [
        dict(ok, title="x"),
        dict(ok, title="  a "),
        dict(ok, priority=4),
        dict(ok, priority=True),
        dict(ok, date="1403/01/01"),
        dict(ok, time="7:00"),
    ]
    for bad in cases:
        try:
            core.validate_task_input(bad)
            raise AssertionError(f"must reject {bad}")
        except core.ValidationError:
            pass

def test_settings_check():
    core.check_settings({"theme": "dark", "lastRepeatCheck": "2024-03-19", "age": 30, "extra": 1})
    for bad in ({"theme": "blue"}, {"lastRepeatCheck": "yesterday"}, {"age": -1}, {"email": 3}, []):
        try:
            core.check_settings(bad)
            raise AssertionError(f"must reject {bad!r}")
        except core.SettingsDecodeError:
            pass

def test_safe_lock_excludes_second_holder():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "x.lock")
        with core.safe_lock(path) as first:
            expect(first, "first lock acquired")
            with core.safe_lock(path, retries=2, sleep_base=0.0) as second:
                expect(not second, "second holder must be refused")
        with core.safe_lock(path) as again:
            expect(again, "lock is free after release")
    with core.safe_lock("") as none:
        expect(none is False, "empty path yields False")


TESTS = [
    test_known_dates,
    test_round_trip_1900_2100,
    test_format_pads_month_and_day,
    test_format_fallback_returns_input,
    test_format_long,
    test_invalid_gregorian_rejected,
    test_out_of_range_years,
    test_invalid_jalali_parts,
    test_parse_jalali,
    test_leap_years,
    test_leap_matches_year_length,
    test_month_lengths,
    test_weekday_offsets,
    test_is_friday,
    test_month_grid,
    test_cursor_clamps_day,
    test_cursor_year_rollover,
    test_cursor_select_and_iso,
    test_add_days_iso,
    test_iso_and_time_helpers,
    test_normalize_iso_date,
    test_clock_helpers,
    test_config_from_env_path,
    test_diag_redaction,
    test_task_validation,
    test_settings_check,
    test_safe_lock_excludes_second_holder,
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
