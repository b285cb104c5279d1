#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Gregorian <-> Jalali (Solar Hijri) calendar math for todocup.

Pure functions only: no I/O, no clock, no shared state. Conversion uses the
33-year break table of the `jalaali` algorithm (Julian Day Number
arithmetic with truncating division). Month lengths follow the fixed
31/30/29(30) pattern.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta


# ==============================================================================
# SECTION: Constants
# ==============================================================================
# Jalali years at which the leap cycle restarts; supported range is [-61, 3178).
_BREAKS = (
    -61, 9, 38, 199, 426, 686, 756, 818, 1111, 1181, 1210,
    1635, 2060, 2097, 2192, 2262, 2324, 2394, 2456, 3178,
)
MIN_JALALI_YEAR = _BREAKS[0]
MAX_JALALI_YEAR = _BREAKS[-1] - 1

MONTH_NAMES_FA = (
    "فروردین", "اردیبهشت", "خرداد", "تیر", "مرداد", "شهریور",
    "مهر", "آبان", "آذر", "دی", "بهمن", "اسفند",
)
MONTH_NAMES_LATIN = (
    "Farvardin", "Ordibehesht", "Khordad", "Tir", "Mordad", "Shahrivar",
    "Mehr", "Aban", "Azar", "Dey", "Bahman", "Esfand",
)
# Saturday-first week; Friday is the last column.
WEEKDAYS_FA = ("ش", "ی", "د", "س", "چ", "پ", "ج")
WEEKDAYS_LATIN = ("Sa", "Su", "Mo", "Tu", "We", "Th", "Fr")
FRIDAY_COLUMN = 6

_iso_re = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class CalendarRangeError(ValueError):
    """Date outside the convertible range, or Jalali parts that are not a real day."""


@dataclass(frozen=True)
class JalaliDateParts:
    jy: int
    jm: int
    jd: int

    def __str__(self) -> str:
        return format_jalali_parts(self)


# ==============================================================================
# SECTION: Integer helpers (truncating division, as jalaali uses)
# ==============================================================================
def _div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _mod(a: int, b: int) -> int:
    return a - _div(a, b) * b


def _pad(v: int) -> str:
    return f"{v:02d}"


# ==============================================================================
# SECTION: Julian Day Number conversion
# ==============================================================================
def _jal_cal(jy: int) -> tuple[int, int, int]:
    """
    Return (gy, march, leap) for Jalali year jy.

    gy is the Gregorian year in which jy begins, march the March day of
    Farvardin 1, and leap the years since the last leap year (0 means jy
    itself is leap).
    """
    if jy < _BREAKS[0] or jy >= _BREAKS[-1]:
        raise CalendarRangeError(f"Jalali year {jy} outside supported range")
    gy = jy + 621
    leap_j = -14
    jp = _BREAKS[0]
    jump = 0
    for jm in _BREAKS[1:]:
        jump = jm - jp
        if jy < jm:
            break
        leap_j = leap_j + _div(jump, 33) * 8 + _div(_mod(jump, 33), 4)
        jp = jm
    n = jy - jp

    leap_j = leap_j + _div(n, 33) * 8 + _div(_mod(n, 33) + 3, 4)
    if _mod(jump, 33) == 4 and jump - n == 4:
        leap_j += 1
    leap_g = _div(gy, 4) - _div((_div(gy, 100) + 1) * 3, 4) - 150
    march = 20 + leap_j - leap_g

    if jump - n < 6:
        n = n - jump + _div(jump + 4, 33) * 33
    leap = _mod(_mod(n + 1, 33) - 1, 4)
    if leap == -1:
        leap = 4
    return gy, march, leap


def _g2d(gy: int, gm: int, gd: int) -> int:
    d = (
        _div((gy + _div(gm - 8, 6) + 100100) * 1461, 4)
        + _div(153 * _mod(gm + 9, 12) + 2, 5)
        + gd
        - 34840408
    )
    return d - _div(_div(gy + 100100 + _div(gm - 8, 6), 100) * 3, 4) + 752


def _d2g(jdn: int) -> tuple[int, int, int]:
    j = 4 * jdn + 139361631
    j = j + _div(_div(4 * jdn + 183187720, 146097) * 3, 4) * 4 - 3908
    i = _div(_mod(j, 1461), 4) * 5 + 308
    gd = _div(_mod(i, 153), 5) + 1
    gm = _mod(_div(i, 153), 12) + 1
    gy = _div(j, 1461) - 100100 + _div(8 - gm, 6)
    return gy, gm, gd


def _j2d(jy: int, jm: int, jd: int) -> int:
    gy, march, _leap = _jal_cal(jy)
    return _g2d(gy, 3, march) + (jm - 1) * 31 - _div(jm, 7) * (jm - 7) + jd - 1


def _d2j(jdn: int) -> tuple[int, int, int]:
    gy = _d2g(jdn)[0]
    jy = gy - 621
    _gy, march, leap = _jal_cal(jy)
    k = jdn - _g2d(gy, 3, march)
    if k >= 0:
        if k <= 185:
            # first six months, 31 days each
            return jy, 1 + _div(k, 31), _mod(k, 31) + 1
        k -= 186
    else:
        # still in the previous Jalali year (Dey..Esfand)
        jy -= 1
        k += 179
        if leap == 1:
            k += 1
    return jy, 7 + _div(k, 30), _mod(k, 30) + 1


# ==============================================================================
# SECTION: Public conversion API
# ==============================================================================
def is_jalali_leap_year(jy: int) -> bool:
    """33-year cycle rule of the break table; raises CalendarRangeError out of range."""
    return _jal_cal(int(jy))[2] == 0


def jalali_month_length(jy: int, jm: int) -> int:
    if jm < 1 or jm > 12:
        raise CalendarRangeError(f"Jalali month {jm} outside 1..12")
    if jm <= 6:
        return 31
    if jm <= 11:
        return 30
    return 30 if is_jalali_leap_year(jy) else 29


def is_valid_jalali_date(jy: int, jm: int, jd: int) -> bool:
    if not (MIN_JALALI_YEAR <= jy <= MAX_JALALI_YEAR):
        return False
    if not (1 <= jm <= 12):
        return False
    return 1 <= jd <= jalali_month_length(jy, jm)


def date_to_jalali_parts(d: date) -> JalaliDateParts:
    jy, jm, jd = _d2j(_g2d(d.year, d.month, d.day))
    return JalaliDateParts(jy, jm, jd)


def jalali_parts_to_date(parts: JalaliDateParts) -> date:
    if not is_valid_jalali_date(parts.jy, parts.jm, parts.jd):
        raise CalendarRangeError(f"not a Jalali date: {parts.jy}/{parts.jm}/{parts.jd}")
    gy, gm, gd = _d2g(_j2d(parts.jy, parts.jm, parts.jd))
    return date(gy, gm, gd)


def iso_to_jalali_parts(iso) -> JalaliDateParts | None:
    """
    YYYY-MM-DD -> JalaliDateParts.

    Returns None for malformed strings, for impossible Gregorian dates such
    as 2024-02-30 (rejected, not normalized), and for years the break table
    does not cover.
    """
    if not isinstance(iso, str):
        return None
    m = _iso_re.match(iso)
    if not m:
        return None
    try:
        d = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return date_to_jalali_parts(d)
    except (ValueError, CalendarRangeError):
        return None


def jalali_parts_to_iso(parts: JalaliDateParts) -> str:
    return jalali_parts_to_date(parts).isoformat()


def format_jalali_parts(parts: JalaliDateParts) -> str:
    return f"{parts.jy}/{_pad(parts.jm)}/{_pad(parts.jd)}"


def format_jalali_date(iso: str) -> str:
    """ISO -> 'jy/MM/DD'; the input comes back unchanged when it cannot be converted."""
    parts = iso_to_jalali_parts(iso)
    if parts is None:
        return iso
    return format_jalali_parts(parts)


def format_date_to_jalali(d: date) -> str:
    return format_jalali_parts(date_to_jalali_parts(d))


def format_jalali_long(iso: str, latin: bool = False) -> str:
    """ISO -> '1 Farvardin 1403' (or the Persian month name); input unchanged on failure."""
    parts = iso_to_jalali_parts(iso)
    if parts is None:
        return iso
    names = MONTH_NAMES_LATIN if latin else MONTH_NAMES_FA
    return f"{parts.jd} {names[parts.jm - 1]} {parts.jy}"


_jalali_input_re = re.compile(r"^(-?\d{1,4})[/-](\d{1,2})[/-](\d{1,2})$")


def parse_jalali(s: str) -> JalaliDateParts | None:
    """'1403/1/1' or '1403-01-01' -> parts, None if malformed or not a real Jalali day."""
    if not isinstance(s, str):
        return None
    m = _jalali_input_re.match(s.strip())
    if not m:
        return None
    jy, jm, jd = int(m.group(1)), int(m.group(2)), int(m.group(3))
    if not is_valid_jalali_date(jy, jm, jd):
        return None
    return JalaliDateParts(jy, jm, jd)


def add_days_iso(iso: str, days: int) -> str:
    m = _iso_re.match(iso or "")
    if not m:
        raise ValueError(f"not an ISO date: {iso!r}")
    d = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    return (d + timedelta(days=days)).isoformat()


# ==============================================================================
# SECTION: Week layout
# ==============================================================================
def saturday_first_column(d: date) -> int:
    # (sunday-based weekday + 1) % 7: Saturday -> 0 ... Friday -> 6
    sunday_based = (d.weekday() + 1) % 7
    return (sunday_based + 1) % 7


def jalali_weekday_offset(jy: int, jm: int, jd: int = 1) -> int:
    return saturday_first_column(jalali_parts_to_date(JalaliDateParts(jy, jm, jd)))


def is_friday(iso: str) -> bool:
    m = _iso_re.match(iso or "")
    if not m:
        return False
    try:
        d = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return False
    return saturday_first_column(d) == FRIDAY_COLUMN


# ==============================================================================
# SECTION: Month cursor (date picker navigation)
# ==============================================================================
@dataclass(frozen=True)
class JalaliMonthCursor:
    """A displayed Jalali month plus the selected day inside it."""

    jy: int
    jm: int
    day: int = 1

    def __post_init__(self):
        if not is_valid_jalali_date(self.jy, self.jm, self.day):
            raise CalendarRangeError(f"invalid cursor {self.jy}/{self.jm}/{self.day}")

    @classmethod
    def from_parts(cls, parts: JalaliDateParts) -> "JalaliMonthCursor":
        return cls(parts.jy, parts.jm, parts.jd)

    @classmethod
    def from_iso(cls, iso: str, fallback_iso: str | None = None) -> "JalaliMonthCursor":
        parts = iso_to_jalali_parts(iso)
        if parts is None and fallback_iso is not None:
            parts = iso_to_jalali_parts(fallback_iso)
        if parts is None:
            raise CalendarRangeError(f"cannot place cursor at {iso!r}")
        return cls.from_parts(parts)

    @classmethod
    def today(cls, clock=None) -> "JalaliMonthCursor":
        """Cursor on the current day; `clock` returns a datetime (defaults to local now)."""
        return cls.from_parts(date_to_jalali_parts((clock or datetime.now)().date()))

    @property
    def days_in_month(self) -> int:
        return jalali_month_length(self.jy, self.jm)

    @property
    def start_offset(self) -> int:
        return jalali_weekday_offset(self.jy, self.jm, 1)

    @property
    def parts(self) -> JalaliDateParts:
        return JalaliDateParts(self.jy, self.jm, self.day)

    @property
    def selected_iso(self) -> str:
        return jalali_parts_to_iso(self.parts)

    @property
    def title(self) -> str:
        return f"{MONTH_NAMES_FA[self.jm - 1]} {self.jy}"

    def shift(self, delta: int) -> "JalaliMonthCursor":
        """Move by whole months, rolling the year and clamping the day to the new month."""
        total = self.jy * 12 + (self.jm - 1) + int(delta)
        jy, jm = total // 12, total % 12 + 1
        return JalaliMonthCursor(jy, jm, min(self.day, jalali_month_length(jy, jm)))

    def next_month(self) -> "JalaliMonthCursor":
        return self.shift(1)

    def prev_month(self) -> "JalaliMonthCursor":
        return self.shift(-1)

    def select(self, day: int) -> "JalaliMonthCursor":
        if not 1 <= day <= self.days_in_month:
            raise CalendarRangeError(f"{self.title} has no day {day}")
        return JalaliMonthCursor(self.jy, self.jm, day)

    def iso_for(self, day: int) -> str:
        return jalali_parts_to_iso(JalaliDateParts(self.jy, self.jm, day))

    def weeks(self) -> list[list[int | None]]:
        """Saturday-first grid rows; None pads cells outside the month."""
        cells: list[int | None] = [None] * self.start_offset
        cells.extend(range(1, self.days_in_month + 1))
        while len(cells) % 7:
            cells.append(None)
        return [cells[i:i + 7] for i in range(0, len(cells), 7)]
