#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for todocup.

Config, diagnostics, the injectable clock, input validation and the error
types used by the store, the repeat reconciler and the terminal front end.
"""
from __future__ import annotations
import os, re, sys
import json, time, random
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone, date
from typing import Callable

from dateutil import parser as date_parser, tz

from todocup_calendar import format_date_to_jalali

try:
    import fcntl  # POSIX advisory lock
except Exception:
    fcntl = None


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Config & defaults
# 2) Diagnostics
# 3) Errors
# 4) Clock & ISO helpers
# 5) Validation
# 6) Locking
# ==============================================================================


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
try:
    import tomllib  # Python 3.11+
except Exception:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except Exception:
        tomllib = None


_DEFAULTS = {
    "db_path": "",
    "store_timeout": 5.0,
    "default_priority": 2,
    "panel_mode": "rich",
    "theme": "system",
    "repeat_lock_stale_after": 30.0,
}

_CONF_CACHE = None


def _diag_enabled() -> bool:
    return os.environ.get("TODOCUP_DIAG") == "1"


def _read_toml(path: str) -> dict:
    try:
        if not path or not os.path.exists(path):
            return {}
    except Exception:
        return {}

    env_path = os.environ.get("TODOCUP_CONFIG") or ""
    env_abs = os.path.abspath(os.path.expanduser(env_path)) if env_path else ""
    is_env_path = bool(env_abs and path == env_abs)

    if tomllib is None:
        if is_env_path:
            raise RuntimeError(
                f"TODOCUP_CONFIG is set but TOML parser is unavailable for {path}. "
                "Install tomli or upgrade to Python 3.11+."
            )
        _warn_once_per_day("missing_toml_parser", f"[todocup] Config present but TOML parser unavailable: {path}")
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except Exception as e:
        if is_env_path:
            raise RuntimeError(f"TODOCUP_CONFIG parse failed for {path}: {e}")
        _warn_once_per_day("toml_parse_error", f"[todocup] Config parse failed; using defaults. Path: {path} Error: {e}")
        return {}


def _config_paths() -> list[str]:
    env_path = os.environ.get("TODOCUP_CONFIG")
    if env_path:
        return [os.path.abspath(os.path.expanduser(env_path))]

    paths: list[str] = []
    moddir = os.path.dirname(os.path.abspath(__file__))
    paths.append(os.path.join(moddir, "todocup.toml"))

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        paths.append(os.path.join(xdg, "todocup", "todocup.toml"))
    paths.append(os.path.expanduser("~/.config/todocup/todocup.toml"))

    seen = set()
    out = []
    for p in paths:
        ap = os.path.abspath(os.path.expanduser(p))
        if ap in seen:
            continue
        seen.add(ap)
        out.append(ap)
    return out


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    out = {}
    for k, v in (d or {}).items():
        out[str(k).strip().lower()] = v
    return out


def _load_config() -> dict:
    cfg = dict(_DEFAULTS)
    chosen = None

    paths = _config_paths()
    for p in paths:
        data = _read_toml(p)
        if data:
            cfg.update(_normalize_keys(data))
            chosen = p
            break

    if _diag_enabled():
        try:
            if chosen:
                print(f"[todocup] Using config: {chosen}", file=sys.stderr)
            else:
                print("[todocup] No config file found; using defaults.", file=sys.stderr)
                for p in paths:
                    print(f"  - {p}", file=sys.stderr)
        except Exception:
            pass
    return cfg


def get_config() -> dict:
    global _CONF_CACHE
    if _CONF_CACHE is None:
        _CONF_CACHE = _load_config()
    return _CONF_CACHE


def reload_config() -> dict:
    """Drop the cached config (tests and long-running shells)."""
    global _CONF_CACHE
    _CONF_CACHE = None
    return get_config()


def conf_str(key: str, default: str) -> str:
    v = get_config().get(key)
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)


def conf_int(key: str, default: int, min_value: int | None = None, max_value: int | None = None) -> int:
    v = get_config().get(key)
    try:
        out = int(str(v).strip())
    except Exception:
        out = int(default)
    if min_value is not None and out < min_value:
        out = int(min_value)
    if max_value is not None and out > max_value:
        out = int(max_value)
    return out


def conf_float(key: str, default: float, min_value: float | None = None, max_value: float | None = None) -> float:
    v = get_config().get(key)
    try:
        out = float(str(v).strip())
    except Exception:
        out = float(default)
    if min_value is not None and out < min_value:
        out = float(min_value)
    if max_value is not None and out > max_value:
        out = float(max_value)
    return out


def data_dir() -> str:
    base = os.environ.get("TODOCUP_DATA")
    if base:
        return os.path.abspath(os.path.expanduser(base))
    xdg = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return os.path.join(xdg, "todocup")


def db_path() -> str:
    p = conf_str("db_path", "")
    if p:
        return os.path.abspath(os.path.expanduser(p))
    return os.path.join(data_dir(), "todocup.db")


def _cache_dir() -> str:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache")
    return os.path.join(base, "todocup")


def _warn_once_per_day(key: str, message: str) -> None:
    """Persist a tiny sentinel so a broken config does not spam every start."""
    try:
        d = _cache_dir()
        os.makedirs(d, exist_ok=True)
        stamp_path = os.path.join(d, f".diag_{key}.stamp")
        today = date.today().isoformat()
        if os.path.exists(stamp_path):
            try:
                with open(stamp_path, "r", encoding="utf-8") as f:
                    if f.read().strip() == today:
                        return
            except Exception:
                pass
        with open(stamp_path, "w", encoding="utf-8") as f:
            f.write(today)
        print(message, file=sys.stderr)
    except Exception:
        pass


# ==============================================================================
# SECTION: Diagnostics
# ==============================================================================
_DIAG_LOG_REDACT_KEYS = frozenset({"description", "title", "email", "name"})


def diag_log_redact(data: dict, redact_keys: frozenset | None = None) -> dict:
    keys = redact_keys or _DIAG_LOG_REDACT_KEYS
    out = {}
    for k, v in (data or {}).items():
        out[k] = "[redacted]" if k in keys else v
    return out


def _diag_log_path() -> str:
    return os.path.join(data_dir(), ".todocup_diag.jsonl")


def diag_log(msg: str, component: str, data: dict | None = None) -> None:
    """Append a JSONL diagnostic record (when TODOCUP_DIAG_LOG=1)."""
    if os.environ.get("TODOCUP_DIAG_LOG") != "1":
        return
    path = _diag_log_path()
    max_bytes = int(os.environ.get("TODOCUP_DIAG_LOG_MAX_BYTES") or 262144)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if max_bytes > 0 and os.path.exists(path):
            if os.stat(path).st_size > max_bytes:
                os.replace(path, path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl"))
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "component": component,
            "pid": os.getpid(),
            "msg": str(msg),
        }
        if data:
            payload["data"] = diag_log_redact(data)
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")
    except Exception:
        pass


def diag(msg, component: str = "todocup", data: dict | None = None) -> None:
    """Write to stderr when TODOCUP_DIAG=1 and to the JSONL log when TODOCUP_DIAG_LOG=1."""
    if _diag_enabled():
        try:
            sys.stderr.write(f"[todocup] {msg}\n")
        except Exception:
            pass
    diag_log(msg, component, data)


# ==============================================================================
# SECTION: Errors
# ==============================================================================
class TodocupError(Exception):
    pass


class ValidationError(TodocupError):
    """User input rejected before it reaches the store."""


class TaskNotFoundError(TodocupError):
    pass


class TaskDataError(TodocupError):
    """A persisted task row (or a repeat template) does not decode into a valid task."""


class SettingsDecodeError(TodocupError):
    """The stored profile settings blob is not valid."""


class StoreError(TodocupError):
    pass


class RepeatCheckError(TodocupError):
    """Repeating tasks could not be materialized; the watermark was left untouched."""


# ==============================================================================
# SECTION: Clock & ISO helpers
# ==============================================================================
# A clock is any zero-argument callable returning an aware datetime.
Clock = Callable[[], datetime]

LOCAL_ZONE = tz.tzlocal()


def system_clock() -> datetime:
    return datetime.now(LOCAL_ZONE)


def fixed_clock(iso_day: str, hhmm: str = "09:00") -> Clock:
    """Clock frozen at a local date/time; used by tests and --today overrides."""
    d = date.fromisoformat(iso_day)
    h, m = (int(x) for x in hhmm.split(":"))
    moment = datetime(d.year, d.month, d.day, h, m, tzinfo=LOCAL_ZONE)
    return lambda: moment


def today_iso(clock: Clock | None = None) -> str:
    return (clock or system_clock)().date().isoformat()


def tomorrow_iso(clock: Clock | None = None) -> str:
    return ((clock or system_clock)().date() + timedelta(days=1)).isoformat()


def now_iso(clock: Clock | None = None) -> str:
    """UTC timestamp with milliseconds, e.g. 2024-03-19T06:30:00.000Z."""
    moment = (clock or system_clock)().astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today_jalali(clock: Clock | None = None) -> str:
    return format_date_to_jalali((clock or system_clock)().date())


def tomorrow_jalali(clock: Clock | None = None) -> str:
    return format_date_to_jalali((clock or system_clock)().date() + timedelta(days=1))


_iso_date_re = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_hhmm_re = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_iso_date(s) -> date | None:
    """Strict YYYY-MM-DD -> date, or None for malformed/impossible dates."""
    if not isinstance(s, str):
        return None
    m = _iso_date_re.match(s)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def is_iso_date(s) -> bool:
    return parse_iso_date(s) is not None


def is_hhmm(s) -> bool:
    return isinstance(s, str) and bool(_hhmm_re.match(s))


def next_day_iso(iso: str) -> str:
    d = parse_iso_date(iso)
    if d is None:
        raise ValueError(f"not an ISO date: {iso!r}")
    return (d + timedelta(days=1)).isoformat()


def normalize_iso_date(value, fallback_to_today: bool = False, clock: Clock | None = None) -> str | None:
    """
    Coerce loose date input (ISO string, any dateutil-parsable string, date,
    datetime) to an ISO date. Unusable input yields today when
    fallback_to_today is set, else None.
    """
    fallback = today_iso(clock) if fallback_to_today else None
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        s = value.strip()
        if _iso_date_re.match(s):
            return s if is_iso_date(s) else fallback
        try:
            return date_parser.parse(s).date().isoformat()
        except (ValueError, OverflowError):
            return fallback
    return fallback


# ==============================================================================
# SECTION: Validation
# ==============================================================================
PRIORITIES = (1, 2, 3)
THEMES = ("light", "dark", "system")
DEFAULT_PROFILE_NAME = "کاربر"


def is_priority(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and v in PRIORITIES


def validate_task_input(data: dict) -> None:
    """Raise ValidationError for a task payload the store must not accept."""
    title = data.get("title")
    if not isinstance(title, str) or len(title.strip()) < 2:
        raise ValidationError("Title must be at least 2 characters.")
    prio = data.get("priority")
    if prio is not None and not is_priority(prio):
        raise ValidationError("Priority must be 1, 2 or 3.")
    if not is_iso_date(data.get("date")):
        raise ValidationError("Date must be a real date in YYYY-MM-DD form.")
    if not is_hhmm(data.get("time")):
        raise ValidationError("Time must be in HH:mm form.")


def validate_profile_input(data: dict) -> None:
    name = data.get("name")
    if name is not None and (not isinstance(name, str) or not name.strip()):
        raise ValidationError("Name cannot be empty.")
    settings = data.get("settings")
    if settings is not None:
        try:
            check_settings(settings)
        except SettingsDecodeError as e:
            raise ValidationError(str(e))


def check_settings(settings) -> dict:
    """Validate the known profile settings keys; unknown keys pass through."""
    if not isinstance(settings, dict):
        raise SettingsDecodeError("settings must be a JSON object")
    lrc = settings.get("lastRepeatCheck")
    if lrc is not None and not is_iso_date(lrc):
        raise SettingsDecodeError(f"lastRepeatCheck is not an ISO date: {lrc!r}")
    theme = settings.get("theme")
    if theme is not None and theme not in THEMES:
        raise SettingsDecodeError(f"theme must be one of {', '.join(THEMES)}")
    email = settings.get("email")
    if email is not None and not isinstance(email, str):
        raise SettingsDecodeError("email must be a string")
    age = settings.get("age")
    if age is not None and (not isinstance(age, int) or isinstance(age, bool) or age < 0):
        raise SettingsDecodeError("age must be a non-negative integer")
    return settings


# ==============================================================================
# SECTION: Locking
# ==============================================================================
@contextmanager
def safe_lock(
    path: str | os.PathLike,
    *,
    retries: int = 6,
    sleep_base: float = 0.05,
    jitter: float = 0.0,
    stale_after: float | None = 30.0,
):
    """Best-effort lock with fcntl (non-blocking) or O_EXCL fallback. Yields True if acquired."""
    path_str = str(path) if path else ""
    if not path_str:
        yield False
        return

    def _sleep_once():
        delay = float(sleep_base or 0.0)
        if jitter:
            delay += random.uniform(0.0, float(jitter))
        if delay > 0:
            time.sleep(delay)

    parent = os.path.dirname(path_str)
    if parent:
        os.makedirs(parent, exist_ok=True)
    tries = max(1, int(retries or 0))

    if fcntl is not None:
        fd = os.open(path_str, os.O_CREAT | os.O_RDWR, 0o600)
        lf = os.fdopen(fd, "a", encoding="utf-8")
        acquired = False
        try:
            for _ in range(tries):
                try:
                    fcntl.flock(lf.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    acquired = True
                    break
                except OSError:
                    _sleep_once()
            yield acquired
        finally:
            if acquired:
                try:
                    fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
                except OSError:
                    pass
            lf.close()
        return

    fd = None
    for _ in range(tries):
        try:
            fd = os.open(path_str, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            os.write(fd, f"{os.getpid()} {int(time.time())}\n".encode("ascii"))
            break
        except FileExistsError:
            fd = None
            if stale_after is not None:
                try:
                    age = time.time() - os.stat(path_str).st_mtime
                except OSError:
                    age = None
                if age is not None and age >= float(stale_after):
                    try:
                        os.unlink(path_str)
                    except OSError:
                        pass
                    continue
            _sleep_once()
    try:
        yield fd is not None
    finally:
        if fd is not None:
            os.close(fd)
            try:
                os.unlink(path_str)
            except OSError:
                pass
