from __future__ import annotations

import os


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def overdue_sweep_interval_minutes() -> int:
    return max(_env_int("OVERDUE_SWEEP_INTERVAL_MINUTES", 10), 1)


def overdue_reminder_interval_hours() -> int:
    return max(_env_int("OVERDUE_REMINDER_INTERVAL_HOURS", 24), 1)


def notification_max_attempts() -> int:
    return max(_env_int("NOTIFICATION_MAX_ATTEMPTS", 5), 1)


def status_poll_interval_seconds() -> float:
    return max(_env_float("STATUS_POLL_INTERVAL_SECONDS", 3.0), 0.1)
