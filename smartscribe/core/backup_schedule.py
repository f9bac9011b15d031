"""
Next-due computation for scheduled backups.

Pure functions, no I/O. Wall-clock arithmetic happens in the timezone carried
by ``now``; callers pass the server's local time (or the configured zone).
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

FREQUENCIES = ("daily", "weekly", "monthly")

WEEKDAYS = {
    "Monday": 0,
    "Tuesday": 1,
    "Wednesday": 2,
    "Thursday": 3,
    "Friday": 4,
    "Saturday": 5,
    "Sunday": 6,
}

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_backup_time(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` (24h). Raises ValueError on anything else."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid backup time {value!r}, expected HH:MM")
    return int(match.group(1)), int(match.group(2))


def next_backup_date(
    now: datetime,
    frequency: str,
    backup_time: str,
    backup_day: str = "Sunday",
) -> datetime:
    """
    Next recurring backup slot relative to ``now``.

    - daily: today at ``backup_time``, or tomorrow if that slot is not in the future
    - weekly: the next ``backup_day`` at ``backup_time``; today only if the slot
      is still ahead
    - monthly: always the 1st of the following month at ``backup_time``, whatever
      day of the month it is now
    """
    if frequency not in FREQUENCIES:
        raise ValueError(f"Unknown backup frequency {frequency!r}")
    hours, minutes = parse_backup_time(backup_time)
    slot = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)

    if frequency == "daily":
        if slot <= now:
            slot += timedelta(days=1)
        return slot

    if frequency == "weekly":
        if backup_day not in WEEKDAYS:
            raise ValueError(f"Unknown backup day {backup_day!r}")
        days_until = (WEEKDAYS[backup_day] - slot.weekday()) % 7
        if days_until == 0 and slot <= now:
            days_until = 7
        return slot + timedelta(days=days_until)

    if slot.month == 12:
        return slot.replace(year=slot.year + 1, month=1, day=1)
    return slot.replace(month=slot.month + 1, day=1)


def next_from_config(config: Dict[str, Any], now: datetime) -> Optional[datetime]:
    """
    Next-due timestamp for a stored backup configuration.

    Recurring mode wins when auto backup is enabled; otherwise an enabled
    one-time schedule is returned as is; otherwise there is no schedule.
    """
    if config.get("auto_backup_enabled"):
        return next_backup_date(
            now,
            config.get("backup_frequency") or "daily",
            config.get("backup_time") or "02:00",
            config.get("backup_day") or "Sunday",
        )
    if config.get("one_time_backup_enabled") and config.get("one_time_scheduled_backup"):
        return _as_datetime(config["one_time_scheduled_backup"])
    return None


def due_backup_mode(config: Dict[str, Any], now: datetime) -> Optional[str]:
    """
    Which schedule, if any, is due at ``now``.

    Returns "recurring", "one_time" or None.
    """
    if config.get("auto_backup_enabled"):
        due = _as_datetime(config.get("next_scheduled_backup"))
        if due is not None and now >= due:
            return "recurring"
        return None
    if config.get("one_time_backup_enabled"):
        due = _as_datetime(config.get("one_time_scheduled_backup"))
        if due is not None and now >= due:
            return "one_time"
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed
