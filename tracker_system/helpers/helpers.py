import math
from datetime import date, datetime, timedelta, timezone
from typing import Tuple


def utc_now_ts() -> float:
    return datetime.now(timezone.utc).timestamp()


def utc_day_window(day: date) -> Tuple[float, float]:
    """Return the [start, end) epoch window of a UTC calendar date."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start.timestamp(), (start + timedelta(days=1)).timestamp()


def seconds_until(hour: int, minute: int, now_ts: float) -> float:
    """Seconds from now_ts until the next UTC wall-clock hour:minute."""
    now = datetime.fromtimestamp(now_ts, tz=timezone.utc)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if now >= target:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    rounded = math.floor(abs(value) + 0.5)
    return int(rounded) if value >= 0 else -int(rounded)


def ctx(**kwargs) -> str:
    """
    Compact context string for log lines.
    """
    parts = []
    map_name = kwargs.get("map_name")
    steam_id = kwargs.get("steam_id")
    players = kwargs.get("players")
    slots = kwargs.get("slots")
    extra = kwargs.get("extra")

    if map_name is not None:
        parts.append(f"M:{map_name}")
    if steam_id is not None:
        parts.append(f"S:{steam_id}")
    if players is not None:
        parts.append(f"P:{players}/{slots if slots is not None else '?'}")
    if extra:
        parts.append(str(extra))
    return " ".join(parts)
