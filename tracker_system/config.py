import os
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv

PLACEHOLDER_DB_PATH = "YOUR_DATABASE_PATH"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_hh_mm(value: str, default: Tuple[int, int] = (0, 5)) -> Tuple[int, int]:
    try:
        hour, minute = value.split(":", 1)
        hour_i, minute_i = int(hour), int(minute)
        if 0 <= hour_i < 24 and 0 <= minute_i < 60:
            return hour_i, minute_i
    except (AttributeError, ValueError):
        pass
    return default


def _parse_codes(value: Optional[str], default: FrozenSet[int]) -> FrozenSet[int]:
    if not value:
        return default
    try:
        return frozenset(int(part) for part in value.split(",") if part.strip())
    except ValueError:
        return default


# Steam ban (2006) and kick (6) disconnect reasons
BAN_KICK_REASONS = frozenset({6, 2006})


@dataclass
class TrackerConfig:
    """
    Runtime settings for the slot tracker.

    db_path left empty or at its placeholder means "no store": persistence is
    skipped while in-memory integration keeps running.
    """

    db_path: Optional[str] = PLACEHOLDER_DB_PATH
    debug_mode: bool = False
    flush_interval: int = 60
    debounce_delay: float = 2.0
    heartbeat_interval: float = 10.0
    flush_timeout: float = 30.0
    default_slots: int = 10
    aggregation_time: Tuple[int, int] = (0, 5)
    snapshot_skip_reasons: FrozenSet[int] = BAN_KICK_REASONS
    host: Optional[str] = None
    log_dir: str = "logs"

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        load_dotenv()
        return cls(
            db_path=_env("SLOT_TRACKER_DB_PATH", PLACEHOLDER_DB_PATH),
            debug_mode=_env_bool("SLOT_TRACKER_DEBUG"),
            flush_interval=_env_int("SLOT_TRACKER_FLUSH_INTERVAL", 60),
            debounce_delay=_env_float("SLOT_TRACKER_DEBOUNCE_DELAY", 2.0),
            heartbeat_interval=_env_float("SLOT_TRACKER_HEARTBEAT_INTERVAL", 10.0),
            flush_timeout=_env_float("SLOT_TRACKER_FLUSH_TIMEOUT", 30.0),
            default_slots=_env_int("SLOT_TRACKER_DEFAULT_SLOTS", 10),
            aggregation_time=_parse_hh_mm(_env("SLOT_TRACKER_AGGREGATION_TIME", "00:05")),
            snapshot_skip_reasons=_parse_codes(_env("SLOT_TRACKER_SKIP_REASONS"), BAN_KICK_REASONS),
            host=_env("SLOT_TRACKER_HOST"),
            log_dir=_env("SLOT_TRACKER_LOG_DIR", "logs"),
        )

    def is_store_configured(self) -> bool:
        return bool(self.db_path and self.db_path.strip() and self.db_path != PLACEHOLDER_DB_PATH)

    def describe(self) -> dict:
        return {
            "db_path": self.db_path if self.is_store_configured() else "(not configured)",
            "debug_mode": self.debug_mode,
            "flush_interval": f"{self.flush_interval}s",
            "debounce_delay": f"{self.debounce_delay}s",
            "heartbeat_interval": f"{self.heartbeat_interval}s",
            "flush_timeout": f"{self.flush_timeout}s",
            "default_slots": self.default_slots,
            "aggregation_time": "%02d:%02d UTC" % self.aggregation_time,
            "snapshot_skip_reasons": ", ".join(str(code) for code in sorted(self.snapshot_skip_reasons)),
        }
