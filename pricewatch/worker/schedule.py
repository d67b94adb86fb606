"""Digest schedule evaluation.

Pure functions deciding whether a periodic tick falls on a send slot. Callers
own the side effects: claiming the slot and advancing the last-send marker.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

FREQUENCIES = ("daily", "weekly")

DAY_NAMES = {
    1: "Monday",
    2: "Tuesday",
    3: "Wednesday",
    4: "Thursday",
    5: "Friday",
    6: "Saturday",
    7: "Sunday",
}


@dataclass(frozen=True)
class ScheduleConfig:
    """Digest frequency. ``day_of_week`` uses ISO numbering (1=Monday)."""

    frequency: str = "daily"
    hour: int = 9
    day_of_week: Optional[int] = None

    def __post_init__(self):
        if self.frequency not in FREQUENCIES:
            raise ValueError(f"frequency must be one of {FREQUENCIES}, got {self.frequency!r}")
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour must be between 0 and 23, got {self.hour}")
        if self.day_of_week is not None and not 1 <= self.day_of_week <= 7:
            raise ValueError(f"day_of_week must be between 1 and 7, got {self.day_of_week}")

    @property
    def weekday(self) -> int:
        return self.day_of_week or 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleConfig":
        return cls(
            frequency=data.get("frequency", "daily"),
            hour=int(data.get("hour", 9)),
            day_of_week=data.get("day_of_week", data.get("dayOfWeek")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"frequency": self.frequency, "hour": self.hour}
        if self.frequency == "weekly":
            data["day_of_week"] = self.weekday
        return data


def next_send_time(
    last_sent_at: Optional[datetime],
    config: ScheduleConfig,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Compute the next send slot.

    Starts from ``last_sent_at`` (or ``now`` when nothing was ever sent),
    pinned to ``config.hour`` on that calendar day. Daily schedules roll one
    day forward when the last send is at/after the pin; weekly schedules roll
    to the configured weekday first, then one week when the last send is
    at/after that slot.
    """
    if last_sent_at is None and now is None:
        raise ValueError("now is required when nothing has been sent yet")

    base = last_sent_at if last_sent_at is not None else now
    slot = base.replace(hour=config.hour, minute=0, second=0, microsecond=0)

    if config.frequency == "daily":
        if last_sent_at is not None and last_sent_at >= slot:
            slot += timedelta(days=1)
        return slot

    days_ahead = (config.weekday - slot.isoweekday()) % 7
    slot += timedelta(days=days_ahead)
    if last_sent_at is not None and last_sent_at >= slot:
        slot += timedelta(weeks=1)
    return slot


def should_send(
    now: datetime,
    last_sent_at: Optional[datetime],
    config: ScheduleConfig,
) -> bool:
    """True iff the last send precedes the next slot and ``now`` has reached it."""
    slot = next_send_time(last_sent_at, config, now)
    if last_sent_at is not None and last_sent_at >= slot:
        return False
    return now >= slot


def slot_key(slot: datetime) -> str:
    """Stable identifier for a scheduled slot, used to claim it once."""
    return slot.strftime("%Y-%m-%dT%H:00")


def to_cron_expression(config: ScheduleConfig) -> str:
    """Render the schedule as a five-field cron expression (Sunday=0)."""
    if config.frequency == "daily":
        return f"0 {config.hour} * * *"
    return f"0 {config.hour} * * {config.weekday % 7}"


def describe_schedule(config: ScheduleConfig) -> str:
    """Human-readable description, e.g. "Every Monday at 09:00"."""
    time_str = f"{config.hour:02d}:00"
    if config.frequency == "daily":
        return f"Daily at {time_str}"
    return f"Every {DAY_NAMES[config.weekday]} at {time_str}"


def to_local(value: Optional[datetime], tz_name: str) -> Optional[datetime]:
    """Convert a stored naive-UTC timestamp to naive wall time in ``tz_name``."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)
