from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from .errors import InvalidWindowError


@dataclass(frozen=True, order=True)
class HourlySlotKey:
    """Identity of a daycare slot: a local calendar day and the hour it starts at."""

    day: date
    hour: int

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23:
            raise ValueError("hour must be within 0..23")

    @classmethod
    def of(cls, local_start: datetime) -> "HourlySlotKey":
        return cls(day=local_start.date(), hour=local_start.hour)

    @classmethod
    def span(cls, local_start: datetime, local_end: datetime) -> list["HourlySlotKey"]:
        """
        Keys a local window must fully cover: hours in [start.hour, end.hour) of one day.
        Raises InvalidWindowError for empty, reversed or multi-day windows.
        """
        if local_end <= local_start:
            raise InvalidWindowError("end must be later than start")
        if not (_on_the_hour(local_start) and _on_the_hour(local_end)):
            raise InvalidWindowError("daycare bookings must start and end on the hour")
        if local_start.date() != local_end.date():
            raise InvalidWindowError("daycare bookings must start and end on the same day")
        if local_end.hour <= local_start.hour:
            raise InvalidWindowError("daycare bookings must cover at least one whole hour")
        day = local_start.date()
        return [cls(day=day, hour=hour) for hour in range(local_start.hour, local_end.hour)]


def _on_the_hour(dt: datetime) -> bool:
    return dt.minute == 0 and dt.second == 0 and dt.microsecond == 0
