import datetime
from typing import Any, List


class WeekTools:
    """Helpers for ISO week bucketing of workout dates."""

    @staticmethod
    def parse_date(value: Any) -> datetime.date | None:
        """Return the calendar date of ``value`` or ``None`` if unparseable.

        Accepts ``date``/``datetime`` objects and ISO strings, including the
        ``Z`` suffix produced by JavaScript clients.
        """
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, datetime.date):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.datetime.fromisoformat(text).date()
        except ValueError:
            pass
        try:
            return datetime.date.fromisoformat(text[:10])
        except ValueError:
            return None

    @staticmethod
    def week_key(day: datetime.date) -> tuple[int, int]:
        """Return the ISO ``(year, week)`` of ``day``.

        The week belongs to the year containing its Thursday, so the first
        days of January can fall in week 52/53 of the previous year.
        """
        iso = day.isocalendar()
        return iso[0], iso[1]

    @staticmethod
    def week_start(day: datetime.date) -> datetime.date:
        """Return the Monday of the ISO week containing ``day``."""
        return day - datetime.timedelta(days=day.weekday())

    @classmethod
    def build_buckets(
        cls, today: datetime.date, week_count: int
    ) -> List[dict]:
        """Return ``week_count`` empty buckets, oldest first, ending at ``today``'s week."""
        if week_count < 0:
            raise ValueError("week_count must be non-negative")
        current = cls.week_start(today)
        buckets: List[dict] = []
        for offset in range(week_count - 1, -1, -1):
            start = current - datetime.timedelta(weeks=offset)
            year, week = cls.week_key(start)
            buckets.append(
                {
                    "year": year,
                    "week": week,
                    "label": f"W{week}",
                    "start": start.isoformat(),
                    "volume": 0.0,
                    "synthetic_volume": 0.0,
                    "sessions": 0,
                }
            )
        return buckets
