from __future__ import annotations

import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from .metric_parser import MetricParser
from .week_tools import WeekTools

logger = structlog.get_logger(__name__)


class WorkoutAnalytics:
    """Pure aggregations over materialized workout sessions.

    Sessions are dicts shaped like ``SessionRepository.fetch_detail`` output:
    a session carries ``exercises``, each exercise carries ``sets`` and each
    set carries a serialized ``custom_metrics`` bag plus the ``weight`` and
    ``reps_or_time`` columns.  None of these functions perform I/O.
    """

    PLACEHOLDER_VOLUME: float = 50.0
    DEFAULT_PLANNED_SETS: int = 3
    UNKNOWN_TEMPLATE: str = "Unknown"

    @staticmethod
    def set_values(set_row: Mapping[str, Any]) -> tuple[float, float]:
        """Return ``(weight, reps)`` for one set, defaulting to zero."""
        bag = MetricParser.load_bag(
            set_row.get("custom_metrics"), set_id=set_row.get("id")
        )
        weight_raw = MetricParser.lookup(bag, "weight")
        if weight_raw is None:
            weight_raw = set_row.get("weight")
        reps_raw = MetricParser.lookup(bag, "reps")
        if reps_raw is None and MetricParser.lookup(bag, "time", "seconds") is None:
            reps_raw = set_row.get("reps_or_time")
        return MetricParser.to_number(weight_raw), MetricParser.to_number(reps_raw)

    @staticmethod
    def _sort_key(session: Mapping[str, Any]) -> tuple:
        day = WeekTools.parse_date(session.get("session_date"))
        return (
            day or datetime.date.min,
            str(session.get("session_date") or ""),
            session.get("id") or 0,
        )

    @classmethod
    def session_volume(cls, session: Mapping[str, Any]) -> Dict[str, Any]:
        """Return the total weight x reps of ``session``.

        A session without load falls back to its duration in minutes and
        then to :attr:`PLACEHOLDER_VOLUME`; both fallbacks are tagged
        ``synthetic``.
        """
        volume = 0.0
        for exercise in session.get("exercises") or []:
            for set_row in exercise.get("sets") or []:
                weight, reps = cls.set_values(set_row)
                volume += weight * reps
        source = "sets"
        if volume == 0:
            duration = MetricParser.to_number(session.get("duration"))
            if duration > 0:
                volume = duration
                source = "duration"
            else:
                volume = cls.PLACEHOLDER_VOLUME
                source = "placeholder"
        return {
            "session_id": session.get("id"),
            "date": session.get("session_date"),
            "volume": round(volume, 2),
            "synthetic": source != "sets",
            "source": source,
        }

    @staticmethod
    def fold_into_buckets(
        buckets: Iterable[Mapping[str, Any]], volumes: Iterable[Mapping[str, Any]]
    ) -> List[dict]:
        """Return copies of ``buckets`` with ``volumes`` accumulated into them.

        Volumes dated outside every bucket, or with an unparseable date, are
        ignored.
        """
        result = [dict(b) for b in buckets]
        index = {(b["year"], b["week"]): b for b in result}
        for item in volumes:
            day = WeekTools.parse_date(item.get("date"))
            if day is None:
                logger.debug("session_date_unparseable", session_id=item.get("session_id"))
                continue
            bucket = index.get(WeekTools.week_key(day))
            if bucket is None:
                continue
            bucket["volume"] += item["volume"]
            bucket["sessions"] += 1
            if item.get("synthetic"):
                bucket["synthetic_volume"] += item["volume"]
        for bucket in result:
            bucket["volume"] = round(bucket["volume"], 2)
            bucket["synthetic_volume"] = round(bucket["synthetic_volume"], 2)
        return result

    @classmethod
    def bucket_by_week(
        cls,
        sessions: Iterable[Mapping[str, Any]],
        week_count: int,
        today: Optional[datetime.date] = None,
    ) -> List[dict]:
        """Return ``week_count`` weekly volume buckets ending at ``today``."""
        today = today or datetime.date.today()
        buckets = WeekTools.build_buckets(today, week_count)
        volumes = [cls.session_volume(s) for s in sessions]
        return cls.fold_into_buckets(buckets, volumes)

    @staticmethod
    def top_exercises_by_frequency(
        sessions: Iterable[Mapping[str, Any]], limit: int
    ) -> List[str]:
        """Return the ``limit`` most frequent exercise names.

        Ties keep the order in which names were first seen.
        """
        if limit <= 0:
            return []
        counts: Dict[str, int] = {}
        for session in sessions:
            for exercise in session.get("exercises") or []:
                name = exercise.get("exercise_name")
                if not name:
                    continue
                counts[name] = counts.get(name, 0) + 1
        ranked = sorted(counts.items(), key=lambda item: -item[1])
        return [name for name, _ in ranked[:limit]]

    @classmethod
    def progressive_overload_series(
        cls,
        sessions: Iterable[Mapping[str, Any]],
        exercise_name: str,
        point_count: int,
    ) -> List[dict]:
        """Return average weight and reps of ``exercise_name`` per session.

        Points are ordered by session date, truncated to the latest
        ``point_count`` and right-padded by repeating the last point.
        """
        if point_count <= 0:
            return []
        target = exercise_name.strip().lower()
        points = []
        for session in sorted(sessions, key=cls._sort_key):
            weights: List[float] = []
            reps: List[float] = []
            for exercise in session.get("exercises") or []:
                if str(exercise.get("exercise_name") or "").strip().lower() != target:
                    continue
                for set_row in exercise.get("sets") or []:
                    weight, rep = cls.set_values(set_row)
                    weights.append(weight)
                    reps.append(rep)
            if not weights:
                continue
            points.append(
                {
                    "session_id": session.get("id"),
                    "date": session.get("session_date"),
                    "avg_weight": round(sum(weights) / len(weights), 2),
                    "avg_reps": round(sum(reps) / len(reps), 2),
                    "padded": False,
                }
            )
        points = points[-point_count:]
        if points:
            last = points[-1]
            while len(points) < point_count:
                points.append(dict(last, padded=True))
        return points

    @classmethod
    def completion_rate(
        cls,
        sessions: Iterable[Mapping[str, Any]],
        planned_sets_for: Optional[Callable[[Mapping, Mapping], Any]] = None,
    ) -> float:
        """Return the percentage of performed exercises that met their plan.

        The planned count comes from the exercise snapshot unless
        ``planned_sets_for(session, exercise)`` is given.
        """
        performed = 0
        completed = 0
        for session in sessions:
            for exercise in session.get("exercises") or []:
                done = len(exercise.get("sets") or [])
                if done == 0:
                    continue
                if planned_sets_for is not None:
                    planned_raw = planned_sets_for(session, exercise)
                else:
                    planned_raw = exercise.get("planned_sets")
                planned = MetricParser.to_number(
                    planned_raw, float(cls.DEFAULT_PLANNED_SETS)
                )
                performed += 1
                if done >= planned:
                    completed += 1
        if performed == 0:
            return 0.0
        return round(completed / performed * 100, 2)

    @staticmethod
    def muscle_set_totals(exercises: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
        """Return the number of sets each secondary muscle received."""
        totals: Dict[str, int] = {}
        for exercise in exercises:
            set_count = exercise.get("set_count")
            if set_count is None:
                set_count = len(exercise.get("sets") or [])
            if not set_count:
                continue
            muscles = MetricParser.parse_list(
                exercise.get("secondary_muscle_groups"),
                session_exercise_id=exercise.get("id"),
            )
            for muscle in muscles:
                if not isinstance(muscle, str) or not muscle.strip():
                    continue
                key = muscle.strip()
                totals[key] = totals.get(key, 0) + int(set_count)
        return totals

    @classmethod
    def group_by_template(
        cls, sessions: Iterable[Mapping[str, Any]]
    ) -> Dict[str, List[dict]]:
        """Group sessions by template name and number them chronologically."""
        groups: Dict[str, List[dict]] = {}
        for session in sessions:
            name = session.get("template_name") or cls.UNKNOWN_TEMPLATE
            groups.setdefault(name, []).append(dict(session))
        for name, items in groups.items():
            items.sort(key=cls._sort_key)
            for number, item in enumerate(items, start=1):
                item["workout_number"] = number
        return groups

    @classmethod
    def exercise_volume_history(
        cls, sessions: Iterable[Mapping[str, Any]], exercise_name: str
    ) -> List[dict]:
        """Return per-session load statistics for ``exercise_name``.

        Only sets with positive weight and reps are counted.
        """
        target = exercise_name.strip().lower()
        history = []
        for session in sorted(sessions, key=cls._sort_key):
            pairs = []
            for exercise in session.get("exercises") or []:
                if str(exercise.get("exercise_name") or "").strip().lower() != target:
                    continue
                for set_row in exercise.get("sets") or []:
                    weight, reps = cls.set_values(set_row)
                    if weight > 0 and reps > 0:
                        pairs.append((weight, reps))
            if not pairs:
                continue
            weights = [w for w, _ in pairs]
            history.append(
                {
                    "session_id": session.get("id"),
                    "date": session.get("session_date"),
                    "total_volume": round(sum(w * r for w, r in pairs), 2),
                    "avg_weight": round(sum(weights) / len(weights), 2),
                    "max_weight": max(weights),
                    "set_count": len(pairs),
                }
            )
        return history

    @staticmethod
    def gym_visits(session_dates: Iterable[Any], today: datetime.date) -> dict:
        """Count sessions this calendar month and the previous one."""
        this_month = (today.year, today.month)
        if today.month == 1:
            last_month = (today.year - 1, 12)
        else:
            last_month = (today.year, today.month - 1)
        current = previous = 0
        for value in session_dates:
            day = WeekTools.parse_date(value)
            if day is None:
                continue
            key = (day.year, day.month)
            if key == this_month:
                current += 1
            elif key == last_month:
                previous += 1
        change = None
        if previous:
            change = round((current - previous) / previous * 100, 2)
        return {
            "this_month": current,
            "last_month": previous,
            "percent_change": change,
        }

    @staticmethod
    def weight_change(starting: Any, current: Any) -> dict:
        """Return the absolute and relative body-weight change."""
        start = MetricParser.to_number(starting)
        now = MetricParser.to_number(current)
        percent = round((now - start) / start * 100, 2) if start else 0.0
        return {
            "starting": start,
            "current": now,
            "change": round(now - start, 2),
            "percent_change": percent,
        }
