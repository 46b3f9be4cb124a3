from __future__ import annotations

import datetime
from typing import Dict, List, Optional

import structlog

from algorithms import WeekTools, WeightConverter, WorkoutAnalytics
from db import (
    Database,
    MuscleVolumeRepository,
    SessionRepository,
    UserInfoRepository,
    WeightHistoryRepository,
)
from settings_schema import SettingsSchema

logger = structlog.get_logger(__name__)


class StatisticsService:
    """Compute workout statistics for analysis."""

    def __init__(
        self,
        session_repo: SessionRepository,
        muscle_repo: MuscleVolumeRepository | None = None,
        weight_repo: WeightHistoryRepository | None = None,
        user_repo: UserInfoRepository | None = None,
        settings: SettingsSchema | None = None,
    ) -> None:
        self.sessions = session_repo
        self.muscle_volume = muscle_repo
        self.weights = weight_repo
        self.users = user_repo
        self.settings = settings or SettingsSchema()

    @classmethod
    def for_database(
        cls, database: Database, settings: SettingsSchema | None = None
    ) -> "StatisticsService":
        return cls(
            SessionRepository(database),
            MuscleVolumeRepository(database),
            WeightHistoryRepository(database),
            UserInfoRepository(database),
            settings,
        )

    def _in_unit(self, points: List[dict]) -> List[dict]:
        unit = self.settings.weight_unit
        if unit == "kg":
            return points
        return [
            dict(p, avg_weight=WeightConverter.convert(p["avg_weight"], unit))
            for p in points
        ]

    async def weekly_volume(
        self,
        week_count: Optional[int] = None,
        template_name: Optional[str] = None,
        today: Optional[datetime.date] = None,
    ) -> List[dict]:
        """Return weekly volume buckets, oldest first."""
        today = today or datetime.date.today()
        count = week_count if week_count is not None else self.settings.week_count
        buckets = WeekTools.build_buckets(today, count)
        if not buckets:
            return []
        sessions = await self.sessions.fetch_all_details(
            template_name=template_name, start_date=buckets[0]["start"]
        )
        volumes = [WorkoutAnalytics.session_volume(s) for s in sessions]
        return WorkoutAnalytics.fold_into_buckets(buckets, volumes)

    async def exercise_progress(
        self,
        exercise_name: str,
        point_count: Optional[int] = None,
        template_name: Optional[str] = None,
    ) -> List[dict]:
        """Return the progressive overload series for ``exercise_name``."""
        count = point_count if point_count is not None else self.settings.progress_points
        sessions = await self.sessions.fetch_all_details(template_name=template_name)
        series = WorkoutAnalytics.progressive_overload_series(
            sessions, exercise_name, count
        )
        return self._in_unit(series)

    async def workout_analytics(
        self,
        template_name: Optional[str] = None,
        today: Optional[datetime.date] = None,
    ) -> dict:
        """Return chart-ready analytics for one template or all sessions."""
        today = today or datetime.date.today()
        sessions = await self.sessions.fetch_all_details(template_name=template_name)
        top = WorkoutAnalytics.top_exercises_by_frequency(
            sessions, self.settings.top_exercise_limit
        )
        progress: Dict[str, List[dict]] = {
            name: self._in_unit(
                WorkoutAnalytics.progressive_overload_series(
                    sessions, name, self.settings.progress_points
                )
            )
            for name in top
        }
        result = {
            "template_name": template_name,
            "session_count": len(sessions),
            "weekly_volume": WorkoutAnalytics.bucket_by_week(
                sessions, self.settings.week_count, today
            ),
            "top_exercises": top,
            "progress": progress,
            "completion_rate": WorkoutAnalytics.completion_rate(sessions),
            "weight_unit": self.settings.weight_unit,
        }
        logger.debug(
            "workout_analytics_computed",
            template_name=template_name,
            sessions=len(sessions),
        )
        return result

    async def _body_weight(self) -> Optional[dict]:
        if self.weights is None:
            return None
        profile = await self.users.fetch() if self.users is not None else None
        starting = profile.get("weight") if profile else None
        if starting is None:
            starting = await self.weights.fetch_first()
        current = await self.weights.fetch_latest()
        if starting is None and current is None:
            return None
        if current is None:
            current = starting
        if starting is None:
            starting = current
        change = WorkoutAnalytics.weight_change(starting, current)
        goal = profile.get("goal_weight") if profile else None
        if goal is None:
            goal = round(change["starting"] * 0.9)
        change["goal"] = goal
        unit = self.settings.weight_unit
        if unit != "kg":
            for key in ("starting", "current", "change", "goal"):
                change[key] = WeightConverter.convert(change[key], unit)
        change["unit"] = unit
        return change

    async def overview(self, today: Optional[datetime.date] = None) -> dict:
        """Return general analytics: visits, completion, body weight, muscles."""
        today = today or datetime.date.today()
        sessions = await self.sessions.fetch_all_details()
        visits = WorkoutAnalytics.gym_visits(
            (s["session_date"] for s in sessions), today
        )
        muscles = (
            await self.muscle_volume.totals() if self.muscle_volume is not None else {}
        )
        return {
            "session_count": len(sessions),
            "gym_visits": visits,
            "completion_rate": WorkoutAnalytics.completion_rate(sessions),
            "templates": {
                name: len(items)
                for name, items in WorkoutAnalytics.group_by_template(sessions).items()
            },
            "muscle_totals": muscles,
            "body_weight": await self._body_weight(),
        }
