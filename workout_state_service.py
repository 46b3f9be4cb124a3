from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional, Union

import structlog

from db import (
    AppStateRepository,
    Database,
    MuscleVolumeRepository,
    SessionRepository,
)
from errors import ConstraintViolationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Idle:
    """No workout is in progress."""


@dataclass(frozen=True)
class Exercising:
    """A workout started from ``active_template_id`` is in progress."""

    active_template_id: int


WorkoutState = Union[Idle, Exercising]


class WorkoutStateService:
    """Drive the Idle/Exercising state machine backed by ``app_state``."""

    def __init__(self, database: Database) -> None:
        self.state = AppStateRepository(database)
        self.sessions = SessionRepository(database)
        self.muscle_volume = MuscleVolumeRepository(database)
        self._active_session_id: Optional[int] = None

    async def current(self) -> WorkoutState:
        row = await self.state.fetch()
        if row["is_exercising"] and row["active_template_id"] is not None:
            return Exercising(row["active_template_id"])
        return Idle()

    async def start_workout(
        self,
        template_id: int,
        session_date: Union[str, datetime.date, None] = None,
    ) -> int:
        """Start a session from ``template_id`` and return the session id."""
        if isinstance(await self.current(), Exercising):
            raise ConstraintViolationError("a workout is already in progress")
        session_id = await self.sessions.start(template_id, session_date)
        await self.state.set(True, template_id)
        self._active_session_id = session_id
        logger.info("workout_started", template_id=template_id, session_id=session_id)
        return session_id

    async def _resolve_session(self, state: Exercising) -> Optional[int]:
        if self._active_session_id is not None:
            return self._active_session_id
        row = await self.sessions.fetch_one(
            "SELECT id FROM workout_sessions WHERE workout_template_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1;",
            (state.active_template_id,),
        )
        return row["id"] if row else None

    async def stop_workout(
        self, session_id: Optional[int] = None, duration: Optional[int] = None
    ) -> Optional[int]:
        """Finish the active workout.

        ``duration`` is stored in minutes.  The muscle volume rollup of the
        session is recomputed before returning to idle.
        """
        state = await self.current()
        if not isinstance(state, Exercising):
            raise ConstraintViolationError("no workout in progress")
        if session_id is None:
            session_id = await self._resolve_session(state)
        if session_id is not None:
            if duration is not None:
                await self.sessions.set_duration(session_id, duration)
            await self.muscle_volume.finalize(session_id)
        else:
            logger.warning(
                "workout_session_unresolved",
                template_id=state.active_template_id,
                duration=duration,
            )
        await self.state.set(False, None)
        self._active_session_id = None
        logger.info("workout_stopped", session_id=session_id, duration=duration)
        return session_id
