from __future__ import annotations

import asyncio
import datetime
import json
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import aiosqlite
import structlog
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from algorithms.analytics import WorkoutAnalytics
from algorithms.metric_parser import MetricParser
from algorithms.route_tools import RouteTools
from errors import (
    ConstraintViolationError,
    MigrationError,
    NotFoundError,
    NotInitializedError,
)
from migrations import (
    MIGRATIONS,
    Migration,
    atomic,
    run_migrations,
    table_columns,
    table_exists,
)

logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.datetime.now().isoformat(timespec="seconds")


def _day(value: Union[str, datetime.date, None]) -> Optional[str]:
    """Normalize a date filter to ``YYYY-MM-DD``."""
    if value is None:
        return None
    if isinstance(value, datetime.date):
        return value.isoformat()[:10]
    return str(value)[:10]


def _timestamp(value: Union[str, datetime.date, None]) -> str:
    if value is None:
        return _now()
    if isinstance(value, datetime.datetime):
        return value.isoformat(timespec="seconds")
    if isinstance(value, datetime.date):
        return value.isoformat()
    return str(value)


async def _execute(
    conn: aiosqlite.Connection, query: str, params: Tuple = ()
) -> aiosqlite.Cursor:
    try:
        return await conn.execute(query, params)
    except sqlite3.IntegrityError as exc:
        raise ConstraintViolationError(str(exc)) from exc


async def _fetch_all(
    conn: aiosqlite.Connection, query: str, params: Tuple = ()
) -> List[sqlite3.Row]:
    cursor = await conn.execute(query, params)
    return await cursor.fetchall()


class Database:
    """Owns the shared SQLite connection, schema creation and migrations.

    Nothing is opened in the constructor.  :meth:`ensure_schema` must
    complete before any repository built on this instance is usable.
    """

    _TABLE_DEFINITIONS = {
        "workout_templates": (
            """CREATE TABLE workout_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    name TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT
                );""",
            ["id", "user_id", "name", "created_at", "updated_at"],
        ),
        "template_exercises": (
            """CREATE TABLE template_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_template_id INTEGER NOT NULL,
                    exercise_name TEXT NOT NULL,
                    secondary_muscle_groups TEXT,
                    sets INTEGER NOT NULL DEFAULT 3,
                    metrics TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    FOREIGN KEY(workout_template_id) REFERENCES workout_templates(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "workout_template_id",
                "exercise_name",
                "secondary_muscle_groups",
                "sets",
                "metrics",
                "created_at",
                "updated_at",
            ],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_template_id INTEGER,
                    template_name TEXT,
                    user_id INTEGER,
                    session_date TEXT NOT NULL,
                    duration INTEGER,
                    created_at TEXT,
                    updated_at TEXT,
                    FOREIGN KEY(workout_template_id) REFERENCES workout_templates(id) ON DELETE SET NULL
                );""",
            [
                "id",
                "workout_template_id",
                "template_name",
                "user_id",
                "session_date",
                "duration",
                "created_at",
                "updated_at",
            ],
        ),
        "session_exercises": (
            """CREATE TABLE session_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_session_id INTEGER NOT NULL,
                    exercise_name TEXT NOT NULL,
                    secondary_muscle_groups TEXT,
                    planned_sets INTEGER NOT NULL DEFAULT 3,
                    metrics TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    FOREIGN KEY(workout_session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "workout_session_id",
                "exercise_name",
                "secondary_muscle_groups",
                "planned_sets",
                "metrics",
                "created_at",
                "updated_at",
            ],
        ),
        "session_sets": (
            """CREATE TABLE session_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_exercise_id INTEGER NOT NULL,
                    set_index INTEGER NOT NULL,
                    reps_or_time REAL,
                    weight REAL,
                    custom_metrics TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(session_exercise_id, set_index),
                    FOREIGN KEY(session_exercise_id) REFERENCES session_exercises(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "session_exercise_id",
                "set_index",
                "reps_or_time",
                "weight",
                "custom_metrics",
                "created_at",
                "updated_at",
            ],
        ),
        "session_muscle_volume": (
            """CREATE TABLE session_muscle_volume (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_session_id INTEGER NOT NULL,
                    muscle_name TEXT NOT NULL,
                    total_sets INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT,
                    FOREIGN KEY(workout_session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "workout_session_id",
                "muscle_name",
                "total_sets",
                "created_at",
                "updated_at",
            ],
        ),
        "app_state": (
            """CREATE TABLE app_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    is_exercising INTEGER NOT NULL DEFAULT 0,
                    active_template_id INTEGER,
                    updated_at TEXT,
                    FOREIGN KEY(active_template_id) REFERENCES workout_templates(id) ON DELETE SET NULL
                );""",
            ["id", "is_exercising", "active_template_id", "updated_at"],
        ),
        "migrations": (
            """CREATE TABLE migrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    executed_at TEXT
                );""",
            ["id", "name", "executed_at"],
        ),
        "user_info": (
            """CREATE TABLE user_info (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    weight REAL,
                    goal_weight REAL,
                    height REAL,
                    age INTEGER,
                    sex TEXT,
                    name TEXT,
                    profile_picture TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );""",
            [
                "id",
                "weight",
                "goal_weight",
                "height",
                "age",
                "sex",
                "name",
                "profile_picture",
                "created_at",
                "updated_at",
            ],
        ),
        "weight_history": (
            """CREATE TABLE weight_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    weight REAL,
                    created_at TEXT,
                    updated_at TEXT
                );""",
            ["id", "weight", "created_at", "updated_at"],
        ),
        "runs": (
            """CREATE TABLE runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    name TEXT,
                    distance REAL,
                    duration INTEGER,
                    pace REAL,
                    start_time TEXT,
                    end_time TEXT,
                    route_data TEXT,
                    time_at_100m INTEGER,
                    time_at_500m INTEGER,
                    time_at_1k INTEGER,
                    time_at_5k INTEGER,
                    time_at_10k INTEGER,
                    time_at_half_marathon INTEGER,
                    time_at_marathon INTEGER,
                    calories INTEGER,
                    avg_heart_rate INTEGER,
                    max_heart_rate INTEGER,
                    created_at TEXT,
                    updated_at TEXT,
                    FOREIGN KEY(user_id) REFERENCES user_info(id) ON DELETE SET NULL
                );""",
            [
                "id",
                "user_id",
                "name",
                "distance",
                "duration",
                "pace",
                "start_time",
                "end_time",
                "route_data",
                "time_at_100m",
                "time_at_500m",
                "time_at_1k",
                "time_at_5k",
                "time_at_10k",
                "time_at_half_marathon",
                "time_at_marathon",
                "calories",
                "avg_heart_rate",
                "max_heart_rate",
                "created_at",
                "updated_at",
            ],
        ),
    }

    _SELF_HEALING_TABLES = ("app_state",)

    _WORKOUT_TABLES = (
        "session_muscle_volume",
        "session_sets",
        "session_exercises",
        "workout_sessions",
        "template_exercises",
        "workout_templates",
    )

    def __init__(
        self,
        db_path: str = "ironinsight.db",
        migrations: Iterable[Migration] | None = None,
    ) -> None:
        self._db_path = db_path
        self._migrations = list(MIGRATIONS if migrations is None else migrations)
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def connection(self) -> aiosqlite.Connection:
        """The shared connection; raises until the schema is ready."""
        if not self._initialized or self._conn is None:
            raise NotInitializedError()
        return self._conn

    async def open(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA foreign_keys = ON;")
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
        self._conn = None
        self._initialized = False

    async def __aenter__(self) -> "Database":
        await self.ensure_schema()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self):
        """Yield the connection inside ``BEGIN``/``COMMIT``.

        Units of work are serialized so statements from two tasks never
        interleave inside one transaction.  The lock is not reentrant.
        """
        conn = self.connection
        async with self._lock:
            async with atomic(conn):
                yield conn

    async def ensure_schema(self) -> None:
        """Create tables, repair ``app_state`` and apply pending migrations.

        Concurrent callers wait for the first one to finish.
        """
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._create_schema()

    async def _create_schema(self) -> None:
        conn = await self.open()
        try:
            async with atomic(conn):
                for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                    await self._ensure_table(conn, table, sql, columns)
                await conn.execute(
                    "INSERT OR IGNORE INTO app_state (id, is_exercising, active_template_id, updated_at) "
                    "VALUES (1, 0, NULL, ?);",
                    (_now(),),
                )
            await run_migrations(conn, self._migrations)
            await self._verify_columns(conn)
        except MigrationError:
            await self.close()
            raise
        except sqlite3.Error as exc:
            await self.close()
            raise MigrationError(f"schema creation failed: {exc}") from exc
        self._initialized = True
        logger.info("schema_ready", db_path=self._db_path)

    async def _ensure_table(
        self, conn: aiosqlite.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        if not await table_exists(conn, table):
            await conn.execute(sql)
            logger.info("table_created", table=table)
            return
        if table not in self._SELF_HEALING_TABLES:
            return
        existing = await table_columns(conn, table)
        missing = [c for c in columns if c not in existing]
        if missing:
            logger.warning("table_self_healed", table=table, missing=missing)
            await conn.execute(f"DROP TABLE {table};")
            await conn.execute(sql)

    async def _verify_columns(self, conn: aiosqlite.Connection) -> None:
        for table, (_, columns) in self._TABLE_DEFINITIONS.items():
            existing = set(await table_columns(conn, table))
            missing = [c for c in columns if c not in existing]
            if missing:
                raise MigrationError(
                    f"table {table} is missing columns: {', '.join(missing)}"
                )

    async def delete_all_data(self) -> None:
        """Reset the workout state and delete every workout row."""
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE app_state SET is_exercising = 0, active_template_id = NULL, updated_at = ? "
                "WHERE id = 1;",
                (_now(),),
            )
            for table in self._WORKOUT_TABLES:
                await conn.execute(f"DELETE FROM {table};")
        logger.info("data_wiped", tables=list(self._WORKOUT_TABLES))


class AsyncBaseRepository:
    """Base repository sharing one :class:`Database` connection."""

    def __init__(self, database: Database) -> None:
        self.db = database

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self.db.transaction() as conn:
            cursor = await _execute(conn, query, params)
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        return await _fetch_all(self.db.connection, query, params)

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[sqlite3.Row]:
        rows = await _fetch_all(self.db.connection, query, params)
        return rows[0] if rows else None

    @staticmethod
    async def _require(
        conn: aiosqlite.Connection, table: str, row_id: int, entity: str
    ) -> sqlite3.Row:
        rows = await _fetch_all(conn, f"SELECT * FROM {table} WHERE id = ?;", (row_id,))
        if not rows:
            raise NotFoundError(f"{entity} not found")
        return rows[0]


class TemplateExerciseIn(BaseModel):
    """Validated exercise payload for template writes."""

    name: str = Field(validation_alias=AliasChoices("name", "exercise_name"))
    sets: int = Field(default=3, ge=1)
    secondary_muscle_groups: List[str] = Field(default_factory=list)
    metrics: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("exercise name must not be empty")
        return value

    @field_validator("secondary_muscle_groups")
    @classmethod
    def _clean_muscles(cls, value: List[str]) -> List[str]:
        return [m.strip() for m in value if m and m.strip()]


def _validate_exercises(exercises: Iterable[Mapping[str, Any]]) -> List[TemplateExerciseIn]:
    try:
        return [TemplateExerciseIn.model_validate(dict(e)) for e in exercises]
    except (ValidationError, TypeError, ValueError) as exc:
        raise ConstraintViolationError(f"invalid template exercise: {exc}") from exc


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ConstraintViolationError("template name must not be empty")
    return name.strip()


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _history_sets(history: Optional[Mapping[str, Any]]) -> Dict[str, List[dict]]:
    """Return the non-empty performed sets of ``history`` per exercise."""
    if not history:
        return {}
    if not isinstance(history, Mapping):
        raise ConstraintViolationError("history must map exercise names to sets")
    result: Dict[str, List[dict]] = {}
    for name, entry in history.items():
        sets = entry.get("sets") if isinstance(entry, Mapping) else entry
        if not isinstance(sets, (list, tuple)):
            raise ConstraintViolationError(f"history for {name} must be a list of sets")
        kept = []
        for raw in sets:
            if not isinstance(raw, Mapping):
                raise ConstraintViolationError(f"history for {name} contains a non-mapping set")
            bag = {k: v for k, v in raw.items() if k not in ("customMetrics", "custom_metrics")}
            extra = MetricParser.lookup(raw, "customMetrics", "custom_metrics")
            if isinstance(extra, Mapping):
                bag.update(extra)
            bag = {k: v for k, v in bag.items() if not _blank(v)}
            if any(not _blank(MetricParser.lookup(bag, key)) for key in ("reps", "time", "weight")):
                kept.append(bag)
        if kept:
            result[str(name)] = kept
    return result


def _template_exercise_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "workout_template_id": row["workout_template_id"],
        "exercise_name": row["exercise_name"],
        "secondary_muscle_groups": MetricParser.parse_list(
            row["secondary_muscle_groups"], template_exercise_id=row["id"]
        ),
        "sets": row["sets"],
        "metrics": MetricParser.parse_list(row["metrics"], template_exercise_id=row["id"]),
    }


class TemplateRepository(AsyncBaseRepository):
    """Repository for workout templates and their exercises."""

    async def _insert_exercises(
        self,
        conn: aiosqlite.Connection,
        template_id: int,
        exercises: List[TemplateExerciseIn],
        now: str,
    ) -> None:
        for exercise in exercises:
            await _execute(
                conn,
                "INSERT INTO template_exercises (workout_template_id, exercise_name, secondary_muscle_groups, sets, metrics, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?);",
                (
                    template_id,
                    exercise.name,
                    json.dumps(exercise.secondary_muscle_groups),
                    exercise.sets,
                    json.dumps(exercise.metrics),
                    now,
                    now,
                ),
            )

    async def create(
        self,
        name: str,
        exercises: Iterable[Mapping[str, Any]] = (),
        user_id: Optional[int] = None,
        history: Optional[Mapping[str, Any]] = None,
        session_date: Union[str, datetime.date, None] = None,
    ) -> int:
        """Create a template with ``exercises`` and return its id.

        ``history`` maps exercise names to sets already performed, either a
        list of set dicts or ``{"sets": [...]}``.  When any of those sets
        carries reps, time or weight, a session dated ``session_date`` is
        recorded with them in the same transaction.
        """
        name = _validate_name(name)
        validated = _validate_exercises(exercises)
        performed = _history_sets(history)
        now = _now()
        session_id = None
        async with self.db.transaction() as conn:
            cursor = await _execute(
                conn,
                "INSERT INTO workout_templates (user_id, name, created_at, updated_at) VALUES (?, ?, ?, ?);",
                (user_id, name, now, now),
            )
            template_id = cursor.lastrowid
            await self._insert_exercises(conn, template_id, validated, now)
            if performed:
                template = await self._require(conn, "workout_templates", template_id, "template")
                session_id = await _insert_session(conn, template, session_date, user_id, now)
                rows = await _fetch_all(
                    conn,
                    "SELECT id, exercise_name FROM session_exercises WHERE workout_session_id = ? ORDER BY id;",
                    (session_id,),
                )
                for row in rows:
                    sets = MetricParser.lookup(performed, row["exercise_name"]) or []
                    for index, metrics in enumerate(sets, start=1):
                        await _upsert_set(conn, row["id"], index, metrics, now)
        if session_id is not None:
            await MuscleVolumeRepository(self.db).finalize(session_id)
        logger.info(
            "template_created",
            template_id=template_id,
            exercises=len(validated),
            history_session_id=session_id,
        )
        return template_id

    async def update(
        self,
        template_id: int,
        name: Optional[str] = None,
        exercises: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> None:
        """Rename a template and/or replace its exercise list.

        Sessions already started from the template keep their snapshot.
        """
        if name is not None:
            name = _validate_name(name)
        validated = _validate_exercises(exercises) if exercises is not None else None
        now = _now()
        async with self.db.transaction() as conn:
            await self._require(conn, "workout_templates", template_id, "template")
            if name is not None:
                await _execute(
                    conn,
                    "UPDATE workout_templates SET name = ?, updated_at = ? WHERE id = ?;",
                    (name, now, template_id),
                )
            else:
                await _execute(
                    conn,
                    "UPDATE workout_templates SET updated_at = ? WHERE id = ?;",
                    (now, template_id),
                )
            if validated is not None:
                await _execute(
                    conn,
                    "DELETE FROM template_exercises WHERE workout_template_id = ?;",
                    (template_id,),
                )
                await self._insert_exercises(conn, template_id, validated, now)

    async def delete(self, template_id: int) -> None:
        """Delete a template and its exercises; sessions keep their snapshot."""
        async with self.db.transaction() as conn:
            await self._require(conn, "workout_templates", template_id, "template")
            rows = await _fetch_all(
                conn,
                "SELECT is_exercising, active_template_id FROM app_state WHERE id = 1;",
            )
            if rows and rows[0]["is_exercising"] and rows[0]["active_template_id"] == template_id:
                raise ConstraintViolationError(
                    "template is used by the active workout"
                )
            await _execute(
                conn, "DELETE FROM workout_templates WHERE id = ?;", (template_id,)
            )
        logger.info("template_deleted", template_id=template_id)

    async def fetch_all(self) -> List[dict]:
        """Return every template with its exercise count and muscle groups."""
        rows = await super().fetch_all(
            """SELECT t.id, t.name, t.created_at, t.updated_at,
                      COUNT(te.id) AS exercise_count
               FROM workout_templates t
               LEFT JOIN template_exercises te ON te.workout_template_id = t.id
               GROUP BY t.id
               ORDER BY t.created_at DESC, t.id DESC;"""
        )
        muscle_rows = await super().fetch_all(
            "SELECT id, workout_template_id, secondary_muscle_groups FROM template_exercises ORDER BY id;"
        )
        muscles: Dict[int, List[str]] = {}
        for row in muscle_rows:
            bucket = muscles.setdefault(row["workout_template_id"], [])
            for muscle in MetricParser.parse_list(
                row["secondary_muscle_groups"], template_exercise_id=row["id"]
            ):
                if isinstance(muscle, str) and muscle not in bucket:
                    bucket.append(muscle)
        return [
            {
                "id": row["id"],
                "name": row["name"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "exercise_count": row["exercise_count"],
                "muscle_groups": muscles.get(row["id"], []),
            }
            for row in rows
        ]

    async def fetch_detail(self, template_id: int) -> dict:
        row = await self.fetch_one(
            "SELECT id, user_id, name, created_at, updated_at FROM workout_templates WHERE id = ?;",
            (template_id,),
        )
        if row is None:
            raise NotFoundError("template not found")
        exercises = await super().fetch_all(
            "SELECT * FROM template_exercises WHERE workout_template_id = ? ORDER BY id;",
            (template_id,),
        )
        detail = dict(row)
        detail["exercises"] = [_template_exercise_dict(e) for e in exercises]
        return detail


class TemplateExerciseRepository(AsyncBaseRepository):
    """Repository for single template exercise rows."""

    async def fetch_for_template(self, template_id: int) -> List[dict]:
        if await self.fetch_one(
            "SELECT id FROM workout_templates WHERE id = ?;", (template_id,)
        ) is None:
            raise NotFoundError("template not found")
        rows = await self.fetch_all(
            "SELECT * FROM template_exercises WHERE workout_template_id = ? ORDER BY id;",
            (template_id,),
        )
        return [_template_exercise_dict(r) for r in rows]

    async def remove(self, exercise_id: int) -> None:
        async with self.db.transaction() as conn:
            cursor = await _execute(
                conn, "DELETE FROM template_exercises WHERE id = ?;", (exercise_id,)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("template exercise not found")


def _session_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "workout_template_id": row["workout_template_id"],
        "template_name": row["template_name"],
        "user_id": row["user_id"],
        "session_date": row["session_date"],
        "duration": row["duration"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _session_exercise_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "workout_session_id": row["workout_session_id"],
        "exercise_name": row["exercise_name"],
        "secondary_muscle_groups": MetricParser.parse_list(
            row["secondary_muscle_groups"], session_exercise_id=row["id"]
        ),
        "planned_sets": row["planned_sets"],
        "metrics": MetricParser.parse_list(row["metrics"], session_exercise_id=row["id"]),
        "sets": [],
    }


def _set_dict(row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "session_exercise_id": row["session_exercise_id"],
        "set_index": row["set_index"],
        "reps_or_time": row["reps_or_time"],
        "weight": row["weight"],
        "custom_metrics": row["custom_metrics"],
    }


REPS_KEYS = ("reps", "time", "seconds")


async def _insert_session(
    conn: aiosqlite.Connection,
    template: sqlite3.Row,
    session_date: Union[str, datetime.date, None],
    user_id: Optional[int],
    now: str,
) -> int:
    """Insert a session copying ``template``'s exercises; returns its id."""
    cursor = await _execute(
        conn,
        "INSERT INTO workout_sessions (workout_template_id, template_name, user_id, session_date, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?);",
        (
            template["id"],
            template["name"],
            user_id if user_id is not None else template["user_id"],
            _timestamp(session_date),
            now,
            now,
        ),
    )
    session_id = cursor.lastrowid
    await _execute(
        conn,
        "INSERT INTO session_exercises (workout_session_id, exercise_name, secondary_muscle_groups, planned_sets, metrics, created_at, updated_at) "
        "SELECT ?, exercise_name, secondary_muscle_groups, sets, metrics, ?, ? "
        "FROM template_exercises WHERE workout_template_id = ? ORDER BY id;",
        (session_id, now, now, template["id"]),
    )
    return session_id


def _set_payload(metrics: Any) -> Tuple[str, Optional[float], Optional[float]]:
    """Return the serialized bag and the derived ``reps_or_time``/``weight``."""
    if not isinstance(metrics, Mapping):
        raise ConstraintViolationError("metrics must be a mapping")
    try:
        payload = json.dumps(dict(metrics))
    except (TypeError, ValueError) as exc:
        raise ConstraintViolationError(f"metrics are not serializable: {exc}") from exc
    reps = MetricParser.classify(MetricParser.lookup(metrics, *REPS_KEYS)).value
    weight = MetricParser.classify(MetricParser.lookup(metrics, "weight")).value
    return payload, reps, weight


async def _upsert_set(
    conn: aiosqlite.Connection,
    session_exercise_id: int,
    set_index: int,
    metrics: Mapping[str, Any],
    now: str,
) -> None:
    payload, reps, weight = _set_payload(metrics)
    await _execute(
        conn,
        "INSERT INTO session_sets (session_exercise_id, set_index, reps_or_time, weight, custom_metrics, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(session_exercise_id, set_index) DO UPDATE SET "
        "reps_or_time=excluded.reps_or_time, weight=excluded.weight, "
        "custom_metrics=excluded.custom_metrics, updated_at=excluded.updated_at;",
        (session_exercise_id, set_index, reps, weight, payload, now, now),
    )


class SessionRepository(AsyncBaseRepository):
    """Repository for performed workout sessions."""

    @staticmethod
    def _filter(
        template_name: Optional[str],
        start_date: Union[str, datetime.date, None],
        end_date: Union[str, datetime.date, None],
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if template_name is not None:
            clauses.append("template_name = ?")
            params.append(template_name)
        if start_date is not None:
            clauses.append("substr(session_date, 1, 10) >= ?")
            params.append(_day(start_date))
        if end_date is not None:
            clauses.append("substr(session_date, 1, 10) <= ?")
            params.append(_day(end_date))
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    async def start(
        self,
        template_id: int,
        session_date: Union[str, datetime.date, None] = None,
        user_id: Optional[int] = None,
    ) -> int:
        """Create a session mirroring the template's current exercises."""
        now = _now()
        async with self.db.transaction() as conn:
            template = await self._require(
                conn, "workout_templates", template_id, "template"
            )
            session_id = await _insert_session(conn, template, session_date, user_id, now)
        logger.info("session_started", session_id=session_id, template_id=template_id)
        return session_id

    async def fetch_all(
        self,
        template_name: Optional[str] = None,
        start_date: Union[str, datetime.date, None] = None,
        end_date: Union[str, datetime.date, None] = None,
    ) -> List[dict]:
        """Return sessions, newest first, optionally filtered."""
        where, params = self._filter(template_name, start_date, end_date)
        rows = await super().fetch_all(
            f"SELECT * FROM workout_sessions{where} ORDER BY session_date DESC, id DESC;",
            tuple(params),
        )
        return [_session_dict(r) for r in rows]

    async def fetch_detail(self, session_id: int) -> dict:
        """Return a session with its exercises and sets materialized."""
        row = await self.fetch_one(
            "SELECT * FROM workout_sessions WHERE id = ?;", (session_id,)
        )
        if row is None:
            raise NotFoundError("session not found")
        session = _session_dict(row)
        exercise_rows = await super().fetch_all(
            "SELECT * FROM session_exercises WHERE workout_session_id = ? ORDER BY id;",
            (session_id,),
        )
        set_rows = await super().fetch_all(
            "SELECT ss.* FROM session_sets ss "
            "JOIN session_exercises se ON se.id = ss.session_exercise_id "
            "WHERE se.workout_session_id = ? ORDER BY ss.session_exercise_id, ss.set_index;",
            (session_id,),
        )
        exercises = {r["id"]: _session_exercise_dict(r) for r in exercise_rows}
        for set_row in set_rows:
            exercise = exercises.get(set_row["session_exercise_id"])
            if exercise is not None:
                exercise["sets"].append(_set_dict(set_row))
        session["exercises"] = list(exercises.values())
        return session

    async def fetch_all_details(
        self,
        template_name: Optional[str] = None,
        start_date: Union[str, datetime.date, None] = None,
        end_date: Union[str, datetime.date, None] = None,
    ) -> List[dict]:
        """Materialize every matching session in three queries."""
        where, params = self._filter(template_name, start_date, end_date)
        session_rows = await super().fetch_all(
            f"SELECT * FROM workout_sessions{where} ORDER BY session_date DESC, id DESC;",
            tuple(params),
        )
        selected = f"SELECT id FROM workout_sessions{where}"
        exercise_rows = await super().fetch_all(
            f"SELECT * FROM session_exercises WHERE workout_session_id IN ({selected}) ORDER BY id;",
            tuple(params),
        )
        set_rows = await super().fetch_all(
            "SELECT ss.* FROM session_sets ss "
            "JOIN session_exercises se ON se.id = ss.session_exercise_id "
            f"WHERE se.workout_session_id IN ({selected}) "
            "ORDER BY ss.session_exercise_id, ss.set_index;",
            tuple(params),
        )
        sessions = {r["id"]: dict(_session_dict(r), exercises=[]) for r in session_rows}
        exercises: Dict[int, dict] = {}
        for row in exercise_rows:
            session = sessions.get(row["workout_session_id"])
            if session is None:
                continue
            exercise = _session_exercise_dict(row)
            exercises[row["id"]] = exercise
            session["exercises"].append(exercise)
        for row in set_rows:
            exercise = exercises.get(row["session_exercise_id"])
            if exercise is not None:
                exercise["sets"].append(_set_dict(row))
        return list(sessions.values())

    async def set_duration(self, session_id: int, minutes: int) -> None:
        """Store the session duration in minutes."""
        value = MetricParser.classify(minutes)
        if value.value is None or value.value < 0:
            raise ConstraintViolationError("duration must be a non-negative number")
        async with self.db.transaction() as conn:
            cursor = await _execute(
                conn,
                "UPDATE workout_sessions SET duration = ?, updated_at = ? WHERE id = ?;",
                (int(round(value.value)), _now(), session_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("session not found")

    async def delete(self, session_id: int) -> None:
        async with self.db.transaction() as conn:
            cursor = await _execute(
                conn, "DELETE FROM workout_sessions WHERE id = ?;", (session_id,)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("session not found")
        logger.info("session_deleted", session_id=session_id)

    async def template_names(self) -> List[str]:
        rows = await super().fetch_all(
            "SELECT DISTINCT template_name FROM workout_sessions "
            "WHERE template_name IS NOT NULL ORDER BY template_name;"
        )
        return [r[0] for r in rows]


class SessionSetRepository(AsyncBaseRepository):
    """Repository for sets recorded during a session."""

    REPS_KEYS = REPS_KEYS

    async def record(
        self, session_exercise_id: int, set_index: int, metrics: Mapping[str, Any]
    ) -> int:
        """Insert or replace the set at ``set_index`` and return its id.

        ``set_index`` is 1-based; the first set of an exercise is 1.
        """
        if isinstance(set_index, bool) or not isinstance(set_index, int) or set_index < 1:
            raise ConstraintViolationError(
                "set_index must be a positive integer (sets are numbered from 1)"
            )
        _set_payload(metrics)
        now = _now()
        async with self.db.transaction() as conn:
            await self._require(
                conn, "session_exercises", session_exercise_id, "session exercise"
            )
            await _upsert_set(conn, session_exercise_id, set_index, metrics, now)
            rows = await _fetch_all(
                conn,
                "SELECT id FROM session_sets WHERE session_exercise_id = ? AND set_index = ?;",
                (session_exercise_id, set_index),
            )
        return rows[0]["id"]

    async def fetch_for_exercise(self, session_exercise_id: int) -> List[dict]:
        rows = await self.fetch_all(
            "SELECT * FROM session_sets WHERE session_exercise_id = ? ORDER BY set_index;",
            (session_exercise_id,),
        )
        return [_set_dict(r) for r in rows]

    async def remove(self, set_id: int) -> None:
        async with self.db.transaction() as conn:
            cursor = await _execute(conn, "DELETE FROM session_sets WHERE id = ?;", (set_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("set not found")


class MuscleVolumeRepository(AsyncBaseRepository):
    """Repository for the per-session muscle set rollup."""

    async def finalize(self, session_id: int) -> Dict[str, int]:
        """Recompute the rollup of ``session_id`` and return the totals."""
        now = _now()
        async with self.db.transaction() as conn:
            await self._require(conn, "workout_sessions", session_id, "session")
            rows = await _fetch_all(
                conn,
                """SELECT se.id, se.secondary_muscle_groups, COUNT(ss.id) AS set_count
                   FROM session_exercises se
                   LEFT JOIN session_sets ss ON ss.session_exercise_id = se.id
                   WHERE se.workout_session_id = ?
                   GROUP BY se.id
                   ORDER BY se.id;""",
                (session_id,),
            )
            totals = WorkoutAnalytics.muscle_set_totals(dict(r) for r in rows)
            await _execute(
                conn,
                "DELETE FROM session_muscle_volume WHERE workout_session_id = ?;",
                (session_id,),
            )
            for muscle, total in totals.items():
                await _execute(
                    conn,
                    "INSERT INTO session_muscle_volume (workout_session_id, muscle_name, total_sets, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?);",
                    (session_id, muscle, total, now, now),
                )
        logger.info("muscle_volume_finalized", session_id=session_id, muscles=len(totals))
        return totals

    async def fetch_for_session(self, session_id: int) -> List[dict]:
        rows = await self.fetch_all(
            "SELECT muscle_name, total_sets FROM session_muscle_volume "
            "WHERE workout_session_id = ? ORDER BY muscle_name;",
            (session_id,),
        )
        return [dict(r) for r in rows]

    async def totals(
        self,
        start_date: Union[str, datetime.date, None] = None,
        end_date: Union[str, datetime.date, None] = None,
    ) -> Dict[str, int]:
        """Return total sets per muscle across sessions in the date range."""
        query = (
            "SELECT mv.muscle_name, SUM(mv.total_sets) AS total "
            "FROM session_muscle_volume mv "
            "JOIN workout_sessions ws ON ws.id = mv.workout_session_id"
        )
        clauses: List[str] = []
        params: List[Any] = []
        if start_date is not None:
            clauses.append("substr(ws.session_date, 1, 10) >= ?")
            params.append(_day(start_date))
        if end_date is not None:
            clauses.append("substr(ws.session_date, 1, 10) <= ?")
            params.append(_day(end_date))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " GROUP BY mv.muscle_name ORDER BY total DESC, mv.muscle_name;"
        rows = await self.fetch_all(query, tuple(params))
        return {r["muscle_name"]: r["total"] for r in rows}


class AppStateRepository(AsyncBaseRepository):
    """Repository for the singleton workout state row."""

    async def fetch(self) -> dict:
        row = await self.fetch_one(
            "SELECT is_exercising, active_template_id FROM app_state WHERE id = 1;"
        )
        if row is None:
            return {"is_exercising": False, "active_template_id": None}
        return {
            "is_exercising": bool(row["is_exercising"]),
            "active_template_id": row["active_template_id"],
        }

    async def set(
        self, is_exercising: bool, active_template_id: Optional[int] = None
    ) -> None:
        """Persist the workout state; idle always clears the template."""
        if not is_exercising:
            active_template_id = None
        async with self.db.transaction() as conn:
            if active_template_id is not None:
                await self._require(
                    conn, "workout_templates", active_template_id, "template"
                )
            await _execute(
                conn,
                "INSERT INTO app_state (id, is_exercising, active_template_id, updated_at) VALUES (1, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET is_exercising=excluded.is_exercising, "
                "active_template_id=excluded.active_template_id, updated_at=excluded.updated_at;",
                (1 if is_exercising else 0, active_template_id, _now()),
            )


class WeightHistoryRepository(AsyncBaseRepository):
    """Repository for body weight entries."""

    async def log(
        self, weight: float, created_at: Union[str, datetime.date, None] = None
    ) -> int:
        value = MetricParser.classify(weight).value
        if value is None or value <= 0:
            raise ConstraintViolationError("weight must be a positive number")
        stamp = _timestamp(created_at)
        return await self.execute(
            "INSERT INTO weight_history (weight, created_at, updated_at) VALUES (?, ?, ?);",
            (value, stamp, stamp),
        )

    async def fetch_history(self, limit: Optional[int] = None) -> List[dict]:
        query = "SELECT id, weight, created_at FROM weight_history ORDER BY created_at, id"
        params: Tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        rows = await self.fetch_all(query + ";", params)
        return [dict(r) for r in rows]

    async def fetch_latest(self) -> Optional[float]:
        row = await self.fetch_one(
            "SELECT weight FROM weight_history ORDER BY created_at DESC, id DESC LIMIT 1;"
        )
        return row["weight"] if row else None

    async def fetch_first(self) -> Optional[float]:
        row = await self.fetch_one(
            "SELECT weight FROM weight_history ORDER BY created_at, id LIMIT 1;"
        )
        return row["weight"] if row else None


class UserInfoRepository(AsyncBaseRepository):
    """Repository for the single user profile row."""

    FIELDS = ("name", "weight", "goal_weight", "height", "age", "sex", "profile_picture")

    async def fetch(self) -> Optional[dict]:
        row = await self.fetch_one("SELECT * FROM user_info ORDER BY id LIMIT 1;")
        return dict(row) if row else None

    async def save(self, **fields: Any) -> int:
        """Create or update the profile; a new weight is also logged."""
        unknown = sorted(set(fields) - set(self.FIELDS))
        if unknown:
            raise ConstraintViolationError(f"unknown user fields: {', '.join(unknown)}")
        if "weight" in fields and fields["weight"] is not None:
            value = MetricParser.classify(fields["weight"]).value
            if value is None or value <= 0:
                raise ConstraintViolationError("weight must be a positive number")
            fields["weight"] = value
        now = _now()
        async with self.db.transaction() as conn:
            rows = await _fetch_all(conn, "SELECT id FROM user_info ORDER BY id LIMIT 1;")
            if rows:
                user_id = rows[0]["id"]
                if fields:
                    assignments = ", ".join(f"{k} = ?" for k in fields)
                    await _execute(
                        conn,
                        f"UPDATE user_info SET {assignments}, updated_at = ? WHERE id = ?;",
                        (*fields.values(), now, user_id),
                    )
            else:
                columns = list(fields) + ["created_at", "updated_at"]
                placeholders = ", ".join("?" for _ in columns)
                cursor = await _execute(
                    conn,
                    f"INSERT INTO user_info ({', '.join(columns)}) VALUES ({placeholders});",
                    (*fields.values(), now, now),
                )
                user_id = cursor.lastrowid
            if fields.get("weight") is not None:
                await _execute(
                    conn,
                    "INSERT INTO weight_history (weight, created_at, updated_at) VALUES (?, ?, ?);",
                    (fields["weight"], now, now),
                )
        return user_id


class RunRepository(AsyncBaseRepository):
    """Repository for recorded runs."""

    SPLITS = {
        "100m": "time_at_100m",
        "500m": "time_at_500m",
        "1k": "time_at_1k",
        "5k": "time_at_5k",
        "10k": "time_at_10k",
        "halfMarathon": "time_at_half_marathon",
        "marathon": "time_at_marathon",
    }
    EDITABLE = (
        "name",
        "distance",
        "duration",
        "pace",
        "start_time",
        "end_time",
        "calories",
        "avg_heart_rate",
        "max_heart_rate",
    )

    @staticmethod
    def _split(value: Any) -> Optional[int]:
        result = MetricParser.classify(value).value
        return int(result) if result is not None else None

    @staticmethod
    def _route(value: Any) -> str:
        if value is None:
            return "[]"
        if isinstance(value, str):
            return value
        return json.dumps(value)

    async def save(self, run: Mapping[str, Any]) -> int:
        """Store a run; distance is in km, duration in seconds.

        Without ``split_times`` the splits are derived from ``route_data``.
        """
        now = _now()
        distance = MetricParser.to_number(run.get("distance"))
        duration = int(MetricParser.to_number(run.get("duration")))
        pace = MetricParser.classify(run.get("pace")).value
        if pace is None:
            pace = round(duration / 60 / distance, 2) if distance > 0 else 0.0
        splits = run.get("split_times")
        if not splits:
            route = MetricParser.parse_list(run.get("route_data"))
            splits = RouteTools.calculate_split_times(route, distance or None)
        values = {
            "name": run.get("name") or f"Run on {datetime.date.today().isoformat()}",
            "distance": distance,
            "duration": duration,
            "pace": pace,
            "start_time": _timestamp(run.get("start_time")),
            "end_time": _timestamp(run.get("end_time")),
            "route_data": self._route(run.get("route_data")),
            "calories": int(MetricParser.to_number(run.get("calories"))),
            "avg_heart_rate": self._split(run.get("avg_heart_rate")),
            "max_heart_rate": self._split(run.get("max_heart_rate")),
        }
        for key, column in self.SPLITS.items():
            values[column] = self._split(splits.get(key))
        async with self.db.transaction() as conn:
            users = await _fetch_all(conn, "SELECT id FROM user_info ORDER BY id LIMIT 1;")
            values["user_id"] = users[0]["id"] if users else None
            values["created_at"] = now
            values["updated_at"] = now
            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            cursor = await _execute(
                conn,
                f"INSERT INTO runs ({columns}) VALUES ({placeholders});",
                tuple(values.values()),
            )
            run_id = cursor.lastrowid
        logger.info("run_saved", run_id=run_id, distance=distance)
        return run_id

    @staticmethod
    def _run_dict(row: sqlite3.Row) -> dict:
        data = dict(row)
        data["route_data"] = MetricParser.parse_list(data.get("route_data"), run_id=data["id"])
        data["split_times"] = {
            key: data.get(column) for key, column in RunRepository.SPLITS.items()
        }
        return data

    async def fetch_all(self) -> List[dict]:
        rows = await super().fetch_all(
            "SELECT * FROM runs ORDER BY start_time DESC, id DESC;"
        )
        return [self._run_dict(r) for r in rows]

    async def fetch_detail(self, run_id: int) -> dict:
        row = await self.fetch_one("SELECT * FROM runs WHERE id = ?;", (run_id,))
        if row is None:
            raise NotFoundError("run not found")
        return self._run_dict(row)

    async def update(self, run_id: int, **fields: Any) -> None:
        unknown = sorted(set(fields) - set(self.EDITABLE))
        if unknown:
            raise ConstraintViolationError(f"unknown run fields: {', '.join(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        async with self.db.transaction() as conn:
            cursor = await _execute(
                conn,
                f"UPDATE runs SET {assignments}, updated_at = ? WHERE id = ?;",
                (*fields.values(), _now(), run_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("run not found")

    async def delete(self, run_id: int) -> None:
        async with self.db.transaction() as conn:
            cursor = await _execute(conn, "DELETE FROM runs WHERE id = ?;", (run_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("run not found")
