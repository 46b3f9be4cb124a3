from __future__ import annotations

import datetime
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List

import aiosqlite
import structlog

from errors import MigrationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    """A named schema change applied at most once.

    ``apply`` must be idempotent: it inspects the schema before altering it
    so running it against an up-to-date database is a no-op.  Migrations
    that rebuild tables set ``disable_foreign_keys``.
    """

    name: str
    apply: Callable[[aiosqlite.Connection], Awaitable[None]]
    disable_foreign_keys: bool = False


@asynccontextmanager
async def atomic(conn: aiosqlite.Connection):
    """Run the enclosed statements as one transaction on an autocommit connection."""
    await conn.execute("BEGIN;")
    try:
        yield conn
    except BaseException:
        await conn.execute("ROLLBACK;")
        raise
    else:
        await conn.execute("COMMIT;")


async def table_columns(conn: aiosqlite.Connection, table: str) -> List[str]:
    cursor = await conn.execute(f"PRAGMA table_info({table});")
    rows = await cursor.fetchall()
    return [row[1] for row in rows]


async def table_exists(conn: aiosqlite.Connection, table: str) -> bool:
    cursor = await conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
    )
    return await cursor.fetchone() is not None


async def add_duration_column_to_workout_sessions(conn: aiosqlite.Connection) -> None:
    if "duration" not in await table_columns(conn, "workout_sessions"):
        await conn.execute("ALTER TABLE workout_sessions ADD COLUMN duration INTEGER;")


async def rename_gender_to_sex(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "user_info")
    if "sex" in cols:
        return
    if "gender" in cols:
        await conn.execute("ALTER TABLE user_info RENAME COLUMN gender TO sex;")
    else:
        await conn.execute("ALTER TABLE user_info ADD COLUMN sex TEXT;")


async def restore_custom_metrics_column(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "session_sets")
    if "custom_metrics" in cols:
        return
    if "metrics" in cols:
        await conn.execute(
            "ALTER TABLE session_sets RENAME COLUMN metrics TO custom_metrics;"
        )
    else:
        await conn.execute("ALTER TABLE session_sets ADD COLUMN custom_metrics TEXT;")


async def add_set_value_columns(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "session_sets")
    if "reps_or_time" not in cols:
        await conn.execute("ALTER TABLE session_sets ADD COLUMN reps_or_time REAL;")
    if "weight" not in cols:
        await conn.execute("ALTER TABLE session_sets ADD COLUMN weight REAL;")


async def add_set_index_to_session_sets(conn: aiosqlite.Connection) -> None:
    if "set_index" not in await table_columns(conn, "session_sets"):
        await conn.execute("ALTER TABLE session_sets ADD COLUMN set_index INTEGER;")
        await conn.execute(
            """UPDATE session_sets SET set_index = (
                   SELECT COUNT(*) FROM session_sets AS earlier
                   WHERE earlier.session_exercise_id = session_sets.session_exercise_id
                     AND earlier.id <= session_sets.id
               );"""
        )
    await conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_session_sets_exercise_index "
        "ON session_sets(session_exercise_id, set_index);"
    )


async def add_snapshot_columns_to_session_exercises(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "session_exercises")
    source = (
        "SELECT te.{column} FROM template_exercises te "
        "JOIN workout_sessions ws ON ws.workout_template_id = te.workout_template_id "
        "WHERE ws.id = session_exercises.workout_session_id "
        "AND te.exercise_name = session_exercises.exercise_name "
        "ORDER BY te.id LIMIT 1"
    )
    if "planned_sets" not in cols:
        await conn.execute(
            "ALTER TABLE session_exercises ADD COLUMN planned_sets INTEGER NOT NULL DEFAULT 3;"
        )
        await conn.execute(
            f"UPDATE session_exercises SET planned_sets = "
            f"COALESCE(({source.format(column='sets')}), 3);"
        )
    if "metrics" not in cols:
        await conn.execute("ALTER TABLE session_exercises ADD COLUMN metrics TEXT;")
        await conn.execute(
            f"UPDATE session_exercises SET metrics = ({source.format(column='metrics')});"
        )


_SESSIONS_TABLE = """CREATE TABLE workout_sessions_new (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workout_template_id INTEGER,
        template_name TEXT,
        user_id INTEGER,
        session_date TEXT NOT NULL,
        duration INTEGER,
        created_at TEXT,
        updated_at TEXT,
        FOREIGN KEY(workout_template_id) REFERENCES workout_templates(id) ON DELETE SET NULL
    );"""

_SESSIONS_COLUMNS = [
    "id",
    "workout_template_id",
    "template_name",
    "user_id",
    "session_date",
    "duration",
    "created_at",
    "updated_at",
]


async def _template_fk_action(conn: aiosqlite.Connection) -> str | None:
    cursor = await conn.execute("PRAGMA foreign_key_list(workout_sessions);")
    for row in await cursor.fetchall():
        if row[2] == "workout_templates":
            return str(row[6]).upper()
    return None


async def detach_sessions_from_templates(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "workout_sessions")
    action = await _template_fk_action(conn)
    if "template_name" in cols and action == "SET NULL":
        return
    common = [c for c in cols if c in _SESSIONS_COLUMNS]
    joined = ", ".join(common)
    await conn.execute("DROP TABLE IF EXISTS workout_sessions_new;")
    await conn.execute(_SESSIONS_TABLE)
    await conn.execute(
        f"INSERT INTO workout_sessions_new ({joined}) SELECT {joined} FROM workout_sessions;"
    )
    await conn.execute("DROP TABLE workout_sessions;")
    await conn.execute("ALTER TABLE workout_sessions_new RENAME TO workout_sessions;")
    await conn.execute(
        """UPDATE workout_sessions SET workout_template_id = NULL
           WHERE workout_template_id IS NOT NULL
             AND workout_template_id NOT IN (SELECT id FROM workout_templates);"""
    )
    await conn.execute(
        """UPDATE workout_sessions SET template_name = (
               SELECT name FROM workout_templates
               WHERE workout_templates.id = workout_sessions.workout_template_id
           ) WHERE template_name IS NULL;"""
    )


async def add_short_milestones(conn: aiosqlite.Connection) -> None:
    cols = await table_columns(conn, "runs")
    if "time_at_100m" not in cols:
        await conn.execute("ALTER TABLE runs ADD COLUMN time_at_100m INTEGER;")
    if "time_at_500m" not in cols:
        await conn.execute("ALTER TABLE runs ADD COLUMN time_at_500m INTEGER;")


MIGRATIONS: List[Migration] = [
    Migration("add_duration_column_to_workout_sessions", add_duration_column_to_workout_sessions),
    Migration("rename_gender_to_sex", rename_gender_to_sex),
    Migration("restore_custom_metrics_column", restore_custom_metrics_column),
    Migration("add_set_value_columns", add_set_value_columns),
    Migration("add_set_index_to_session_sets", add_set_index_to_session_sets),
    Migration(
        "add_snapshot_columns_to_session_exercises",
        add_snapshot_columns_to_session_exercises,
    ),
    Migration(
        "detach_sessions_from_templates",
        detach_sessions_from_templates,
        disable_foreign_keys=True,
    ),
    Migration("add_short_milestones", add_short_milestones),
]


async def executed_migrations(conn: aiosqlite.Connection) -> List[str]:
    cursor = await conn.execute("SELECT name FROM migrations ORDER BY id;")
    return [row[0] for row in await cursor.fetchall()]


async def _apply(conn: aiosqlite.Connection, migration: Migration) -> None:
    async with atomic(conn):
        await migration.apply(conn)
        if migration.disable_foreign_keys:
            cursor = await conn.execute("PRAGMA foreign_key_check;")
            violations = await cursor.fetchall()
            if violations:
                raise MigrationError(
                    f"foreign key violations after {migration.name}: "
                    f"{[tuple(v) for v in violations]}",
                    migration=migration.name,
                )
        await conn.execute(
            "INSERT INTO migrations (name, executed_at) VALUES (?, ?);",
            (migration.name, datetime.datetime.now().isoformat()),
        )


async def run_migrations(
    conn: aiosqlite.Connection, migrations: Iterable[Migration] = MIGRATIONS
) -> List[str]:
    """Apply pending ``migrations`` in order and return the names applied.

    Each migration and its ledger row commit together; the first failure
    raises :class:`MigrationError` and stops the run.
    """
    done = set(await executed_migrations(conn))
    applied: List[str] = []
    for migration in migrations:
        if migration.name in done:
            logger.debug("migration_skipped", migration=migration.name)
            continue
        if migration.disable_foreign_keys:
            await conn.execute("PRAGMA foreign_keys = OFF;")
        try:
            await _apply(conn, migration)
        except MigrationError:
            raise
        except sqlite3.Error as exc:
            raise MigrationError(
                f"migration {migration.name} failed: {exc}", migration=migration.name
            ) from exc
        finally:
            if migration.disable_foreign_keys:
                await conn.execute("PRAGMA foreign_keys = ON;")
        done.add(migration.name)
        applied.append(migration.name)
        logger.info("migration_applied", migration=migration.name)
    return applied
