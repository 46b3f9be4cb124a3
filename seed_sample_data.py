import asyncio
import datetime
import random
from typing import Optional

import structlog

from db import (
    Database,
    MuscleVolumeRepository,
    SessionRepository,
    SessionSetRepository,
    TemplateRepository,
)

logger = structlog.get_logger(__name__)

METRICS = [
    {"baseId": "Weight", "label": "Weight", "type": "number"},
    {"baseId": "Reps", "label": "Reps", "type": "number"},
]

# name: (muscles, base weight in kg, base reps, sets)
PPL_ROUTINE = {
    "Push": {
        "Bench Press": (["chest", "triceps", "shoulders"], 60, 8, 4),
        "Overhead Press": (["shoulders", "triceps"], 40, 8, 3),
        "Tricep Pushdown": (["triceps"], 25, 12, 3),
        "Lateral Raise": (["shoulders"], 8, 15, 3),
    },
    "Pull": {
        "Barbell Row": (["back", "biceps", "forearms"], 55, 8, 4),
        "Lat Pulldown": (["back", "biceps"], 50, 10, 3),
        "Bicep Curl": (["biceps", "forearms"], 12, 12, 3),
    },
    "Legs": {
        "Squat": (["legs", "glutes", "lower back"], 80, 8, 4),
        "Romanian Deadlift": (["hamstrings", "glutes", "lower back"], 70, 10, 3),
        "Leg Press": (["quads", "hamstrings", "glutes"], 120, 12, 3),
        "Calf Raise": (["calves"], 40, 15, 3),
    },
}

WEEKLY_PROGRESS = 1.025


def progressive_weight(
    base: float, session_index: int, rng: random.Random, variance: float = 0.05
) -> float:
    """Return ``base`` grown ~2.5% per week of three sessions, with jitter."""
    week = session_index // 3
    jitter = 1 + rng.uniform(-variance, variance)
    return round(base * WEEKLY_PROGRESS**week * jitter * 2) / 2


async def generate_sample_data(
    database: Database,
    weeks: int = 10,
    seed: Optional[int] = None,
    today: Optional[datetime.date] = None,
) -> dict:
    """Create a Push/Pull/Legs history of ``weeks`` weeks.

    Does nothing when sessions already exist.
    """
    sessions = SessionRepository(database)
    if await sessions.fetch_all():
        logger.info("sample_data_skipped", reason="sessions exist")
        return {"templates": 0, "sessions": 0, "sets": 0}
    rng = random.Random(seed)
    today = today or datetime.date.today()
    templates = TemplateRepository(database)
    sets = SessionSetRepository(database)
    volumes = MuscleVolumeRepository(database)

    existing = {t["name"]: t["id"] for t in await templates.fetch_all()}
    template_ids = {}
    for title, exercises in PPL_ROUTINE.items():
        if title in existing:
            template_ids[title] = existing[title]
            continue
        template_ids[title] = await templates.create(
            title,
            [
                {
                    "name": name,
                    "secondary_muscle_groups": muscles,
                    "sets": set_count,
                    "metrics": METRICS,
                }
                for name, (muscles, _, _, set_count) in exercises.items()
            ],
        )

    start = today - datetime.timedelta(weeks=weeks)
    routine = list(PPL_ROUTINE)
    session_count = 0
    set_count = 0
    for week in range(weeks):
        for day, title in enumerate(routine):
            when = datetime.datetime.combine(
                start + datetime.timedelta(days=week * 7 + day * 2),
                datetime.time(rng.randint(6, 19), rng.randint(0, 59)),
            )
            session_id = await sessions.start(template_ids[title], when)
            detail = await sessions.fetch_detail(session_id)
            index = week * 3 + day
            for exercise in detail["exercises"]:
                _, base_weight, base_reps, planned = PPL_ROUTINE[title][
                    exercise["exercise_name"]
                ]
                performed = planned - 1 if rng.random() < 0.15 else planned
                for set_index in range(1, performed + 1):
                    await sets.record(
                        exercise["id"],
                        set_index,
                        {
                            "Weight": progressive_weight(base_weight, index, rng),
                            "Reps": max(1, base_reps + rng.randint(-2, 1)),
                        },
                    )
                    set_count += 1
            await sessions.set_duration(session_id, rng.randint(45, 75))
            await volumes.finalize(session_id)
            session_count += 1
    logger.info(
        "sample_data_seeded", weeks=weeks, sessions=session_count, sets=set_count
    )
    return {
        "templates": len(template_ids),
        "sessions": session_count,
        "sets": set_count,
    }


async def _main(db_path: str = "ironinsight.db") -> None:
    async with Database(db_path) as database:
        result = await generate_sample_data(database)
    print(f"Seeded {result['sessions']} sessions with {result['sets']} sets")


if __name__ == "__main__":
    asyncio.run(_main())
