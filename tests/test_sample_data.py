import datetime
import os
import random
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import Database, MuscleVolumeRepository, SessionRepository, TemplateRepository
from seed_sample_data import generate_sample_data, progressive_weight

TODAY = datetime.date(2024, 3, 15)


def test_progressive_weight_grows_weekly():
    rng = random.Random(0)
    first = progressive_weight(100, 0, rng, variance=0)
    later = progressive_weight(100, 12, rng, variance=0)
    assert first == 100
    assert later == round(100 * 1.025**4 * 2) / 2


@pytest.mark.asyncio
async def test_generate_sample_data():
    async with Database(":memory:") as database:
        result = await generate_sample_data(database, weeks=2, seed=7, today=TODAY)
        assert result["templates"] == 3
        assert result["sessions"] == 6
        assert result["sets"] > 0

        sessions = await SessionRepository(database).fetch_all_details()
        assert len(sessions) == 6
        assert {s["template_name"] for s in sessions} == {"Push", "Pull", "Legs"}
        assert all(s["duration"] for s in sessions)
        assert all(s["session_date"][:10] < TODAY.isoformat() for s in sessions)
        assert [t["name"] for t in await TemplateRepository(database).fetch_all()]
        assert await MuscleVolumeRepository(database).totals()

        again = await generate_sample_data(database, weeks=2, seed=7, today=TODAY)
        assert again["sessions"] == 0
        assert len(await SessionRepository(database).fetch_all()) == 6


@pytest.mark.asyncio
async def test_generate_sample_data_is_deterministic():
    results = []
    for _ in range(2):
        async with Database(":memory:") as database:
            await generate_sample_data(database, weeks=1, seed=3, today=TODAY)
            sessions = await SessionRepository(database).fetch_all_details()
            results.append(
                [
                    (s["session_date"], [(st["weight"], st["reps_or_time"]) for e in s["exercises"] for st in e["sets"]])
                    for s in sessions
                ]
            )
    assert results[0] == results[1]
