import asyncio
import json
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    AppStateRepository,
    Database,
    MuscleVolumeRepository,
    RunRepository,
    SessionRepository,
    SessionSetRepository,
    TemplateExerciseRepository,
    TemplateRepository,
    UserInfoRepository,
    WeightHistoryRepository,
)
from errors import ConstraintViolationError, NotFoundError

PUSH = [
    {"name": "Bench Press", "sets": 3, "secondary_muscle_groups": ["chest", "triceps"]},
    {"name": "Overhead Press", "sets": 2, "secondary_muscle_groups": ["shoulders"]},
]


async def _template(database, name="Push", exercises=PUSH):
    return await TemplateRepository(database).create(name, exercises)


@pytest.mark.asyncio
async def test_template_create_and_detail():
    async with Database(":memory:") as database:
        repo = TemplateRepository(database)
        tid = await repo.create(
            "Push", PUSH + [{"exercise_name": "Dip", "metrics": [{"baseId": "Reps"}]}]
        )
        detail = await repo.fetch_detail(tid)
        assert detail["name"] == "Push"
        names = [e["exercise_name"] for e in detail["exercises"]]
        assert names == ["Bench Press", "Overhead Press", "Dip"]
        assert detail["exercises"][0]["secondary_muscle_groups"] == ["chest", "triceps"]
        assert detail["exercises"][2]["sets"] == 3
        assert detail["exercises"][2]["metrics"] == [{"baseId": "Reps"}]

        listing = await repo.fetch_all()
        assert listing[0]["exercise_count"] == 3
        assert listing[0]["muscle_groups"] == ["chest", "triceps", "shoulders"]


@pytest.mark.asyncio
async def test_template_validation():
    async with Database(":memory:") as database:
        repo = TemplateRepository(database)
        with pytest.raises(ConstraintViolationError):
            await repo.create("  ", PUSH)
        with pytest.raises(ConstraintViolationError):
            await repo.create("Push", [{"name": "Bench", "sets": 0}])
        with pytest.raises(ConstraintViolationError):
            await repo.create("Push", [{"name": ""}])
        assert await repo.fetch_all() == []
        with pytest.raises(NotFoundError):
            await repo.fetch_detail(99)
        with pytest.raises(NotFoundError):
            await repo.update(99, name="Nope")


@pytest.mark.asyncio
async def test_session_snapshot_survives_template_edit():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid, "2024-01-09T18:00:00")

        await TemplateRepository(database).update(
            tid, name="Push v2", exercises=[{"name": "Dip", "sets": 5}]
        )
        detail = await sessions.fetch_detail(sid)
        assert detail["template_name"] == "Push"
        assert [e["exercise_name"] for e in detail["exercises"]] == ["Bench Press", "Overhead Press"]
        assert [e["planned_sets"] for e in detail["exercises"]] == [3, 2]

        new_sid = await sessions.start(tid, "2024-01-10")
        new_detail = await sessions.fetch_detail(new_sid)
        assert new_detail["template_name"] == "Push v2"
        assert [e["exercise_name"] for e in new_detail["exercises"]] == ["Dip"]


@pytest.mark.asyncio
async def test_template_delete_keeps_sessions():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid, "2024-01-09")
        detail = await sessions.fetch_detail(sid)
        await SessionSetRepository(database).record(detail["exercises"][0]["id"], 1, {"weight": 60, "reps": 8})

        await TemplateRepository(database).delete(tid)

        with pytest.raises(NotFoundError):
            await TemplateExerciseRepository(database).fetch_for_template(tid)
        rows = await sessions.fetch_all()
        assert len(rows) == 1
        survivor = await sessions.fetch_detail(sid)
        assert survivor["workout_template_id"] is None
        assert survivor["template_name"] == "Push"
        assert len(survivor["exercises"][0]["sets"]) == 1
        count = await sessions.fetch_one("SELECT COUNT(*) FROM template_exercises;")
        assert count[0] == 0


@pytest.mark.asyncio
async def test_template_delete_rejected_while_active():
    async with Database(":memory:") as database:
        tid = await _template(database)
        await AppStateRepository(database).set(True, tid)
        with pytest.raises(ConstraintViolationError):
            await TemplateRepository(database).delete(tid)
        await AppStateRepository(database).set(False)
        await TemplateRepository(database).delete(tid)
        with pytest.raises(NotFoundError):
            await TemplateRepository(database).delete(tid)


@pytest.mark.asyncio
async def test_template_exercise_remove():
    async with Database(":memory:") as database:
        tid = await _template(database)
        repo = TemplateExerciseRepository(database)
        exercises = await repo.fetch_for_template(tid)
        await repo.remove(exercises[0]["id"])
        remaining = await repo.fetch_for_template(tid)
        assert [e["exercise_name"] for e in remaining] == ["Overhead Press"]
        with pytest.raises(NotFoundError):
            await repo.remove(exercises[0]["id"])


@pytest.mark.asyncio
async def test_start_session_unknown_template():
    async with Database(":memory:") as database:
        with pytest.raises(NotFoundError):
            await SessionRepository(database).start(42)
        assert await SessionRepository(database).fetch_all() == []


@pytest.mark.asyncio
async def test_record_set_upserts():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid, "2024-01-09")
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        sets = SessionSetRepository(database)

        first = await sets.record(exercise_id, 1, {"weight": 100, "reps": 5})
        second = await sets.record(exercise_id, 1, {"Weight": "80", "Reps": 8, "RPE": 9})
        assert first == second
        rows = await sets.fetch_for_exercise(exercise_id)
        assert len(rows) == 1
        assert rows[0]["weight"] == 80.0
        assert rows[0]["reps_or_time"] == 8.0
        assert json.loads(rows[0]["custom_metrics"]) == {"Weight": "80", "Reps": 8, "RPE": 9}

        await sets.record(exercise_id, 2, {"time": "45", "weight": "bodyweight"})
        rows = await sets.fetch_for_exercise(exercise_id)
        assert [r["set_index"] for r in rows] == [1, 2]
        assert rows[1]["reps_or_time"] == 45.0
        assert rows[1]["weight"] is None


@pytest.mark.asyncio
async def test_concurrent_record_keeps_one_row():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid)
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        sets = SessionSetRepository(database)
        await asyncio.gather(
            *(sets.record(exercise_id, 1, {"weight": w, "reps": 5}) for w in (60, 70, 80))
        )
        rows = await sets.fetch_for_exercise(exercise_id)
        assert len(rows) == 1
        assert rows[0]["weight"] in (60.0, 70.0, 80.0)


@pytest.mark.asyncio
async def test_record_set_errors():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid)
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        sets = SessionSetRepository(database)
        with pytest.raises(NotFoundError):
            await sets.record(999, 1, {"reps": 5})
        with pytest.raises(ConstraintViolationError):
            await sets.record(exercise_id, 0, {"reps": 5})
        with pytest.raises(ConstraintViolationError):
            await sets.record(exercise_id, 1, ["reps", 5])
        set_id = await sets.record(exercise_id, 1, {"reps": 5})
        await sets.remove(set_id)
        with pytest.raises(NotFoundError):
            await sets.remove(set_id)


@pytest.mark.asyncio
async def test_session_filters_and_batch_details():
    async with Database(":memory:") as database:
        push = await _template(database)
        legs = await _template(database, "Legs", [{"name": "Squat", "sets": 4}])
        sessions = SessionRepository(database)
        first = await sessions.start(push, "2024-01-01T09:00:00")
        await sessions.start(legs, "2024-01-03T09:00:00")
        third = await sessions.start(push, "2024-01-08T09:00:00.000Z")

        assert [s["id"] for s in await sessions.fetch_all(template_name="Push")] == [third, first]
        ranged = await sessions.fetch_all(start_date="2024-01-02", end_date="2024-01-08")
        assert [s["template_name"] for s in ranged] == ["Push", "Legs"]
        assert await sessions.template_names() == ["Legs", "Push"]

        batch = await sessions.fetch_all_details()
        assert [s["id"] for s in batch] == [3, 2, 1]
        for session in batch:
            assert session == await sessions.fetch_detail(session["id"])


@pytest.mark.asyncio
async def test_session_duration_and_delete():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid)
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        await SessionSetRepository(database).record(exercise_id, 1, {"reps": 5})

        await sessions.set_duration(sid, 45)
        assert (await sessions.fetch_detail(sid))["duration"] == 45
        with pytest.raises(ConstraintViolationError):
            await sessions.set_duration(sid, -1)
        with pytest.raises(NotFoundError):
            await sessions.set_duration(999, 10)

        await sessions.delete(sid)
        assert await SessionSetRepository(database).fetch_for_exercise(exercise_id) == []
        with pytest.raises(NotFoundError):
            await sessions.fetch_detail(sid)
        with pytest.raises(NotFoundError):
            await sessions.delete(sid)


@pytest.mark.asyncio
async def test_muscle_volume_finalize_is_repeatable():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid, "2024-01-09")
        exercises = (await sessions.fetch_detail(sid))["exercises"]
        sets = SessionSetRepository(database)
        for index in (1, 2, 3):
            await sets.record(exercises[0]["id"], index, {"weight": 60, "reps": 8})
        await sets.record(exercises[1]["id"], 1, {"weight": 30, "reps": 8})

        repo = MuscleVolumeRepository(database)
        totals = await repo.finalize(sid)
        assert totals == {"chest": 3, "triceps": 3, "shoulders": 1}
        await repo.finalize(sid)
        rows = await repo.fetch_for_session(sid)
        assert rows == [
            {"muscle_name": "chest", "total_sets": 3},
            {"muscle_name": "shoulders", "total_sets": 1},
            {"muscle_name": "triceps", "total_sets": 3},
        ]
        assert await repo.totals(start_date="2024-01-01") == {
            "chest": 3,
            "triceps": 3,
            "shoulders": 1,
        }
        assert await repo.totals(end_date="2024-01-01") == {}
        with pytest.raises(NotFoundError):
            await repo.finalize(999)


@pytest.mark.asyncio
async def test_app_state_roundtrip():
    async with Database(":memory:") as database:
        tid = await _template(database)
        repo = AppStateRepository(database)
        await repo.set(True, tid)
        assert await repo.fetch() == {"is_exercising": True, "active_template_id": tid}
        await repo.set(False, tid)
        assert await repo.fetch() == {"is_exercising": False, "active_template_id": None}
        with pytest.raises(NotFoundError):
            await repo.set(True, 999)


@pytest.mark.asyncio
async def test_delete_all_data():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid)
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        await SessionSetRepository(database).record(exercise_id, 1, {"reps": 5})
        await MuscleVolumeRepository(database).finalize(sid)
        await AppStateRepository(database).set(True, tid)

        await database.delete_all_data()

        assert await sessions.fetch_all() == []
        assert await TemplateRepository(database).fetch_all() == []
        assert await MuscleVolumeRepository(database).totals() == {}
        assert await AppStateRepository(database).fetch() == {
            "is_exercising": False,
            "active_template_id": None,
        }
        for table in ("session_sets", "session_exercises", "template_exercises"):
            row = await sessions.fetch_one(f"SELECT COUNT(*) FROM {table};")
            assert row[0] == 0


@pytest.mark.asyncio
async def test_user_info_and_weight_history():
    async with Database(":memory:") as database:
        users = UserInfoRepository(database)
        weights = WeightHistoryRepository(database)
        assert await users.fetch() is None
        uid = await users.save(name="Sam", weight=82, goal_weight=75, sex="female")
        assert await users.save(weight="80.5") == uid
        profile = await users.fetch()
        assert profile["name"] == "Sam"
        assert profile["weight"] == 80.5
        assert await weights.fetch_first() == 82.0
        assert await weights.fetch_latest() == 80.5

        await weights.log(79, created_at="2999-01-01T00:00:00")
        assert await weights.fetch_latest() == 79.0
        assert len(await weights.fetch_history()) == 3
        with pytest.raises(ConstraintViolationError):
            await weights.log("heavy")
        with pytest.raises(ConstraintViolationError):
            await users.save(shoe_size=44)


@pytest.mark.asyncio
async def test_run_repository():
    async with Database(":memory:") as database:
        await UserInfoRepository(database).save(name="Sam")
        runs = RunRepository(database)
        rid = await runs.save(
            {
                "name": "Morning run",
                "distance": 5.0,
                "duration": 1500,
                "start_time": "2024-01-09T07:00:00",
                "route_data": [[52.5, 13.4], [52.51, 13.41]],
                "split_times": {"1k": 290, "5k": 1500, "marathon": float("inf")},
            }
        )
        detail = await runs.fetch_detail(rid)
        assert detail["pace"] == 5.0
        assert detail["user_id"] == 1
        assert detail["route_data"] == [[52.5, 13.4], [52.51, 13.41]]
        assert detail["split_times"]["1k"] == 290
        assert detail["split_times"]["marathon"] is None

        await runs.update(rid, name="Easy run", calories=350)
        assert (await runs.fetch_all())[0]["name"] == "Easy run"
        with pytest.raises(ConstraintViolationError):
            await runs.update(rid, route_data="[]")
        await runs.delete(rid)
        with pytest.raises(NotFoundError):
            await runs.fetch_detail(rid)


@pytest.mark.asyncio
async def test_run_splits_from_route():
    async with Database(":memory:") as database:
        runs = RunRepository(database)
        route = [
            {"latitude": 0.0, "longitude": 0.0, "timestamp": "2024-01-09T07:00:00Z"},
            {"latitude": 0.005, "longitude": 0.0, "timestamp": "2024-01-09T07:05:00Z"},
            {"latitude": 0.01, "longitude": 0.0, "timestamp": "2024-01-09T07:10:00Z"},
        ]
        rid = await runs.save({"distance": 1.1, "duration": 600, "route_data": route})
        splits = (await runs.fetch_detail(rid))["split_times"]
        assert splits["1k"] == 539
        assert splits["100m"] is not None
        assert splits["5k"] is None

        short = await runs.save({"distance": 0.0, "route_data": route[:1]})
        assert set((await runs.fetch_detail(short))["split_times"].values()) == {None}


@pytest.mark.asyncio
async def test_template_create_with_history():
    async with Database(":memory:") as database:
        history = {
            "Bench Press": {
                "sets": [
                    {"reps": "8", "time": "30", "weight": "60"},
                    {"reps": "", "weight": None},
                    {"reps": "", "time": "45", "customMetrics": {"RPE": 8}},
                ]
            },
            "overhead press": [{"weight": 40}],
        }
        tid = await TemplateRepository(database).create(
            "Push", PUSH, history=history, session_date="2024-01-09T18:00:00"
        )
        sessions = await SessionRepository(database).fetch_all_details()
        assert len(sessions) == 1
        session = sessions[0]
        assert session["workout_template_id"] == tid
        assert session["session_date"] == "2024-01-09T18:00:00"
        bench, press = session["exercises"]
        assert [(s["set_index"], s["reps_or_time"], s["weight"]) for s in bench["sets"]] == [
            (1, 8.0, 60.0),
            (2, 45.0, None),
        ]
        assert json.loads(bench["sets"][1]["custom_metrics"]) == {"time": "45", "RPE": 8}
        assert [s["weight"] for s in press["sets"]] == [40.0]
        totals = await MuscleVolumeRepository(database).totals()
        assert totals == {"chest": 2, "triceps": 2, "shoulders": 1}


@pytest.mark.asyncio
async def test_template_create_without_performed_sets():
    async with Database(":memory:") as database:
        repo = TemplateRepository(database)
        await repo.create("Push", PUSH, history={"Bench Press": [{"reps": "", "weight": None}]})
        assert await SessionRepository(database).fetch_all() == []
        with pytest.raises(ConstraintViolationError):
            await repo.create("Pull", PUSH, history={"Bench Press": "8x60"})
        assert [t["name"] for t in await repo.fetch_all()] == ["Push"]


@pytest.mark.asyncio
async def test_record_out_of_range_numbers():
    async with Database(":memory:") as database:
        tid = await _template(database)
        sessions = SessionRepository(database)
        sid = await sessions.start(tid)
        exercise_id = (await sessions.fetch_detail(sid))["exercises"][0]["id"]
        sets = SessionSetRepository(database)
        await sets.record(exercise_id, 1, {"weight": 10**400, "reps": 5})
        row = (await sets.fetch_for_exercise(exercise_id))[0]
        assert row["weight"] is None
        assert row["reps_or_time"] == 5.0
