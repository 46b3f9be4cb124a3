import argparse
import asyncio
import json
import shutil
from typing import List, Optional

from algorithms import WeightConverter
from config import load_settings
from db import Database, SessionRepository
from errors import IronInsightError
from logging_config import configure_logging
from seed_sample_data import generate_sample_data
from settings_schema import SettingsSchema
from stats_service import StatisticsService


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


async def init_db(db_path: str) -> None:
    async with Database(db_path):
        pass


async def demo_data(db_path: str, weeks: int = 10, seed: Optional[int] = None) -> dict:
    """Populate the database with sample sessions if it has none."""
    async with Database(db_path) as database:
        return await generate_sample_data(database, weeks=weeks, seed=seed)


async def analytics_report(
    db_path: str, settings: SettingsSchema, template: Optional[str] = None
) -> dict:
    async with Database(db_path) as database:
        stats = StatisticsService.for_database(database, settings)
        return await stats.workout_analytics(template_name=template)


async def overview_report(db_path: str, settings: SettingsSchema) -> dict:
    async with Database(db_path) as database:
        stats = StatisticsService.for_database(database, settings)
        return await stats.overview()


async def export_session(db_path: str, session_id: int) -> str:
    """Return one session with exercises and sets as JSON."""
    async with Database(db_path) as database:
        detail = await SessionRepository(database).fetch_detail(session_id)
    return json.dumps(detail, indent=2)


async def reset_db(db_path: str) -> None:
    async with Database(db_path) as database:
        await database.delete_all_data()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Workout tracker maintenance commands")
    parser.add_argument("--settings", default="settings.yaml")
    parser.add_argument("--db", default=None, help="database path (overrides settings)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init")

    demo = sub.add_parser("demo")
    demo.add_argument("--weeks", type=int, default=10)
    demo.add_argument("--seed", type=int, default=None)

    ana = sub.add_parser("analytics")
    ana.add_argument("--template", default=None)

    sub.add_parser("overview")

    exp = sub.add_parser("export")
    exp.add_argument("--session", type=int, required=True)
    exp.add_argument("--out", default=None)

    sub.add_parser("reset")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")

    conv = sub.add_parser("convert")
    conv.add_argument("--weight", type=float, required=True)
    conv.add_argument("--unit", choices=["kg", "lbs"], required=True)

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except ValueError as exc:
        parser.exit(2, f"invalid settings: {exc}\n")
    configure_logging(settings.log_level, settings.json_logs)
    db_path = args.db or settings.db_path

    try:
        if args.cmd == "init":
            asyncio.run(init_db(db_path))
            print(f"Database ready at {db_path}")
        elif args.cmd == "demo":
            result = asyncio.run(demo_data(db_path, args.weeks, args.seed))
            if result["sessions"]:
                print(f"Inserted {result['sessions']} sessions with {result['sets']} sets")
            else:
                print("Database already contains sessions")
        elif args.cmd == "analytics":
            _print_json(asyncio.run(analytics_report(db_path, settings, args.template)))
        elif args.cmd == "overview":
            _print_json(asyncio.run(overview_report(db_path, settings)))
        elif args.cmd == "export":
            data = asyncio.run(export_session(db_path, args.session))
            if args.out:
                with open(args.out, "w", encoding="utf-8") as f:
                    f.write(data)
            else:
                print(data)
        elif args.cmd == "reset":
            asyncio.run(reset_db(db_path))
            print("All workout data deleted")
        elif args.cmd == "backup":
            backup_db(db_path, args.out)
        elif args.cmd == "restore":
            restore_db(args.src, db_path)
        elif args.cmd == "convert":
            if args.unit == "kg":
                print(f"{args.weight} kg = {WeightConverter.convert(args.weight, 'lbs')} lbs")
            else:
                print(f"{args.weight} lbs = {WeightConverter.to_kg(args.weight, 'lbs')} kg")
    except IronInsightError as exc:
        parser.exit(1, f"error: {exc}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
