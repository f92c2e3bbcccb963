"""
Command line entry point for the event harvester.

Commands:
- run [--once]        Start the worker (``--once`` drains eligible jobs, prints
                      phase, job counts and handler health, then exits)
- seed [CITY ...]     Enqueue first-page fetchCity jobs (defaults to configured cities)
- refresh             Enqueue a refresh (expiry sweep) job
- status              Print job counts per state
- failed              List jobs that exhausted their retries
- purge [--older-than] Delete finished jobs past the retention period

Run with: python -m servers.event_harvester <command>
"""

from typing import Optional
import argparse
import asyncio
import json
import sys

from .config.settings import Settings, SettingsError, load_settings, validate_settings
from .logging_config import configure_logging
from .models import Priority
from .service import Harvester, StartupError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="event-harvester",
        description="Harvest city events from Eventful into the shared event store",
    )
    parser.add_argument("--settings", help="Path to a JSON settings file")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Start the worker")
    run.add_argument("--once", action="store_true", help="Drain eligible jobs and exit")

    seed = commands.add_parser("seed", help="Enqueue fetchCity jobs for cities")
    seed.add_argument("cities", nargs="*", help="Cities to crawl (default: settings.cities)")
    seed.add_argument("--priority", default="normal", help="low, normal, medium, high or critical")

    refresh = commands.add_parser("refresh", help="Enqueue a refresh job")
    refresh.add_argument("--priority", default="normal")

    commands.add_parser("status", help="Show job counts per state")

    failed = commands.add_parser("failed", help="List jobs that exhausted their retries")
    failed.add_argument("--limit", type=int, default=20)

    purge = commands.add_parser("purge", help="Delete completed and failed jobs")
    purge.add_argument(
        "--older-than",
        type=float,
        metavar="DAYS",
        help="Age threshold in days (default: settings.job_retention_days)",
    )

    return parser


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    harvester = Harvester(settings)
    try:
        if args.command == "run":
            problems = validate_settings(settings)
            if problems:
                for problem in problems:
                    print(f"Settings error: {problem}", file=sys.stderr)
                return 2
            if args.once:
                processed = await harvester.run_once()
                print(f"Processed {processed} jobs")
                print(json.dumps(await harvester.status(), indent=2))
            else:
                await harvester.run_forever()

        elif args.command == "seed":
            cities = args.cities or settings.cities
            if not cities:
                print("No cities given and none configured", file=sys.stderr)
                return 2
            jobs = await harvester.seed(cities, priority=Priority.parse(args.priority))
            for job in jobs:
                print(f"Enqueued {job.type.value} {job.payload['city']} ({job.id})")

        elif args.command == "refresh":
            job = await harvester.schedule_refresh(priority=Priority.parse(args.priority))
            print(f"Enqueued {job.type.value} ({job.id})")

        elif args.command == "status":
            counts = await harvester.queue.store.counts()
            print(json.dumps(counts, indent=2))

        elif args.command == "failed":
            jobs = await harvester.queue.failed_jobs(limit=args.limit)
            if not jobs:
                print("No failed jobs")
            for job in jobs:
                print(f"{job.id}  {job.type.value}  {json.dumps(job.payload)}")
                print(f"    attempts: {len(job.failures)}  last error: {job.last_error}")

        elif args.command == "purge":
            purged = await harvester.purge_jobs(args.older_than)
            print(f"Purged {purged} finished jobs")

    except StartupError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        return 1
    finally:
        await harvester.close()

    return 0


async def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except SettingsError as e:
        print(f"Settings error: {e}", file=sys.stderr)
        return 2

    try:
        # Priority names are validated before anything is opened
        if hasattr(args, "priority"):
            Priority.parse(args.priority)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_json)
    return await run_command(args, settings)


def entrypoint() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    entrypoint()
