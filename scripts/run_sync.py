"""
Run a one-off sync, resume or cleanup from the command line.

Usage:
    python scripts/run_sync.py full
    python scripts/run_sync.py delta
    python scripts/run_sync.py resume <snapshot-id>
    python scripts/run_sync.py cleanup
    python scripts/run_sync.py recover
"""

import argparse
import asyncio
import sys
import os
import logging
import uuid

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine
from core.exceptions import IngestionError
from core.logging import setup_logging
from ingestion.scheduler import IngestionScheduler
from ingestion.store import JobStatusStore, SnapshotStore
from models.base import SnapshotKind, JobState

setup_logging()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="LEI ingestion one-off runs")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("full", help="Download and process a FULL golden copy")
    commands.add_parser("delta", help="Download and process a DELTA file")
    resume = commands.add_parser("resume", help="Resume a failed or interrupted snapshot")
    resume.add_argument("snapshot_id", type=uuid.UUID)
    commands.add_parser("cleanup", help="Apply payload retention now")
    commands.add_parser("recover", help="Reset stuck jobs and resume interrupted snapshots")
    return parser.parse_args(argv)


async def run(args) -> int:
    scheduler = IngestionScheduler()
    kind = None

    try:
        if args.command in ("full", "delta"):
            kind = SnapshotKind(args.command.upper())
            await scheduler.trigger(kind)
        elif args.command == "resume":
            await scheduler.resume(args.snapshot_id)
            async with async_session_maker() as session:
                snapshot = await SnapshotStore(session).get(args.snapshot_id)
                kind = snapshot.kind
        elif args.command == "cleanup":
            removed = await scheduler.run_cleanup()
            logger.info(f"Removed payloads: {removed}")
            return 0
        elif args.command == "recover":
            summary = await scheduler.recover()
            logger.info(f"Recovery summary: {summary}")
            return 0

        await scheduler.wait_for_runs()

        async with async_session_maker() as session:
            job = await JobStatusStore(session).get(kind)
        if job is not None and job.status == JobState.FAILED:
            logger.error(f"{kind.value} run failed: {job.error_message}")
            return 1
        return 0

    except IngestionError as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(run(parse_args())))
