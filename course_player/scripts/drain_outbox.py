#!/usr/bin/env python3
"""
Replay the persisted outbox of a learner to the LMS backend.

Support tool for players that crashed or were closed offline. Progress is coalesced
per lesson exactly as the live player does it before being sent.

Usage:
    # Show what is queued (no network):
    uv run python course_player/scripts/drain_outbox.py --course-id c1 --actor-id u1 --dry-run

    # Send it:
    PLAYER_TOKEN=... uv run python course_player/scripts/drain_outbox.py --course-id c1 --actor-id u1

    # Every course of every learner found in the outbox:
    uv run python course_player/scripts/drain_outbox.py --all

Environment variables:
    PLAYER_TOKEN          - Bearer token forwarded to the backend.
    BACKEND_BASE_URL      - Backend base URL (default from settings).
    OUTBOX_DATABASE_URL   - Outbox database (default: sqlite:///./player_outbox.db).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_root = Path(__file__).resolve().parents[2]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from course_player.core.config import get_settings
from course_player.core.logging import configure_logging
from course_player.db.base import Base
from course_player.db.session import build_engine
from course_player.models import OutboxEntry
from course_player.services.backend_client import BackendClient
from course_player.services.connectivity import ConnectivityMonitor
from course_player.services.outbox import KIND_PROGRESS, KIND_STATEMENT, Outbox
from course_player.services.sync_engine import SyncEngine, SyncResult, coalesce_progress


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay queued player progress to the backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--course-id", help="Course to drain (requires --actor-id)")
    target.add_argument("--all", action="store_true", help="Drain every (course, actor) pair in the outbox")
    parser.add_argument("--actor-id", help="Learner id the entries were queued for")
    parser.add_argument("--database-url", default=None, help="Outbox database URL")
    parser.add_argument("--base-url", default=None, help="Backend base URL")
    parser.add_argument("--dry-run", action="store_true", help="Print the coalesced batch without sending it")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()
    if args.course_id and not args.actor_id:
        parser.error("--course-id requires --actor-id")
    return args


def list_targets(factory: sessionmaker) -> list[tuple[str, str]]:
    with factory() as db:
        rows = db.execute(select(OutboxEntry.course_id, OutboxEntry.actor_id).distinct()).all()
    return [(row[0], row[1]) for row in rows]


def describe(outbox: Outbox) -> None:
    entries = outbox.pending()
    progress = coalesce_progress(e for e in entries if e.kind == KIND_PROGRESS)
    statements = [e for e in entries if e.kind == KIND_STATEMENT]
    print(f"[{outbox.course_id} / {outbox.actor_id}] {len(entries)} queued entries")
    for record in progress:
        flag = "completed" if record.is_completed else "in progress"
        print(f"  lesson {record.lesson_id:<24} {record.completion_percentage:6.2f}%  {flag}")
    if statements:
        print(f"  {len(statements)} xAPI statements")


async def drain(outbox: Outbox, backend: BackendClient) -> SyncResult:
    engine = SyncEngine(backend, outbox, ConnectivityMonitor(online=True))
    try:
        return await engine.flush("drain_outbox")
    finally:
        engine.close()


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    db_engine = build_engine(args.database_url or settings.outbox_database_url)
    Base.metadata.create_all(bind=db_engine)
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)

    targets = list_targets(factory) if args.all else [(args.course_id, args.actor_id)]
    if not targets:
        print("Outbox is empty.")
        return 0

    exit_code = 0
    backend = BackendClient(base_url=args.base_url, token=os.environ.get("PLAYER_TOKEN"))
    try:
        for course_id, actor_id in targets:
            outbox = Outbox(factory, course_id, actor_id)
            describe(outbox)
            if args.dry_run:
                continue
            result = await drain(outbox, backend)
            remaining = outbox.count()
            print(
                f"  sent {result.sent_progress} progress records, {result.sent_statements} statements, "
                f"dropped {result.dropped}, {remaining} left"
            )
            if result.error:
                print(f"  error: {result.error}", file=sys.stderr)
                exit_code = 1
    finally:
        await backend.aclose()
    return exit_code


def main() -> None:
    args = parse_args()
    configure_logging("DEBUG" if args.verbose else None)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
