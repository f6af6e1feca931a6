#!/usr/bin/env python3
"""Reconcile legacy ``progress`` rows into UserProgress / LessonCompletion.

Existing records are never overwritten, so the script is safe to re-run.
Exits with status 1 when any group failed to migrate.

Run with: python3 -m scripts.migrate_progress [--dry-run]
    (or DRY_RUN=true python3 -m scripts.migrate_progress)
"""
import argparse
import asyncio
import os
import sys

from core.config import settings
from core.database import get_db_session
from core.logging import configure_logging
from engines.legacy_progress import MigrationStats, migrate_legacy_progress


def print_summary(stats: MigrationStats, dry_run: bool):
    print("\n" + "=" * 50)
    print("Migration summary" + (" (dry run, nothing written)" if dry_run else ""))
    print("=" * 50)
    print(f"  Legacy records read:        {stats.old_progress_records}")
    print(f"  Module progress created:    {stats.migrated_module_progress}")
    print(f"  Lesson completions created: {stats.migrated_lesson_progress}")
    print(f"  Skipped (no lesson):        {stats.skipped_no_lesson}")
    print(f"  Skipped (no module):        {stats.skipped_no_module}")
    print(f"  Skipped (already exists):   {stats.skipped_already_exists}")
    print(f"  Errors:                     {len(stats.errors)}")
    for error in stats.errors:
        print(f"    - {error}")


async def main(dry_run: bool) -> int:
    configure_logging(level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    async with get_db_session() as session:
        stats = await migrate_legacy_progress(session, dry_run=dry_run)
    print_summary(stats, dry_run)
    return 1 if stats.errors else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Migrate legacy progress records")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()
    dry_run = args.dry_run or os.getenv("DRY_RUN", "").lower() in ("1", "true", "yes")
    sys.exit(asyncio.run(main(dry_run)))
