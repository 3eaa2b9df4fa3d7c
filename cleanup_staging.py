#!/usr/bin/env python3
"""
Clean up the upload staging directory.

A server that dies mid-upload leaves its partially written file in the
staging directory. Those files never reach the library, so anything older
than a threshold can be removed safely.
"""

import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

from config import Settings

DEFAULT_MIN_AGE_MINUTES = 60


def find_orphans(
    directory: str, min_age_seconds: float, now: Optional[float] = None
) -> List[Path]:
    """
    Staged files last modified at least min_age_seconds ago.

    Younger files may still belong to an upload in progress and are left alone.
    """
    now = time.time() if now is None else now
    dir_path = Path(directory)

    orphans = [
        item
        for item in dir_path.iterdir()
        if item.is_file() and now - item.stat().st_mtime >= min_age_seconds
    ]

    # Sort for consistent output
    orphans.sort(key=lambda x: x.name)
    return orphans


def remove_orphans(
    directory: str,
    min_age_seconds: float,
    dry_run: bool = True,
    now: Optional[float] = None,
) -> Tuple[int, int]:
    """
    Remove stale staged uploads.

    Args:
        directory: Staging directory to clean
        min_age_seconds: Only files at least this old are touched
        dry_run: If True, only print what would be removed

    Returns:
        Tuple of (removed_count, skipped_count)
    """
    orphans = find_orphans(directory, min_age_seconds, now=now)

    removed_count = 0
    skipped_count = 0

    for item in orphans:
        if dry_run:
            print(f"[DRY-RUN] {item.name}")
            continue

        try:
            item.unlink()
            print(f"[REMOVED] {item.name}")
            removed_count += 1
        except OSError as e:
            print(f"[ERROR] Failed to remove {item.name}: {e}")
            skipped_count += 1

    print(f"\nSummary:")
    print(f"  Removed: {removed_count}")
    print(f"  Skipped: {skipped_count}")
    print(f"  Stale:   {len(orphans)}")

    if dry_run:
        print(f"\nThis was a dry run. Use --execute to actually remove files.")

    return removed_count, skipped_count


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(
        description="Remove abandoned uploads from the staging directory"
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Actually remove files (default is dry-run mode)",
    )
    parser.add_argument(
        "--directory",
        default=None,
        help="Staging directory (default: $SHELF_TEMP_DIR or ./temp)",
    )
    parser.add_argument(
        "--min-age-minutes",
        type=float,
        default=DEFAULT_MIN_AGE_MINUTES,
        help=f"Only remove files older than this (default: {DEFAULT_MIN_AGE_MINUTES})",
    )

    args = parser.parse_args(argv)
    directory = args.directory or Settings.from_env().temp_dir

    if not os.path.isdir(directory):
        print(f"Error: {directory} is not a directory")
        return 1

    print("=" * 80)
    print("Staging Cleanup Tool")
    print("=" * 80)
    print(f"Mode: {'EXECUTE' if args.execute else 'DRY-RUN'}")
    print(f"Directory: {os.path.abspath(directory)}")
    print(f"Minimum age: {args.min_age_minutes} minutes")
    print("=" * 80)
    print()

    remove_orphans(directory, args.min_age_minutes * 60, dry_run=not args.execute)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
