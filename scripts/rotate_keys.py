#!/usr/bin/env python3
"""Run a signing-key rotation by hand.

Adds a new key pair for every purpose, then removes keys older than each
purpose's retention window. This is the same cycle the API process runs on
the first of every month.

Usage:
    # Rotate against the configured database:
    DATABASE_URL=postgresql://... MASTER_KEY=... python scripts/rotate_keys.py

    # Show which keys would be removed without touching anything:
    python scripts/rotate_keys.py --dry-run

Environment Variables:
    MASTER_KEY: Secret that encrypts private keys at rest (required)
    DATABASE_URL: PostgreSQL connection string
    MEMORY_STORE_ROOT: Snapshot directory when USE_MEMORY_STORE=true
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _open_store(settings):
    from tokenward.storage.memory import MemoryStore
    from tokenward.storage.postgres import PostgresStore

    if settings.use_memory_store:
        if not settings.memory_store_root:
            print("Note: in-memory store without MEMORY_STORE_ROOT; changes are discarded")
        return MemoryStore(fs_root=settings.memory_store_root)
    return PostgresStore(settings.database_url)


def plan_removals(store, settings, now: datetime) -> dict:
    """Count keys per purpose that a sweep at ``now`` would remove."""
    from tokenward.service.key_rotation import ROTATION_ORDER, retention_days_by_purpose

    retention = retention_days_by_purpose(settings)
    plan = {}
    for purpose in ROTATION_ORDER:
        cutoff = now - timedelta(days=retention[purpose])
        stale = [k for k in store.list_signing_keys(purpose) if k.created_at < cutoff]
        plan[purpose.value] = len(stale)
    return plan


async def rotate(settings, dry_run: bool = False) -> dict:
    """Rotate every purpose, or only report the plan when ``dry_run``."""
    # Import here to avoid loading config before env vars are set
    from tokenward.service.crypto import MasterKeyCipher
    from tokenward.service.key_rotation import KeyRotationScheduler
    from tokenward.service.keys import KeyService

    store = _open_store(settings)
    try:
        if dry_run:
            plan = plan_removals(store, settings, datetime.now(timezone.utc))
            for purpose, count in plan.items():
                print(f"[DRY RUN] {purpose}: add 1 key, remove {count}")
            return {"status": "dry_run", "removed": plan}

        keys = KeyService(store, MasterKeyCipher(settings.master_key))
        removed = await KeyRotationScheduler(keys, settings).rotate_all()
        for purpose, count in removed.items():
            print(f"{purpose}: added 1 key, removed {count}")
        return {"status": "rotated", "removed": removed}
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()


def main():
    parser = argparse.ArgumentParser(
        description="Rotate tokenward signing keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    from tokenward.config import Settings

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)

    try:
        result = asyncio.run(rotate(settings, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "rotated":
        print("\nRotation complete.")


if __name__ == "__main__":
    main()
