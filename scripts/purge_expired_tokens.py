#!/usr/bin/env python3
"""Delete expired verification, reset and refresh tokens.

Meant to run from cron against the production database.

Usage:
    DATABASE_URL=postgres://... JWT_SECRET=... python scripts/purge_expired_tokens.py

    # Count what would be removed without deleting anything:
    python scripts/purge_expired_tokens.py --dry-run

    # Show recent logins for one account while you are at it:
    python scripts/purge_expired_tokens.py --history user@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Required by the service settings
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from sentinel_auth.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        from sentinel_auth.storage.models import utcnow

        counts = runtime.store.count_expired_tokens(utcnow())
        print(f"[DRY RUN] Would delete {sum(counts.values())} expired tokens: {counts}")
        return {"status": "dry_run", "counts": counts}

    removed = runtime.auth.purge_expired_tokens()
    print(f"Deleted {removed} expired tokens")
    return {"status": "purged", "removed": removed}


def show_history(email: str, limit: int) -> int:
    from sentinel_auth.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email.strip().lower())
    if user is None:
        print(f"No account for {email}")
        return 1
    rows = runtime.store.list_login_history(user.id, limit=limit)
    if not rows:
        print(f"{email} has never logged in")
        return 0
    for row in rows:
        flag = " [alerted]" if row.was_notified else ""
        print(f"{row.login_at.isoformat()}  {row.ip_address or '-':<45}  {row.user_agent or '-'}{flag}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired Sentinel Auth tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without making changes",
    )
    parser.add_argument(
        "--history",
        metavar="EMAIL",
        help="Print recent login history for EMAIL after purging",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of login history rows to print (default: 20)",
    )
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to purge the database)")

    try:
        purge(dry_run=args.dry_run)
        if args.history:
            return show_history(args.history, args.limit)
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
