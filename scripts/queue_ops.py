#!/usr/bin/env python3
"""
Queue Operations: Inspect and repair the relay's persistent state.

Usage:
    # Queue counts per status and parked replies:
    python scripts/queue_ops.py status

    # Reset processing/sending rows left behind by a crash:
    python scripts/queue_ops.py recover --grace 600

    # Rate limiter bucket (and refill it to full):
    python scripts/queue_ops.py limiter [--reset]

    # Create tables (or only report what is missing):
    python scripts/queue_ops.py migrate [--check]
"""
import asyncio
import os
import sys
import argparse
import json

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def show_status() -> int:
    from config.settings import load_settings
    from database.store_factory import create_store

    settings = load_settings()
    store = create_store(settings)
    await store.init()
    try:
        stats = await store.stats()
    finally:
        await store.close()

    print("Inbound queue:")
    for status, count in stats.inbound.items():
        print(f"  {status:<12} {count}")
    print("Outbound queue:")
    for status, count in stats.outbound.items():
        print(f"  {status:<12} {count}")
    print(f"Parked replies (retries exhausted): {stats.parked}")
    return 0


async def run_recover(grace_seconds: int | None) -> int:
    from config.settings import load_settings
    from database.store_factory import create_store

    settings = load_settings()
    grace = settings.queue.stale_grace_seconds if grace_seconds is None else grace_seconds
    store = create_store(settings)
    await store.init()
    try:
        recovered = await store.recover_stale(grace)
    finally:
        await store.close()

    print(f"Stale rows older than {grace}s reset to pending:")
    print(f"  inbound   {recovered.inbound_reset}")
    print(f"  outbound  {recovered.outbound_reset}")
    return 0


def run_limiter(reset: bool) -> int:
    from config.settings import load_settings
    from core.rate_limiter import PersistentRateLimiter

    settings = load_settings()
    limiter = PersistentRateLimiter(
        state_file=settings.rate_limit.state_file,
        bucket_size=settings.rate_limit.bucket_size,
        refill_rate=settings.rate_limit.refill_rate,
    )
    if reset:
        limiter.reset()
        print("Rate limiter reset to a full bucket.")
    print(json.dumps(limiter.stats(), indent=2))
    return 0


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    from database.session import create_engine_for_url, init_db
    from database.models import Base
    from sqlalchemy import inspect

    settings = load_settings()
    engine = create_engine_for_url(settings.database.url)

    try:
        if check_only:
            print(f"Database: {engine.dialect.name}")
            print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
            print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

            async with engine.connect() as conn:
                existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = set(Base.metadata.tables.keys()) - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await init_db(engine)
        print(f"Tables created/verified: {', '.join(Base.metadata.tables.keys())}")
        print("Migration complete. ✓")
        return 0
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reply relay queue operations")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show queue counts per status")

    recover = sub.add_parser("recover", help="Reset stale processing/sending rows")
    recover.add_argument("--grace", type=int, default=None,
                         help="Seconds a row must be untouched (default: queue.stale_grace_seconds)")

    limiter = sub.add_parser("limiter", help="Show rate limiter state")
    limiter.add_argument("--reset", action="store_true", help="Refill the bucket and zero counters")

    migrate = sub.add_parser("migrate", help="Create queue tables")
    migrate.add_argument("--check", action="store_true", help="Check status only")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "status":
        return asyncio.run(show_status())
    if args.command == "recover":
        return asyncio.run(run_recover(args.grace))
    if args.command == "limiter":
        return run_limiter(args.reset)
    return asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    sys.exit(main())
