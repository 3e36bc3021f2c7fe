#!/usr/bin/env python3
"""
Database Maintenance — Create ledger tables and apply retention.

Usage:
    # Create / verify tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Delete call_states / metrics older than 30 days and delivered
    # notifications older than 7 days:
    python scripts/migrate_db.py --cleanup --days 30 --sent-days 7
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine()
    dialect = engine.dialect.name

    if check_only:
        print(f"Database: {dialect}")
        print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        tables = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(tables)}")

    await close_db()
    print("Migration complete. ✓")


async def run_cleanup(days: int, sent_days: int):
    from config.settings import load_settings
    load_settings()

    from database.session import close_db
    from database.store import SqlLedgerStore

    deleted = await SqlLedgerStore().cleanup_old_records(
        days_to_keep=days, sent_days_to_keep=sent_days,
    )
    await close_db()
    for table, count in deleted.items():
        print(f"{table}: {count} rows deleted")


def main():
    parser = argparse.ArgumentParser(description="Database migration and retention")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--cleanup", action="store_true", help="Apply retention instead of migrating")
    parser.add_argument("--days", type=int, default=30, help="Keep call_states and metrics this many days")
    parser.add_argument("--sent-days", type=int, default=7, help="Keep delivered notifications this many days")
    args = parser.parse_args()

    if args.cleanup:
        asyncio.run(run_cleanup(args.days, args.sent_days))
    else:
        asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
