#!/usr/bin/env python3
"""
Database Migration — Create/check the sellers and transfer_log tables.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Register (or update) a seller endpoint:
    python scripts/migrate_db.py --add-seller 42 --address api.seller.example --port 8443 --api-key KEY
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    # Database-specific table listing
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

    from database.session import get_engine
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
            print("All tables exist.")
        await engine.dispose()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        tables = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(tables)}")

    await engine.dispose()
    print("Migration complete.")


async def add_seller(seller_id: int, address: str, port: int = None, api_key: str = "",
                     name: str = "", inactive: bool = False):
    from config.settings import load_settings
    load_settings()

    from database.models import SellerRow
    from database.session import close_db, get_session, init_db

    await init_db()
    async with get_session() as db:
        row = await db.get(SellerRow, seller_id)
        if row is None:
            row = SellerRow(id=seller_id, ip_address=address)
            db.add(row)
        row.ip_address = address
        row.port = port
        row.api_key = api_key
        row.name = name or row.name or ""
        row.is_active = not inactive
    await close_db()
    print(f"Seller {seller_id} → {address}{':' + str(port) if port else ''} "
          f"({'inactive' if inactive else 'active'})")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--add-seller", type=int, metavar="ID", help="Upsert a seller row")
    parser.add_argument("--address", default="", help="Seller host or URL")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--api-key", default="")
    parser.add_argument("--name", default="")
    parser.add_argument("--inactive", action="store_true")
    args = parser.parse_args()

    if args.add_seller is not None:
        if not args.address:
            parser.error("--address is required with --add-seller")
        asyncio.run(add_seller(args.add_seller, args.address, args.port,
                               args.api_key, args.name, args.inactive))
        return

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
