#!/usr/bin/env python3
"""
Load contacts from a CSV file into the ``contacts`` table.

The file uses the same positional layout as bulk uploads
(``id,name,email,age,status`` with a header row). Rows are inserted in
batches; rows whose email already exists are left untouched.

Usage:
    python3 scripts/seed_contacts.py test-data.csv
    python3 scripts/seed_contacts.py test-data.csv --truncate --batch-size 500

Environment:
    DATABASE_URL: PostgreSQL connection string (read from .env automatically)
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import AsyncIterator

from shared.database import db_service
from shared.logger import setup_logging
from web.backend.core.bulk.csv_ingest import iter_csv_records, row_to_entity
from web.backend.core.bulk.store import PostgresContactStore

logger = logging.getLogger("seed")

DEFAULT_BATCH_SIZE = 1000
READ_CHUNK_SIZE = 64 * 1024


async def _read_chunks(path: Path) -> AsyncIterator[bytes]:
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
            await asyncio.sleep(0)


async def seed(path: Path, batch_size: int, truncate: bool) -> int:
    if not await db_service.connect():
        raise RuntimeError("Could not connect to the database (is DATABASE_URL set?)")

    contacts = PostgresContactStore(db_service)
    inserted = 0
    seen = 0
    try:
        if truncate:
            async with db_service.acquire() as conn:
                await conn.execute("TRUNCATE contacts")
            logger.info("Cleared existing contacts")

        batch = []
        header_skipped = False
        async for record in iter_csv_records(_read_chunks(path)):
            if not header_skipped:
                header_skipped = True
                continue
            if not any(v.strip() for v in record):
                continue
            batch.append(row_to_entity(record)["entity_data"])
            seen += 1
            if len(batch) >= batch_size:
                inserted += await contacts.insert_many(batch)
                logger.info("Inserted batch: %d contacts so far", inserted)
                batch = []
        if batch:
            inserted += await contacts.insert_many(batch)
    finally:
        await db_service.disconnect()

    logger.info("Seeding completed: %d of %d rows inserted", inserted, seen)
    return inserted


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Seed the contacts table from a CSV file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("csv_file", type=Path, help="CSV file with id,name,email,age,status columns")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Rows per insert (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument("--truncate", action="store_true", help="Delete existing contacts first")
    args = parser.parse_args()

    setup_logging()
    if not args.csv_file.is_file():
        logger.error("File not found: %s", args.csv_file)
        sys.exit(1)
    if args.batch_size < 1:
        parser.error("--batch-size must be positive")

    try:
        asyncio.run(seed(args.csv_file, args.batch_size, args.truncate))
    except Exception as e:
        logger.error("Seeding failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
