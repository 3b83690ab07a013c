"""
GOR Number Draw — init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes + system_config row)
- Optionally seeds system_config from the environment
- Creates the first waiting round for every game that has none
"""

import argparse
import asyncio
import logging
import os

import db as dbmod
from config import settings
from games import GAMES
from scheduler import ensure_upcoming_round

logger = logging.getLogger("init_db")


async def main(db_path: str, seed_config: bool = True) -> None:
    logger.info("Using DB_PATH=%s", db_path)
    conn = await dbmod.connect(db_path)
    try:
        if seed_config:
            fields = {}
            for env_name, column in (
                ("TREASURY_ADDRESS", "treasury_address"),
                ("TREASURY_SIGNING_CREDENTIAL", "treasury_signing_credential"),
                ("PLATFORM_FEE_PERCENTAGE", "platform_fee_percentage"),
                ("ENTRY_FEE", "entry_fee"),
            ):
                v = os.getenv(env_name)
                if v:
                    fields[column] = v
            if fields:
                async with dbmod.tx(conn):
                    await dbmod.update_system_config(conn, dbmod.utcnow(), **fields)
                logger.info("Seeded system_config: %s", sorted(fields))

        now = dbmod.utcnow()
        for variant in GAMES.values():
            rnd = await ensure_upcoming_round(conn, variant, now)
            if rnd:
                logger.info("Initialized first %s round: %s", variant.key, rnd["id"])
            else:
                current = await dbmod.current_round(conn, variant.key)
                logger.info("Current %s round exists: %s", variant.key, current["id"] if current else None)
    finally:
        await conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="Initialize the GOR Number Draw database")
    parser.add_argument("--db", default=os.getenv("DB_PATH", settings.DB_PATH))
    parser.add_argument("--no-seed", action="store_true", help="skip seeding system_config from env")
    args = parser.parse_args()
    asyncio.run(main(args.db, seed_config=not args.no_seed))
