#!/usr/bin/env python3
import asyncio

from shared.config import get_settings, load_environment, setup_logging
from shared.database import DatabaseManager


async def create_tables():
    db = DatabaseManager(get_settings())
    await db.initialize()
    try:
        await db.create_schema()
    finally:
        await db.close()

    print('✅ Ledger tables created/updated')

if __name__ == "__main__":
    load_environment()
    setup_logging()
    asyncio.run(create_tables())
