import argparse
import asyncio
import logging

from shared.config import get_settings, load_environment, setup_logging
from shared.database import DatabaseManager
from settlement import EventSubscriber, SettlementEngine

logger = logging.getLogger("main")


async def main(init_db: bool = False):
    settings = get_settings()
    db = DatabaseManager(settings)
    subscriber = None

    try:
        logger.info("🔄 Initializing database...")
        await db.initialize()
        if not await db.test_connection():
            raise RuntimeError("Database connection test failed")
        if init_db:
            await db.create_schema()
        logger.info("✅ Database Connected")

        engine = SettlementEngine(db, settings)
        subscriber = EventSubscriber(engine, settings)

        logger.info("🔄 Initializing event subscriber...")
        await subscriber.initialize()
        logger.info("✅ Redis Connected")

        await subscriber.start_listening()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("🛑 Shutting down...")
    except Exception as e:
        logger.error(f"❌ System error: {e}")
        raise
    finally:
        if subscriber is not None:
            await subscriber.stop_listening()
            await subscriber.close()
        await db.close()
        logger.info("✅ System shutdown complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Position ledger settlement engine")
    parser.add_argument("--init-db", action="store_true", help="create the ledger tables before listening")
    args = parser.parse_args()

    env_file = load_environment()
    get_settings.cache_clear()
    setup_logging(get_settings())
    if env_file:
        logger.info(f"Loaded environment from {env_file}")
    asyncio.run(main(init_db=args.init_db))
