"""
Database Connection Manager
Owns the async engine and hands out one transaction scope per settlement event
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shared.config import AppSettings, get_settings
from shared.models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Async database manager for the ledger store.

    Create one instance at startup and pass it to the components that need it:

        db = DatabaseManager(settings)
        await db.initialize()

        async with db.transaction() as session:
            ...
    """

    def __init__(self, settings: Optional[AppSettings] = None):
        self.settings = settings or get_settings()
        self.async_engine: Optional[AsyncEngine] = None
        self.async_session_factory: Optional[async_sessionmaker] = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self, database_url: Optional[str] = None):
        """Create the async engine and session factory"""
        if self._initialized:
            logger.warning("Database manager already initialized")
            return

        url = database_url or self.settings.database.processed_url
        if not url:
            raise ValueError("DATABASE_URL must be provided")

        try:
            self.async_engine = create_async_engine(url, **self._engine_config(url))
        except Exception as e:
            logger.error(f"❌ Failed to create async engine: {e}")
            raise

        self.async_session_factory = async_sessionmaker(
            self.async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._initialized = True
        logger.info(f"✅ Database engine initialized ({self.async_engine.dialect.name})")

    def _engine_config(self, url: str) -> Dict[str, Any]:
        """Engine keyword arguments for the configured backend"""
        db_config = self.settings.database
        engine_config: Dict[str, Any] = {'echo': db_config.echo}

        if db_config.isolation_level:
            engine_config['isolation_level'] = db_config.isolation_level

        if url.startswith("sqlite"):
            # In-memory databases only live as long as their single connection
            engine_config['poolclass'] = StaticPool
            engine_config['connect_args'] = {'check_same_thread': False}
            return engine_config

        engine_config.update({
            'pool_size': db_config.pool_size,
            'max_overflow': db_config.max_overflow,
            'pool_pre_ping': db_config.pool_pre_ping,
            'pool_recycle': db_config.pool_recycle,
        })
        if url.startswith("postgresql+asyncpg"):
            engine_config['connect_args'] = {
                'server_settings': {
                    'application_name': db_config.application_name,
                    'synchronous_commit': db_config.synchronous_commit,
                },
                'command_timeout': db_config.command_timeout,
                'target_session_attrs': db_config.target_session_attrs,
            }
        return engine_config

    def _require_initialized(self):
        if not self._initialized or self.async_session_factory is None:
            raise RuntimeError("❌ Database not initialized. Call initialize() first.")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Run a block inside one database transaction.

        Commits when the block finishes, rolls back and re-raises when it fails.
        The session is closed on every exit path.
        """
        self._require_initialized()
        async with self.async_session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except Exception as e:
                logger.error(f"❌ Transaction rolled back: {e!r}")
                raise

    async def create_schema(self):
        """Create all ledger tables"""
        self._require_initialized()
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Ledger tables created/updated")

    async def drop_schema(self):
        """Drop all ledger tables"""
        self._require_initialized()
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def test_connection(self) -> bool:
        """Simple connection test"""
        try:
            async with self.transaction() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"❌ Connection test failed: {e}")
            return False

    async def close(self):
        """Dispose the engine and its pooled connections"""
        if self.async_engine is not None:
            await self.async_engine.dispose()
            logger.info("🔒 Database connections closed")
        self._initialized = False
        self.async_engine = None
        self.async_session_factory = None
