"""
Pytest configuration and shared fixtures for the settlement engine test suite.
"""
import pytest
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select

from shared.config import AppSettings, DatabaseConfig, SettlementConfig
from shared.database import DatabaseManager
from shared.models import Account, EligibleAccountLink, LinkStatus, Position, TradeSide
from settlement.engine import SettlementEngine
from settlement.ledger import LedgerStore

# Test configuration
TEST_CONFIG = {
    "database_url": "sqlite+aiosqlite://",  # fresh in-memory database per engine
    "contract_multiplier": 100000.0,
    "reference_time": datetime(2024, 1, 2, 10, 0, 0),
}

MULTIPLIER = TEST_CONFIG["contract_multiplier"]


@pytest.fixture
def settings() -> AppSettings:
    """Settings pointed at an in-memory SQLite ledger."""
    return AppSettings(
        environment="testing",
        database=DatabaseConfig(isolation_level="SERIALIZABLE"),
        settlement=SettlementConfig(
            contract_multiplier=MULTIPLIER,
            batch_size=1000,
            max_retries=2,
            retry_base_delay=0.0,
        ),
    )


@pytest.fixture
async def db_manager(settings: AppSettings):
    """Initialized database manager with the ledger schema created."""
    db = DatabaseManager(settings)
    await db.initialize(database_url=TEST_CONFIG["database_url"])
    await db.create_schema()
    try:
        yield db
    finally:
        await db.drop_schema()
        await db.close()


@pytest.fixture
def engine(db_manager: DatabaseManager, settings: AppSettings) -> SettlementEngine:
    return SettlementEngine(db_manager, settings)


@pytest.fixture
def reference_time() -> datetime:
    return TEST_CONFIG["reference_time"]


class LedgerSeeder:
    """Writes fixture rows and reads ledger state back in fresh transactions."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.store = LedgerStore(contract_multiplier=MULTIPLIER)

    async def add_account(self, user_id: str, balance: float, equity: Optional[float] = None,
                          unrealized_pnl: float = 0.0) -> str:
        async with self.db.transaction() as session:
            session.add(Account(
                id=user_id,
                balance=balance,
                equity=balance if equity is None else equity,
                unrealized_pnl=unrealized_pnl,
            ))
        return user_id

    async def add_position(self, user_id: str, ticker: str, action: TradeSide, price: float, lot: float,
                           pnl: float = 0.0, created_at: Optional[datetime] = None) -> str:
        position = Position(
            user_id=user_id,
            ticker=ticker,
            action=action,
            price=price,
            lot=action.lot_sign * abs(lot),
            pnl=pnl,
            done=False,
            created_at=created_at or datetime(2024, 1, 1, 9, 0, 0),
        )
        async with self.db.transaction() as session:
            session.add(position)
        return position.id

    async def add_link(self, user_id: str, ticker: str, lot: float,
                       status: LinkStatus = LinkStatus.ACTIVE) -> None:
        async with self.db.transaction() as session:
            session.add(EligibleAccountLink(user_id=user_id, ticker=ticker, lot=lot, status=status))

    async def account(self, user_id: str) -> Account:
        async with self.db.transaction() as session:
            return await self.store.get_account(session, user_id)

    async def positions(self, ticker: Optional[str] = None, user_id: Optional[str] = None,
                        open_only: bool = False) -> List[Position]:
        async with self.db.transaction() as session:
            return await self.store.list_positions(session, ticker=ticker, user_id=user_id, open_only=open_only)

    async def snapshot(self) -> Tuple[Dict, Dict]:
        """Every stored value a settlement can change, keyed by row id."""
        async with self.db.transaction() as session:
            accounts = (await session.execute(select(Account))).scalars().all()
            positions = (await session.execute(select(Position))).scalars().all()
            return (
                {a.id: (a.balance, a.equity, a.unrealized_pnl) for a in accounts},
                {p.id: (p.user_id, p.ticker, p.action, p.price, p.lot, p.pnl, p.done, p.ended_at) for p in positions},
            )


@pytest.fixture
def ledger(db_manager: DatabaseManager) -> LedgerSeeder:
    return LedgerSeeder(db_manager)


def pytest_configure(config):
    """Configure custom test markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
