"""
Settlement Engine - one transaction per inbound event
"""

import logging
from typing import Iterable, Optional

from shared.config import AppSettings, get_settings
from shared.database import DatabaseManager
from shared.events import Quote, TradeAction
from settlement.ledger import LedgerStore
from settlement.quotes import QuoteSettlement, QuoteSettlementResult
from settlement.trade_actions import TradeActionResult, TradeActionSettlement

logger = logging.getLogger(__name__)


class SettlementEngine:
    """
    Applies quotes and trade actions to the ledger.

    Each call runs its whole sequence in one transaction from ``db``: it either
    commits completely or leaves the ledger at its last committed state and
    re-raises the error.
    """

    def __init__(self, db: DatabaseManager, settings: Optional[AppSettings] = None,
                 store: Optional[LedgerStore] = None):
        self.db = db
        self.settings = settings or db.settings or get_settings()
        self.store = store or LedgerStore(
            contract_multiplier=self.settings.settlement.contract_multiplier,
            batch_size=self.settings.settlement.batch_size,
        )
        self.quotes = QuoteSettlement(self.store)
        self.trade_actions = TradeActionSettlement(self.store)

    async def settle_quote(self, quote: Quote) -> QuoteSettlementResult:
        async with self.db.transaction() as session:
            return await self.quotes.apply(session, quote)

    async def settle_quotes(self, quotes: Iterable[Quote]) -> QuoteSettlementResult:
        async with self.db.transaction() as session:
            return await self.quotes.apply_many(session, quotes)

    async def settle_trade_action(self, trade_action: TradeAction) -> TradeActionResult:
        logger.info(
            f"⚙️ Settling {trade_action.action.value} on {trade_action.ticker} "
            f"@ {trade_action.reference_price} ({trade_action.reference_time.isoformat()})"
        )
        async with self.db.transaction() as session:
            return await self.trade_actions.apply(session, trade_action)
