"""
Quote Settlement - mark open positions to market
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import Quote
from settlement.ledger import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class QuoteSettlementResult:
    tickers: List[str] = field(default_factory=list)
    positions_marked: int = 0
    accounts_updated: int = 0


class QuoteSettlement:
    """
    Recomputes unrealized PnL for open positions on the quoted ticker, then
    republishes each affected owner's equity.

    Both steps are recomputations from stored state, so replaying a quote
    leaves the ledger unchanged.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    async def apply(self, session: AsyncSession, quote: Quote) -> QuoteSettlementResult:
        marked = await self.store.mark_to_market(session, quote.ticker, quote.bid)
        result = QuoteSettlementResult(tickers=[quote.ticker], positions_marked=marked)
        if marked == 0:
            logger.debug(f"No open positions on {quote.ticker}")
            return result

        # every position on the ticker is marked before owners are aggregated
        exposures = await self.store.group_open_by_owner(session, [quote.ticker])
        result.accounts_updated = await self.store.refresh_equity(session, exposures)
        logger.info(
            f"📈 {quote.ticker} @ {quote.bid}: marked {marked} positions, "
            f"refreshed {result.accounts_updated} accounts"
        )
        return result

    async def apply_many(self, session: AsyncSession, quotes: Iterable[Quote]) -> QuoteSettlementResult:
        """Mark a batch of quotes; the last quote per ticker wins"""
        latest: Dict[str, float] = {}
        for quote in quotes:
            latest[quote.ticker] = quote.bid
        result = QuoteSettlementResult(tickers=list(latest))
        if not latest:
            return result

        await self.store.mark_to_market_many(session, latest)
        # executemany rowcounts are driver dependent, count what was marked instead
        result.positions_marked = await self.store.count_open(session, latest.keys())
        if result.positions_marked:
            exposures = await self.store.group_open_by_owner(session, latest.keys())
            result.accounts_updated = await self.store.refresh_equity(session, exposures)
        logger.info(
            f"📈 Settled {len(latest)} quotes: marked {result.positions_marked} positions, "
            f"refreshed {result.accounts_updated} accounts"
        )
        return result
