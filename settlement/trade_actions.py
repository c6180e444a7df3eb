"""
Trade-Action Settlement - the netting cycle run when a buy/sell signal fires
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import TradeAction
from shared.models import TradeSide
from settlement.ledger import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class TradeActionResult:
    ticker: str
    action: TradeSide
    positions_closed: int = 0
    owners_realized: int = 0
    realized_pnl: float = 0.0
    positions_opened: int = 0


class TradeActionSettlement:
    """
    Runs the full cycle for one signal, strictly in this order and inside the
    caller's transaction:

    1. close open positions on the ticker that oppose the signal
    2. realize their PnL and released margin into the owners' balances
    3. find linked owners that can now open a position
    4. open one position per eligible owner at the reference price
    5. hold the margin of each new position out of the owner's balance

    Step 3 sees the closes of step 1 and the balances of step 2.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    async def apply(self, session: AsyncSession, trade_action: TradeAction) -> TradeActionResult:
        ticker = trade_action.ticker
        action = trade_action.action
        result = TradeActionResult(ticker=ticker, action=action)

        result.positions_closed = await self.store.close_opposing(
            session, ticker, action, trade_action.reference_price, trade_action.reference_time
        )
        if result.positions_closed:
            closed = await self.store.group_closed_by_owner(session, ticker, trade_action.reference_time)
            result.owners_realized = await self.store.realize(session, closed)
            result.realized_pnl = sum(exposure.total_pnl for exposure in closed)
            logger.info(
                f"🛑 {ticker} {action.value}: closed {result.positions_closed} opposing positions, "
                f"realized {result.realized_pnl:.2f} for {result.owners_realized} owners"
            )

        eligible = await self.store.find_eligible(session, ticker)
        if not eligible:
            logger.debug(f"No eligible accounts for {ticker} {action.value}")
            return result

        result.positions_opened = await self.store.insert_positions(
            session, eligible, action, trade_action.reference_price, trade_action.reference_time
        )
        await self.store.reserve_margin(session, eligible)
        logger.info(
            f"🟢 {ticker} {action.value}: opened {result.positions_opened} positions "
            f"at {trade_action.reference_price}"
        )
        return result
