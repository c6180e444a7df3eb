"""
Ledger Store Adapter
Typed access to positions, accounts and eligible-account links.

Every method runs inside the caller's transaction (the AsyncSession passed in).
Account mutations are single UPDATE statements that compute the new value from
the stored one (``balance = balance + :delta``); nothing is read into Python,
modified and written back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import Float, bindparam, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models import Account, EligibleAccountLink, LinkStatus, Position, TradeSide, generate_uuid
from settlement.batch import DEFAULT_BATCH_SIZE, BatchWriter

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_MULTIPLIER = 100000.0

positions = Position.__table__
accounts = Account.__table__
links = EligibleAccountLink.__table__


@dataclass(frozen=True)
class OwnerExposure:
    """Aggregate of one owner's positions: summed PnL and summed absolute lot"""
    user_id: str
    total_pnl: float
    total_lot: float


@dataclass(frozen=True)
class EligibleLink:
    """An owner that may open a position on ``ticker`` with ``lot``"""
    user_id: str
    ticker: str
    lot: float


class LedgerStore:
    """Reads and bulk writes against the ledger tables"""

    def __init__(self, contract_multiplier: float = DEFAULT_CONTRACT_MULTIPLIER,
                 batch_size: int = DEFAULT_BATCH_SIZE):
        self.contract_multiplier = contract_multiplier
        self.batch_size = batch_size

    def margin_for(self, lot: float) -> float:
        """Notional amount held for ``lot`` contracts"""
        return self.contract_multiplier * abs(lot)

    async def _writer(self, session: AsyncSession, statement) -> BatchWriter:
        connection = await session.connection()
        return BatchWriter(connection, statement, self.batch_size)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def mark_to_market(self, session: AsyncSession, ticker: str, bid: float) -> int:
        """Recompute PnL of every open position on ``ticker`` at ``bid``"""
        stmt = (
            update(positions)
            .where(positions.c.ticker == ticker, positions.c.done.is_(False))
            .values(pnl=self.contract_multiplier * (bid - positions.c.price) * positions.c.lot)
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def mark_to_market_many(self, session: AsyncSession, marks: Dict[str, float]) -> int:
        """Recompute open-position PnL for several tickers; one operation per ticker"""
        b_ticker = bindparam('b_ticker')
        b_bid = bindparam('b_bid', type_=Float)
        stmt = (
            update(positions)
            .where(positions.c.ticker == b_ticker, positions.c.done.is_(False))
            .values(pnl=self.contract_multiplier * (b_bid - positions.c.price) * positions.c.lot)
        )
        writer = await self._writer(session, stmt)
        async with writer:
            for ticker, bid in marks.items():
                await writer.add({'b_ticker': ticker, 'b_bid': bid})
        return writer.written

    async def close_opposing(self, session: AsyncSession, ticker: str, action: TradeSide,
                             reference_price: float, closed_at: datetime) -> int:
        """
        Close every open position on ``ticker`` whose direction is opposite to ``action``.

        ``done``, ``ended_at`` and the final PnL (at ``reference_price``) are set by the
        same statement, and only rows still open are touched, so a position closes once.
        """
        stmt = (
            update(positions)
            .where(
                positions.c.ticker == ticker,
                positions.c.action != action,
                positions.c.done.is_(False),
            )
            .values(
                done=True,
                ended_at=closed_at,
                pnl=self.contract_multiplier * (reference_price - positions.c.price) * positions.c.lot,
            )
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def insert_positions(self, session: AsyncSession, eligible: Sequence[EligibleLink],
                               action: TradeSide, price: float, opened_at: datetime) -> int:
        """Open one position per eligible owner"""
        writer = await self._writer(session, insert(positions))
        async with writer:
            for link in eligible:
                await writer.add({
                    'id': generate_uuid(),
                    'user_id': link.user_id,
                    'ticker': link.ticker,
                    'action': action,
                    'price': price,
                    'lot': action.lot_sign * abs(link.lot),
                    'pnl': 0.0,
                    'done': False,
                    'created_at': opened_at,
                })
        return writer.written

    # ------------------------------------------------------------------
    # Aggregations
    # ------------------------------------------------------------------

    @staticmethod
    def _exposure_columns():
        return (
            positions.c.user_id,
            func.coalesce(func.sum(positions.c.pnl), 0.0).label('total_pnl'),
            func.coalesce(func.sum(func.abs(positions.c.lot)), 0.0).label('total_lot'),
        )

    @staticmethod
    def _to_exposures(rows) -> List[OwnerExposure]:
        return [
            OwnerExposure(user_id=row.user_id, total_pnl=float(row.total_pnl), total_lot=float(row.total_lot))
            for row in rows
        ]

    async def count_open(self, session: AsyncSession, tickers: Iterable[str]) -> int:
        """Number of open positions on any of ``tickers``"""
        tickers = list(tickers)
        if not tickers:
            return 0
        stmt = (
            select(func.count())
            .select_from(positions)
            .where(positions.c.ticker.in_(tickers), positions.c.done.is_(False))
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def group_open_by_owner(self, session: AsyncSession, tickers: Iterable[str]) -> List[OwnerExposure]:
        """
        Owners holding an open position on any of ``tickers``, with totals over
        all of their open positions (every ticker, not only the quoted ones).
        """
        tickers = list(tickers)
        if not tickers:
            return []
        holders = (
            select(positions.c.user_id)
            .where(positions.c.ticker.in_(tickers), positions.c.done.is_(False))
        )
        stmt = (
            select(*self._exposure_columns())
            .where(positions.c.done.is_(False), positions.c.user_id.in_(holders))
            .group_by(positions.c.user_id)
            .order_by(positions.c.user_id)
        )
        result = await session.execute(stmt)
        return self._to_exposures(result.all())

    async def group_closed_by_owner(self, session: AsyncSession, ticker: str,
                                    closed_at: datetime) -> List[OwnerExposure]:
        """Positions on ``ticker`` closed at ``closed_at``, grouped by owner"""
        stmt = (
            select(*self._exposure_columns())
            .where(
                positions.c.ticker == ticker,
                positions.c.done.is_(True),
                positions.c.ended_at == closed_at,
            )
            .group_by(positions.c.user_id)
            .order_by(positions.c.user_id)
        )
        result = await session.execute(stmt)
        return self._to_exposures(result.all())

    async def find_eligible(self, session: AsyncSession, ticker: str) -> List[EligibleLink]:
        """
        Active links on ``ticker`` whose owner can cover the margin and holds
        no open position on ``ticker``.
        """
        open_on_ticker = (
            select(positions.c.id)
            .where(
                positions.c.user_id == links.c.user_id,
                positions.c.ticker == ticker,
                positions.c.done.is_(False),
            )
        )
        stmt = (
            select(links.c.user_id, links.c.ticker, links.c.lot)
            .select_from(links.join(accounts, accounts.c.id == links.c.user_id))
            .where(
                links.c.ticker == ticker,
                links.c.status == LinkStatus.ACTIVE,
                links.c.lot > 0,
                accounts.c.balance >= self.contract_multiplier * links.c.lot,
                ~open_on_ticker.exists(),
            )
            .order_by(links.c.user_id)
        )
        result = await session.execute(stmt)
        return [EligibleLink(user_id=row.user_id, ticker=row.ticker, lot=float(row.lot)) for row in result.all()]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def refresh_equity(self, session: AsyncSession, exposures: Sequence[OwnerExposure]) -> int:
        """Set equity and the unrealized-PnL mirror from each owner's open-position totals"""
        b_user_id = bindparam('b_user_id')
        b_total_pnl = bindparam('b_total_pnl', type_=Float)
        b_margin = bindparam('b_margin', type_=Float)
        stmt = (
            update(accounts)
            .where(accounts.c.id == b_user_id)
            .values(
                equity=accounts.c.balance + b_total_pnl + b_margin,
                unrealized_pnl=b_total_pnl,
            )
        )
        writer = await self._writer(session, stmt)
        async with writer:
            for exposure in exposures:
                await writer.add({
                    'b_user_id': exposure.user_id,
                    'b_total_pnl': exposure.total_pnl,
                    'b_margin': self.contract_multiplier * exposure.total_lot,
                })
        return writer.written

    async def realize(self, session: AsyncSession, exposures: Sequence[OwnerExposure]) -> int:
        """
        Move realized PnL and released margin into each owner's balance.

        The unrealized mirror is rebuilt from the owner's remaining open positions
        rather than decremented, since the realized PnL was frozen at the reference
        price and may differ from the last marked value. Equity becomes the new
        balance plus that remaining PnL plus the margin still held.
        """
        remaining = positions.alias('remaining')
        still_open = (remaining.c.user_id == accounts.c.id, remaining.c.done.is_(False))
        held_lot = (
            select(func.coalesce(func.sum(func.abs(remaining.c.lot)), 0.0))
            .where(*still_open)
            .scalar_subquery()
        )
        held_pnl = (
            select(func.coalesce(func.sum(remaining.c.pnl), 0.0))
            .where(*still_open)
            .scalar_subquery()
        )
        b_user_id = bindparam('b_user_id')
        b_total_pnl = bindparam('b_total_pnl', type_=Float)
        b_margin = bindparam('b_margin', type_=Float)
        new_balance = accounts.c.balance + b_total_pnl + b_margin
        new_unrealized = held_pnl
        stmt = (
            update(accounts)
            .where(accounts.c.id == b_user_id)
            .values(
                balance=new_balance,
                unrealized_pnl=new_unrealized,
                equity=new_balance + new_unrealized + self.contract_multiplier * held_lot,
            )
        )
        writer = await self._writer(session, stmt)
        async with writer:
            for exposure in exposures:
                await writer.add({
                    'b_user_id': exposure.user_id,
                    'b_total_pnl': exposure.total_pnl,
                    'b_margin': self.contract_multiplier * exposure.total_lot,
                })
        return writer.written

    async def reserve_margin(self, session: AsyncSession, eligible: Sequence[EligibleLink]) -> int:
        """Debit the margin of each newly opened position from its owner's balance"""
        b_user_id = bindparam('b_user_id')
        b_margin = bindparam('b_margin', type_=Float)
        stmt = (
            update(accounts)
            .where(accounts.c.id == b_user_id)
            .values(balance=accounts.c.balance - b_margin)
        )
        writer = await self._writer(session, stmt)
        async with writer:
            for link in eligible:
                await writer.add({'b_user_id': link.user_id, 'b_margin': self.margin_for(link.lot)})
        return writer.written

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account(self, session: AsyncSession, user_id: str) -> Optional[Account]:
        return await session.get(Account, user_id, populate_existing=True)

    async def list_positions(self, session: AsyncSession, ticker: Optional[str] = None,
                             user_id: Optional[str] = None, open_only: bool = False) -> List[Position]:
        """Positions in opening order, optionally narrowed by ticker, owner and open state"""
        stmt = select(Position).order_by(Position.created_at, Position.id)
        if ticker is not None:
            stmt = stmt.where(Position.ticker == ticker)
        if user_id is not None:
            stmt = stmt.where(Position.user_id == user_id)
        if open_only:
            stmt = stmt.where(Position.done.is_(False))
        stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return list(result.scalars().all())
