"""
Quote Settlement Tests
Mark-to-market of open positions and equity republishing
"""

import pytest
from unittest.mock import AsyncMock

from shared.events import Quote
from shared.models import TradeSide
from settlement.engine import SettlementEngine
from settlement.ledger import LedgerStore

from tests.conftest import MULTIPLIER


class TestMarkToMarket:
    """Unrealized PnL recomputation"""

    async def test_open_positions_marked_at_bid(self, engine, ledger):
        await ledger.add_account("alice", balance=100000.0)
        long_id = await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=2)
        await ledger.add_account("bob", balance=100000.0)
        short_id = await ledger.add_position("bob", "EURUSD", TradeSide.SELL, price=1.1000, lot=1)

        result = await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1010))

        assert result.positions_marked == 2
        assert result.accounts_updated == 2
        positions = {p.id: p for p in await ledger.positions("EURUSD")}
        assert positions[long_id].pnl == pytest.approx(MULTIPLIER * 0.0010 * 2)
        assert positions[short_id].pnl == pytest.approx(MULTIPLIER * 0.0010 * -1)

    async def test_closed_positions_and_other_tickers_untouched(self, engine, ledger):
        await ledger.add_account("alice", balance=100000.0)
        other_id = await ledger.add_position("alice", "GBPUSD", TradeSide.BUY, price=1.2500, lot=1, pnl=42.0)

        result = await engine.settle_quote(Quote(ticker="EURUSD", bid=1.2000))

        assert result.positions_marked == 0
        assert result.accounts_updated == 0
        (other,) = await ledger.positions("GBPUSD")
        assert other.id == other_id
        assert other.pnl == 42.0

    async def test_equity_and_unrealized_mirror(self, engine, ledger):
        await ledger.add_account("alice", balance=50000.0)
        await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=2)

        await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1100))

        account = await ledger.account("alice")
        total_pnl = MULTIPLIER * 0.0100 * 2
        assert account.unrealized_pnl == pytest.approx(total_pnl)
        assert account.equity == pytest.approx(50000.0 + total_pnl + MULTIPLIER * 2)
        assert account.balance == 50000.0

    async def test_equity_covers_positions_on_every_ticker(self, engine, ledger):
        await ledger.add_account("alice", balance=10000.0)
        await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=1)
        await ledger.add_position("alice", "GBPUSD", TradeSide.SELL, price=1.2500, lot=2, pnl=-300.0)

        await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1020))

        account = await ledger.account("alice")
        eur_pnl = MULTIPLIER * 0.0020 * 1
        assert account.unrealized_pnl == pytest.approx(eur_pnl - 300.0)
        assert account.equity == pytest.approx(10000.0 + eur_pnl - 300.0 + MULTIPLIER * 3)


class TestIdempotency:
    """Replaying a quote leaves the ledger unchanged"""

    async def test_same_quote_twice_matches_once(self, engine, ledger):
        await ledger.add_account("alice", balance=75000.0)
        await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.0950, lot=1)
        await ledger.add_account("bob", balance=20000.0)
        await ledger.add_position("bob", "EURUSD", TradeSide.SELL, price=1.1050, lot=3)

        quote = Quote(ticker="EURUSD", bid=1.1003)
        await engine.settle_quote(quote)
        once = await ledger.snapshot()
        await engine.settle_quote(quote)
        twice = await ledger.snapshot()

        assert twice == once

    async def test_out_of_order_quotes_converge_on_last_applied(self, engine, ledger):
        await ledger.add_account("alice", balance=75000.0)
        await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=1)

        await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1200))
        await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1050))
        after_reorder = await ledger.snapshot()
        await engine.settle_quote(Quote(ticker="EURUSD", bid=1.1050))

        assert await ledger.snapshot() == after_reorder


class TestQuoteBatches:
    """Several quotes in one transaction"""

    async def test_last_quote_per_ticker_wins(self, engine, ledger):
        await ledger.add_account("alice", balance=10000.0)
        eur_id = await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=1)
        gbp_id = await ledger.add_position("alice", "GBPUSD", TradeSide.BUY, price=1.2500, lot=1)

        result = await engine.settle_quotes([
            Quote(ticker="EURUSD", bid=1.0900),
            Quote(ticker="GBPUSD", bid=1.2510),
            Quote(ticker="EURUSD", bid=1.1010),
        ])

        assert sorted(result.tickers) == ["EURUSD", "GBPUSD"]
        assert result.positions_marked == 2
        assert result.accounts_updated == 1
        positions = {p.id: p for p in await ledger.positions()}
        assert positions[eur_id].pnl == pytest.approx(MULTIPLIER * 0.0010)
        assert positions[gbp_id].pnl == pytest.approx(MULTIPLIER * 0.0010)
        account = await ledger.account("alice")
        assert account.unrealized_pnl == pytest.approx(MULTIPLIER * 0.0020)

    async def test_batches_smaller_than_the_quote_count(self, db_manager, settings, ledger):
        store = LedgerStore(contract_multiplier=MULTIPLIER, batch_size=2)
        engine = SettlementEngine(db_manager, settings, store=store)
        tickers = ["EURUSD", "GBPUSD", "USDJPY", "AUDUSD", "NZDUSD"]
        for i, ticker in enumerate(tickers):
            user_id = f"user-{i}"
            await ledger.add_account(user_id, balance=1000.0)
            await ledger.add_position(user_id, ticker, TradeSide.BUY, price=1.0, lot=1)

        result = await engine.settle_quotes([Quote(ticker=t, bid=1.001) for t in tickers])

        assert result.positions_marked == 5
        assert result.accounts_updated == 5
        for i in range(len(tickers)):
            account = await ledger.account(f"user-{i}")
            assert account.unrealized_pnl == pytest.approx(100.0)
            assert account.equity == pytest.approx(1000.0 + 100.0 + MULTIPLIER)

    async def test_empty_batch_is_a_no_op(self, engine):
        result = await engine.settle_quotes([])

        assert result.tickers == []
        assert result.positions_marked == 0


class TestQuoteAtomicity:
    """A failed quote leaves nothing behind"""

    async def test_failure_after_marking_rolls_back(self, engine, ledger, monkeypatch):
        await ledger.add_account("alice", balance=10000.0)
        await ledger.add_position("alice", "EURUSD", TradeSide.BUY, price=1.1000, lot=1)
        before = await ledger.snapshot()

        monkeypatch.setattr(engine.store, "refresh_equity", AsyncMock(side_effect=RuntimeError("storage down")))
        with pytest.raises(RuntimeError, match="storage down"):
            await engine.settle_quote(Quote(ticker="EURUSD", bid=1.2000))

        assert await ledger.snapshot() == before
