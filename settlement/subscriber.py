"""
Event Subscriber - Listens to quote and trade-action channels and settles each event
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set, Union

import redis.asyncio as redis

from shared.common.error_handling import RetryHandler
from shared.config import AppSettings, get_settings
from shared.events import InvalidEventError, Quote, TradeAction
from settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)


class EventSubscriber:
    """
    Subscribes to the quote and trade-action channels and hands each message
    to the settlement engine as its own task.

    Quotes settle concurrently. Trade actions on the same ticker are serialized
    in arrival order, since netting depends on which positions are open when
    each signal is applied. At most ``max_in_flight`` events settle at once;
    intake waits for a free slot beyond that.
    """

    def __init__(self, engine: SettlementEngine, settings: Optional[AppSettings] = None,
                 retry_handler: Optional[RetryHandler] = None):
        self.engine = engine
        self.settings = settings or get_settings()
        redis_config = self.settings.redis
        settlement_config = self.settings.settlement

        self.redis_url = redis_config.url
        self.quote_channel = redis_config.quote_channel
        self.trade_action_channel = redis_config.trade_action_channel
        self.poll_timeout = redis_config.poll_timeout
        self.ticker_separator = settlement_config.ticker_separator
        self.retry_handler = retry_handler or RetryHandler(
            max_retries=settlement_config.max_retries,
            base_delay=settlement_config.retry_base_delay,
            max_delay=settlement_config.retry_max_delay,
        )

        self.redis_client = None
        self.pubsub = None
        self.running = False
        self.max_in_flight = settlement_config.max_in_flight
        self._in_flight = asyncio.Semaphore(self.max_in_flight)
        self._ticker_locks: Dict[str, asyncio.Lock] = {}
        self._ticker_users: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {"quotes": 0, "trade_actions": 0, "invalid": 0, "failed": 0}

    async def initialize(self):
        """Connect to Redis and subscribe to both channels"""
        try:
            redis_config = self.settings.redis
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=redis_config.decode_responses,
                socket_connect_timeout=redis_config.socket_connect_timeout,
                socket_timeout=redis_config.socket_timeout,
                health_check_interval=redis_config.health_check_interval,
            )
            await self.redis_client.ping()
            logger.info("✅ Event subscriber connected to Redis")

            self.pubsub = self.redis_client.pubsub()
            await self.pubsub.subscribe(self.quote_channel, self.trade_action_channel)
            logger.info(f"✅ Subscribed to {self.quote_channel} and {self.trade_action_channel}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize event subscriber: {e}")
            raise

    async def start_listening(self):
        """Start listening for events"""
        if self.pubsub is None:
            raise RuntimeError("Event subscriber not initialized. Call initialize() first.")
        self.running = True
        logger.info("🚀 Event subscriber started listening")

        while self.running:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout
                )
                if message and message["type"] == "message":
                    await self.dispatch(message["channel"], message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Error in event subscriber loop: {e}")
                await asyncio.sleep(1)

    async def dispatch(self, channel: Union[bytes, str], data: Union[bytes, str]) -> asyncio.Task:
        """Schedule one message for settlement, waiting while ``max_in_flight`` are running"""
        if isinstance(channel, bytes):
            channel = channel.decode()
        await self._in_flight.acquire()
        task = asyncio.create_task(self.handle_message(channel, data))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        self._in_flight.release()

    @asynccontextmanager
    async def _ticker_turn(self, ticker: str) -> AsyncIterator[None]:
        """Hold the ticker's lock; the lock is dropped once nobody holds or awaits it"""
        lock = self._ticker_locks.get(ticker)
        if lock is None:
            lock = self._ticker_locks[ticker] = asyncio.Lock()
        self._ticker_users[ticker] = self._ticker_users.get(ticker, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._ticker_users[ticker] -= 1
            if self._ticker_users[ticker] == 0:
                del self._ticker_users[ticker]
                del self._ticker_locks[ticker]

    async def handle_message(self, channel: str, data: Union[bytes, str]) -> Optional[Any]:
        """Parse and settle one message; failures are logged and the event is dropped"""
        try:
            if channel == self.quote_channel:
                quote = Quote.from_json(data, separator=self.ticker_separator)
                result = await self.retry_handler.execute(self.engine.settle_quote, quote)
                self.stats["quotes"] += 1
                return result

            if channel == self.trade_action_channel:
                trade_action = TradeAction.from_json(data)
                async with self._ticker_turn(trade_action.ticker):
                    result = await self.retry_handler.execute(self.engine.settle_trade_action, trade_action)
                self.stats["trade_actions"] += 1
                return result

            logger.warning(f"⚠️ Message on unexpected channel {channel!r} ignored")
            return None

        except InvalidEventError as e:
            self.stats["invalid"] += 1
            logger.warning(f"⚠️ Dropping malformed event on {channel}: {e}")
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"❌ Settlement failed for event on {channel}: {e!r}", exc_info=True)
        return None

    async def stop_listening(self):
        """Stop listening and wait for events already dispatched"""
        self.running = False
        if self._tasks:
            logger.info(f"⏳ Waiting for {len(self._tasks)} in-flight events")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("🛑 Event subscriber stopped listening")

    async def close(self):
        """Close the event subscriber"""
        if self.pubsub:
            await self.pubsub.unsubscribe(self.quote_channel, self.trade_action_channel)
            await self.pubsub.aclose()
        if self.redis_client:
            await self.redis_client.aclose()
        logger.info("✅ Event subscriber closed")
