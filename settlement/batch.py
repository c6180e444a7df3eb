"""
Batch Mutation Helper - bounded bulk submissions
------------------------------------------------
Buffers parameter sets for one statement and submits them with executemany
in chunks of at most ``batch_size``. Chunks are flushed sequentially, each one
completes before the next is sent.
"""

import logging
from typing import Any, Dict, Iterable, List

from sqlalchemy.sql import Executable

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class BatchWriter:
    """
    Accumulates pending operations for one statement and flushes them in chunks.

    ``connection`` is anything with an awaitable ``execute(statement, params)``,
    normally the AsyncConnection of the current transaction. Operations inside a
    chunk are independent of each other, so their relative order is not relied on.
    """

    def __init__(self, connection, statement: Executable, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.connection = connection
        self.statement = statement
        self.batch_size = batch_size
        self._pending: List[Dict[str, Any]] = []
        self.flush_count = 0
        self.written = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def add(self, params: Dict[str, Any]):
        """Queue one operation, flushing when the chunk is full"""
        self._pending.append(params)
        if len(self._pending) >= self.batch_size:
            await self.flush()

    async def extend(self, rows: Iterable[Dict[str, Any]]):
        for params in rows:
            await self.add(params)

    async def flush(self) -> int:
        """Submit everything pending; returns the number of operations sent"""
        if not self._pending:
            return 0
        chunk, self._pending = self._pending, []
        await self.connection.execute(self.statement, chunk)
        self.flush_count += 1
        self.written += len(chunk)
        logger.debug(f"Flushed {len(chunk)} operations (chunk #{self.flush_count})")
        return len(chunk)

    async def __aenter__(self) -> 'BatchWriter':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # flush the remainder only when the producer finished cleanly
        if exc_type is None:
            await self.flush()
        else:
            self._pending = []


async def write_in_batches(connection, statement: Executable, rows: Iterable[Dict[str, Any]],
                           batch_size: int = DEFAULT_BATCH_SIZE) -> int:
    """Submit ``rows`` for ``statement`` in chunks of ``batch_size``; returns rows written"""
    async with BatchWriter(connection, statement, batch_size) as writer:
        await writer.extend(rows)
    return writer.written
