"""
Error Handling and Resilience Module
Classifies storage errors and retries transient ones with exponential backoff
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, TimeoutError as PoolTimeoutError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    # asyncpg adapter errors expose sqlstate, psycopg exposes pgcode
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_error(exc: BaseException) -> bool:
    """
    True for failures that may succeed on a retry: network, timeout and
    connection errors, and transactions aborted by a concurrent commit
    (serialization failure or deadlock).
    """
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated or _sqlstate(exc) in RETRYABLE_SQLSTATES
    return False


class RetryHandler:
    """Retry mechanism with exponential backoff"""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 backoff_factor: float = 2.0,
                 retry_on: Optional[Callable[[BaseException], bool]] = None):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.retry_on = retry_on or is_transient_error

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with retry logic; non-retryable errors propagate at once"""
        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.retry_on(e):
                    raise
                if attempt == self.max_retries:
                    logger.error(f"Max retries ({self.max_retries}) exceeded")
                    raise

                delay = self.delay_for(attempt)
                logger.warning(f"Attempt {attempt + 1} failed, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)

