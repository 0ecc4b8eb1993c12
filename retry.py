#!/usr/bin/env python3
"""
Retry ledger and failure classification.

An item moves Fresh -> Retrying(n) -> Succeeded | Evicted. The retry count
lives in the hash `retry:<item id>` and the schedule in the delay queue;
both are cleared together when the item reaches a terminal state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import config, get_logger
from errors import ErrorKind

logger = get_logger("retry")


class Disposition(str, Enum):
    RETRY = "retry"
    PAUSE = "pause"
    EVICT = "evict"


_DISPOSITIONS = {
    ErrorKind.TIMEOUT: Disposition.RETRY,
    ErrorKind.SERVICE_UNAVAILABLE: Disposition.RETRY,
    ErrorKind.RATE_LIMITED: Disposition.RETRY,
    ErrorKind.AUTHENTICATION: Disposition.PAUSE,
    ErrorKind.NOT_FOUND: Disposition.EVICT,
    ErrorKind.UNKNOWN: Disposition.EVICT,
}

_unmapped = set(ErrorKind) - set(_DISPOSITIONS)
if _unmapped:
    raise RuntimeError(f"Error kinds without a disposition: {sorted(k.value for k in _unmapped)}")


def classify(kind: ErrorKind) -> Disposition:
    """Map an error kind to what the pipeline does with the failing item."""
    return _DISPOSITIONS[ErrorKind(kind)]


@dataclass(frozen=True)
class RetryDecision:
    evicted: bool
    attempts: int
    ready_at: Optional[float] = None


class RetryLedger:
    KEY_PREFIX = "retry:"
    FIELD = "count"

    def __init__(self, store, queue, max_retries: Optional[int] = None,
                 retry_interval: Optional[float] = None, retry_delay: Optional[float] = None):
        self.store = store
        self.queue = queue
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.retry_interval = config.RETRY_INTERVAL if retry_interval is None else retry_interval
        self.retry_delay = config.RETRY_DELAY if retry_delay is None else retry_delay

    def _key(self, item_id: str) -> str:
        return f"{self.KEY_PREFIX}{item_id}"

    async def attempts(self, item_id: str) -> int:
        value = await self.store.execute('hget', key=self._key(item_id), field=self.FIELD)
        return int(value or 0)

    async def has_state(self, item_id: str) -> bool:
        return bool(await self.store.execute('hgetall', key=self._key(item_id)))

    def next_ready_at(self, now: float, attempts: int) -> float:
        """Ready time for the next attempt; every retry after the first waits longer."""
        return now + self.retry_interval + (self.retry_delay if attempts > 0 else 0)

    async def record_failure(self, item_id: str, now: float) -> RetryDecision:
        """Reschedule a retryable failure, or evict once the retries are used up."""
        attempts = await self.attempts(item_id)
        if attempts >= self.max_retries:
            await self.evict(item_id)
            logger.info(f"Evicted {item_id} after {attempts} retries")
            return RetryDecision(evicted=True, attempts=attempts)

        ready_at = self.next_ready_at(now, attempts)
        attempts = await self.store.execute('hincrby', key=self._key(item_id), field=self.FIELD, amount=1)
        await self.queue.enqueue(item_id, ready_at)
        logger.info(f"Rescheduled {item_id} (retry {attempts}/{self.max_retries}) in {ready_at - now:.0f}s")
        return RetryDecision(evicted=False, attempts=attempts, ready_at=ready_at)

    async def evict(self, item_id: str) -> None:
        await self.clear(item_id)
        await self.queue.remove(item_id)

    async def clear(self, item_id: str) -> None:
        await self.store.execute('hdel_key', key=self._key(item_id))
