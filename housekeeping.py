#!/usr/bin/env python3
"""Periodic maintenance: stale queue sweep and the daily quota reset."""

from typing import Optional

from config import config, get_logger
from telemetry import trace_span
from utils import SystemClock

logger = get_logger("housekeeping")


@trace_span("housekeeping.sweep", tracer_name="housekeeping")
async def sweep_stale_items(store, queue, retries, clock=None, max_age: Optional[float] = None) -> int:
    """Drop queue entries older than `max_age` along with their retry counters.

    Also purges expired keys from the store. Returns the number of purged items.
    """
    clock = clock or SystemClock()
    max_age = config.QUEUE_MAX_AGE if max_age is None else max_age
    stale = await queue.purge_older_than(max_age, clock.now())
    for item_id in stale:
        await retries.clear(item_id)
    expired = await store.execute('purge_expired')
    logger.info(f"Queue cleanup removed {len(stale)} stale item(s) and {expired} expired key(s)")
    return len(stale)


@trace_span("housekeeping.daily_reset", tracer_name="housekeeping")
async def reset_daily_quota(quota) -> None:
    await quota.reset_daily_counters()
    logger.info("Daily request counter reset")
