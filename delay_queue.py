#!/usr/bin/env python3
"""
Delay queue: a durable, time-ordered set of pending item ids.

Each item's score is the time at which it becomes ready. Pulling never removes
entries; an item only leaves the queue on terminal success or eviction, so a
worker killed mid-batch loses nothing.
"""

from typing import List, Optional

from config import config, get_logger

logger = get_logger("delay_queue")


class DelayQueue:
    KEY = "post_queue"

    def __init__(self, store, key: str = KEY):
        self.store = store
        self.key = key

    async def enqueue(self, item_id: str, ready_at: float) -> bool:
        """Schedule an item; an existing entry keeps only the latest ready time.

        Returns True when the item was not queued before.
        """
        added = await self.store.execute('zadd', key=self.key, member=item_id, score=ready_at)
        logger.debug(f"{'Queued' if added else 'Rescheduled'} {item_id} at {ready_at:.0f}")
        return added

    async def pull_ready(self, now: float, max_batch: Optional[int] = None) -> List[str]:
        """Return up to `max_batch` ids with ready time <= now, oldest first."""
        limit = max_batch if max_batch is not None else config.BATCH_SIZE
        if limit <= 0:
            return []
        entries = await self.store.execute(
            'zrange_by_score', key=self.key, min_score=float('-inf'), max_score=now, limit=limit
        )
        return [entry['member'] for entry in entries]

    async def remove(self, item_id: str) -> bool:
        return await self.store.execute('zrem', key=self.key, member=item_id) > 0

    async def score(self, item_id: str):
        return await self.store.execute('zscore', key=self.key, member=item_id)

    async def contains(self, item_id: str) -> bool:
        return await self.score(item_id) is not None

    async def size(self) -> int:
        return await self.store.execute('zcard', key=self.key)

    async def purge_older_than(self, max_age: float, now: float) -> List[str]:
        """Drop every entry scheduled before `now - max_age`, ready or not.

        Returns the purged ids so callers can clear related state.
        """
        cutoff = now - max_age
        # The range query is inclusive; only strictly older entries are stale
        entries = await self.store.execute(
            'zrange_by_score', key=self.key, min_score=float('-inf'), max_score=cutoff
        )
        stale = [entry for entry in entries if entry['score'] < cutoff]
        if not stale:
            return []
        # Entries are ordered by score, so the last stale one bounds the removal
        await self.store.execute(
            'zrem_range_by_score', key=self.key, min_score=float('-inf'), max_score=stale[-1]['score']
        )
        logger.info(f"Purged {len(stale)} stale item(s) older than {max_age:.0f}s")
        return [entry['member'] for entry in stale]
