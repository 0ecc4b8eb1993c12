#!/usr/bin/env python3
"""
Pipeline-wide pause flag.

Set when the summarizer rejects the credentials. It expires on its own after
PAUSE_TTL seconds, is cleared when the configured API key changes, and can be
cleared by an operator.
"""

from typing import Optional

from config import config, get_logger
from utils import fingerprint, format_duration

logger = get_logger("pause")


class PauseFlag:
    KEY = "pipeline_paused"
    API_KEY_HASH_KEY = "api_key_hash"

    def __init__(self, store, ttl: Optional[float] = None):
        self.store = store
        self.ttl = config.PAUSE_TTL if ttl is None else ttl

    async def is_paused(self) -> bool:
        return await self.store.execute('exists', key=self.KEY)

    async def reason(self) -> Optional[str]:
        return await self.store.execute('get', key=self.KEY)

    async def remaining(self) -> Optional[float]:
        """Seconds until the flag expires, None when not paused."""
        return await self.store.execute('ttl', key=self.KEY)

    async def pause(self, reason: str) -> None:
        await self.store.execute('set', key=self.KEY, value=reason or "paused", ttl=self.ttl)
        logger.warning(f"Pipeline paused for {format_duration(self.ttl)}: {reason}")

    async def clear(self) -> bool:
        cleared = await self.store.execute('delete', key=self.KEY) > 0
        if cleared:
            logger.info("Pipeline pause cleared")
        return cleared

    async def track_api_key(self, api_key: Optional[str]) -> bool:
        """Remember the API key fingerprint; a different key lifts the pause.

        Returns True when the key differs from the one seen before.
        """
        if not api_key:
            return False
        digest = fingerprint(api_key)
        previous = await self.store.execute('get', key=self.API_KEY_HASH_KEY)
        if previous == digest:
            return False
        await self.store.execute('set', key=self.API_KEY_HASH_KEY, value=digest)
        if previous is not None:
            logger.info("API key changed")
        await self.clear()
        return True
