#!/usr/bin/env python3
"""
Quota ledger for the external AI API.

Tracks three independent limits against counters persisted in the durable
store:

- tokens per minute: a continuously refilling bucket, refilled lazily on each
  poll and clamped at the per-minute cap
- requests per minute: enforced as a minimum interval between granted requests
- requests per day: a hard ceiling, reset by the daily job

Tokens are reserved pessimistically before a call (input estimate plus the
maximum output size) and the unused part is released afterwards.
"""

import json
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

from config import config, get_logger
from telemetry import trace_span
from utils import SystemClock

logger = get_logger("quota")


class SlotResult(str, Enum):
    GRANTED = "granted"
    TIMED_OUT = "timed_out"
    DAILY_LIMIT_REACHED = "daily_limit_reached"


class TokenResult(str, Enum):
    GRANTED = "granted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class QuotaLimits:
    tokens_per_minute: int
    requests_per_minute: int
    requests_per_day: int

    @classmethod
    def from_config(cls) -> "QuotaLimits":
        return cls(config.TOKENS_PER_MINUTE, config.REQUESTS_PER_MINUTE, config.REQUESTS_PER_DAY)

    @classmethod
    def from_settings(cls, settings) -> "QuotaLimits":
        """Build limits from a SettingsProvider.

        Values below 1 or not numeric fall back to the configured defaults.
        """
        return cls(
            tokens_per_minute=settings.get_positive_int("tokens_per_minute", config.TOKENS_PER_MINUTE),
            requests_per_minute=settings.get_positive_int("requests_per_minute", config.REQUESTS_PER_MINUTE),
            requests_per_day=settings.get_positive_int("requests_per_day", config.REQUESTS_PER_DAY),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


class QuotaLedger:
    """Reservation/release primitives over the persisted quota counters."""

    TOKENS_KEY = "quota:tokens"
    LAST_REFILL_KEY = "quota:last_refill"
    REQUESTS_TODAY_KEY = "quota:requests_today"
    LAST_REQUEST_KEY = "quota:last_request"
    LIMITS_KEY = "quota:limits"

    def __init__(self, store, limits: Optional[QuotaLimits] = None, clock=None,
                 poll_interval: Optional[float] = None):
        self.store = store
        self.limits = limits or QuotaLimits.from_config()
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval if poll_interval is not None else config.QUOTA_POLL_INTERVAL

    @property
    def min_request_interval(self) -> float:
        """Minimum seconds between two granted requests."""
        return 60.0 / self.limits.requests_per_minute

    async def update_limits(self, limits: QuotaLimits) -> None:
        """Replace the configured caps.

        Available tokens are clamped down to the new per-minute cap and the
        refill clock restarts now, so a raised cap never produces a burst.
        """
        self.limits = limits
        now = self.clock.now()
        values = await self.store.execute('get_many', keys=[self.TOKENS_KEY, self.LAST_REFILL_KEY, self.REQUESTS_TODAY_KEY])
        if values[self.LAST_REFILL_KEY] is None:
            tokens = float(limits.tokens_per_minute)
        else:
            tokens = min(float(values[self.TOKENS_KEY] or 0.0), float(limits.tokens_per_minute))
        requests_today = min(int(values[self.REQUESTS_TODAY_KEY] or 0), limits.requests_per_day)
        await self.store.execute('set_many', values={
            self.TOKENS_KEY: repr(tokens),
            self.LAST_REFILL_KEY: repr(now),
            self.REQUESTS_TODAY_KEY: requests_today,
            self.LIMITS_KEY: limits.to_json(),
        })
        logger.info(
            "Quota limits updated: %d tokens/min, %d requests/min, %d requests/day",
            limits.tokens_per_minute, limits.requests_per_minute, limits.requests_per_day,
        )

    async def sync_limits(self, limits: QuotaLimits) -> bool:
        """Apply limits only if they differ from the last applied (persisted) ones.

        Returns True when an update happened.
        """
        stored = await self.store.execute('get', key=self.LIMITS_KEY)
        if stored == limits.to_json():
            self.limits = limits
            return False
        await self.update_limits(limits)
        return True

    async def _refill(self, now: float, take: float = 0.0) -> tuple:
        """Refill the bucket up to `now` and optionally take `take` tokens.

        Returns (granted, tokens_after). Refill and take are a single write.
        """
        cap = float(self.limits.tokens_per_minute)
        values = await self.store.execute('get_many', keys=[self.TOKENS_KEY, self.LAST_REFILL_KEY])
        if values[self.LAST_REFILL_KEY] is None:
            tokens = cap
        else:
            elapsed = max(0.0, now - float(values[self.LAST_REFILL_KEY]))
            current = float(values[self.TOKENS_KEY] or 0.0)
            tokens = min(current + elapsed * cap / 60.0, cap)
        tokens = max(tokens, 0.0)
        granted = take > 0 and tokens >= take
        if granted:
            tokens -= take
        await self.store.execute('set_many', values={
            self.TOKENS_KEY: repr(tokens),
            self.LAST_REFILL_KEY: repr(now),
        })
        return granted, tokens

    async def refill(self) -> float:
        """Refill the bucket to the current time and return available tokens."""
        _, tokens = await self._refill(self.clock.now())
        return tokens

    @trace_span(
        "quota.reserve_tokens",
        tracer_name="quota",
        attr_from_args=lambda self, amount, timeout: {"quota.tokens": float(amount), "quota.timeout": float(timeout)},
    )
    async def reserve_tokens(self, amount: float, timeout: float) -> TokenResult:
        """Reserve `amount` tokens, polling until granted or `timeout` seconds pass."""
        if amount <= 0:
            return TokenResult.GRANTED
        if amount > self.limits.tokens_per_minute:
            logger.warning(
                "Requested %d tokens exceeds the per-minute cap of %d; it can never be granted",
                amount, self.limits.tokens_per_minute,
            )
            return TokenResult.TIMED_OUT

        deadline = self.clock.now() + timeout
        while True:
            now = self.clock.now()
            granted, tokens = await self._refill(now, take=amount)
            if granted:
                logger.debug("Reserved %.0f tokens; %.2f left", amount, tokens)
                return TokenResult.GRANTED
            if now >= deadline:
                logger.info("Timed out waiting for %.0f tokens (%.2f available)", amount, tokens)
                return TokenResult.TIMED_OUT
            logger.debug("Not enough tokens (%.2f < %.0f); waiting", tokens, amount)
            await self.clock.sleep(self.poll_interval)

    async def release_tokens(self, amount: float) -> float:
        """Return unused reserved tokens to the bucket, clamped at the cap."""
        if amount <= 0:
            return await self.available_tokens()
        current = await self.store.execute('get', key=self.TOKENS_KEY)
        updated = min(float(current or 0.0) + amount, float(self.limits.tokens_per_minute))
        await self.store.execute('set', key=self.TOKENS_KEY, value=repr(updated))
        logger.debug("Released %.0f tokens; %.2f available", amount, updated)
        return updated

    @trace_span(
        "quota.reserve_request_slot",
        tracer_name="quota",
        attr_from_args=lambda self, timeout: {"quota.timeout": float(timeout)},
    )
    async def reserve_request_slot(self, timeout: float) -> SlotResult:
        """Wait for a request slot.

        Granted once at least 60/requests_per_minute seconds passed since the
        last granted request and the daily ceiling is not reached. A reached
        daily ceiling returns immediately since it only clears at the daily reset.
        """
        deadline = self.clock.now() + timeout
        while True:
            now = self.clock.now()
            values = await self.store.execute('get_many', keys=[self.REQUESTS_TODAY_KEY, self.LAST_REQUEST_KEY])
            requests_today = int(values[self.REQUESTS_TODAY_KEY] or 0)
            if requests_today >= self.limits.requests_per_day:
                logger.warning("Daily request limit reached (%d/%d)", requests_today, self.limits.requests_per_day)
                return SlotResult.DAILY_LIMIT_REACHED
            last_request = values[self.LAST_REQUEST_KEY]
            if last_request is None or now - float(last_request) >= self.min_request_interval:
                await self.store.execute('set_many', values={
                    self.REQUESTS_TODAY_KEY: requests_today + 1,
                    self.LAST_REQUEST_KEY: repr(now),
                })
                logger.debug("Allocated request slot; requests today: %d", requests_today + 1)
                return SlotResult.GRANTED
            if now >= deadline:
                logger.info("Timed out waiting for a request slot")
                return SlotResult.TIMED_OUT
            await self.clock.sleep(self.poll_interval)

    async def requests_issued_today(self) -> int:
        return int(await self.store.execute('get', key=self.REQUESTS_TODAY_KEY) or 0)

    async def daily_limit_reached(self) -> bool:
        return await self.requests_issued_today() >= self.limits.requests_per_day

    async def available_tokens(self) -> float:
        """Tokens currently stored, without refilling."""
        value = await self.store.execute('get', key=self.TOKENS_KEY)
        return float(value) if value is not None else float(self.limits.tokens_per_minute)

    async def reset_daily_counters(self) -> None:
        """Zero the daily request count and refill the bucket to its cap."""
        logger.info("Resetting daily requests and tokens")
        await self.store.execute('set_many', values={
            self.REQUESTS_TODAY_KEY: 0,
            self.TOKENS_KEY: repr(float(self.limits.tokens_per_minute)),
        })

    async def reset_bucket(self) -> None:
        """Return every counter to its initial state."""
        logger.info("Resetting quota bucket")
        await self.store.execute('set_many', values={
            self.TOKENS_KEY: repr(float(self.limits.tokens_per_minute)),
            self.REQUESTS_TODAY_KEY: 0,
            self.LAST_REFILL_KEY: repr(self.clock.now()),
        })
        await self.store.execute('delete', key=self.LAST_REQUEST_KEY)

    async def snapshot(self) -> Dict[str, Any]:
        values = await self.store.execute('get_many', keys=[
            self.TOKENS_KEY, self.LAST_REFILL_KEY, self.REQUESTS_TODAY_KEY, self.LAST_REQUEST_KEY,
        ])
        return {
            "tokens_available": float(values[self.TOKENS_KEY]) if values[self.TOKENS_KEY] is not None else None,
            "last_refill": float(values[self.LAST_REFILL_KEY]) if values[self.LAST_REFILL_KEY] is not None else None,
            "requests_today": int(values[self.REQUESTS_TODAY_KEY] or 0),
            "last_request": float(values[self.LAST_REQUEST_KEY]) if values[self.LAST_REQUEST_KEY] is not None else None,
            "limits": asdict(self.limits),
        }
