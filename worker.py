#!/usr/bin/env python3
"""
Pipeline worker: one bounded, sequential pass over the ready part of the queue.

Each item goes through origin lookup, content fetch, quota reservation,
summarization and publication. Failures are classified by kind and turned into
a retry, an eviction, or (for rejected credentials) a pipeline-wide pause.
Items leave the queue only on success or eviction, so an interrupted cycle
is simply picked up again by the next one.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Union

from config import config, get_logger
from errors import CollaboratorError, ErrorKind, PipelinePausedError, StoreError
from quota import QuotaLimits, SlotResult, TokenResult
from retry import Disposition, classify
from telemetry import trace_span
from utils import SystemClock, estimate_tokens, format_duration, validate_url

logger = get_logger("worker")


class StopReason(str, Enum):
    PAUSED = "paused"
    DAILY_LIMIT = "daily_limit"
    NO_CREDENTIALS = "no_credentials"
    REQUEST_SLOT_TIMEOUT = "request_slot_timeout"
    FATAL_ERROR = "fatal_error"


class ItemOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RESCHEDULED = "rescheduled"
    EVICTED = "evicted"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    pulled: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    evicted: int = 0
    skipped: int = 0
    stop_reason: Optional[StopReason] = None

    def record(self, outcome: ItemOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["stop_reason"] = self.stop_reason.value if self.stop_reason else None
        return data


@dataclass(frozen=True)
class CycleSettings:
    api_key: str
    temperature: float
    include_archive_link: bool
    distinguish_results: bool


class PipelineWorker:
    PUBLISHED_PREFIX = "published:"

    def __init__(self, store, queue, quota, retries, pause, origin, fetcher, summarizer, publisher, settings,
                 clock=None, batch_size: Optional[int] = None, slot_timeout: Optional[float] = None,
                 token_timeout: Optional[float] = None, max_content_chars: Optional[int] = None,
                 published_ttl: Optional[float] = None):
        self.store = store
        self.queue = queue
        self.quota = quota
        self.retries = retries
        self.pause = pause
        self.origin = origin
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.publisher = publisher
        self.settings = settings
        self.clock = clock or SystemClock()
        self.batch_size = batch_size or config.BATCH_SIZE
        self.slot_timeout = config.REQUEST_SLOT_TIMEOUT if slot_timeout is None else slot_timeout
        self.token_timeout = config.TOKEN_WAIT_TIMEOUT if token_timeout is None else token_timeout
        self.max_content_chars = max_content_chars or config.MAX_CONTENT_CHARS
        self.published_ttl = published_ttl or config.PUBLISHED_MARKER_TTL

    def _published_key(self, item_id: str) -> str:
        return f"{self.PUBLISHED_PREFIX}{item_id}"

    def _cycle_settings(self) -> Optional[CycleSettings]:
        api_key = self.settings.get("api_key")
        if not api_key or not str(api_key).strip():
            return None
        return CycleSettings(
            api_key=str(api_key).strip(),
            temperature=self.settings.get_number("temperature", config.AI_TEMPERATURE),
            include_archive_link=self.settings.get_bool("include_archive_link", config.INCLUDE_ARCHIVE_LINK),
            distinguish_results=self.settings.get_bool("distinguish_results", config.DISTINGUISH_RESULTS),
        )

    @trace_span("worker.cycle", tracer_name="worker")
    async def run_cycle(self) -> CycleReport:
        """Process one batch of ready items.

        Raises PipelinePausedError when the summarizer rejects the credentials;
        every other failure is absorbed into an item transition.
        """
        report = CycleReport()

        if await self.pause.is_paused():
            remaining = await self.pause.remaining()
            logger.info(f"Pipeline paused ({format_duration(remaining or 0)} left); skipping cycle")
            report.stop_reason = StopReason.PAUSED
            return report

        await self.quota.sync_limits(QuotaLimits.from_settings(self.settings))
        if await self.quota.daily_limit_reached():
            logger.info("Daily request limit reached; waiting for the daily reset")
            report.stop_reason = StopReason.DAILY_LIMIT
            return report

        cycle_settings = self._cycle_settings()
        if cycle_settings is None:
            logger.warning("No API key configured; skipping cycle")
            report.stop_reason = StopReason.NO_CREDENTIALS
            return report

        item_ids = await self.queue.pull_ready(self.clock.now(), self.batch_size)
        report.pulled = len(item_ids)
        if not item_ids:
            logger.debug("No ready items in queue")
            return report

        logger.info(f"Processing {len(item_ids)} ready item(s)")
        try:
            for item_id in item_ids:
                if await self.quota.daily_limit_reached():
                    logger.info("Daily request limit reached mid-batch; leaving remaining items queued")
                    report.stop_reason = StopReason.DAILY_LIMIT
                    break
                outcome = await self.process_item(item_id, cycle_settings)
                if isinstance(outcome, StopReason):
                    report.stop_reason = outcome
                    break
                report.record(outcome)
        except PipelinePausedError:
            report.stop_reason = StopReason.FATAL_ERROR
            logger.info(f"Cycle aborted: {report.as_dict()}")
            raise

        logger.info(f"Cycle finished: {report.as_dict()}")
        return report

    @trace_span(
        "worker.item",
        tracer_name="worker",
        attr_from_args=lambda self, item_id, cycle_settings: {"item.id": item_id},
    )
    async def process_item(self, item_id: str, cycle_settings: CycleSettings) -> Union[ItemOutcome, StopReason]:
        """Take one item as far as it goes; returns its outcome or a reason to stop the cycle."""
        if await self.store.execute('exists', key=self._published_key(item_id)):
            logger.info(f"{item_id} already published; dropping from queue")
            await self.queue.remove(item_id)
            await self.retries.clear(item_id)
            return ItemOutcome.SKIPPED

        try:
            item = await self.origin.get_item_by_id(item_id)
        except Exception as e:
            return await self._handle_failure(item_id, e)
        if item is None or not validate_url(item.url):
            logger.info(f"{item_id} is gone or has no link; removing")
            await self.retries.evict(item_id)
            return ItemOutcome.SKIPPED

        try:
            content = await self.fetcher.fetch(item.url)
        except Exception as e:
            return await self._handle_failure(item_id, e)
        body = content.body[:self.max_content_chars]

        input_tokens, max_output_tokens = self.summarizer.estimate_reservation(item.url, content.title, body)
        reserved = input_tokens + max_output_tokens
        if await self.quota.reserve_tokens(reserved, self.token_timeout) != TokenResult.GRANTED:
            return await self._handle_failure(
                item_id, CollaboratorError(f"No token budget for {reserved} tokens", ErrorKind.RATE_LIMITED, "quota")
            )

        slot = await self.quota.reserve_request_slot(self.slot_timeout)
        if slot != SlotResult.GRANTED:
            await self.quota.release_tokens(reserved)
            if slot == SlotResult.DAILY_LIMIT_REACHED:
                return StopReason.DAILY_LIMIT
            logger.info(f"No request slot within {self.slot_timeout:.0f}s; leaving {item_id} queued")
            return StopReason.REQUEST_SLOT_TIMEOUT

        try:
            summary = await self.summarizer.summarize(
                item.url, content.title, body, cycle_settings.api_key, cycle_settings.temperature
            )
        except Exception as e:
            await self.quota.release_tokens(max_output_tokens)
            return await self._handle_failure(item_id, e)
        await self.quota.release_tokens(max(max_output_tokens - estimate_tokens(summary), 0))

        try:
            await self.publisher.publish(
                item_id,
                summary,
                archive_url=content.canonical_alt_url,
                include_archive_link=cycle_settings.include_archive_link,
                distinguish=cycle_settings.distinguish_results,
            )
        except Exception as e:
            return await self._handle_failure(item_id, e)

        # Marker first: a crash before removal must not publish twice
        await self.store.execute('set', key=self._published_key(item_id), value=repr(self.clock.now()),
                                 ttl=self.published_ttl)
        await self.queue.remove(item_id)
        await self.retries.clear(item_id)
        logger.info(f"Summarized and published {item_id}")
        return ItemOutcome.SUCCEEDED

    async def _handle_failure(self, item_id: str, error: Exception) -> ItemOutcome:
        if isinstance(error, StoreError):
            raise error
        if not isinstance(error, CollaboratorError):
            logger.error(f"Unexpected error processing {item_id}", exc_info=error)
            error = CollaboratorError(f"{error.__class__.__name__}: {error}", ErrorKind.UNKNOWN, "worker")

        disposition = classify(error.kind)
        if disposition == Disposition.PAUSE:
            await self.pause.pause(str(error))
            raise PipelinePausedError(f"Credentials rejected while processing {item_id}: {error}", item_id) from error

        if disposition == Disposition.RETRY:
            logger.info(f"Retryable failure for {item_id}: {error}")
            decision = await self.retries.record_failure(item_id, self.clock.now())
            return ItemOutcome.EVICTED if decision.evicted else ItemOutcome.RESCHEDULED

        if error.kind == ErrorKind.UNKNOWN:
            logger.warning(f"Evicting {item_id} after unclassified failure: {error}")
        else:
            logger.info(f"Evicting {item_id}: {error}")
        await self.retries.evict(item_id)
        return ItemOutcome.EVICTED
