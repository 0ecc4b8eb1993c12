#!/usr/bin/env python3
"""
Link Summarizer application.

Wires the durable store, quota ledger, delay queue and collaborators into a
pipeline worker, registers the recurring jobs and exposes the event handlers
(item submitted, settings changed) and the command line interface:

    run          process one batch of ready items
    scheduled    install the recurring jobs and run until interrupted
    enqueue      queue item ids for summarization
    status       show queue, pause and quota state
    cleanup      drop stale queue entries
    reset-quota  reset the quota bucket and daily counter
    resume       clear a pipeline pause
"""

import argparse
import asyncio
import json
import sys
from typing import Dict, List, Optional

from aiohttp import ClientSession

from archiver import Archiver, ArchiveTokenCache
from config import config, get_logger, SettingsProvider, validate_configuration
from delay_queue import DelayQueue
from errors import PipelinePausedError
from fetcher import ContentFetcher
from housekeeping import sweep_stale_items, reset_daily_quota
from llm_client import Summarizer
from models import DurableStore
from origin import OriginStore
from pause import PauseFlag
from publisher import ResultPublisher
from quota import QuotaLedger, QuotaLimits
from retry import RetryLedger
from scheduler import JobScheduler
from telemetry import init_telemetry, trace_span
from utils import SystemClock, format_duration
from worker import CycleReport, PipelineWorker

logger = get_logger("main")


class LinkSummaryApp:
    """Owns the pipeline components for one process."""

    JOB_KEYS = {
        "process_queue": "job:process_queue",
        "cleanup_queue": "job:cleanup_queue",
        "reset_daily_requests": "job:reset_daily_requests",
    }

    def __init__(self, db_path: Optional[str] = None, settings: Optional[SettingsProvider] = None, clock=None,
                 session: Optional[ClientSession] = None, origin=None, fetcher=None, summarizer=None,
                 publisher=None, poll_interval: Optional[float] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.settings = settings or SettingsProvider()
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.session = session
        self._owns_session = session is None
        self.origin = origin
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.publisher = publisher
        self.store: Optional[DurableStore] = None
        self.worker: Optional[PipelineWorker] = None

    async def initialize(self) -> None:
        self.store = DurableStore(self.db_path, clock=self.clock)
        await self.store.start()
        if self.session is None:
            self.session = ClientSession()

        self.queue = DelayQueue(self.store)
        self.quota = QuotaLedger(self.store, QuotaLimits.from_settings(self.settings), self.clock, self.poll_interval)
        self.retries = RetryLedger(self.store, self.queue)
        self.pause = PauseFlag(self.store)

        if self.origin is None:
            self.origin = OriginStore(self.session)
        if self.fetcher is None:
            archiver = Archiver(self.session)
            self.fetcher = ContentFetcher(self.session, archiver, ArchiveTokenCache(self.store, archiver, clock=self.clock))
        if self.summarizer is None:
            self.summarizer = Summarizer()
        if self.publisher is None:
            self.publisher = ResultPublisher(self.origin, footer=self.summarizer.prompts.get("footer"))

        self.worker = PipelineWorker(
            self.store, self.queue, self.quota, self.retries, self.pause,
            self.origin, self.fetcher, self.summarizer, self.publisher, self.settings,
            clock=self.clock,
        )
        logger.info("Link summarizer initialized")

    async def close(self) -> None:
        if isinstance(self.fetcher, ContentFetcher):
            await self.fetcher.close()
        if self.session is not None and self._owns_session:
            await self.session.close()
        if self.store is not None:
            await self.store.stop()

    async def __aenter__(self) -> "LinkSummaryApp":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Event handlers

    async def enqueue(self, item_id: str) -> bool:
        return await self.queue.enqueue(item_id, self.clock.now())

    async def on_item_submitted(self, item_id: str) -> bool:
        """Queue a newly submitted item when automatic mode is on."""
        if not self.settings.get_bool("automatic_mode", config.AUTOMATIC_MODE):
            logger.debug(f"Automatic mode off; ignoring {item_id}")
            return False
        await self.enqueue(item_id)
        logger.info(f"Queued submitted item {item_id}")
        return True

    async def on_settings_changed(self) -> None:
        """Apply edited limits and lift a pause when the API key was replaced."""
        await self.quota.sync_limits(QuotaLimits.from_settings(self.settings))
        api_key = self.settings.get("api_key")
        if await self.pause.track_api_key(api_key):
            valid = await self.summarizer.validate_api_key(api_key)
            if valid is False:
                logger.error("The new API key was rejected by the AI provider")

    # Jobs

    async def process_queue(self) -> CycleReport:
        return await self.worker.run_cycle()

    async def cleanup_queue(self) -> int:
        return await sweep_stale_items(self.store, self.queue, self.retries, self.clock)

    async def reset_daily_requests(self) -> None:
        await reset_daily_quota(self.quota)

    @trace_span("app.install", tracer_name="main")
    async def install(self, scheduler) -> Dict[str, str]:
        """Replace any previously installed jobs with fresh ones; quota counters are left alone."""
        await self._cancel_persisted_jobs(scheduler)

        job_ids = {
            "process_queue": scheduler.run_job(config.PIPELINE_CADENCE, "process_queue", self.process_queue),
            "cleanup_queue": scheduler.run_job(config.HOUSEKEEPING_CADENCE, "cleanup_queue", self.cleanup_queue),
            "reset_daily_requests": scheduler.run_job(
                config.QUOTA_RESET_CADENCE, "reset_daily_requests", self.reset_daily_requests
            ),
        }
        for name, job_id in job_ids.items():
            await self.store.execute('set', key=self.JOB_KEYS[name], value=job_id)
        logger.info(f"Installed jobs: {job_ids}")
        return job_ids

    async def uninstall(self, scheduler) -> None:
        await self._cancel_persisted_jobs(scheduler)
        logger.info("Uninstalled jobs")

    async def _cancel_persisted_jobs(self, scheduler) -> None:
        for key in self.JOB_KEYS.values():
            job_id = await self.store.execute('get', key=key)
            if job_id:
                if not scheduler.cancel_job(job_id):
                    logger.debug(f"Job {job_id} from {key} was not running here")
                await self.store.execute('delete', key=key)

    async def resume(self) -> bool:
        return await self.pause.clear()

    async def check_status(self) -> dict:
        jobs = {name: await self.store.execute('get', key=key) for name, key in self.JOB_KEYS.items()}
        return {
            "queue_size": await self.queue.size(),
            "paused": await self.pause.is_paused(),
            "pause_reason": await self.pause.reason(),
            "pause_remaining": await self.pause.remaining(),
            "quota": await self.quota.snapshot(),
            "jobs": jobs,
            "config": config.get_config_summary(),
        }


def print_status(status: dict) -> None:
    quota = status["quota"]
    print("\n📊 Link Summarizer Status")
    print(f"📥 Queue: {status['queue_size']} item(s)")
    if status["paused"]:
        print(f"⏸️  Paused ({format_duration(status['pause_remaining'] or 0)} left): {status['pause_reason']}")
    else:
        print("▶️  Running")
    tokens = quota["tokens_available"]
    print(f"🪙 Tokens available: {tokens:.0f}" if tokens is not None else "🪙 Tokens available: full bucket")
    print(f"📨 Requests today: {quota['requests_today']}/{quota['limits']['requests_per_day']}")
    for name, job_id in status["jobs"].items():
        print(f"⏰ {name}: {job_id or 'not installed'}")


async def run_once(app: LinkSummaryApp) -> int:
    try:
        report = await app.process_queue()
    except PipelinePausedError as e:
        logger.critical(f"Pipeline paused: {e}")
        return 2
    print(json.dumps(report.as_dict()))
    return 0


async def run_scheduled(app: LinkSummaryApp) -> None:
    scheduler = JobScheduler()
    await app.install(scheduler)
    try:
        await scheduler.run_forever()
    finally:
        await scheduler.stop()


async def run_command(args: argparse.Namespace) -> int:
    if args.mode in ("run", "scheduled"):
        problems = validate_configuration()
        if problems:
            for problem in problems:
                logger.error(problem)
            return 1

    async with LinkSummaryApp() as app:
        if args.mode == "run":
            return await run_once(app)
        if args.mode == "scheduled":
            await run_scheduled(app)
            return 0
        if args.mode == "enqueue":
            for item_id in args.ids:
                await app.enqueue(item_id)
            logger.info(f"Queued {len(args.ids)} item(s)")
            return 0
        if args.mode == "status":
            status = await app.check_status()
            if args.json:
                print(json.dumps(status, indent=2, default=str))
            else:
                print_status(status)
            return 0
        if args.mode == "cleanup":
            await app.cleanup_queue()
            return 0
        if args.mode == "reset-quota":
            await app.quota.reset_bucket()
            return 0
        if args.mode == "resume":
            if not await app.resume():
                logger.info("Pipeline was not paused")
            return 0
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Link Summarizer")
    parser.add_argument("mode", choices=["run", "scheduled", "enqueue", "status", "cleanup", "reset-quota", "resume"],
                        help="Operation mode")
    parser.add_argument("ids", nargs="*", help="Item ids (enqueue mode)")
    parser.add_argument("--json", action="store_true", help="Print status as JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mode == "enqueue" and not args.ids:
        parser.error("enqueue needs at least one item id")

    init_telemetry("link-summarizer")
    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Link summarizer shutting down")


if __name__ == "__main__":
    main()
