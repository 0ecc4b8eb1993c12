#!/usr/bin/env python3
"""
Cadence job scheduler.

Runs named async callbacks on recurring cadences inside the event loop:

- Interval cadences: "30s", "5m", "1h", "1d"
- Daily cadences: "HH:MM" (also "H:MM"), interpreted in SCHEDULER_TIMEZONE

Each job runs in its own task and awaits its callback before computing the
next wake-up, so a job never overlaps itself. Failures are logged and the job
keeps its schedule.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import config, get_logger
from errors import PipelinePausedError
from telemetry import trace_span

logger = get_logger("scheduler")

INTERVAL_PATTERN = re.compile(r'^(\d+)\s*([smhd])$', re.IGNORECASE)
UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


class ScheduleEntry:
    """Represents a single daily time of day."""

    def __init__(self, time_str: str):
        """Initialize schedule entry from time string.

        Args:
            time_str: Time in format "HH:MM", "H:MM", etc.

        Raises:
            ValueError: If time format is invalid
        """
        self.time_str = time_str
        self.time = self._parse_time(time_str)

    def _parse_time(self, time_str: str) -> time:
        try:
            clean_time = str(time_str).strip().strip('"\'')
            parts = clean_time.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")

            hour = int(parts[0])
            minute = int(parts[1])
            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")
            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence of this time of day, returned in UTC.

        The reference time is converted to the schedule timezone, the next local
        occurrence is computed there, then converted back to UTC.
        """
        if tz is None:
            tz = timezone.utc
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate_local = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=1)
        return candidate_local.astimezone(timezone.utc)

    def __str__(self) -> str:
        return f"ScheduleEntry({self.time_str})"

    def __repr__(self) -> str:
        return self.__str__()


def resolve_timezone(name: Optional[str]):
    """Return a ZoneInfo for `name`, falling back to UTC when unknown."""
    if not name or str(name).upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(str(name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{name}', falling back to UTC")
        return timezone.utc


class Cadence:
    """A parsed cadence expression: either a fixed interval or a daily time."""

    def __init__(self, expression: str, tz=None):
        self.expression = str(expression).strip()
        self.tz = tz or timezone.utc
        self.interval: Optional[float] = None
        self.daily: Optional[ScheduleEntry] = None

        match = INTERVAL_PATTERN.match(self.expression)
        if match:
            amount = int(match.group(1))
            if amount <= 0:
                raise ValueError(f"Interval must be positive: {expression}")
            self.interval = float(amount * UNIT_SECONDS[match.group(2).lower()])
        elif ":" in self.expression:
            self.daily = ScheduleEntry(self.expression)
        else:
            raise ValueError(f"Unrecognized cadence '{expression}' (use e.g. 30s, 5m, 1h or HH:MM)")

    def next_run(self, from_time: Optional[datetime] = None) -> datetime:
        from_time = from_time or datetime.now(timezone.utc)
        if self.interval is not None:
            return from_time + timedelta(seconds=self.interval)
        return self.daily.next_occurrence(from_time, self.tz)

    def seconds_until_next(self, from_time: Optional[datetime] = None) -> float:
        from_time = from_time or datetime.now(timezone.utc)
        return max((self.next_run(from_time) - from_time).total_seconds(), 0.0)

    def __str__(self) -> str:
        return self.expression


@dataclass
class Job:
    id: str
    name: str
    cadence: Cadence
    callback: Callable[[], Awaitable[Any]]
    task: Optional[asyncio.Task] = None
    runs: int = 0
    failures: int = 0
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[str] = None


class JobScheduler:
    def __init__(self, timezone_name: Optional[str] = None):
        self.timezone_name = timezone_name or config.SCHEDULER_TIMEZONE
        self.tz = resolve_timezone(self.timezone_name)
        self.jobs: Dict[str, Job] = {}
        self._stopped = asyncio.Event()

    def run_job(self, cadence: str, name: str, callback: Callable[[], Awaitable[Any]],
                run_immediately: bool = False) -> str:
        """Register a recurring job and start it; returns the job id.

        Must be called with a running event loop.
        """
        job = Job(id=str(uuid4()), name=name, cadence=Cadence(cadence, self.tz), callback=callback)
        job.task = asyncio.get_running_loop().create_task(self._job_loop(job, run_immediately), name=f"job:{name}")
        self.jobs[job.id] = job
        logger.info(f"Scheduled job '{name}' ({cadence}, {self.timezone_name}) as {job.id}")
        return job.id

    def cancel_job(self, job_id: str) -> bool:
        job = self.jobs.pop(job_id, None)
        if job is None:
            return False
        if job.task and not job.task.done():
            job.task.cancel()
        logger.info(f"Cancelled job '{job.name}' ({job_id})")
        if not self.jobs:
            self._stopped.set()
        return True

    async def _job_loop(self, job: Job, run_immediately: bool) -> None:
        if run_immediately:
            await self._run_once(job)
        while True:
            now = datetime.now(timezone.utc)
            job.next_run = job.cadence.next_run(now)
            delay = (job.next_run - now).total_seconds()
            logger.debug(f"Job '{job.name}' sleeping {delay:.1f}s")
            await asyncio.sleep(max(delay, 0))
            await self._run_once(job)

    @trace_span(
        "scheduler.job_run",
        tracer_name="scheduler",
        attr_from_args=lambda self, job: {"job.name": job.name, "job.cadence": str(job.cadence)},
    )
    async def _run_once(self, job: Job) -> None:
        started = datetime.now(timezone.utc)
        job.last_run = started
        job.runs += 1
        try:
            await job.callback()
            job.last_error = None
        except asyncio.CancelledError:
            raise
        except PipelinePausedError as e:
            job.failures += 1
            job.last_error = str(e)
            logger.critical(f"Job '{job.name}' paused the pipeline: {e}")
        except Exception as e:
            job.failures += 1
            job.last_error = f"{e.__class__.__name__}: {e}"
            logger.error(f"Job '{job.name}' failed: {e}", exc_info=True)
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        logger.debug(f"Job '{job.name}' finished in {duration:.2f}s")

    async def run_forever(self) -> None:
        """Block until every job is cancelled or stop() is called."""
        if not self.jobs:
            logger.error("No jobs scheduled - nothing to run")
            return
        await self._stopped.wait()

    async def stop(self) -> None:
        for job_id in list(self.jobs):
            task = self.jobs[job_id].task
            self.cancel_job(job_id)
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._stopped.set()

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            job.id: {
                "name": job.name,
                "cadence": str(job.cadence),
                "runs": job.runs,
                "failures": job.failures,
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "next_run": job.next_run.isoformat() if job.next_run else None,
                "last_error": job.last_error,
            }
            for job in self.jobs.values()
        }
