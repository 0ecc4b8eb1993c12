import asyncio
import os

# Must be set before any project module is imported
os.environ["DISABLE_TELEMETRY"] = "true"
os.environ.pop("AI_API_KEY", None)
os.environ.pop("SECRETS_FILE", None)

import pytest
import pytest_asyncio

from config import SettingsProvider
from delay_queue import DelayQueue
from fetcher import FetchedContent
from models import DurableStore
from origin import ItemMetadata
from pause import PauseFlag
from publisher import ResultPublisher
from quota import QuotaLedger, QuotaLimits
from retry import RetryLedger
from worker import PipelineWorker

START = 1_700_000_000.0


class FakeClock:
    """Virtual time: sleeping advances the clock instead of waiting."""

    def __init__(self, start: float = START):
        self.current = start
        self.slept = 0.0

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        seconds = max(seconds, 0.0)
        self.current += seconds
        self.slept += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeOrigin:
    def __init__(self, items=None):
        self.items = dict(items or {})
        self.errors = {}
        self.publish_errors = {}
        self.published = []
        self.distinguished = []
        self.lookups = []

    async def get_item_by_id(self, item_id):
        self.lookups.append(item_id)
        if item_id in self.errors:
            raise self.errors[item_id]
        return self.items.get(item_id)

    async def publish_result(self, item_id, text):
        if item_id in self.publish_errors:
            raise self.publish_errors[item_id]
        self.published.append((item_id, text))
        return f"t1_{item_id}"

    async def distinguish(self, comment_id, sticky=True):
        self.distinguished.append(comment_id)
        return True


class FakeFetcher:
    def __init__(self, body="Body of the linked article."):
        self.body = body
        self.errors = {}
        self.fetched = []

    async def fetch(self, url, credentials=None):
        self.fetched.append(url)
        if url in self.errors:
            raise self.errors[url]
        return FetchedContent(title="Article", body=self.body, canonical_alt_url="https://archive.ph/abc")


class FakeSummarizer:
    """Fixed reservation of 50 input + 100 output tokens; failures are consumed in order."""

    def __init__(self, clock, input_tokens=50, output_tokens=100, summary="Summary text"):
        self.clock = clock
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.summary = summary
        self.failures = []
        self.calls = []
        self.prompts = {"footer": "*bot footer*"}
        self.valid_keys = set()

    def estimate_reservation(self, url, title, body):
        return self.input_tokens, self.output_tokens

    async def summarize(self, url, title, body, api_key, temperature=None):
        self.calls.append((url, self.clock.now()))
        if self.failures:
            raise self.failures.pop(0)
        return self.summary

    async def validate_api_key(self, api_key):
        return api_key in self.valid_keys


def make_item(item_id: str) -> ItemMetadata:
    return ItemMetadata(id=f"t3_{item_id}", title=f"Post {item_id}", url=f"https://example.com/{item_id}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_path(tmp_path):
    return str(tmp_path / "settings.yaml")


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    s = DurableStore(str(tmp_path / "store.db"), clock=clock)
    await s.start()
    yield s
    await s.stop()


class Pipeline:
    """A worker wired to fakes, with every component reachable for assertions."""

    def __init__(self, store, clock, settings_path, item_ids=(), max_retries=1, tokens_per_minute=10_000,
                 requests_per_minute=60, requests_per_day=1500, slot_timeout=120.0, token_timeout=60.0,
                 batch_size=10, api_key="test-key"):
        self.store = store
        self.clock = clock
        self.settings = SettingsProvider(settings_path, overrides={
            "api_key": api_key,
            "tokens_per_minute": tokens_per_minute,
            "requests_per_minute": requests_per_minute,
            "requests_per_day": requests_per_day,
        })
        self.queue = DelayQueue(store)
        self.quota = QuotaLedger(store, QuotaLimits.from_settings(self.settings), clock, poll_interval=0.5)
        self.retries = RetryLedger(store, self.queue, max_retries=max_retries, retry_interval=300, retry_delay=60)
        self.pause = PauseFlag(store, ttl=1800)
        self.origin = FakeOrigin({item_id: make_item(item_id) for item_id in item_ids})
        self.fetcher = FakeFetcher()
        self.summarizer = FakeSummarizer(clock)
        self.publisher = ResultPublisher(self.origin, footer="*bot footer*", max_length=10_000)
        self.worker = PipelineWorker(
            store, self.queue, self.quota, self.retries, self.pause,
            self.origin, self.fetcher, self.summarizer, self.publisher, self.settings,
            clock=clock, batch_size=batch_size, slot_timeout=slot_timeout, token_timeout=token_timeout,
            max_content_chars=60_000, published_ttl=172_800,
        )

    async def enqueue_all(self, *item_ids, at=None):
        for item_id in item_ids:
            await self.queue.enqueue(item_id, self.clock.now() if at is None else at)


@pytest.fixture
def make_pipeline(store, clock, settings_path):
    def _make(*item_ids, **kwargs):
        return Pipeline(store, clock, settings_path, item_ids=item_ids, **kwargs)
    return _make
