import pytest

from errors import CollaboratorError, ErrorKind, PipelinePausedError, kind_for_status
from origin import OriginStore
from worker import ItemOutcome, StopReason


def service_unavailable():
    return CollaboratorError("upstream down", ErrorKind.SERVICE_UNAVAILABLE, "summarizer")


@pytest.mark.asyncio
async def test_batch_respects_request_spacing(make_pipeline, clock):
    pipeline = make_pipeline("p1", "p2", requests_per_minute=1)
    start = clock.now()
    await pipeline.enqueue_all("p1", "p2", at=start)

    report = await pipeline.worker.run_cycle()

    assert report.succeeded == 2
    assert report.stop_reason is None
    [(_, first_at), (_, second_at)] = pipeline.summarizer.calls
    assert second_at - first_at >= 60
    assert [item_id for item_id, _ in pipeline.origin.published] == ["p1", "p2"]
    assert await pipeline.queue.size() == 0
    assert await pipeline.quota.requests_issued_today() == 2


@pytest.mark.asyncio
async def test_daily_cap_leaves_second_item_untouched(make_pipeline):
    pipeline = make_pipeline("p1", "p2", requests_per_day=1)
    await pipeline.enqueue_all("p1")
    await pipeline.enqueue_all("p2", at=pipeline.clock.now() + 1)

    first = await pipeline.worker.run_cycle()
    assert first.succeeded == 1
    assert await pipeline.quota.requests_issued_today() == 1

    pipeline.clock.advance(5)
    second = await pipeline.worker.run_cycle()
    assert second.stop_reason == StopReason.DAILY_LIMIT
    assert second.pulled == 0
    assert pipeline.origin.lookups == ["p1"]
    assert await pipeline.queue.contains("p2") is True
    assert await pipeline.retries.has_state("p2") is False


@pytest.mark.asyncio
async def test_daily_cap_stops_mid_batch(make_pipeline):
    pipeline = make_pipeline("p1", "p2", requests_per_day=1)
    await pipeline.enqueue_all("p1", "p2")

    report = await pipeline.worker.run_cycle()

    assert report.succeeded == 1
    assert report.stop_reason == StopReason.DAILY_LIMIT
    assert pipeline.origin.lookups == ["p1"]
    assert await pipeline.queue.contains("p2") is True


@pytest.mark.asyncio
async def test_retryable_failures_then_eviction(make_pipeline, clock):
    """max_retries bounds reschedules, not failures.

    With max_retries=2 the first and second failures each reschedule the item and
    the third evicts it. Evicting on the second failure instead would allow only
    one retry, which contradicts the retry bound of two.
    """
    pipeline = make_pipeline("p1", max_retries=2)
    await pipeline.enqueue_all("p1")
    pipeline.summarizer.failures = [service_unavailable(), service_unavailable(), service_unavailable()]

    report = await pipeline.worker.run_cycle()
    assert report.rescheduled == 1
    assert await pipeline.retries.attempts("p1") == 1

    clock.advance(300)
    report = await pipeline.worker.run_cycle()
    assert report.rescheduled == 1
    assert await pipeline.retries.attempts("p1") == 2

    clock.advance(360)
    report = await pipeline.worker.run_cycle()
    assert report.evicted == 1
    assert await pipeline.queue.contains("p1") is False
    assert await pipeline.retries.has_state("p1") is False
    assert pipeline.origin.published == []


@pytest.mark.asyncio
async def test_rescheduled_item_is_not_pulled_early(make_pipeline, clock):
    pipeline = make_pipeline("p1", max_retries=2)
    await pipeline.enqueue_all("p1")
    pipeline.summarizer.failures = [service_unavailable()]

    await pipeline.worker.run_cycle()
    clock.advance(299)
    report = await pipeline.worker.run_cycle()
    assert report.pulled == 0


@pytest.mark.asyncio
async def test_authentication_failure_pauses_pipeline(make_pipeline):
    pipeline = make_pipeline("p1", "p2")
    await pipeline.enqueue_all("p1", "p2")
    pipeline.summarizer.failures = [CollaboratorError("invalid key", ErrorKind.AUTHENTICATION, "summarizer")]

    with pytest.raises(PipelinePausedError) as excinfo:
        await pipeline.worker.run_cycle()

    assert excinfo.value.item_id == "p1"
    assert await pipeline.pause.is_paused() is True
    # Both items stay queued without retry state
    assert await pipeline.queue.size() == 2
    assert await pipeline.retries.has_state("p1") is False
    assert pipeline.origin.lookups == ["p1"]

    report = await pipeline.worker.run_cycle()
    assert report.stop_reason == StopReason.PAUSED
    assert pipeline.origin.lookups == ["p1"]


@pytest.mark.asyncio
async def test_pause_clears_when_key_changes(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    await pipeline.pause.track_api_key("old-key")
    await pipeline.pause.pause("rejected")

    await pipeline.pause.track_api_key("test-key")
    report = await pipeline.worker.run_cycle()
    assert report.succeeded == 1


@pytest.mark.asyncio
async def test_crash_mid_item_keeps_item_queued(make_pipeline):
    class Crash(BaseException):
        pass

    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    pipeline.summarizer.failures = [Crash()]

    with pytest.raises(Crash):
        await pipeline.worker.run_cycle()

    assert await pipeline.queue.contains("p1") is True
    report = await pipeline.worker.run_cycle()
    assert report.succeeded == 1
    assert len(pipeline.origin.published) == 1


@pytest.mark.asyncio
async def test_published_marker_prevents_duplicate(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    await pipeline.worker.run_cycle()

    # Same id submitted again while the marker is alive
    await pipeline.enqueue_all("p1")
    report = await pipeline.worker.run_cycle()

    assert report.skipped == 1
    assert len(pipeline.origin.published) == 1
    assert await pipeline.queue.size() == 0


@pytest.mark.asyncio
async def test_token_timeout_reschedules(make_pipeline, clock):
    pipeline = make_pipeline("p1", tokens_per_minute=100, token_timeout=5, max_retries=1)
    await pipeline.enqueue_all("p1")

    report = await pipeline.worker.run_cycle()

    assert report.rescheduled == 1
    assert await pipeline.queue.score("p1") == clock.now() + 300
    assert await pipeline.quota.requests_issued_today() == 0
    assert pipeline.summarizer.calls == []


@pytest.mark.asyncio
async def test_slot_timeout_stops_cycle_and_returns_tokens(make_pipeline):
    pipeline = make_pipeline("p1", "p2", requests_per_minute=1, slot_timeout=10)
    await pipeline.enqueue_all("p1", "p2")

    report = await pipeline.worker.run_cycle()

    assert report.succeeded == 1
    assert report.stop_reason == StopReason.REQUEST_SLOT_TIMEOUT
    assert await pipeline.queue.contains("p2") is True
    assert await pipeline.retries.has_state("p2") is False
    assert await pipeline.quota.available_tokens() == 9947.0


@pytest.mark.asyncio
async def test_missing_item_is_dropped(make_pipeline):
    pipeline = make_pipeline()
    await pipeline.enqueue_all("gone")

    report = await pipeline.worker.run_cycle()

    assert report.skipped == 1
    assert await pipeline.queue.size() == 0
    assert pipeline.fetcher.fetched == []


@pytest.mark.asyncio
async def test_not_found_content_is_evicted(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    pipeline.fetcher.errors["https://example.com/p1"] = CollaboratorError("404", ErrorKind.NOT_FOUND, "fetcher")

    report = await pipeline.worker.run_cycle()

    assert report.evicted == 1
    assert await pipeline.queue.size() == 0
    assert await pipeline.quota.requests_issued_today() == 0


@pytest.mark.asyncio
async def test_unknown_failure_is_evicted(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    pipeline.origin.errors["p1"] = CollaboratorError("odd payload", ErrorKind.UNKNOWN, "origin")

    report = await pipeline.worker.run_cycle()

    assert report.evicted == 1
    assert await pipeline.queue.size() == 0


@pytest.mark.asyncio
async def test_unexpected_exception_is_treated_as_unknown(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    pipeline.summarizer.failures = [RuntimeError("boom")]

    report = await pipeline.worker.run_cycle()

    assert report.evicted == 1
    assert await pipeline.queue.size() == 0
    assert await pipeline.pause.is_paused() is False


@pytest.mark.asyncio
async def test_no_credentials_skips_cycle(make_pipeline):
    pipeline = make_pipeline("p1", api_key="")
    await pipeline.enqueue_all("p1")

    report = await pipeline.worker.run_cycle()

    assert report.stop_reason == StopReason.NO_CREDENTIALS
    assert pipeline.origin.lookups == []
    assert await pipeline.queue.contains("p1") is True


@pytest.mark.asyncio
async def test_unused_output_tokens_are_released(make_pipeline):
    pipeline = make_pipeline("p1", tokens_per_minute=10_000)
    await pipeline.enqueue_all("p1")

    await pipeline.worker.run_cycle()

    # 150 reserved, 100 - 3 of them returned after a 12-character summary
    assert await pipeline.quota.available_tokens() == 9947.0


@pytest.mark.asyncio
async def test_failed_summary_returns_output_reservation(make_pipeline):
    pipeline = make_pipeline("p1", tokens_per_minute=10_000)
    await pipeline.enqueue_all("p1")
    pipeline.summarizer.failures = [service_unavailable()]

    await pipeline.worker.run_cycle()

    assert await pipeline.quota.available_tokens() == 9950.0


@pytest.mark.asyncio
async def test_process_item_outcome(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    cycle_settings = pipeline.worker._cycle_settings()

    assert await pipeline.worker.process_item("p1", cycle_settings) == ItemOutcome.SUCCEEDED
    comment = pipeline.origin.published[0][1]
    assert comment.startswith("Summary text")
    assert "https://archive.ph/abc" in comment
    assert comment.endswith("*bot footer*")
    assert pipeline.origin.distinguished == ["t1_p1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_linked_page_refusal_evicts_without_pausing(make_pipeline, status):
    pipeline = make_pipeline("p1", "p2")
    await pipeline.enqueue_all("p1", "p2")
    pipeline.fetcher.errors["https://example.com/p1"] = CollaboratorError(
        f"HTTP {status} fetching page", kind_for_status(status), "fetcher"
    )

    report = await pipeline.worker.run_cycle()

    assert report.evicted == 1
    assert report.succeeded == 1
    assert await pipeline.pause.is_paused() is False
    assert [item_id for item_id, _ in pipeline.origin.published] == ["p2"]
    assert await pipeline.queue.size() == 0


@pytest.mark.asyncio
async def test_origin_refusing_one_thread_is_item_level(make_pipeline):
    pipeline = make_pipeline("p1", "p2")
    await pipeline.enqueue_all("p1", "p2")
    pipeline.origin.errors["p1"] = CollaboratorError(
        "HTTP 403 from /api/info", kind_for_status(403, OriginStore.CREDENTIAL_STATUSES), "origin"
    )
    pipeline.origin.publish_errors["p2"] = CollaboratorError(
        "HTTP 403 from /api/comment", kind_for_status(403, OriginStore.CREDENTIAL_STATUSES), "origin"
    )

    report = await pipeline.worker.run_cycle()

    assert report.evicted == 2
    assert await pipeline.pause.is_paused() is False
    assert pipeline.origin.published == []
    assert await pipeline.queue.size() == 0


@pytest.mark.asyncio
async def test_origin_rejecting_our_token_pauses(make_pipeline):
    pipeline = make_pipeline("p1")
    await pipeline.enqueue_all("p1")
    pipeline.origin.errors["p1"] = CollaboratorError(
        "HTTP 401 from /api/info", kind_for_status(401, OriginStore.CREDENTIAL_STATUSES), "origin"
    )

    with pytest.raises(PipelinePausedError):
        await pipeline.worker.run_cycle()

    assert await pipeline.pause.is_paused() is True
    assert await pipeline.queue.contains("p1") is True


@pytest.mark.asyncio
async def test_zero_requests_per_minute_setting_does_not_break_the_cycle(make_pipeline):
    pipeline = make_pipeline("p1", "p2")
    pipeline.settings.overrides["requests_per_minute"] = 0.5
    await pipeline.enqueue_all("p1", "p2")

    report = await pipeline.worker.run_cycle()

    assert report.succeeded == 2
    assert pipeline.quota.limits.requests_per_minute >= 1
    assert await pipeline.quota.available_tokens() >= 0
