import random

import pytest

from quota import QuotaLedger, QuotaLimits, SlotResult, TokenResult


def ledger(store, clock, tokens_per_minute=600, requests_per_minute=60, requests_per_day=1500):
    return QuotaLedger(store, QuotaLimits(tokens_per_minute, requests_per_minute, requests_per_day), clock,
                       poll_interval=0.5)


@pytest.mark.asyncio
async def test_reservation_above_cap_times_out_without_waiting(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    start = clock.now()

    assert await quota.reserve_tokens(700, timeout=60) == TokenResult.TIMED_OUT
    assert clock.now() == start
    assert await quota.available_tokens() == 600.0


@pytest.mark.asyncio
async def test_reservation_waits_for_refill_until_deadline(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    assert await quota.reserve_tokens(600, timeout=1) == TokenResult.GRANTED
    assert await quota.available_tokens() == 0.0

    # 30 seconds refill half the bucket, which is not enough
    assert await quota.reserve_tokens(600, timeout=30) == TokenResult.TIMED_OUT
    assert clock.slept == 30.0
    assert await quota.available_tokens() == 300.0


@pytest.mark.asyncio
async def test_reservation_granted_once_refilled(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    await quota.reserve_tokens(600, timeout=1)

    assert await quota.reserve_tokens(100, timeout=60) == TokenResult.GRANTED
    assert clock.slept == 10.0
    assert await quota.available_tokens() == 0.0


@pytest.mark.asyncio
async def test_zero_reservation_is_granted(store, clock):
    quota = ledger(store, clock)
    assert await quota.reserve_tokens(0, timeout=0) == TokenResult.GRANTED


@pytest.mark.asyncio
async def test_refill_is_monotonic_and_clamped(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    await quota.reserve_tokens(500, timeout=1)

    previous = await quota.refill()
    for _ in range(20):
        clock.advance(7)
        current = await quota.refill()
        assert current >= previous
        assert current <= 600.0
        previous = current
    assert previous == 600.0


@pytest.mark.asyncio
async def test_release_is_clamped_at_cap(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    await quota.reserve_tokens(100, timeout=1)
    assert await quota.release_tokens(1000) == 600.0


@pytest.mark.asyncio
async def test_request_slots_are_spaced(store, clock):
    quota = ledger(store, clock, requests_per_minute=4)
    start = clock.now()

    assert await quota.reserve_request_slot(timeout=60) == SlotResult.GRANTED
    assert await quota.reserve_request_slot(timeout=60) == SlotResult.GRANTED
    assert clock.now() - start == 15.0
    assert await quota.requests_issued_today() == 2


@pytest.mark.asyncio
async def test_request_slot_times_out(store, clock):
    quota = ledger(store, clock, requests_per_minute=1)
    assert await quota.reserve_request_slot(timeout=5) == SlotResult.GRANTED
    assert await quota.reserve_request_slot(timeout=5) == SlotResult.TIMED_OUT
    assert await quota.requests_issued_today() == 1


@pytest.mark.asyncio
async def test_daily_cap_is_terminal(store, clock):
    quota = ledger(store, clock, requests_per_minute=60, requests_per_day=2)
    assert await quota.reserve_request_slot(timeout=5) == SlotResult.GRANTED
    assert await quota.reserve_request_slot(timeout=5) == SlotResult.GRANTED
    before = clock.now()

    assert await quota.reserve_request_slot(timeout=60) == SlotResult.DAILY_LIMIT_REACHED
    assert clock.now() == before
    assert await quota.daily_limit_reached() is True
    assert await quota.requests_issued_today() == 2


@pytest.mark.asyncio
async def test_lowering_cap_clamps_available_tokens(store, clock):
    quota = ledger(store, clock, tokens_per_minute=1000)
    await quota.refill()
    assert await quota.available_tokens() == 1000.0

    await quota.update_limits(QuotaLimits(400, 60, 1500))
    assert await quota.available_tokens() == 400.0
    assert await quota.reserve_tokens(500, timeout=60) == TokenResult.TIMED_OUT
    assert await quota.reserve_tokens(400, timeout=1) == TokenResult.GRANTED


@pytest.mark.asyncio
async def test_lowering_daily_cap_clamps_request_count(store, clock):
    quota = ledger(store, clock, requests_per_day=10)
    for _ in range(5):
        await quota.reserve_request_slot(timeout=5)

    await quota.update_limits(QuotaLimits(600, 60, 3))
    assert await quota.requests_issued_today() == 3
    assert await quota.daily_limit_reached() is True


@pytest.mark.asyncio
async def test_sync_limits_only_applies_changes(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    limits = QuotaLimits(600, 60, 1500)

    assert await quota.sync_limits(limits) is True
    await quota.reserve_tokens(200, timeout=1)
    assert await quota.sync_limits(limits) is False
    assert await quota.available_tokens() == 400.0

    assert await quota.sync_limits(QuotaLimits(300, 60, 1500)) is True
    assert await quota.available_tokens() == 300.0


@pytest.mark.asyncio
async def test_tokens_never_go_negative(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600)
    rng = random.Random(7)
    for _ in range(200):
        action = rng.choice(["reserve", "release", "advance", "limits"])
        if action == "reserve":
            await quota.reserve_tokens(rng.randint(1, 600), timeout=rng.choice([0, 1, 2]))
        elif action == "release":
            await quota.release_tokens(rng.randint(0, 300))
        elif action == "advance":
            clock.advance(rng.uniform(0, 20))
        else:
            await quota.update_limits(QuotaLimits(rng.randint(100, 900), 60, 1500))
        tokens = await quota.available_tokens()
        assert 0.0 <= tokens <= quota.limits.tokens_per_minute


@pytest.mark.asyncio
async def test_reset_daily_counters_refills(store, clock):
    quota = ledger(store, clock, tokens_per_minute=600, requests_per_day=1)
    await quota.reserve_tokens(600, timeout=1)
    await quota.reserve_request_slot(timeout=1)
    assert await quota.daily_limit_reached() is True

    await quota.reset_daily_counters()
    assert await quota.requests_issued_today() == 0
    assert await quota.available_tokens() == 600.0


@pytest.mark.asyncio
async def test_reset_bucket_clears_request_spacing(store, clock):
    quota = ledger(store, clock, requests_per_minute=1)
    await quota.reserve_request_slot(timeout=1)
    await quota.reset_bucket()

    snapshot = await quota.snapshot()
    assert snapshot["last_request"] is None
    assert snapshot["requests_today"] == 0
    assert snapshot["tokens_available"] == 600.0
    assert await quota.reserve_request_slot(timeout=0) == SlotResult.GRANTED
