import pytest

from delay_queue import DelayQueue


@pytest.mark.asyncio
async def test_pull_ready_returns_due_items_oldest_first(store, clock):
    queue = DelayQueue(store)
    now = clock.now()
    await queue.enqueue("late", now + 100)
    await queue.enqueue("second", now - 5)
    await queue.enqueue("first", now - 10)

    assert await queue.pull_ready(now) == ["first", "second"]
    # Pulling does not remove anything
    assert await queue.size() == 3


@pytest.mark.asyncio
async def test_pull_ready_respects_batch_size(store, clock):
    queue = DelayQueue(store)
    for i in range(5):
        await queue.enqueue(f"p{i}", clock.now() - 10 + i)

    assert await queue.pull_ready(clock.now(), max_batch=2) == ["p0", "p1"]
    assert await queue.pull_ready(clock.now(), max_batch=0) == []


@pytest.mark.asyncio
async def test_enqueue_twice_keeps_latest_time(store, clock):
    queue = DelayQueue(store)
    assert await queue.enqueue("p1", clock.now()) is True
    assert await queue.enqueue("p1", clock.now() + 300) is False

    assert await queue.size() == 1
    assert await queue.score("p1") == clock.now() + 300
    assert await queue.pull_ready(clock.now()) == []


@pytest.mark.asyncio
async def test_remove_and_contains(store, clock):
    queue = DelayQueue(store)
    await queue.enqueue("p1", clock.now())
    assert await queue.contains("p1") is True
    assert await queue.remove("p1") is True
    assert await queue.remove("p1") is False
    assert await queue.contains("p1") is False


@pytest.mark.asyncio
async def test_purge_older_than_drops_only_stale_entries(store, clock):
    queue = DelayQueue(store)
    now = clock.now()
    await queue.enqueue("stale", now - 90_000)
    await queue.enqueue("boundary", now - 86_400)
    await queue.enqueue("fresh", now - 60)
    await queue.enqueue("future", now + 60)

    purged = await queue.purge_older_than(86_400, now)
    assert purged == ["stale"]
    assert await queue.size() == 3


@pytest.mark.asyncio
async def test_purge_removes_every_stale_entry_in_one_sweep(store, clock):
    queue = DelayQueue(store)
    now = clock.now()
    for n in range(5):
        await queue.enqueue(f"old{n}", now - 100_000 - n)
    await queue.enqueue("boundary", now - 86_400)

    purged = await queue.purge_older_than(86_400, now)

    assert sorted(purged) == [f"old{n}" for n in range(5)]
    assert await queue.size() == 1
    assert await queue.contains("boundary") is True
    assert await queue.purge_older_than(86_400, now) == []
