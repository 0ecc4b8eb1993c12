import pytest

from pause import PauseFlag


@pytest.mark.asyncio
async def test_pause_expires_after_ttl(store, clock):
    flag = PauseFlag(store, ttl=1800)
    assert await flag.is_paused() is False

    await flag.pause("credentials rejected")
    assert await flag.is_paused() is True
    assert await flag.reason() == "credentials rejected"
    assert await flag.remaining() == pytest.approx(1800)

    clock.advance(1800)
    assert await flag.is_paused() is False
    assert await flag.remaining() is None


@pytest.mark.asyncio
async def test_operator_clear(store):
    flag = PauseFlag(store)
    await flag.pause("x")
    assert await flag.clear() is True
    assert await flag.clear() is False
    assert await flag.is_paused() is False


@pytest.mark.asyncio
async def test_new_api_key_lifts_pause(store):
    flag = PauseFlag(store)
    assert await flag.track_api_key("key-one") is True

    await flag.pause("bad key")
    assert await flag.track_api_key("key-one") is False
    assert await flag.is_paused() is True

    assert await flag.track_api_key("key-two") is True
    assert await flag.is_paused() is False


@pytest.mark.asyncio
async def test_key_is_stored_as_fingerprint(store):
    flag = PauseFlag(store)
    await flag.track_api_key("secret-value")
    stored = await store.execute('get', key=PauseFlag.API_KEY_HASH_KEY)
    assert "secret-value" not in stored
    assert len(stored) == 64


@pytest.mark.asyncio
async def test_missing_key_is_ignored(store):
    flag = PauseFlag(store)
    await flag.pause("x")
    assert await flag.track_api_key(None) is False
    assert await flag.is_paused() is True
