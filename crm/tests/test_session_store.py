from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import START, FixedClock, make_user
from services.cache import MemoryCache
from services.session_store import Session, SessionStore, is_session_expired


def test_expiry_is_a_pure_function_of_now() -> None:
    session = Session(token="t", username="ali", login_at=START)
    assert not is_session_expired(session, START + timedelta(days=2, hours=23))
    assert is_session_expired(session, START + timedelta(days=3))
    assert is_session_expired(session, START + timedelta(hours=2), ttl=timedelta(hours=1))


@pytest.mark.asyncio
async def test_login_lookup_and_logout() -> None:
    clock = FixedClock()
    store = SessionStore(MemoryCache(clock=clock), clock=clock)
    await store.start()

    session = await store.login(make_user(4, "ali", "کارشناس پشتیبانی"))
    found = await store.current(session.token)
    assert found == session

    await store.logout(session.token)
    assert await store.current(session.token) is None
    await store.close()


@pytest.mark.asyncio
async def test_session_expires_after_ttl() -> None:
    clock = FixedClock()
    cache = MemoryCache(clock=clock)
    store = SessionStore(cache, clock=clock, ttl_days=3)
    await store.start()

    session = await store.login(make_user(1, "mina", "مدیر"))
    clock.advance(days=2, hours=23)
    assert await store.current(session.token) is not None

    clock.advance(hours=1)
    assert await store.current(session.token) is None
    await store.close()


@pytest.mark.asyncio
async def test_unreadable_entry_is_discarded() -> None:
    clock = FixedClock()
    cache = MemoryCache(clock=clock)
    store = SessionStore(cache, clock=clock, key_prefix="test:session")
    await store.start()

    await cache.set("test:session:broken", {"username": "ali", "login_at": "not-a-date"})
    assert await store.current("broken") is None
    assert await cache.get("test:session:broken") is None
    await store.close()


@pytest.mark.asyncio
async def test_store_must_be_started() -> None:
    store = SessionStore(MemoryCache())
    with pytest.raises(RuntimeError):
        await store.current("anything")
