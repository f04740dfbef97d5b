# tests/test_caches.py
"""ProfileCache coalescing and the bounded media cache."""

import asyncio
import time

import pytest
import requests

from cv_core.errors import TransientNetworkError
from cv_rtchat import media_cache
from cv_rtchat.media_cache import MediaCache, MediaLoader
from cv_users.models import UserProfile
from cv_users.profile_cache import ProfileCache

from .fakes import FakeFirestore, seed_user


class SlowFirestore(FakeFirestore):
    """Document reads take a while, so concurrent callers overlap."""

    delay = 0.05

    def _get(self, ref):
        time.sleep(self.delay)
        return super()._get(ref)


# -------------------------- ProfileCache --------------------------

async def test_concurrent_gets_share_one_fetch():
    db = SlowFirestore()
    seed_user(db, "bob", fullName="Bob Builder")
    cache = ProfileCache(db)

    results = await asyncio.gather(*(cache.get("bob") for _ in range(8)))

    assert db.reads["users/bob"] == 1
    assert all(r is results[0] for r in results)
    assert results[0].full_name == "Bob Builder"


async def test_concurrent_failure_gives_everyone_none_and_is_not_cached():
    db = SlowFirestore()
    seed_user(db, "bob")
    db.fail_reads("users/bob")
    cache = ProfileCache(db)

    results = await asyncio.gather(*(cache.get("bob") for _ in range(5)))
    assert results == [None] * 5
    assert cache.peek("bob") is None

    profile = await cache.get("bob")
    assert profile is not None and profile.id == "bob"
    assert db.reads["users/bob"] == 1


async def test_missing_user_is_none_and_fetched_again():
    db = FakeFirestore()
    cache = ProfileCache(db)
    assert await cache.get("ghost") is None
    assert await cache.get("ghost") is None
    assert db.reads["users/ghost"] == 2


async def test_clear_drops_fetch_in_flight():
    """A profile read that lands after sign-out is not written back"""
    db = SlowFirestore()
    db.delay = 0.2
    seed_user(db, "bob")
    cache = ProfileCache(db)

    task = asyncio.ensure_future(cache.get("bob"))
    await asyncio.sleep(0.05)
    cache.clear_cache()

    assert (await task).id == "bob"
    assert cache.peek("bob") is None
    assert len(cache) == 0

    assert (await cache.get("bob")).id == "bob"
    assert db.reads["users/bob"] == 2
    assert cache.peek("bob") is not None


async def test_waiter_retries_once_then_gives_up():
    db = SlowFirestore()
    db.delay = 0.4
    seed_user(db, "bob")
    cache = ProfileCache(db, wait_timeout=0.05)

    owner, waiter = await asyncio.gather(cache.get("bob"), cache.get("bob"))
    assert owner is not None
    assert waiter is None
    assert db.reads["users/bob"] == 1
    assert cache.peek("bob") is owner


async def test_cached_profile_skips_remote():
    db = FakeFirestore()
    seed_user(db, "bob")
    cache = ProfileCache(db)
    await cache.get("bob")
    await cache.get("bob")
    assert db.reads["users/bob"] == 1


async def test_refresh_and_clear():
    db = FakeFirestore()
    seed_user(db, "bob", username="bob")
    cache = ProfileCache(db)
    await cache.get("bob")

    db.document("users/bob").update({"username": "bobby"})
    assert cache.peek("bob").username == "bob"
    assert (await cache.refresh("bob")).username == "bobby"

    cache.clear_cache()
    assert len(cache) == 0


def test_prime_and_peek():
    cache = ProfileCache(FakeFirestore())
    cache.prime(UserProfile(id="carol", username="carol"))
    assert cache.peek("carol").username == "carol"
    assert cache.peek("dave") is None


# -------------------------- MediaCache --------------------------

def test_count_limit_evicts_least_recently_used():
    cache = MediaCache(count_limit=2, byte_limit=1000)
    cache.put("a", b"1")
    cache.put("b", b"2")
    assert cache.get("a") == b"1"
    cache.put("c", b"3")

    assert "a" in cache and "c" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_byte_limit_evicts_until_under():
    cache = MediaCache(count_limit=10, byte_limit=10)
    cache.put("a", b"x" * 4)
    cache.put("b", b"x" * 4)
    cache.put("c", b"x" * 4)

    assert "a" not in cache
    assert cache.total_bytes == 8
    assert cache.total_bytes <= cache.byte_limit


def test_oversized_item_is_not_cached():
    cache = MediaCache(count_limit=10, byte_limit=10)
    cache.put("small", b"x")
    assert cache.put("huge", b"x" * 11) is False
    assert "huge" not in cache
    assert "small" in cache


def test_replacing_entry_keeps_byte_total_exact():
    cache = MediaCache(count_limit=10, byte_limit=100)
    cache.put("a", b"x" * 10)
    cache.put("a", b"x" * 3)
    assert cache.total_bytes == 3
    cache.remove("a")
    assert cache.total_bytes == 0
    cache.put("b", b"yy")
    cache.clear()
    assert len(cache) == 0 and cache.total_bytes == 0


async def test_loader_coalesces_downloads(monkeypatch):
    calls = []

    def fake_download(url, timeout):
        calls.append(url)
        time.sleep(0.05)
        return b"jpeg-bytes"

    monkeypatch.setattr(media_cache, "_download", fake_download)
    loader = MediaLoader(MediaCache())

    results = await asyncio.gather(*(loader.load("https://cdn/x.jpg") for _ in range(4)))
    assert results == [b"jpeg-bytes"] * 4
    assert calls == ["https://cdn/x.jpg"]

    assert await loader.load("https://cdn/x.jpg") == b"jpeg-bytes"
    assert len(calls) == 1


async def test_loader_failure_is_transient_and_uncached(monkeypatch):
    def broken(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(media_cache, "_download", broken)
    cache = MediaCache()
    loader = MediaLoader(cache)

    with pytest.raises(TransientNetworkError) as info:
        await loader.load("https://cdn/y.jpg")
    assert info.value.retryable
    assert "https://cdn/y.jpg" not in cache
