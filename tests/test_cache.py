"""Tests for the expiring cache."""

import asyncio

import pytest

from src.intent_router.cache import ExpiringCache


def test_get_returns_live_value(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    cache.set("a", 1)

    assert cache.get("a") == 1
    assert cache.get("missing") is None
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_entry_expires_after_ttl(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    cache.set("a", 1)

    clock.advance(59)
    assert cache.get("a") == 1

    clock.advance(1)
    assert cache.get("a") is None
    assert len(cache) == 0
    assert cache.stats()["expirations"] == 1


def test_oldest_entry_evicted_at_capacity(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=2, clock=clock)
    cache.set("a", 1)
    clock.advance(1)
    cache.set("b", 2)
    clock.advance(1)
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1


def test_overwrite_moves_entry_to_newest(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 10
    assert len(cache) == 2


def test_replace_keeps_insertion_time(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    cache.set("a", 1)
    clock.advance(30)

    assert cache.replace("a", 2) is True
    clock.advance(30)
    assert cache.get("a") is None
    assert cache.replace("a", 3) is False


def test_none_values_rejected(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    with pytest.raises(ValueError):
        cache.set("a", None)


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        ExpiringCache("t", ttl_seconds=0, max_size=10)
    with pytest.raises(ValueError):
        ExpiringCache("t", ttl_seconds=10, max_size=0)


def test_sweep_and_clear(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    cache.set("old", 1)
    clock.advance(61)
    cache.set("new", 2)

    assert cache.sweep() == 1
    assert len(cache) == 1

    cache.clear("new")
    assert len(cache) == 0

    cache.set("x", 1)
    cache.set("y", 2)
    cache.clear()
    assert len(cache) == 0


def test_sweeper_needs_running_loop(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock)
    cache.ensure_sweeper_started()
    assert cache.sweeper_running is False


def test_background_sweeper_removes_expired_entries(clock):
    cache = ExpiringCache("t", ttl_seconds=60, max_size=10, clock=clock, sweep_interval_seconds=0.01)

    async def scenario():
        cache.set("a", 1)
        clock.advance(120)
        cache.ensure_sweeper_started()
        assert cache.sweeper_running
        await asyncio.sleep(0.05)
        removed = len(cache)
        cache.stop_sweeper()
        return removed

    assert asyncio.run(scenario()) == 0
    assert cache.sweeper_running is False


def test_stats_hit_rate(clock):
    cache = ExpiringCache("search", ttl_seconds=60, max_size=10, clock=clock)
    cache.set("a", 1)
    cache.get("a")
    cache.get("a")
    cache.get("b")
    cache.get("c")

    stats = cache.stats()
    assert stats["name"] == "search"
    assert stats["size"] == 1
    assert stats["hit_rate"] == 0.5
