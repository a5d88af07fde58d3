"""
In-memory expiring cache shared by every classifier.

Key Features:
- Per-entry TTL checked lazily on read
- Bounded capacity with oldest-entry eviction
- Entries replaced wholesale, never mutated in place
- Optional background sweep task on the running event loop
- Injectable clock for deterministic tests
- Hit/miss/eviction metrics
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and the clock reading at insertion."""
    value: T
    inserted_at: float


@dataclass
class CacheMetrics:
    """Counters tracked by an expiring cache."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ExpiringCache(Generic[T]):
    """TTL and size bounded key/value store.

    Keys are kept in insertion order; ``set`` on an existing key removes it
    first so the front of the dict is always the oldest entry.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0
    ):
        """Initialize the cache.

        Args:
            name: Label used in logs and metrics
            ttl_seconds: Lifetime of each entry
            max_size: Maximum number of live entries
            clock: Monotonic time source in seconds
            sweep_interval_seconds: Period of the background sweep
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._metrics = CacheMetrics()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.inserted_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[T]:
        """Return the live value for ``key`` or None on a miss."""
        entry = self._entries.get(key)
        if entry is None:
            self._metrics.misses += 1
            return None

        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self._metrics.expirations += 1
            self._metrics.misses += 1
            return None

        self._metrics.hits += 1
        return entry.value

    def set(self, key: str, value: T) -> None:
        """Store ``value`` under ``key``, replacing any previous entry."""
        if value is None:
            raise ValueError("Cannot cache None")

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
            self._metrics.evictions += 1
            logger.debug("Cache eviction", cache=self.name, evicted_key=oldest_key[:50])

        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def replace(self, key: str, value: T) -> bool:
        """Swap the value of a live entry, keeping its insertion time and position.

        Returns:
            False when the key is missing or expired
        """
        if value is None:
            raise ValueError("Cannot cache None")

        entry = self._entries.get(key)
        if entry is None or self._is_expired(entry, self._clock()):
            return False

        self._entries[key] = CacheEntry(value=value, inserted_at=entry.inserted_at)
        return True

    def clear(self, key: Optional[str] = None) -> None:
        """Drop one key, or every entry when no key is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if self._is_expired(entry, now)]
        for k in expired:
            del self._entries[k]
        self._metrics.expirations += len(expired)

        if expired:
            logger.debug("Cache sweep completed", cache=self.name, removed=len(expired))
        return len(expired)

    def ensure_sweeper_started(self) -> None:
        """Start the periodic sweep on the running loop (call from async code)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet, the next async caller starts it
            return

        async def sweep_worker():
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                try:
                    self.sweep()
                except Exception as e:
                    logger.error("Cache sweep failed", cache=self.name, error=str(e))

        self._sweep_task = loop.create_task(sweep_worker())
        logger.debug("Cache sweeper started", cache=self.name, interval_seconds=self.sweep_interval_seconds)

    def stop_sweeper(self) -> None:
        """Cancel the background sweep if it is running."""
        if self._sweep_task is not None and not self._sweep_task.done():
            self._sweep_task.cancel()
        self._sweep_task = None

    @property
    def sweeper_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def stats(self) -> Dict[str, Any]:
        """Snapshot of cache counters."""
        lookups = self._metrics.hits + self._metrics.misses
        result = self._metrics.to_dict()
        result.update({
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hit_rate": round(self._metrics.hits / lookups, 4) if lookups else 0.0,
        })
        return result
