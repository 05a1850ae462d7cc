"""
In-memory TTL caches for market data and analysis results.

Reads and writes are plain synchronous calls: under asyncio they run
between awaits, so no caller ever observes a half-written entry. Entries
expire lazily on read and are swept periodically by `cleanup()`.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

from infra.clock import Clock, PeriodicTask

logger = logging.getLogger(__name__)

@dataclass
class CacheEntry:
    """Single cache entry with TTL"""
    key: Hashable
    value: Any
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


@dataclass(frozen=True)
class CacheStats:
    name: str
    size: int
    hits: int
    misses: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class CacheStore:
    """
    TTL key/value store.

    Supports single-flight fetches: concurrent `get_or_fetch` calls for the
    same missing key share one in-flight fetch instead of stampeding the
    upstream service.
    """

    def __init__(self, name: str, ttl_seconds: float, clock: Optional[Clock] = None, metrics=None):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0 (got {ttl_seconds})")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock or Clock()
        self._metrics = metrics
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._in_flight: Dict[Hashable, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: Hashable) -> Tuple[bool, Any]:
        """Return (hit, value). Distinguishes a cached None from a miss."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(self._clock.monotonic()):
            del self._entries[key]
            self.evictions += 1
            entry = None

        hit = entry is not None
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        if self._metrics is not None:
            self._metrics.record_cache_lookup(self.name, hit)
        return hit, (entry.value if hit else None)

    def get(self, key: Hashable, default: Any = None) -> Any:
        hit, value = self.lookup(key)
        return value if hit else default

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock.monotonic(),
            ttl=self.ttl_seconds,
        )

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock.monotonic()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self.evictions += len(expired)
        if expired:
            logger.debug(f"Cache[{self.name}]: swept {len(expired)} expired entries")
        return len(expired)

    async def get_or_fetch(self, key: Hashable, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Get from cache or fetch with single-flight protection.

        If the key is cached and valid, returns immediately. Otherwise the
        first caller runs fetch_fn and stores the result; callers arriving
        while that fetch is in progress await the same result. Failures are
        not cached. If the fetching caller is cancelled, a waiter retries
        the fetch instead of inheriting the cancellation.
        """
        while True:
            hit, value = self.lookup(key)
            if hit:
                return value

            pending = self._in_flight.get(key)
            if pending is None:
                break
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # Owner was cancelled, not us: take over the fetch.
                logger.debug(f"Cache[{self.name}]: fetch for {key!r} abandoned, retrying")

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await fetch_fn()
            self.set(key, result)
            future.set_result(result)
            return result
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; waiters (if any) still see the exception.
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)

    def stats(self) -> CacheStats:
        return CacheStats(
            name=self.name,
            size=len(self._entries),
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
        )


class CacheRegistry:
    """Named CacheStores with independent TTLs plus a periodic sweep."""

    def __init__(self, clock: Optional[Clock] = None, metrics=None):
        self._clock = clock or Clock()
        self._metrics = metrics
        self._stores: Dict[str, CacheStore] = {}
        self._cleanup_task: Optional[PeriodicTask] = None

    def create(self, name: str, ttl_seconds: float) -> CacheStore:
        if name in self._stores:
            raise ValueError(f"cache '{name}' already exists")
        store = CacheStore(name, ttl_seconds, clock=self._clock, metrics=self._metrics)
        self._stores[name] = store
        logger.info(f"Cache[{name}] created (ttl={ttl_seconds:.0f}s)")
        return store

    def __getitem__(self, name: str) -> CacheStore:
        return self._stores[name]

    def __contains__(self, name: str) -> bool:
        return name in self._stores

    def names(self):
        return list(self._stores)

    def cleanup_all(self) -> int:
        return sum(store.cleanup() for store in self._stores.values())

    def clear_all(self) -> None:
        for store in self._stores.values():
            store.clear()

    def stats(self) -> Dict[str, CacheStats]:
        return {name: store.stats() for name, store in self._stores.items()}

    def start_cleanup(self, interval_seconds: float = 60.0) -> None:
        if self._cleanup_task is not None and self._cleanup_task.is_active:
            return

        async def sweep():
            removed = self.cleanup_all()
            if removed:
                logger.info(f"Cache sweep removed {removed} expired entries")

        self._cleanup_task = PeriodicTask("cache-cleanup", sweep, interval_seconds, clock=self._clock)
        self._cleanup_task.start()

    def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.stop()

    async def wait_cleanup_stopped(self) -> None:
        if self._cleanup_task is not None:
            await self._cleanup_task.wait_stopped()

    @property
    def cleanup_active(self) -> bool:
        return self._cleanup_task is not None and self._cleanup_task.is_active
