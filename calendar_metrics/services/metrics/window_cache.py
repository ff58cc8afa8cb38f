"""
In-memory cache of metrics results keyed by (user, normalized window).

Cache behaviour:
- At most one in-flight computation per key. Callers arriving while a key is
  Pending await the same future and observe the same result or failure.
- Check-on-read TTL: an expired Ready entry is a miss. No background sweeper.
- Failures are never cached. The entry goes back to Empty and the next
  request recomputes.
- Optional LRU bound by last access; Pending entries are never evicted.
- Uses monotonic() for TTL comparison (immune to system clock changes).

All state transitions run synchronously on the event loop between awaits, so
each one is atomic for the key it touches. No lock is held across the
computation itself, which runs in its own task so that a waiter giving up on
its deadline does not cancel it.
"""

import asyncio
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from calendar_metrics.infrastructure.observability.logging import get_logger
from calendar_metrics.models.domain.calendar_domain import TimeWindow

logger = get_logger(__name__)


class EntryState(str, Enum):
    EMPTY = "empty"
    PENDING = "pending"
    READY = "ready"


@dataclass(frozen=True)
class CacheKey:
    user_id: str
    start: datetime
    end: datetime

    @classmethod
    def for_window(cls, user_id: str, window: TimeWindow, granularity_seconds: int = 60):
        """
        Near-identical windows (same minute by default) collapse onto one key.

        Both bounds round down; a window lying inside a single slot widens to
        that whole slot.
        """
        normalized = window.truncated(granularity_seconds)
        end = normalized.end
        if end <= normalized.start:
            end = normalized.start + timedelta(seconds=max(granularity_seconds, 1))
        return cls(user_id=user_id, start=normalized.start, end=end)


@dataclass
class CacheEntry:
    key: CacheKey
    state: EntryState = EntryState.EMPTY
    value: Any = None
    computed_at: datetime | None = None
    expires_at: float = 0.0
    future: asyncio.Future | None = None
    # Last Ready value kept for degraded serving after expiry
    stale_value: Any = None
    stale_computed_at: datetime | None = None
    stale_expired_at: float = 0.0


@dataclass
class CacheLookup:
    """Result of ``get_or_compute`` plus how it was obtained."""

    value: Any
    source: str  # hit, miss, coalesced or stale
    computed_at: datetime | None = None


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    computations: int = 0
    failures: int = 0
    evictions: int = 0


class WindowCache:
    """Single-flight TTL cache owned by whoever constructs it."""

    def __init__(
        self,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._stats = CacheStats()

    async def get_or_compute(
        self,
        key: CacheKey,
        ttl_seconds: float | Callable[[Any], float],
        compute_fn: Callable[[], Awaitable[Any]],
        timeout: float | None = None,
    ) -> CacheLookup:
        """
        Return the cached value for ``key`` or compute it exactly once.

        Args:
            key: Cache key
            ttl_seconds: Time-to-live in seconds, or a callable deriving it from
                the computed value
            compute_fn: Zero-argument coroutine function producing the value
            timeout: Seconds this caller is willing to wait

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first (the computation
                keeps running for other callers)
            Exception: Whatever ``compute_fn`` raised, for every waiter
        """
        entry = self._touch(key)

        if entry.state is EntryState.READY:
            if self._clock() < entry.expires_at:
                self._stats.hits += 1
                logger.debug("Window cache hit", user_id=key.user_id)
                return CacheLookup(entry.value, "hit", entry.computed_at)
            self._expire(entry)

        if entry.state is EntryState.PENDING:
            self._stats.coalesced += 1
            source = "coalesced"
            logger.debug("Window cache joined in-flight computation", user_id=key.user_id)
        else:
            self._stats.misses += 1
            source = "miss"
            self._start_computation(entry, ttl_seconds, compute_fn)

        future = entry.future
        value = await asyncio.wait_for(asyncio.shield(future), timeout)
        return CacheLookup(value, source, entry.computed_at)

    def _touch(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
            self._evict_if_needed(keep=key)
        else:
            self._entries.move_to_end(key)
        return entry

    def _expire(self, entry: CacheEntry) -> None:
        entry.stale_value = entry.value
        entry.stale_computed_at = entry.computed_at
        entry.stale_expired_at = entry.expires_at
        entry.state = EntryState.EMPTY
        entry.value = None
        entry.computed_at = None

    def _start_computation(self, entry: CacheEntry, ttl_seconds, compute_fn) -> None:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        # Failures nobody awaited must not be reported as unretrieved
        future.add_done_callback(_consume_exception)

        entry.state = EntryState.PENDING
        entry.future = future
        self._stats.computations += 1

        task = loop.create_task(self._run(entry, future, ttl_seconds, compute_fn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, entry: CacheEntry, future: asyncio.Future, ttl_seconds, compute_fn):
        try:
            value = await compute_fn()
        except asyncio.CancelledError:
            self._reset(entry, future)
            future.cancel()
            raise
        except Exception as e:
            self._stats.failures += 1
            self._reset(entry, future)
            logger.warning(
                "Window cache computation failed",
                user_id=entry.key.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if not future.done():
                future.set_exception(e)
            return

        # Skip installing the value if the key was invalidated meanwhile
        if entry.future is future:
            ttl = ttl_seconds(value) if callable(ttl_seconds) else ttl_seconds
            entry.state = EntryState.READY
            entry.value = value
            entry.computed_at = datetime.now(UTC)
            entry.expires_at = self._clock() + ttl
            entry.future = None
        if not future.done():
            future.set_result(value)

    def _reset(self, entry: CacheEntry, future: asyncio.Future) -> None:
        if entry.future is future:
            entry.state = EntryState.EMPTY
            entry.future = None

    def get_stale(self, key: CacheKey, grace_seconds: float) -> CacheLookup | None:
        """
        Return the last Ready value for ``key`` if it expired less than
        ``grace_seconds`` ago.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.state is EntryState.READY:
            if now < entry.expires_at:
                return CacheLookup(entry.value, "hit", entry.computed_at)
            self._expire(entry)

        if entry.stale_value is None or now - entry.stale_expired_at > grace_seconds:
            return None
        return CacheLookup(entry.stale_value, "stale", entry.stale_computed_at)

    def _evict_if_needed(self, keep: CacheKey) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            victim = next(
                (
                    k
                    for k, e in self._entries.items()
                    if k != keep and e.state is not EntryState.PENDING
                ),
                None,
            )
            if victim is None:
                return
            del self._entries[victim]
            self._stats.evictions += 1

    def invalidate(self, key: CacheKey) -> None:
        """
        Remove a key. An in-flight computation still resolves its waiters but
        its value is not installed.
        """
        entry = self._entries.pop(key, None)
        if entry is not None:
            entry.future = None
            logger.debug("Window cache invalidated", user_id=key.user_id)

    def clear(self) -> None:
        count = len(self._entries)
        for entry in self._entries.values():
            entry.future = None
        self._entries.clear()
        logger.debug("Window cache cleared", entries=count)

    def state_of(self, key: CacheKey) -> EntryState:
        entry = self._entries.get(key)
        return entry.state if entry else EntryState.EMPTY

    def stats(self) -> dict[str, Any]:
        pending = sum(1 for e in self._entries.values() if e.state is EntryState.PENDING)
        return {
            "entries": len(self._entries),
            "pending": pending,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "coalesced": self._stats.coalesced,
            "computations": self._stats.computations,
            "failures": self._stats.failures,
            "evictions": self._stats.evictions,
            "max_entries": self.max_entries,
        }


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
