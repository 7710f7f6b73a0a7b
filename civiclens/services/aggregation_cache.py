"""
aggregation_cache.py — Memoised heatmap results with TTL, invalidation and
single-flight.

Keyed by AggregationRequest (the request fingerprint). An entry stops being
served as soon as either:
  • its TTL has elapsed (short by default, complaints arrive constantly), or
  • invalidate() matched it, which happens whenever the intake service
    reports a newly persisted complaint that could change the result.

SINGLE-FLIGHT
─────────────
Concurrent misses for the same fingerprint share one asyncio task. The first
caller starts it; later callers await the same task (shielded, so one
caller giving up never cancels the shared pass). Failures propagate to every
waiter and are never cached.

LOCKING
───────
The lock guards only the maps and is never held across an await: the
aggregation streams from MongoDB unlocked and takes the lock just to publish
its bins. A threading.RLock is used so the intake hook can also be called
from worker threads.

DATA VERSION
────────────
Every invalidate() bumps data_version. A computation remembers the version it
started at; put() rejects bins for a fingerprint that was invalidated after
that version, so a pass that overlapped a new complaint cannot publish its
(possibly stale) result.
"""

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from civiclens.models.complaint import AggregationRequest
from civiclens.models.heatmap import HeatmapBin

logger = logging.getLogger(__name__)

Bins = tuple[HeatmapBin, ...]


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: AggregationRequest
    bins: Bins
    computed_at: float   # clock() reading, seconds
    data_version: int


class _Flight:
    """One in-progress computation for a fingerprint."""

    def __init__(self, data_version: int):
        self.data_version = data_version
        self.task: Optional[asyncio.Task] = None


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters re-raise the exception; this only stops asyncio from logging
    # "exception was never retrieved" when every waiter has gone away.
    if not task.cancelled():
        task.exception()


class AggregationCache:
    def __init__(
        self,
        ttl_seconds: float = 60.0,
        sweep_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._lock = threading.RLock()

        self._entries: dict[AggregationRequest, CacheEntry] = {}
        self._inflight: dict[AggregationRequest, _Flight] = {}
        self._running_versions: Counter = Counter()
        self._invalidated_at: dict[AggregationRequest, int] = {}
        self._data_version = 0

        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    # ── Plain map operations ──────────────────────────────────────────────────

    @property
    def data_version(self) -> int:
        return self._data_version

    def get(self, fingerprint: AggregationRequest) -> Optional[Bins]:
        """Return cached bins, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if self._expired(entry):
                del self._entries[fingerprint]
                return None
            return entry.bins

    def put(self, fingerprint: AggregationRequest, bins: Sequence[HeatmapBin], data_version: int) -> bool:
        """
        Store bins computed against `data_version`.

        Returns False (and stores nothing) when the fingerprint was invalidated
        after that version or a newer result is already cached.
        """
        with self._lock:
            if self._invalidated_at.get(fingerprint, -1) > data_version:
                logger.debug("Dropping stale heatmap result for %s", fingerprint)
                return False
            current = self._entries.get(fingerprint)
            if current is not None and current.data_version > data_version:
                return False
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                bins=tuple(bins),
                computed_at=self._clock(),
                data_version=data_version,
            )
            self._prune_invalidations()
            return True

    def invalidate(self, predicate: Callable[[AggregationRequest], bool]) -> int:
        """
        Evict every entry whose fingerprint satisfies `predicate`.

        Matching in-flight computations are detached: their current waiters
        still get a result, but it is not published and the next caller
        starts a fresh pass. Returns the number of evicted entries.
        """
        with self._lock:
            self._data_version += 1
            version = self._data_version

            evicted = 0
            for fingerprint in [fp for fp in self._entries if predicate(fp)]:
                del self._entries[fingerprint]
                self._invalidated_at[fingerprint] = version
                evicted += 1
            for fingerprint in [fp for fp in self._inflight if predicate(fp)]:
                del self._inflight[fingerprint]
                self._invalidated_at[fingerprint] = version

        logger.debug("Heatmap cache invalidated %d entries (data version %d)", evicted, version)
        return evicted

    def evict_expired(self) -> int:
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if self._expired(entry)]
            for fingerprint in expired:
                del self._entries[fingerprint]
            self._prune_invalidations()
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "inflight": len(self._inflight),
                "hits": self.hits,
                "misses": self.misses,
                "dataVersion": self._data_version,
            }

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.computed_at >= self.ttl_seconds

    def _prune_invalidations(self) -> None:
        # A record only matters to computations that started before it.
        if not self._running_versions:
            self._invalidated_at.clear()
            return
        oldest = min(self._running_versions)
        for fingerprint in [fp for fp, v in self._invalidated_at.items() if v <= oldest]:
            del self._invalidated_at[fingerprint]

    # ── Single-flight ─────────────────────────────────────────────────────────

    async def get_or_compute(
        self,
        fingerprint: AggregationRequest,
        compute: Callable[[], Awaitable[Sequence[HeatmapBin]]],
    ) -> Bins:
        """Cached bins for `fingerprint`, computing them at most once concurrently."""
        with self._lock:
            cached = self.get(fingerprint)
            if cached is not None:
                self.hits += 1
                logger.debug("Heatmap cache hit: %s", fingerprint)
                return cached

            flight = self._inflight.get(fingerprint)
            if flight is None:
                self.misses += 1
                logger.debug("Heatmap cache miss: %s", fingerprint)
                flight = _Flight(self._data_version)
                flight.task = asyncio.create_task(self._run(fingerprint, flight, compute))
                flight.task.add_done_callback(_consume_exception)
                self._inflight[fingerprint] = flight
                self._running_versions[flight.data_version] += 1
            else:
                logger.debug("Joining in-flight heatmap computation: %s", fingerprint)

        return await asyncio.shield(flight.task)

    async def _run(self, fingerprint: AggregationRequest, flight: _Flight, compute) -> Bins:
        try:
            bins = tuple(await compute())
            # Publish while this flight still counts as running, so its
            # invalidation record cannot be pruned first.
            self.put(fingerprint, bins, flight.data_version)
            return bins
        finally:
            with self._lock:
                if self._inflight.get(fingerprint) is flight:
                    del self._inflight[fingerprint]
                self._running_versions[flight.data_version] -= 1
                if self._running_versions[flight.data_version] <= 0:
                    del self._running_versions[flight.data_version]

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background TTL sweep (needs a running event loop)."""
        if self.sweep_interval_seconds > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            evicted = self.evict_expired()
            if evicted:
                logger.debug("Heatmap cache sweep evicted %d expired entries", evicted)

    async def close(self) -> None:
        """Stop the sweep, cancel running computations and drop all state."""
        tasks = []
        if self._sweeper is not None:
            self._sweeper.cancel()
            tasks.append(self._sweeper)
            self._sweeper = None
        with self._lock:
            for flight in self._inflight.values():
                flight.task.cancel()
                tasks.append(flight.task)
            self._entries.clear()
            self._inflight.clear()
            self._running_versions.clear()
            self._invalidated_at.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
