"""
forrent/services/stats.py
═══════════════════════════════════════════════════════════════════════════════
Admin dashboard counters: one shared snapshot, stale-while-revalidate.

  load()          cached snapshot FRESH → use it
                                  STALE → use it + background refresh
                                  MISSING → foreground refresh
  refresh_stats() five exact counts fanned out concurrently (all-settled);
                  a failed counter keeps its previous value; one refresh at
                  a time; callers during a refresh join the in-flight task
  update_stat()   optimistic local patch, persisted immediately

Foreground refreshes drive `loading` and surface errors; background ones
drive `is_refreshing` and only log. Results of a cancelled refresh are
never applied.
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, fields
from typing import Optional

from forrent.backend.postgrest import PostgrestClient
from forrent.core.cache import CacheStore, Freshness, now_ms
from forrent.core.cancel import CancelToken
from forrent.core.config import STATS_CACHE_KEY, STATS_FRESH_TTL_MS, STATS_STALE_TTL_MS
from forrent.core.errors import RequestCancelled
from forrent.core.notifications import Notifier

log = logging.getLogger("admin_stats")

REFRESH_ERROR = "Failed to refresh statistics"


@dataclass
class AdminStats:
    total_listings:   int = 0
    total_showings:   int = 0
    pending_showings: int = 0
    total_users:      int = 0
    active_users:     int = 0
    last_updated:     int = 0

    @classmethod
    def from_dict(cls, raw: dict) -> "AdminStats":
        known = {f.name for f in fields(cls)}
        return cls(**{k: int(v) for k, v in raw.items() if k in known and v is not None})


COUNTERS = ("total_listings", "total_showings", "pending_showings", "total_users", "active_users")


class StatsAggregator:
    def __init__(
        self,
        backend: PostgrestClient,
        cache: CacheStore,
        notifier: Optional[Notifier] = None,
        *,
        fresh_ttl_ms: int = STATS_FRESH_TTL_MS,
        stale_ttl_ms: int = STATS_STALE_TTL_MS,
        clock=now_ms,
    ):
        self._db       = backend
        self._cache    = cache
        self._notifier = notifier
        self._fresh    = fresh_ttl_ms
        self._stale    = stale_ttl_ms
        self._clock    = clock

        self.stats         = AdminStats(last_updated=clock())
        self.loading       = False
        self.is_refreshing = False
        self.error: Optional[str] = None

        self._inflight: Optional[asyncio.Task] = None
        self._token:    Optional[CancelToken]  = None

    # ── counters ──────────────────────────────────────────────────────────────

    def _count_queries(self, token: CancelToken):
        """One coroutine per counter, in COUNTERS order."""
        return [
            self._db.table("listings").count(token),
            self._db.table("scheduled_showings").count(token),
            self._db.table("scheduled_showings").eq("status", "pending").count(token),
            self._db.table("profiles").count(token),
            self._db.table("profiles").eq("is_active", True).count(token),
        ]

    def _persist(self) -> None:
        self._cache.set(STATS_CACHE_KEY, asdict(self.stats), self._stale)

    # ── lifecycle ─────────────────────────────────────────────────────────────

    def load(self) -> Freshness:
        """Adopt the cached snapshot and decide whether/how to refresh."""
        read = self._cache.get_with_staleness(STATS_CACHE_KEY, self._fresh)
        if read.freshness is not Freshness.MISSING:
            try:
                self.stats = AdminStats.from_dict(read.value)
            except (TypeError, ValueError, AttributeError) as ex:
                log.error(f"Error loading cached admin data: {ex}")
                self._cache.delete(STATS_CACHE_KEY)
                self.refresh_stats()
                return Freshness.MISSING

        if read.freshness is Freshness.FRESH:
            log.info("Using fresh cached admin data")
        elif read.freshness is Freshness.STALE:
            log.info("Using stale cached admin data, refreshing in background")
            self.refresh_stats(background=True)
        else:
            self.refresh_stats()
        return read.freshness

    def refresh_stats(self, background: bool = False) -> asyncio.Task:
        """Start (or join) a refresh. Await the returned task for completion."""
        if self._inflight is not None and not self._inflight.done():
            log.info("Refresh already in progress, waiting for completion")
            return self._inflight

        if self._token is not None:
            self._token.cancel("superseded")
        token = CancelToken()
        self._token = token

        if background:
            self.is_refreshing = True
        else:
            self.loading = True
            self.error   = None

        task = asyncio.get_running_loop().create_task(self._refresh(token, background))
        self._inflight = task
        return task

    async def _refresh(self, token: CancelToken, background: bool) -> None:
        try:
            results = await asyncio.gather(*self._count_queries(token), return_exceptions=True)
            if token.cancelled:
                log.info("Stats refresh was cancelled, discarding results")
                return

            failures = [r for r in results if isinstance(r, BaseException)]
            for name, r in zip(COUNTERS, results):
                if isinstance(r, BaseException) and not isinstance(r, RequestCancelled):
                    log.warning(f"Counter {name} failed, keeping previous value: {r}")

            if len(failures) == len(results):
                log.error("Error refreshing admin stats: every counter failed")
                if not background:
                    self.error = REFRESH_ERROR
                    if self._notifier is not None:
                        self._notifier.error(REFRESH_ERROR, "Please try again in a moment")
                return

            prev = self.stats
            merged = {
                name: (prev_val if isinstance(r, BaseException) else (r or 0))
                for name, r, prev_val in zip(COUNTERS, results, (getattr(prev, n) for n in COUNTERS))
            }
            self.stats = AdminStats(**merged, last_updated=self._clock())
            self._persist()
            log.info(f"Stats refreshed {asdict(self.stats)}")
        finally:
            if background:
                self.is_refreshing = False
            else:
                self.loading = False
            if self._token is token:
                self._token = None
            if self._inflight is asyncio.current_task():
                self._inflight = None

    def update_stat(self, key: str, value: int) -> AdminStats:
        if key not in COUNTERS:
            raise KeyError(key)
        data = asdict(self.stats)
        data[key] = int(value)
        data["last_updated"] = self._clock()
        self.stats = AdminStats(**data)
        self._persist()
        return self.stats

    async def close(self) -> None:
        """Abort any refresh in flight; its results are discarded."""
        if self._token is not None:
            self._token.cancel("closed")
        task = self._inflight
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def snapshot(self) -> dict:
        return {
            "stats":         asdict(self.stats),
            "loading":       self.loading,
            "is_refreshing": self.is_refreshing,
            "error":         self.error,
        }
