"""
forrent/services/feed.py
═══════════════════════════════════════════════════════════════════════════════
Property feed controller: the state behind a listing grid.

Modes:
  hot_deals  fixed newest-first slice, no pagination
  search     free-text, no pagination (empty query → available)
  single     one listing by id (0 or 1 results)
  available  paginated with filters (default)

  start()        initial load (when auto_load)
  load_more()    next page; no-op without more pages or while a load runs
  refresh()      drop this mode's cache namespace, reset cursor, reload
  update(...)    mode/filters/query/id change → reset + reload
  attach(obs)    infinite scroll: near-bottom viewport events → load_more()

Results of fetches started under an older configuration, or after close(),
are discarded. Only foreground failures notify the user; load-more failures
keep the partial list.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from enum import Enum
from typing import Optional

import httpx

from forrent.core.config import FEED_PAGE_SIZE
from forrent.core.errors import ForRentError
from forrent.core.notifications import Notifier
from forrent.core.viewport import Subscription, ViewportObserver
from forrent.services.properties import PropertyService

log = logging.getLogger("feed")

_RELOAD_FIELDS = ("mode", "filters", "search_query", "property_id")


class FeedMode(str, Enum):
    HOT_DEALS = "hot_deals"
    AVAILABLE = "available"
    SEARCH    = "search"
    SINGLE    = "single"


class PropertyFeed:
    def __init__(
        self,
        service: PropertyService,
        notifier: Optional[Notifier] = None,
        *,
        mode: FeedMode = FeedMode.AVAILABLE,
        limit: int = FEED_PAGE_SIZE,
        offset: int = 0,
        filters: Optional[dict] = None,
        search_query: str = "",
        property_id: str = "",
        auto_load: bool = True,
    ):
        self._service  = service
        self._notifier = notifier

        self.mode           = FeedMode(mode)
        self.limit          = limit
        self.initial_offset = offset
        self.filters        = dict(filters or {})
        self.search_query   = search_query
        self.property_id    = property_id
        self.auto_load      = auto_load

        self.properties: list[dict] = []
        self.loading         = auto_load
        self.is_loading_more = False
        self.error: Optional[Exception] = None
        self.total           = 0
        self.has_more        = False
        self.offset          = offset

        self._generation = 0
        self._closed     = False
        self._observer:     Optional[ViewportObserver] = None
        self._subscription: Optional[Subscription]     = None

    # ── fetching ──────────────────────────────────────────────────────────────

    async def _query(self, offset: int) -> Optional[dict]:
        if self.mode is FeedMode.HOT_DEALS:
            deals = await self._service.get_hot_deals(self.limit)
            return {"data": deals, "total": len(deals), "has_more": False}

        if self.mode is FeedMode.SEARCH and self.search_query:
            found = await self._service.search_properties(self.search_query, self.limit)
            return {"data": found, "total": len(found), "has_more": False}

        if self.mode is FeedMode.SINGLE:
            if not self.property_id:
                return None
            prop = await self._service.get_property_by_id(self.property_id)
            return {"data": [prop] if prop else [], "total": 1 if prop else 0, "has_more": False}

        return await self._service.get_available_properties(
            limit=self.limit, offset=offset, filters=self.filters,
        )

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    async def fetch_properties(self, is_load_more: bool = False) -> None:
        generation = self._generation
        if is_load_more:
            self.is_loading_more = True
        else:
            self.loading = True
        self.error = None
        self._sync_subscription()

        offset = self.offset if is_load_more else self.initial_offset
        try:
            result = await self._query(offset)
        except (ForRentError, httpx.HTTPError) as ex:
            if not self._is_current(generation):
                return
            log.error(f"Error fetching properties: {ex}")
            self.error = ex
            if not is_load_more and self.auto_load and self._notifier is not None:
                self._notifier.error("Failed to load properties", "Please try refreshing the page")
            return
        finally:
            if self._is_current(generation):
                self.loading         = False
                self.is_loading_more = False
                self._sync_subscription()

        if not self._is_current(generation):
            log.debug("Discarding properties fetched for an outdated configuration")
            return
        if result is None:
            return

        if is_load_more:
            seen = {p.get("id") for p in self.properties}
            self.properties.extend(p for p in result["data"] if p.get("id") not in seen)
            self.offset = offset + self.limit
        else:
            self.properties = list(result["data"])
            self.offset     = self.initial_offset + self.limit
        self.total    = result["total"]
        self.has_more = result["has_more"]
        self._sync_subscription()

    async def start(self) -> None:
        if self.auto_load:
            await self.fetch_properties(False)

    async def load_more(self) -> None:
        if not self.has_more or self.is_loading_more or self._closed:
            return
        await self.fetch_properties(True)

    def _reset(self) -> None:
        self._generation     += 1
        self.offset           = self.initial_offset
        self.loading          = False
        self.is_loading_more  = False

    async def refresh(self) -> None:
        if self.mode is FeedMode.HOT_DEALS:
            self._service.invalidate_cache("hotdeals")
        elif self.mode is FeedMode.SEARCH and self.search_query:
            self._service.invalidate_cache(f"search:{self.search_query}")
        else:
            self._service.invalidate_cache("available")

        self._reset()
        await self.fetch_properties(False)

    async def update(self, **changes) -> bool:
        """Apply configuration changes; reload when any of them differs. Returns True if reloaded."""
        unknown = set(changes) - set(_RELOAD_FIELDS)
        if unknown:
            raise TypeError(f"unsupported feed option(s): {', '.join(sorted(unknown))}")
        if "mode" in changes:
            changes["mode"] = FeedMode(changes["mode"])
        if "filters" in changes:
            changes["filters"] = dict(changes["filters"] or {})

        changed = {k: v for k, v in changes.items() if getattr(self, k) != v}
        if not changed:
            return False
        for k, v in changed.items():
            setattr(self, k, v)

        self._reset()
        self.properties = []
        self.total      = 0
        self.has_more   = False
        self._sync_subscription()
        if self.auto_load:
            await self.fetch_properties(False)
        return True

    # ── infinite scroll ───────────────────────────────────────────────────────

    def attach(self, observer: ViewportObserver) -> None:
        self._observer = observer
        self._sync_subscription()

    def _sync_subscription(self) -> None:
        wanted = (
            self._observer is not None
            and not self._closed
            and self.has_more
            and not self.is_loading_more
            and len(self.properties) > 0
        )
        if wanted and self._subscription is None:
            self._subscription = self._observer.subscribe(self.load_more)
        elif not wanted and self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    @property
    def scroll_subscribed(self) -> bool:
        return self._subscription is not None

    # ── teardown ──────────────────────────────────────────────────────────────

    def close(self) -> None:
        self._closed = True
        self._generation += 1
        self._sync_subscription()
        self._observer = None

    async def __aenter__(self) -> "PropertyFeed":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

    def state(self) -> dict:
        return {
            "properties":      self.properties,
            "loading":         self.loading,
            "is_loading_more": self.is_loading_more,
            "error":           str(self.error) if self.error else None,
            "total":           self.total,
            "has_more":        self.has_more,
            "offset":          self.offset,
        }
