"""
forrent/services/properties.py
═══════════════════════════════════════════════════════════════════════════════
Listing queries over the Supabase `listings` table, cache-first.

  get_hot_deals()            newest non-sold listings   cache: long, bg refresh on hit
  get_available_properties() filtered + paginated       cache: long if filtered, else medium
  get_property_by_id()       RPC first, table fallback  cache: long
  search_properties()        ilike across text columns  cache: short

Identical concurrent hot-deal requests share one in-flight fetch.
invalidate_cache() drops cache namespaces after writes or on user refresh.
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

from forrent.backend.postgrest import PostgrestClient
from forrent.core.cache import CacheKeys, CacheStore
from forrent.core.config import (
    CACHE_TTL, FEED_PAGE_SIZE, HOT_DEALS_LIMIT, PLACEHOLDER_IMAGE, PROPERTY_IMAGES_BUCKET,
)
from forrent.core.errors import BackendError

log = logging.getLogger("properties")

HOT_DEALS_COLUMNS = """
    id, title, price, location, address, description,
    bedrooms, bathrooms, sqft, images, amenities,
    featured, type, status, created_at, updated_at, security_deposit
"""
CARD_COLUMNS = """
    id, title, price, location, address,
    bedrooms, bathrooms, sqft, images,
    featured, type, status
"""
DETAIL_COLUMNS = """
    id, title, price, location, address, description,
    bedrooms, bathrooms, sqft, amenities, featured,
    type, status, user_id, created_at, updated_at,
    youtube_url, video_id, is_short,
    date_available, laundry_type, parking_type,
    heating_type, rental_type, cat_friendly, dog_friendly, security_deposit
"""

# invalidation namespace → cache-key prefixes it owns
_NAMESPACES: dict[str, tuple[str, ...]] = {
    "hotdeals":  ("listings:hotdeals:",),
    "available": ("listings:available", "listings:filtered:"),
}

_PASSTHROUGH_FIELDS = (
    "created_at", "updated_at", "user_id", "youtube_url", "video_id", "is_short",
    "date_available", "laundry_type", "parking_type", "heating_type", "rental_type",
    "cat_friendly", "dog_friendly", "security_deposit",
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _clean_images(images: Optional[list]) -> list[str]:
    valid = []
    for img in images or []:
        if not isinstance(img, str):
            continue
        img = img.strip()
        if img and img != PLACEHOLDER_IMAGE and "undefined" not in img:
            valid.append(img)
    return valid


def build_listing(row: dict) -> dict:
    """Normalise a raw `listings` row into the card/detail shape the UI reads."""
    images = _clean_images(row.get("images"))
    listing = {
        "id":          row.get("id"),
        "title":       row.get("title"),
        "price":       row.get("price"),
        "location":    row.get("location"),
        "address":     row.get("address") or row.get("location"),
        "description": row.get("description"),
        "bedrooms":    row.get("bedrooms"),
        "beds":        row.get("bedrooms"),
        "bathrooms":   row.get("bathrooms"),
        "baths":       row.get("bathrooms"),
        "sqft":        row.get("sqft"),
        "images":      images or [PLACEHOLDER_IMAGE],
        "image":       images[0] if images else PLACEHOLDER_IMAGE,
        "amenities":   row.get("amenities") or [],
        "featured":    bool(row.get("featured")),
        "type":        row.get("type"),
        "status":      row.get("status"),
    }
    for field in _PASSTHROUGH_FIELDS:
        if field in row:
            listing[field] = row[field]
    return listing


def _search_term(query: str) -> str:
    # commas and parens would break the PostgREST or=() grammar
    return " ".join(query.replace(",", " ").replace("(", " ").replace(")", " ").split())


def storage_path(image: str) -> Optional[str]:
    """Object path inside the property_images bucket, or None for placeholders."""
    path = image
    marker = f"{PROPERTY_IMAGES_BUCKET}/"
    if marker in image:
        path = image.split(marker)[-1]
    elif image.startswith("http"):
        parts = urlparse(image).path.split(f"/{marker}")
        if len(parts) > 1:
            path = parts[1]
    if not path or path.startswith("/placeholder"):
        return None
    return path


# ── Service ───────────────────────────────────────────────────────────────────

class PropertyService:
    def __init__(self, backend: PostgrestClient, cache: CacheStore, background_refresh: bool = True):
        self._db      = backend
        self._cache   = cache
        self._bg_on   = background_refresh
        self._inflight: dict[str, asyncio.Future] = {}
        self._background: set[asyncio.Task] = set()

    async def _shared(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Join an identical in-flight fetch instead of starting a new one."""
        fut = self._inflight.get(key)
        if fut is None:
            fut = asyncio.ensure_future(factory())
            self._inflight[key] = fut
            fut.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(fut)

    # ── hot deals ─────────────────────────────────────────────────────────────

    async def _fetch_hot_deals(self, limit: int) -> list[dict]:
        log.debug(f"Fetching {limit} hot deals from database")
        result = await (
            self._db.table("listings")
            .select(HOT_DEALS_COLUMNS)
            .neq("status", "sold")
            .order("created_at", ascending=False)
            .limit(limit)
            .execute()
        )
        return [build_listing(r) for r in result.data or []]

    async def _refresh_hot_deals(self, limit: int) -> None:
        try:
            fresh = await self._fetch_hot_deals(limit)
            self._cache.set(CacheKeys.hot_deals(limit), fresh, CACHE_TTL["medium"])
            log.info("Background refresh completed for hot deals")
        except Exception as ex:
            log.error(f"Background hot-deals refresh failed: {ex}")

    def _refresh_hot_deals_in_background(self, limit: int) -> None:
        if not self._bg_on:
            return
        key = f"bg:{CacheKeys.hot_deals(limit)}"
        if key in self._inflight:
            return
        task = asyncio.get_running_loop().create_task(self._refresh_hot_deals(limit))
        self._inflight[key] = task
        self._background.add(task)

        def _done(t: asyncio.Task, k: str = key) -> None:
            self._inflight.pop(k, None)
            self._background.discard(t)

        task.add_done_callback(_done)

    async def get_hot_deals(self, limit: int = HOT_DEALS_LIMIT) -> list[dict]:
        key = CacheKeys.hot_deals(limit)
        cached = self._cache.get(key)
        if cached is not None:
            self._refresh_hot_deals_in_background(limit)
            return cached

        async def _load() -> list[dict]:
            deals = await self._fetch_hot_deals(limit)
            self._cache.set(key, deals, CACHE_TTL["long"])
            return deals

        return await self._shared(key, _load)

    # ── paginated listing ─────────────────────────────────────────────────────

    async def get_available_properties(
        self,
        limit: int = FEED_PAGE_SIZE,
        offset: int = 0,
        order_by: str = "created_at",
        ascending: bool = False,
        filters: Optional[dict] = None,
        use_cache: bool = True,
        cache_ttl: int = CACHE_TTL["medium"],
    ) -> dict:
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        key = CacheKeys.filtered({
            **filters, "limit": limit, "offset": offset, "orderBy": order_by, "ascending": ascending,
        })
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        q = self._db.table("listings").select(CARD_COLUMNS, count="exact")
        if "status" in filters:
            q = q.eq("status", filters["status"])
        else:
            q = q.neq("status", "sold")
        if "min_price" in filters:
            q = q.gte("price", filters["min_price"])
        if "max_price" in filters:
            q = q.lte("price", filters["max_price"])
        if filters.get("bedrooms", 0) > 0:
            q = q.eq("bedrooms", filters["bedrooms"])
        if filters.get("bathrooms", 0) > 0:
            q = q.eq("bathrooms", filters["bathrooms"])
        if filters.get("location"):
            loc = _search_term(str(filters["location"]))
            q = q.or_(f"location.ilike.*{loc}*,address.ilike.*{loc}*")
        if "featured" in filters:
            q = q.eq("featured", filters["featured"])

        result = await q.order(order_by, ascending=ascending).range(offset, offset + limit - 1).execute()
        total  = result.count or 0
        page = {
            "data":     [build_listing(r) for r in result.data or []],
            "total":    total,
            "has_more": total > offset + limit,
        }

        if use_cache:
            ttl = CACHE_TTL["long"] if filters else cache_ttl
            self._cache.set(key, page, ttl)
        return page

    # ── single listing ────────────────────────────────────────────────────────

    async def get_property_by_id(self, property_id: str) -> Optional[dict]:
        key = CacheKeys.by_id(property_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        row: Optional[dict] = None
        try:
            row = await self._db.rpc(
                "get_property_with_first_image", {"property_id": property_id}, single=True,
            )
        except BackendError:
            log.info("RPC not available, using fallback query")
            try:
                result = await (
                    self._db.table("listings")
                    .select(DETAIL_COLUMNS + ", images")
                    .eq("id", property_id)
                    .single()
                    .execute()
                )
                row = result.data
            except BackendError as ex:
                log.error(f"Error fetching property {property_id}: {ex}")
                return None

        if not row:
            return None

        if row.get("first_image"):
            row = {**row, "images": [row["first_image"]]}
        listing = build_listing(row)
        self._cache.set(key, listing, CACHE_TTL["long"])
        return listing

    # ── search ────────────────────────────────────────────────────────────────

    async def search_properties(self, query: str, limit: int = FEED_PAGE_SIZE) -> list[dict]:
        key = CacheKeys.search(query)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        term = _search_term(query)
        result = await (
            self._db.table("listings")
            .select(HOT_DEALS_COLUMNS)
            .neq("status", "sold")
            .or_(",".join(f"{col}.ilike.*{term}*" for col in ("title", "location", "address", "description")))
            .order("created_at", ascending=False)
            .limit(limit)
            .execute()
        )
        results = [build_listing(r) for r in result.data or []]
        self._cache.set(key, results, CACHE_TTL["short"])
        return results

    # ── invalidation ──────────────────────────────────────────────────────────

    def invalidate_cache(self, kind: Optional[str] = None, property_id: Optional[str] = None) -> int:
        if kind == "listings":
            n = self._cache.delete_matching(lambda k: "listings" in k or "properties" in k)
            log.info(f"Invalidated all listing caches ({n} keys)")
            return n

        if property_id:
            self._cache.delete(CacheKeys.by_id(property_id))
            n = self._cache.delete_matching(lambda k: "search" in k or "filtered" in k)
            log.info(f"Invalidated cache for property {property_id}")
            return n + 1

        if kind and kind.startswith("search:"):
            target = CacheKeys.search(kind[len("search:"):])
            return self._cache.delete_matching(lambda k: k == target)

        if kind in _NAMESPACES:
            prefixes = _NAMESPACES[kind]
            return self._cache.delete_matching(lambda k: k.startswith(prefixes))

        n = len(self._cache.keys())
        self._cache.clear()
        log.info("Cleared entire cache")
        return n

    async def preload_critical_data(self) -> None:
        log.info("Preloading critical data...")
        await asyncio.gather(
            self.get_hot_deals(HOT_DEALS_LIMIT),
            self.get_available_properties(limit=FEED_PAGE_SIZE),
        )
        log.info("Critical data preloaded")

    # ── deletion ──────────────────────────────────────────────────────────────

    async def _delete_listing_images(self, property_id: str) -> None:
        try:
            result = await (
                self._db.table("listings").select("images, user_id").eq("id", property_id).single().execute()
            )
        except BackendError as ex:
            log.error(f"Error fetching listing {property_id} for image deletion: {ex}")
            return

        paths = [p for p in (storage_path(i) for i in (result.data or {}).get("images") or []) if p]
        if not paths:
            log.info(f"No images to delete for listing {property_id}")
            return

        async def _remove(path: str) -> None:
            try:
                await self._db.remove_objects(PROPERTY_IMAGES_BUCKET, [path])
            except BackendError as ex:
                log.error(f"Error deleting image {path}: {ex}")

        await asyncio.gather(*(_remove(p) for p in paths))
        log.info(f"Completed image deletion for listing {property_id}")

    async def delete_listing(self, property_id: str) -> dict:
        await self._delete_listing_images(property_id)
        try:
            await self._db.table("listings").eq("id", property_id).delete()
        except BackendError as ex:
            log.error(f"Error deleting listing {property_id}: {ex}")
            return {"success": False, "error": ex.message or "Failed to delete listing"}

        self._cache.delete(CacheKeys.by_id(property_id))
        self.invalidate_cache("listings")
        log.info(f"Deleted listing {property_id}")
        return {"success": True}

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
