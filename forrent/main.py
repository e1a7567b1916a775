"""
forrent/main.py  — 14ForRent Listings API
Startup: loads the durable cache mirror, starts the cache sweep, warms the
admin stats snapshot (stale-while-revalidate) and preloads the hot deals and
first feed page in the background. Shutdown stops every owned
task and closes the shared HTTP clients.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from forrent.backend.postgrest import PostgrestClient
from forrent.core.cache import CacheStore
from forrent.core.config import CACHE_FILE, CACHE_QUOTA_BYTES
from forrent.core.errors import ForRentError
from forrent.core.http_client import close_all
from forrent.core.notifications import Notifier
from forrent.core.storage import FileStorage
from forrent.middleware.bot_filter import BotRedirectMiddleware
from forrent.routers import admin, properties
from forrent.services.properties import PropertyService
from forrent.services.stats import StatsAggregator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("main")

VERSION = "1.0.0"


async def _warm_listings(service: PropertyService) -> None:
    try:
        await service.preload_critical_data()
    except (ForRentError, httpx.HTTPError) as ex:
        log.error(f"Listing preload failed: {ex}")


def create_app(
    cache: Optional[CacheStore] = None,
    backend: Optional[PostgrestClient] = None,
    warm_stats: bool = True,
    warm_listings: bool = True,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("🚀 14ForRent Listings API starting...")
        store    = cache if cache is not None else CacheStore(FileStorage(CACHE_FILE, quota_bytes=CACHE_QUOTA_BYTES))
        db       = backend if backend is not None else PostgrestClient()
        notifier = Notifier()

        store.load()
        store.start()

        app.state.cache      = store
        app.state.notifier   = notifier
        app.state.properties = PropertyService(db, store)
        app.state.stats      = StatsAggregator(db, store, notifier)
        if warm_stats:
            app.state.stats.load()
        app.state.preload = (
            asyncio.create_task(_warm_listings(app.state.properties)) if warm_listings else None
        )

        yield

        log.info("🛑 Shutting down...")
        if app.state.preload is not None:
            app.state.preload.cancel()
            await asyncio.gather(app.state.preload, return_exceptions=True)
        await app.state.stats.close()
        await app.state.properties.close()
        await store.stop()
        await close_all()

    app = FastAPI(
        title="14ForRent Listings API",
        description=(
            "Cache-first rental listing backend: paginated search, hot deals, "
            "admin dashboard counters and crawler pre-render routing."
        ),
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(BotRedirectMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    # ── Routers ──────────────────────────────────────────────────────────────
    app.include_router(properties.router)
    app.include_router(admin.router)

    @app.get("/", tags=["meta"])
    async def root():
        return {
            "status":  "online",
            "version": VERSION,
            "endpoints": {
                "properties":    "/api/properties?limit=&offset=&min_price=&max_price=&bedrooms=&location=",
                "hot_deals":     "/api/properties/hot-deals",
                "search":        "/api/properties/search?q={query}",
                "property":      "/api/properties/{id}",
                "invalidate":    "POST /api/properties/cache/invalidate?kind=",
                "admin_stats":   "/api/admin/stats",
                "stats_refresh": "POST /api/admin/stats/refresh?background=",
                "health":        "/health",
                "docs":          "/docs",
            },
        }

    @app.get("/health", tags=["meta"])
    async def health():
        """Lightweight health check with cache metadata."""
        summary = app.state.cache.summary()
        stats   = app.state.stats
        return {
            "status":     "healthy",
            "cache_keys": summary,
            "cache_size": len(summary),
            "stats": {
                "loading":       stats.loading,
                "is_refreshing": stats.is_refreshing,
                "error":         stats.error,
            },
        }

    return app


app = create_app()
