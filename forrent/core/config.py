"""
forrent/core/config.py  ── 14ForRent Listings API
═══════════════════════════════════════════════════════════════════════════════
All runtime settings come from environment variables with safe defaults.

  Supabase (PostgREST + storage + edge functions)
      SUPABASE_URL / SUPABASE_ANON_KEY → listing queries, admin counts
      SSR_FUNCTION_URL                 → pre-rendered property pages for bots

  Cache
      durable mirror lives in CACHE_FILE, keys namespaced by CACHE_PREFIX

  Stats
      fresh 10 min / stale-but-usable 15 min (stale-while-revalidate)
═══════════════════════════════════════════════════════════════════════════════
"""

import os

# ── Supabase ──────────────────────────────────────────────────────────────────
# SECURITY: the anon key must come from the environment, never from source.
SUPABASE_URL      = os.environ.get("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
if not SUPABASE_ANON_KEY:
    import logging
    logging.getLogger("config").warning(
        "SUPABASE_ANON_KEY env var not set — backend requests will be rejected"
    )

REST_BASE    = f"{SUPABASE_URL}/rest/v1"
STORAGE_BASE = f"{SUPABASE_URL}/storage/v1"
SSR_FUNCTION_URL = os.environ.get(
    "SSR_FUNCTION_URL", f"{SUPABASE_URL}/functions/v1/property-ssr"
)

PROPERTY_IMAGES_BUCKET = "property_images"
PLACEHOLDER_IMAGE      = "/placeholder.svg"

# ── Cache ─────────────────────────────────────────────────────────────────────
CACHE_PREFIX           = os.environ.get("CACHE_PREFIX", "14forrent_cache_")
CACHE_FILE             = os.environ.get("CACHE_FILE", ".cache/forrent-cache.json")
CACHE_QUOTA_BYTES      = int(os.environ.get("CACHE_QUOTA_BYTES", str(5 * 1024 * 1024)))
CACHE_SWEEP_INTERVAL_S = float(os.environ.get("CACHE_SWEEP_INTERVAL_S", "60"))

# TTL presets in milliseconds
CACHE_TTL: dict[str, int] = {
    "instant": 0,
    "short":   30 * 1000,
    "medium":  5 * 60 * 1000,
    "long":    30 * 60 * 1000,
    "hour":    60 * 60 * 1000,
    "day":     24 * 60 * 60 * 1000,
}
DEFAULT_TTL_MS = CACHE_TTL["medium"]

# ── Admin stats ───────────────────────────────────────────────────────────────
STATS_CACHE_KEY    = "admin_shared_data"
STATS_FRESH_TTL_MS = 10 * 60 * 1000
STATS_STALE_TTL_MS = 15 * 60 * 1000

# ── Property feed ─────────────────────────────────────────────────────────────
FEED_PAGE_SIZE       = 20
HOT_DEALS_LIMIT      = 8
PREFETCH_DISTANCE_PX = 1000
SCROLL_DEBOUNCE_S    = 0.1

# ── Bot filter ────────────────────────────────────────────────────────────────
# Applebot is left out so iMessage previews read the regular meta tags.
BOT_USER_AGENTS: list[str] = [
    "facebookexternalhit",
    "facebookcatalog",
    "Facebot",
    "WhatsApp",
    "LinkedInBot",
    "Twitterbot",
    "Slackbot",
    "Discordbot",
    "TelegramBot",
    "Googlebot",
    "bingbot",
    "Slurp",
    "DuckDuckBot",
    "baiduspider",
    "yandex",
    "vkShare",
    "W3C_Validator",
    "redditbot",
    "Pinterestbot",
    "Embedly",
    "quora link preview",
    "outbrain",
    "pinterest",
    "Flipboard",
    "tumblr",
    "bitlybot",
]
IMESSAGE_SIGNATURE = ("facebookexternalhit", "Safari/601", "KHTML")
SSR_CACHE_CONTROL  = "public, max-age=3600"
