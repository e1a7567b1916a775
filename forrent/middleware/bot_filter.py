"""
forrent/middleware/bot_filter.py
═══════════════════════════════════════════════════════════════════════════════
Crawler pre-render filter.

  Request on /property/<hex-id>
    ├─ iMessage (facebookexternalhit + Safari/601 + KHTML) → pass through
    ├─ known crawler user agent → GET SSR_FUNCTION_URL?id=<id>, return its HTML
    │                             with Cache-Control: public, max-age=3600
    └─ anything else → pass through

Every other path passes through untouched. If the pre-render call fails at
the transport level the request passes through as well.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
import re
from typing import Callable, Optional

import httpx
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from forrent.core.config import (
    BOT_USER_AGENTS, IMESSAGE_SIGNATURE, SSR_CACHE_CONTROL, SSR_FUNCTION_URL, SUPABASE_ANON_KEY,
)
from forrent.core.http_client import plain_client

log = logging.getLogger("bot_filter")

PROPERTY_PATH = re.compile(r"/property/([a-f0-9-]+)")
_BOTS_LOWER   = [b.lower() for b in BOT_USER_AGENTS]


def match_property_path(path: str) -> Optional[str]:
    m = PROPERTY_PATH.search(path)
    return m.group(1) if m else None


def is_imessage(user_agent: str) -> bool:
    return all(part in user_agent for part in IMESSAGE_SIGNATURE)


def is_bot(user_agent: str) -> bool:
    if not user_agent:
        return False
    ua = user_agent.lower()
    return any(bot in ua for bot in _BOTS_LOWER)


class BotRedirectMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        ssr_url: str = SSR_FUNCTION_URL,
        api_key: str = SUPABASE_ANON_KEY,
        client_factory: Callable[[], httpx.AsyncClient] = plain_client,
    ):
        super().__init__(app)
        self._ssr_url = ssr_url
        self._api_key = api_key
        self._client  = client_factory

    async def dispatch(self, request: Request, call_next):
        property_id = match_property_path(request.url.path)
        if property_id is None:
            return await call_next(request)

        user_agent = request.headers.get("user-agent", "")
        if is_imessage(user_agent):
            log.debug(f"iMessage preview for {property_id} — serving regular page")
            return await call_next(request)
        if not is_bot(user_agent):
            return await call_next(request)

        try:
            ssr = await self._client().get(
                self._ssr_url,
                params={"id": property_id},
                headers={"User-Agent": user_agent, "Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as ex:
            log.error(f"Pre-render fetch failed for {property_id}: {ex}")
            return await call_next(request)

        log.info(f"Served pre-rendered page for {property_id} to {user_agent[:60]}")
        return Response(
            content=ssr.text,
            media_type="text/html",
            headers={"Cache-Control": SSR_CACHE_CONTROL},
        )
