"""
forrent/core/http_client.py
Shared async httpx clients, created on first use and closed once in the app lifespan.
  • supabase_client() → carries the anon key for PostgREST / storage / functions
  • plain_client()    → no credentials (edge-function relay for crawlers)
"""

import httpx

from forrent.core.config import SUPABASE_ANON_KEY

_clients: dict[str, httpx.AsyncClient] = {}

_LIMITS  = httpx.Limits(max_connections=20, max_keepalive_connections=10)
_TIMEOUT = httpx.Timeout(15.0, connect=5.0)


def supabase_headers(api_key: str = SUPABASE_ANON_KEY) -> dict[str, str]:
    return {
        "apikey":        api_key,
        "Authorization": f"Bearer {api_key}",
        "Accept":        "application/json",
    }


def _shared(name: str, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
    client = _clients.get(name)
    if client is None or client.is_closed:
        client = httpx.AsyncClient(
            headers=headers,
            timeout=_TIMEOUT,
            limits=_LIMITS,
            follow_redirects=True,
        )
        _clients[name] = client
    return client


def supabase_client() -> httpx.AsyncClient:
    return _shared("supabase", supabase_headers())


def plain_client() -> httpx.AsyncClient:
    return _shared("plain")


async def close_all() -> None:
    while _clients:
        _, client = _clients.popitem()
        if not client.is_closed:
            await client.aclose()
