"""
conftest.py — test environment and shared fakes.

Sets the env variables config.py reads before any project module is imported,
and provides a controllable clock plus a PostgREST client wired to an
httpx.MockTransport.
"""

import os

import httpx
import pytest

_DUMMY_VARS = {
    "SUPABASE_URL":      "http://supabase.test",
    "SUPABASE_ANON_KEY": "test-anon-key",
    "SSR_FUNCTION_URL":  "http://supabase.test/functions/v1/property-ssr",
    "CACHE_FILE":        os.path.join(os.path.dirname(__file__), ".cache", "test-cache.json"),
}

for _key, _val in _DUMMY_VARS.items():
    os.environ.setdefault(_key, _val)

from forrent.backend.postgrest import PostgrestClient  # noqa: E402
from forrent.core.cache import CacheStore  # noqa: E402
from forrent.core.storage import MemoryStorage  # noqa: E402

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_backend(handler) -> PostgrestClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestClient(
        "http://supabase.test/rest/v1",
        "http://supabase.test/storage/v1",
        client_factory=lambda: client,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def cache(storage, clock) -> CacheStore:
    return CacheStore(storage, clock=clock)
