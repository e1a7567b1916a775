"""
forrent/core/cache.py
═══════════════════════════════════════════════════════════════════════════
TTL cache with a durable mirror.
  • Every entry carries its own timestamp + ttl (ms); valid iff age < ttl
  • Memory is authoritative; each set is mirrored to durable storage
  • Expired entries leave BOTH layers before a read reports them absent
  • Durable failures are logged, never raised; quota pressure evicts the
    oldest 25 % of mirrored entries
  • get_with_staleness() classifies a hit as fresh or stale for
    stale-while-revalidate consumers
  • Sweep runs as an owned PeriodicTask (start()/stop())
═══════════════════════════════════════════════════════════════════════════
"""

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from forrent.core.config import CACHE_PREFIX, CACHE_SWEEP_INTERVAL_S, DEFAULT_TTL_MS
from forrent.core.scheduler import PeriodicTask
from forrent.core.storage import MemoryStorage, StorageError

log = logging.getLogger("cache")


def now_ms() -> int:
    return int(time.time() * 1000)


class Freshness(str, Enum):
    FRESH   = "fresh"
    STALE   = "stale"
    MISSING = "missing"


@dataclass
class CacheEntry:
    data:      Any
    timestamp: int
    ttl:       int

    def age(self, now: int) -> int:
        return now - self.timestamp

    def is_valid(self, now: int) -> bool:
        return self.age(now) < self.ttl

    def to_json(self) -> str:
        return json.dumps({"data": self.data, "timestamp": self.timestamp, "ttl": self.ttl})

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        parsed = json.loads(raw)
        if not isinstance(parsed, dict) or "data" not in parsed:
            raise ValueError("envelope has no data field")
        return cls(data=parsed["data"], timestamp=int(parsed["timestamp"]), ttl=int(parsed["ttl"]))


@dataclass(frozen=True)
class CacheRead:
    value:     Any
    freshness: Freshness
    age_ms:    Optional[int] = None


class CacheStore:
    def __init__(
        self,
        storage=None,
        *,
        prefix: str = CACHE_PREFIX,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        sweep_interval_s: float = CACHE_SWEEP_INTERVAL_S,
        clock: Callable[[], int] = now_ms,
    ):
        self._storage     = storage if storage is not None else MemoryStorage()
        self._prefix      = prefix
        self._default_ttl = default_ttl_ms
        self._clock       = clock
        self._mem: dict[str, CacheEntry] = {}
        self._lock        = threading.RLock()
        self._sweeper     = PeriodicTask("cache-sweep", sweep_interval_s, self.cleanup_expired)

    # ── durable layer ─────────────────────────────────────────────────────────

    def _storage_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _prefixed_keys(self) -> list[str]:
        try:
            return [k for k in self._storage.keys() if k.startswith(self._prefix)]
        except StorageError as ex:
            log.warning(f"Failed to list durable keys: {ex}")
            return []

    def _remove_durable(self, storage_key: str) -> None:
        try:
            self._storage.remove_item(storage_key)
        except StorageError as ex:
            log.warning(f"Failed to remove durable entry {storage_key}: {ex}")

    def _save_durable(self, key: str, entry: CacheEntry) -> None:
        try:
            raw = entry.to_json()
        except (TypeError, ValueError) as ex:
            log.warning(f"Cache value for {key} is not JSON-serializable, kept in memory only: {ex}")
            self._remove_durable(self._storage_key(key))
            return
        try:
            self._storage.set_item(self._storage_key(key), raw)
        except StorageError as ex:
            log.warning(f"Failed to mirror {key} to durable storage (quota exceeded?): {ex}")
            # the previous mirrored value must not outlive this write
            self._remove_durable(self._storage_key(key))
            self._evict_oldest_durable()

    def _evict_oldest_durable(self, fraction: float = 0.25) -> int:
        """Drop the oldest `fraction` of mirrored entries; corrupt ones go unconditionally."""
        dated: list[tuple[int, str]] = []
        for skey in self._prefixed_keys():
            try:
                raw = self._storage.get_item(skey)
                if raw is None:
                    continue
                dated.append((CacheEntry.from_json(raw).timestamp, skey))
            except (StorageError, ValueError, KeyError, TypeError):
                self._remove_durable(skey)

        dated.sort()
        to_remove = math.ceil(len(dated) * fraction)
        for _, skey in dated[:to_remove]:
            self._remove_durable(skey)
        if to_remove:
            log.info(f"Evicted {to_remove} oldest durable cache entries")
        return to_remove

    def load(self) -> int:
        """Pull still-valid mirrored entries into memory. Returns how many were loaded."""
        now    = self._clock()
        loaded = 0
        for skey in self._prefixed_keys():
            try:
                raw = self._storage.get_item(skey)
                if raw is None:
                    continue
                entry = CacheEntry.from_json(raw)
            except (StorageError, ValueError, KeyError, TypeError) as ex:
                log.error(f"Failed to parse cache item {skey}: {ex}")
                self._remove_durable(skey)
                continue

            if entry.is_valid(now):
                with self._lock:
                    self._mem[skey[len(self._prefix):]] = entry
                loaded += 1
            else:
                self._remove_durable(skey)
        log.info(f"Loaded {loaded} cache entries from durable storage")
        return loaded

    # ── core ──────────────────────────────────────────────────────────────────

    def _valid_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._mem.get(key)
            if entry is None:
                return None
            if not entry.is_valid(self._clock()):
                self.delete(key)
                return None
            return entry

    def set(self, key: str, data: Any, ttl_ms: Optional[int] = None) -> None:
        entry = CacheEntry(
            data=data,
            timestamp=self._clock(),
            ttl=self._default_ttl if ttl_ms is None else ttl_ms,
        )
        with self._lock:
            self._mem[key] = entry
        self._save_durable(key, entry)

    def get(self, key: str) -> Optional[Any]:
        entry = self._valid_entry(key)
        return entry.data if entry else None

    def has(self, key: str) -> bool:
        return self._valid_entry(key) is not None

    def get_with_staleness(self, key: str, fresh_ttl_ms: int) -> CacheRead:
        """
        Stale-while-revalidate read. The entry's own ttl is the hard limit;
        `fresh_ttl_ms` splits the valid window into fresh and stale.
        """
        entry = self._valid_entry(key)
        if entry is None:
            return CacheRead(None, Freshness.MISSING)
        age = entry.age(self._clock())
        freshness = Freshness.FRESH if age < fresh_ttl_ms else Freshness.STALE
        return CacheRead(entry.data, freshness, age)

    def delete(self, key: str) -> None:
        with self._lock:
            self._mem.pop(key, None)
        self._remove_durable(self._storage_key(key))

    def delete_matching(self, predicate: Callable[[str], bool]) -> int:
        doomed = [k for k in self.keys() if predicate(k)]
        for k in doomed:
            self.delete(k)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._mem.clear()
        for skey in self._prefixed_keys():
            self._remove_durable(skey)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._mem.items() if not e.is_valid(now)]
        for k in expired:
            self.delete(k)
        if expired:
            log.debug(f"Sweep removed {len(expired)} expired entries")
        return len(expired)

    # ── diagnostics ───────────────────────────────────────────────────────────

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._mem)

    def stats(self) -> dict:
        keys = self.keys()
        return {"size": len(keys), "keys": keys}

    def summary(self) -> dict:
        """Metadata only, safe to expose in /health."""
        now = self._clock()
        with self._lock:
            return {
                k: {"age_s": round(e.age(now) / 1000, 1), "ttl_s": round(e.ttl / 1000, 1)}
                for k, e in self._mem.items()
            }

    # ── lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()


# ── Key generators ────────────────────────────────────────────────────────────

def _canonical(filters: Optional[dict]) -> str:
    return json.dumps(filters or {}, sort_keys=True, default=str, separators=(",", ":"))


class CacheKeys:
    @staticmethod
    def all_listings() -> str:
        return "listings:all"

    @staticmethod
    def available() -> str:
        return "listings:available"

    @staticmethod
    def hot_deals(limit: int) -> str:
        return f"listings:hotdeals:{limit}"

    @staticmethod
    def by_id(property_id: str) -> str:
        return f"listings:id:{property_id}"

    @staticmethod
    def search(query: str) -> str:
        return f"listings:search:{query}"

    @staticmethod
    def filtered(filters: Optional[dict]) -> str:
        return f"listings:filtered:{_canonical(filters)}"

    @staticmethod
    def user_favorites(user_id: str) -> str:
        return f"user:{user_id}:favorites"

    @staticmethod
    def user_listings(user_id: str) -> str:
        return f"user:{user_id}:listings"
