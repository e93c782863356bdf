"""
CacheStore - Async TTL cache with durable persistence and cross-tab sync.

Features:
- Memory cache with least-used eviction (20% of entries at capacity)
- TTL per entry, lazy expiry on read plus a periodic sweep
- Every mutation mirrored to a KeyValueStore record ``cache_<key>``
- External record changes (another tab/process) applied to memory
"""

import asyncio
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from storefront.datastore import KeyValueStore, StorageEvent

STORAGE_PREFIX = "cache_"
EVICTION_RATIO = 0.2


@dataclass
class CacheEntry:
    """A single cache entry with usage metadata."""

    key: str
    value: Any
    created_at: datetime
    ttl: timedelta
    access_count: int = 0
    last_accessed_at: datetime = field(default_factory=datetime.now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.created_at + self.ttl

    def to_record(self) -> str:
        """Durable form. The value is JSON-serialized separately."""
        return json.dumps(
            {
                "value": json.dumps(self.value),
                "timestamp": self.created_at.isoformat(),
                "ttl": self.ttl.total_seconds(),
                "accessCount": self.access_count,
                "lastAccessed": self.last_accessed_at.isoformat(),
            }
        )

    @classmethod
    def from_record(cls, key: str, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            key=key,
            value=json.loads(data["value"]),
            created_at=datetime.fromisoformat(data["timestamp"]),
            ttl=timedelta(seconds=float(data["ttl"])),
            access_count=int(data.get("accessCount", 0)),
            last_accessed_at=datetime.fromisoformat(
                data.get("lastAccessed", data["timestamp"])
            ),
        )


@dataclass
class CacheStats:
    """Cache statistics."""

    total_entries: int = 0
    expired_entries: int = 0
    total_access_count: int = 0
    average_access_count: float = 0.0
    oldest_entry: tuple[str, datetime] | None = None
    newest_entry: tuple[str, datetime] | None = None
    max_size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "expired_entries": self.expired_entries,
            "total_access_count": self.total_access_count,
            "average_access_count": round(self.average_access_count, 2),
            "oldest_entry": (
                {"key": self.oldest_entry[0], "timestamp": self.oldest_entry[1].isoformat()}
                if self.oldest_entry
                else None
            ),
            "newest_entry": (
                {"key": self.newest_entry[0], "timestamp": self.newest_entry[1].isoformat()}
                if self.newest_entry
                else None
            ),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheStore:
    """
    TTL cache keyed by request signature.

    Usage:
        cache = CacheStore(storage=MemoryKeyValueStore(), max_size=100)
        await cache.start()

        key = cache.generate_key("GET", "/products", {"category": "bags"})
        value = await cache.get(key)
        if value is None:
            value = await fetch()
            await cache.set(key, value, ttl=timedelta(seconds=10))
    """

    def __init__(
        self,
        storage: KeyValueStore | None = None,
        max_size: int = 100,
        default_ttl: timedelta = timedelta(minutes=5),
        cleanup_interval: timedelta = timedelta(minutes=1),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry] = {}
        self._storage = storage
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._scheduler: AsyncIOScheduler | None = None
        self._unsubscribe: Callable[[], None] | None = None

    # Lifecycle

    async def start(self, scheduler: AsyncIOScheduler | None = None) -> None:
        """Load durable entries, subscribe to external changes, schedule the sweep."""
        if self._storage is not None:
            await self.load_persistent()
            self._unsubscribe = self._storage.subscribe(self._on_storage_event)

        if scheduler is not None:
            scheduler.add_job(
                self.cleanup_expired,
                trigger="interval",
                seconds=self._cleanup_interval.total_seconds(),
                id="cache_cleanup_job",
                name="Cache expiry sweep",
                replace_existing=True,
            )
            self._scheduler = scheduler
        logger.info(f"Cache store started with {len(self._memory)} entries")

    async def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job("cache_cleanup_job"):
            self._scheduler.remove_job("cache_cleanup_job")
        self._scheduler = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # Keys

    @staticmethod
    def generate_key(
        method: str, endpoint: str, params: dict[str, Any] | None = None
    ) -> str:
        """``METHOD:endpoint:params`` with params serialized in a stable order."""
        serialized = json.dumps(params, sort_keys=True, default=str) if params else ""
        return f"{method.upper()}:{endpoint}:{serialized}"

    # Operations

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._memory[key]
                self._misses += 1
                self._log(f"EXPIRED: {key[:50]}")
                await self._remove_record(key)
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._hits += 1
            self._log(f"HIT: {key[:50]} (accessed {entry.access_count}x)")
            await self._persist(entry)
            return entry.value

    async def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """Insert or overwrite ``key``. Evicts least-used entries at capacity."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            ttl=ttl if ttl is not None else self.default_ttl,
            last_accessed_at=now,
        )

        async with self._lock:
            if key not in self._memory and len(self._memory) >= self.max_size:
                await self._evict_least_used()

            self._memory[key] = entry
            self._log(f"SET: {key[:50]} (TTL: {entry.ttl.total_seconds()}s)")
            await self._persist(entry)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = self._memory.pop(key, None) is not None
            await self._remove_record(key)
            if existed:
                self._log(f"DELETE: {key[:50]}")
            return existed

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete all keys containing ``pattern``. Returns the count removed."""
        async with self._lock:
            keys_to_delete = [k for k in self._memory if pattern in k]
            for key in keys_to_delete:
                del self._memory[key]
                await self._remove_record(key)

            if keys_to_delete:
                logger.debug(
                    f"Invalidated {len(keys_to_delete)} cache entries matching '{pattern}'"
                )
            return len(keys_to_delete)

    async def clear(self) -> int:
        """Remove every entry, in memory and durable. Returns the count removed."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            await self._clear_records()
            logger.debug(f"Cache cleared: {count} entries removed")
            return count

    async def cleanup_expired(self) -> int:
        """Sweep all expired entries. Returns the count removed."""
        async with self._lock:
            now = self._clock()
            expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._memory[key]
                await self._remove_record(key)

            if expired_keys:
                logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")
            return len(expired_keys)

    def get_stats(self) -> CacheStats:
        now = self._clock()
        entries = list(self._memory.values())
        total_access = sum(e.access_count for e in entries)
        oldest = min(entries, key=lambda e: e.created_at, default=None)
        newest = max(entries, key=lambda e: e.created_at, default=None)

        return CacheStats(
            total_entries=len(entries),
            expired_entries=sum(1 for e in entries if e.is_expired(now)),
            total_access_count=total_access,
            average_access_count=total_access / len(entries) if entries else 0.0,
            oldest_entry=(oldest.key, oldest.created_at) if oldest else None,
            newest_entry=(newest.key, newest.created_at) if newest else None,
            max_size=self.max_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
        )

    def optimize(self, hit_rate: float) -> None:
        """Nudge default TTL and capacity from the observed hit rate (0..1)."""
        if hit_rate < 0.5:
            self.default_ttl = min(self.default_ttl * 1.5, timedelta(minutes=30))
            logger.info(f"Increased default cache TTL to {self.default_ttl.total_seconds()}s")
        elif hit_rate > 0.8:
            self.default_ttl = max(self.default_ttl * 0.8, timedelta(minutes=1))
            logger.info(f"Decreased default cache TTL to {self.default_ttl.total_seconds()}s")

        if len(self._memory) > self.max_size * 0.8:
            self.max_size = min(int(self.max_size * 1.5), 500)
            logger.info(f"Increased max cache size to {self.max_size}")

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return key in self._memory

    # Eviction

    async def _evict_least_used(self) -> None:
        """Drop ceil(20%) of entries by ascending (access_count, last_accessed_at)."""
        ranked = sorted(
            self._memory.values(),
            key=lambda e: (e.access_count, e.last_accessed_at),
        )
        remove_count = math.ceil(len(ranked) * EVICTION_RATIO)
        for entry in ranked[:remove_count]:
            del self._memory[entry.key]
            await self._remove_record(entry.key)

        self._evictions += remove_count
        logger.debug(f"Evicted {remove_count} least used cache entries")

    # Persistence

    async def load_persistent(self) -> int:
        """Load live durable entries into memory; purge expired and malformed ones."""
        if self._storage is None:
            return 0

        now = self._clock()
        loaded = 0
        for storage_key in await self._storage.keys(STORAGE_PREFIX):
            key = storage_key[len(STORAGE_PREFIX):]
            raw = await self._storage.get(storage_key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_record(key, raw)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Could not load cache entry {storage_key}: {e}")
                await self._storage.delete(storage_key)
                continue

            if entry.is_expired(now):
                await self._storage.delete(storage_key)
                continue
            self._memory[key] = entry
            loaded += 1

        logger.info(f"Loaded {loaded} persistent cache entries")
        return loaded

    async def _persist(self, entry: CacheEntry) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.set(STORAGE_PREFIX + entry.key, entry.to_record())
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not serialize cache entry {entry.key[:50]}: {e}")
        except Exception as e:
            logger.warning(f"Could not persist cache entry {entry.key[:50]}: {e}")

    async def _remove_record(self, key: str) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.delete(STORAGE_PREFIX + key)
        except Exception as e:
            logger.warning(f"Could not remove persisted cache entry {key[:50]}: {e}")

    async def _clear_records(self) -> None:
        if self._storage is None:
            return
        try:
            keys = await self._storage.keys(STORAGE_PREFIX)
            for storage_key in keys:
                await self._storage.delete(storage_key)
            logger.debug(f"Cleared {len(keys)} persistent cache entries")
        except Exception as e:
            logger.warning(f"Could not clear persistent cache: {e}")

    # Cross-tab sync

    def _on_storage_event(self, event: StorageEvent) -> None:
        """Apply a change made by another tab/process to memory."""
        if not event.key.startswith(STORAGE_PREFIX):
            return
        key = event.key[len(STORAGE_PREFIX):]

        if event.new_value is None:
            self._memory.pop(key, None)
            self._log(f"SYNC DELETE: {key[:50]}")
            return

        try:
            entry = CacheEntry.from_record(key, event.new_value)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not sync cache entry {key[:50]}: {e}")
            return

        if not entry.is_expired(self._clock()):
            self._memory[key] = entry
            self._log(f"SYNC SET: {key[:50]}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")
