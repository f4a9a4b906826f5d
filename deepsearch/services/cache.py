"""Two-tier cache: a bounded in-process LRU in front of a persistent store.

The fast tier holds at most ``max_entries`` items for ``memory_ttl_seconds``; the
slow tier keeps rows for a per-type TTL. A slow hit is promoted into the fast
tier. Any slow-tier failure or timeout degrades to fast-tier-only without raising.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Literal, Protocol

from deepsearch.config import settings
from deepsearch.services.background import BackgroundTasks
from deepsearch.services.logger import log_cache_event, logger


class CacheType(str, Enum):
    SEARCH = "search"
    PLAN = "plan"
    WEB_SUMMARY = "summary"
    RESEARCH_SYNTHESIS = "research-synthesis"
    BRAINSTORM_SYNTHESIS = "brainstorm-synthesis"
    EXTRACTION = "extraction"
    GAP_ANALYSIS = "gap-analysis"
    REFINE = "refine"
    RELATED = "related"


def default_ttl_hours() -> dict[CacheType, int]:
    return {
        CacheType.SEARCH: settings.cache_ttl_search_hours,
        CacheType.PLAN: settings.cache_ttl_plan_hours,
        CacheType.WEB_SUMMARY: settings.cache_ttl_web_summary_hours,
        CacheType.RESEARCH_SYNTHESIS: settings.cache_ttl_research_synthesis_hours,
        CacheType.BRAINSTORM_SYNTHESIS: settings.cache_ttl_brainstorm_synthesis_hours,
        CacheType.EXTRACTION: settings.cache_ttl_extraction_hours,
        CacheType.GAP_ANALYSIS: settings.cache_ttl_gap_analysis_hours,
        CacheType.REFINE: settings.cache_ttl_refine_hours,
        CacheType.RELATED: settings.cache_ttl_related_hours,
    }


# --- Keys ---


def normalize_query(query: str) -> str:
    return query.strip().lower()


def hash_text(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def hash_urls(urls: Iterable[str]) -> str:
    return hash_text("\n".join(sorted(set(urls))))


def cache_key(cache_type: CacheType, query: str, *salt: Any) -> str:
    """``type:hash(normalized query):salt...``. Pure function of its inputs."""
    parts = [cache_type.value, hash_text(normalize_query(query))]
    parts.extend("" if part is None else str(part) for part in salt)
    return ":".join(parts)


def search_key(query: str, depth: str = "basic", max_results: int = 10) -> str:
    return cache_key(CacheType.SEARCH, query, depth or "basic", max_results or 10)


def plan_key(query: str, provider: str | None, mode: str = "research") -> str:
    return cache_key(CacheType.PLAN, query, provider or "default", mode)


def synthesis_key(
    cache_type: CacheType,
    query: str,
    urls: Iterable[str],
    provider: str | None,
    *,
    deep: bool = False,
) -> str:
    return cache_key(
        cache_type,
        query,
        hash_urls(urls),
        provider or "default",
        "deep" if deep else "standard",
    )


def extraction_key(aspect_query: str, urls: Iterable[str], provider: str | None) -> str:
    return cache_key(CacheType.EXTRACTION, aspect_query, hash_urls(urls), provider or "default")


def gap_analysis_key(query: str, extractions_hash: str, provider: str | None) -> str:
    return cache_key(CacheType.GAP_ANALYSIS, query, extractions_hash, provider or "default")


def refine_key(query: str, provider: str | None) -> str:
    return cache_key(CacheType.REFINE, query, provider or "default")


def related_key(query: str, key_topics: str) -> str:
    return cache_key(CacheType.RELATED, query, hash_text(key_topics) if key_topics else "nocontent")


# --- Fast tier ---


@dataclass(slots=True)
class CacheEntry:
    data: Any
    created_at: float
    expires_at: float


class MemoryLRU:
    """Access-ordered map guarded by a lock. Oldest entry is evicted first."""

    def __init__(
        self,
        max_entries: int = 500,
        ttl_seconds: float = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max(int(max_entries), 1)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.data

    def set(self, key: str, data: Any, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = CacheEntry(data=data, created_at=now, expires_at=now + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# --- Slow tier ---


class CacheStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def upsert(
        self,
        key: str,
        cache_type: str,
        query: str,
        payload: Any,
        provider: str | None,
        expires_at: datetime,
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def increment_hit_count(self, key: str, current: int) -> None: ...


def _parse_expires_at(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# --- Service ---


CacheSource = Literal["fast", "slow", "miss"]


@dataclass(slots=True)
class CacheResult:
    data: Any
    source: CacheSource

    @property
    def hit(self) -> bool:
        return self.source != "miss"


class CacheService:
    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        max_entries: int = 500,
        memory_ttl_seconds: float = 900,
        ttl_hours: dict[CacheType, int] | None = None,
        prune_interval_seconds: float = 300,
        store_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        self.store = store
        self.enabled = enabled
        self.memory = MemoryLRU(max_entries, memory_ttl_seconds, clock=clock)
        self.ttl_hours = ttl_hours or default_ttl_hours()
        self.prune_interval_seconds = prune_interval_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self._clock = clock
        self._background = BackgroundTasks()
        self._prune_task: asyncio.Task | None = None
        self.stats_counters = {"fast_hits": 0, "slow_hits": 0, "misses": 0, "backend_errors": 0}

    @classmethod
    def from_settings(cls, store: CacheStore | None = None) -> "CacheService":
        return cls(
            store,
            max_entries=settings.cache_memory_max_entries,
            memory_ttl_seconds=settings.cache_memory_ttl_seconds,
            prune_interval_seconds=settings.cache_prune_interval_seconds,
            store_timeout_seconds=settings.cache_store_timeout_seconds,
            enabled=settings.cache_enabled,
        )

    # Lifecycle

    def start(self) -> None:
        if self._prune_task is None or self._prune_task.done():
            self._prune_task = asyncio.create_task(self._prune_loop(), name="cache-prune")

    async def close(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
            self._prune_task = None
        await self._background.drain()

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self.prune_interval_seconds)
            pruned = self.memory.prune()
            if pruned:
                logger.debug(f"Pruned {pruned} expired entries from memory cache")

    async def flush_background(self) -> None:
        await self._background.drain()

    # Operations

    async def get(self, key: str) -> CacheResult:
        if not self.enabled:
            return CacheResult(None, "miss")

        data = self.memory.get(key)
        if data is not None:
            self.stats_counters["fast_hits"] += 1
            log_cache_event("get", key, source="fast")
            return CacheResult(copy.deepcopy(data), "fast")

        if self.store is not None:
            try:
                row = await self._bounded(self.store.get(key))
            except Exception as e:
                self._backend_failed("get", key, e)
                row = None
            if row is not None:
                data = self._accept_slow_row(key, row)
                if data is not None:
                    self.stats_counters["slow_hits"] += 1
                    log_cache_event("get", key, source="slow")
                    return CacheResult(copy.deepcopy(data), "slow")

        self.stats_counters["misses"] += 1
        log_cache_event("get", key, source="miss")
        return CacheResult(None, "miss")

    def _accept_slow_row(self, key: str, row: dict[str, Any]) -> Any | None:
        expires_at = _parse_expires_at(row.get("expires_at"))
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        if expires_at is None or expires_at <= now:
            self._background.spawn(self._store_call("delete", key), name=f"cache-delete:{key}")
            return None

        data = row.get("response")
        if data is None:
            return None

        self._background.spawn(
            self._store_call("increment_hit_count", key, int(row.get("hit_count") or 0)),
            name=f"cache-hit:{key}",
        )
        remaining = (expires_at - now).total_seconds()
        self.memory.set(key, data, min(self.memory.ttl_seconds, remaining))
        return data

    async def set(
        self,
        key: str,
        cache_type: CacheType,
        query: str,
        data: Any,
        provider: str | None = None,
    ) -> None:
        if not self.enabled or data is None:
            return
        stored = copy.deepcopy(data)
        self.memory.set(key, stored)
        if self.store is None:
            return
        hours = self.ttl_hours.get(cache_type, 48)
        expires_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc) + timedelta(hours=hours)
        try:
            await self._bounded(self.store.upsert(key, cache_type.value, query, stored, provider, expires_at))
        except Exception as e:
            self._backend_failed("set", key, e)

    async def delete(self, key: str) -> None:
        self.memory.delete(key)
        if self.store is None:
            return
        try:
            await self._bounded(self.store.delete(key))
        except Exception as e:
            self._backend_failed("delete", key, e)

    def clear(self) -> None:
        """Drop every fast-tier entry; persistent rows expire on their own TTL."""
        self.memory.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "memory_entries": len(self.memory),
            "memory_max_entries": self.memory.max_entries,
            "slow_tier": self.store is not None,
            **self.stats_counters,
        }

    async def _store_call(self, method: str, *args: Any) -> None:
        if self.store is None:
            return
        try:
            await self._bounded(getattr(self.store, method)(*args))
        except Exception as e:
            self._backend_failed(method, str(args[0]) if args else "", e)

    async def _bounded(self, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout_seconds)
        except asyncio.TimeoutError:
            raise TimeoutError(f"cache store call timed out after {self.store_timeout_seconds}s") from None

    def _backend_failed(self, operation: str, key: str, exc: Exception) -> None:
        self.stats_counters["backend_errors"] += 1
        log_cache_event(operation, key, error=str(exc) or type(exc).__name__)
