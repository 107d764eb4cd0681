"""Result cache for completion-service outputs.

Entries are keyed by a normalized form of the message text plus a result
kind. The cache is an optimization: every backend failure is logged and
swallowed, and the caller sees a miss.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from redis.asyncio import Redis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatledger.clock import Clock, utcnow
from chatledger.logging_config import get_logger
from chatledger.models.cache_entry import CacheEntryRow
from chatledger.schemas.results import BestEffort, CacheLookup

logger = get_logger(__name__)

T = TypeVar("T")

MAX_NORMALIZED_LENGTH = 200


class CacheKind(str, Enum):
    """Kinds of cached results."""
    TRANSACTION_EXTRACTION = "transaction_extraction"
    SCHEDULE_EXTRACTION = "schedule_extraction"
    ENDPOINT_DECISION = "endpoint_decision"
    OTHER = "other"


def normalize_message(message: str) -> str:
    """Lower-case, trim, collapse whitespace and cap the length."""
    return " ".join(message.lower().split())[:MAX_NORMALIZED_LENGTH]


def _hash32(text: str) -> int:
    # 31-multiplier string hash folded to a signed 32-bit integer
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def make_cache_key(message: str, kind: Union[CacheKind, str]) -> str:
    """Build the cache key for a message and result kind.

    Distinct messages can collide on the hash and share an entry.
    """
    kind_value = kind.value if isinstance(kind, CacheKind) else str(kind)
    return f"{kind_value}_{abs(_hash32(normalize_message(message)))}"


@dataclass
class CacheEntry:
    """A stored result with its lifetime."""

    key: str
    kind: str
    payload: Any
    created_at: datetime
    ttl_seconds: float

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# =============================================================================
# Backends
# =============================================================================


class CacheBackend(ABC):
    """Key-value persistence for cache entries."""

    @abstractmethod
    async def fetch(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry for a key, expired or not."""

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None:
        """Insert or overwrite the entry with the same key."""

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Delete entries whose lifetime ended before ``now``."""

    @abstractmethod
    async def delete_kind(self, kind: str) -> int:
        """Delete every entry of one kind."""


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend for tests and single-process runs."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    async def fetch(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def upsert(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def delete_expired(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def delete_kind(self, kind: str) -> int:
        matching = [key for key, entry in self._entries.items() if entry.kind == kind]
        for key in matching:
            del self._entries[key]
        return len(matching)


class SqlCacheBackend(CacheBackend):
    """Backend storing entries in the ``ai_result_cache`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch(self, key: str) -> Optional[CacheEntry]:
        async with self._session_factory() as session:
            row = await session.get(CacheEntryRow, key)
            if row is None:
                return None
            return CacheEntry(
                key=row.key,
                kind=row.kind,
                payload=row.payload,
                created_at=row.created_at,
                ttl_seconds=row.ttl_seconds,
            )

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(
                    CacheEntryRow(
                        key=entry.key,
                        kind=entry.kind,
                        payload=entry.payload,
                        created_at=entry.created_at,
                        ttl_seconds=entry.ttl_seconds,
                        expires_at=entry.expires_at,
                    )
                )

    async def delete_expired(self, now: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CacheEntryRow).where(CacheEntryRow.expires_at <= now)
                )
                return result.rowcount or 0

    async def delete_kind(self, kind: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CacheEntryRow).where(CacheEntryRow.kind == kind)
                )
                return result.rowcount or 0


class RedisCacheBackend(CacheBackend):
    """Backend on Redis. Keys also carry a native expiry."""

    PREFIX = "chatledger:cache:"

    def __init__(self, redis: Redis):
        self.redis = redis

    def _make_key(self, key: str) -> str:
        """Create namespaced cache key."""
        return f"{self.PREFIX}{key}"

    async def fetch(self, key: str) -> Optional[CacheEntry]:
        value = await self.redis.get(self._make_key(key))
        if not value:
            return None
        data = json.loads(value)
        return CacheEntry(
            key=key,
            kind=data["kind"],
            payload=data["payload"],
            created_at=datetime.fromisoformat(data["created_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
        )

    async def upsert(self, entry: CacheEntry) -> None:
        serialized = json.dumps(
            {
                "kind": entry.kind,
                "payload": entry.payload,
                "created_at": entry.created_at.isoformat(),
                "ttl_seconds": entry.ttl_seconds,
            },
            default=str,
        )
        await self.redis.setex(self._make_key(entry.key), max(1, math.ceil(entry.ttl_seconds)), serialized)

    async def delete_expired(self, now: datetime) -> int:
        # Redis drops expired keys on its own
        return 0

    async def delete_kind(self, kind: str) -> int:
        keys = []
        async for key in self.redis.scan_iter(match=self._make_key(f"{kind}_*")):
            keys.append(key)
        if not keys:
            return 0
        return await self.redis.delete(*keys)


# =============================================================================
# Result Cache
# =============================================================================


class ResultCache:
    """Content-addressed cache of AI results with a TTL."""

    DEFAULT_TTL = 300.0  # 5 minutes

    def __init__(
        self,
        backend: CacheBackend,
        default_ttl: float = DEFAULT_TTL,
        clock: Clock = utcnow,
        metrics: Optional[Any] = None,
    ) -> None:
        """Initialize result cache.

        Args:
            backend: Persistence backend
            default_ttl: Lifetime of new entries, in seconds
            clock: Source of the current time
            metrics: Optional PipelineMetrics for hit/miss counters
        """
        self.backend = backend
        self.default_ttl = default_ttl
        self._clock = clock
        self._metrics = metrics
        self._stats = {"hits": 0, "misses": 0, "errors": 0}

    @staticmethod
    def _kind_value(kind: Union[CacheKind, str]) -> str:
        return kind.value if isinstance(kind, CacheKind) else str(kind)

    async def get(self, message: str, kind: Union[CacheKind, str]) -> CacheLookup:
        """Look up a cached payload. Expired entries are misses."""
        kind_value = self._kind_value(kind)
        key = make_cache_key(message, kind_value)
        try:
            entry = await self.backend.fetch(key)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache get error", key=key, error=str(e))
            return CacheLookup(hit=False, error=str(e))

        if entry is None or entry.is_expired(self._clock()):
            self._stats["misses"] += 1
            if self._metrics is not None:
                self._metrics.record_cache_miss(kind_value)
            return CacheLookup(hit=False)

        self._stats["hits"] += 1
        if self._metrics is not None:
            self._metrics.record_cache_hit(kind_value)
        return CacheLookup(hit=True, payload=entry.payload)

    async def put(
        self,
        message: str,
        kind: Union[CacheKind, str],
        payload: Any,
        ttl: Optional[float] = None,
    ) -> BestEffort[bool]:
        """Store a payload, overwriting any entry with the same key."""
        kind_value = self._kind_value(kind)
        entry = CacheEntry(
            key=make_cache_key(message, kind_value),
            kind=kind_value,
            payload=payload,
            created_at=self._clock(),
            ttl_seconds=self.default_ttl if ttl is None else ttl,
        )
        try:
            await self.backend.upsert(entry)
            return BestEffort(value=True)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache set error", key=entry.key, error=str(e))
            return BestEffort(value=False, error=str(e))

    async def sweep_expired(self) -> BestEffort[int]:
        """Delete expired entries."""
        try:
            removed = await self.backend.delete_expired(self._clock())
        except Exception as e:
            logger.error("Cache sweep error", error=str(e))
            return BestEffort(value=0, error=str(e))
        if removed:
            logger.info("Swept expired cache entries", count=removed)
        return BestEffort(value=removed)

    async def clear(self, kind: Union[CacheKind, str]) -> BestEffort[int]:
        """Delete every entry of one kind."""
        kind_value = self._kind_value(kind)
        try:
            removed = await self.backend.delete_kind(kind_value)
        except Exception as e:
            logger.error("Cache clear error", kind=kind_value, error=str(e))
            return BestEffort(value=0, error=str(e))
        logger.info("Cleared cache kind", kind=kind_value, count=removed)
        return BestEffort(value=removed)

    async def with_cache(
        self,
        message: str,
        kind: Union[CacheKind, str],
        operation: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Return the cached result, or run ``operation`` and cache its result."""
        lookup = await self.get(message, kind)
        if lookup.hit:
            logger.debug("Cache hit", kind=self._kind_value(kind))
            return lookup.payload

        result = await operation()
        await self.put(message, kind, result, ttl)
        return result

    def get_stats(self) -> dict:
        """Get cache statistics."""
        stats = self._stats.copy()
        total = stats["hits"] + stats["misses"]
        stats["hit_rate"] = (stats["hits"] / total * 100) if total > 0 else 0
        return stats
