"""In-memory result cache with per-entry TTL and LRU eviction.

One ResultCache is owned by a CoreBlockExecutor (and therefore by whoever
creates the executor); there is no module-level cache. Entries are
idempotent recomputations, so concurrent population is last-writer-wins.

Eviction policy:
    - an entry older than its TTL is dropped on the next access
    - when ``max_entries`` is reached, the least recently used entry goes
"""

from __future__ import annotations

import functools
import hashlib
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

from cachetools import TLRUCache
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_ENTRIES = 1000


def stable_hash(value: Any) -> str:
    """sha256 hex digest of the canonical JSON form of ``value``.

    Dict key order does not matter; values JSON cannot encode are ``str()``-ed.
    """
    canonical = json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(_key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class CacheStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    size: int = 0
    max_size: int = Field(default=DEFAULT_MAX_ENTRIES, alias="maxSize")
    hits: int = 0
    misses: int = 0
    hit_rate: float = Field(default=0.0, alias="hitRate", description="Percent, 0-100")
    evictions: int = 0
    total_sets: int = Field(default=0, alias="totalSets")


class ResultCache:
    """TTL + LRU cache backed by ``cachetools.TLRUCache``.

    Args:
        max_entries: Size bound; the least recently used entry is evicted beyond it
        default_ttl: Seconds an entry stays valid unless ``set`` overrides it
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._entries: TLRUCache[str, _Entry] = TLRUCache(
            maxsize=max_entries, ttu=_time_to_use, timer=clock
        )
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._total_sets = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value``; ``ttl`` in seconds overrides the default."""
        if key not in self._entries:
            # Expired entries make room before a live one is evicted
            self._entries.expire()
            if len(self._entries) >= self.max_entries:
                self._evictions += 1
        self._entries[key] = _Entry(value, self.default_ttl if ttl is None else ttl)
        self._total_sets += 1

    def has(self, key: str) -> bool:
        """True if ``key`` is present and unexpired. Does not count as a hit."""
        return key in self._entries

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset hit/miss counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def keys(self) -> list[str]:
        self._entries.expire()
        return list(self._entries)

    def size(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=self.size(),
            max_size=self.max_entries,
            hits=self._hits,
            misses=self._misses,
            hit_rate=round(self._hits / lookups * 100, 2) if lookups else 0.0,
            evictions=self._evictions,
            total_sets=self._total_sets,
        )


def memoize[**P, R](
    cache: ResultCache,
    key_fn: Callable[P, str] | None = None,
    ttl: float | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Cache the results of an async function in ``cache``.

    The default key is the function's qualified name plus a stable hash of
    its arguments.

    Example:
        cache = ResultCache(default_ttl=3600)

        @memoize(cache)
        async def lookup_company(domain: str) -> dict: ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            if key_fn is not None:
                key = key_fn(*args, **kwargs)
            else:
                key = f"{func.__qualname__}:{stable_hash([list(args), kwargs])}"
            if cache.has(key):
                return cache.get(key)
            result = await func(*args, **kwargs)
            cache.set(key, result, ttl)
            return result

        return wrapper

    return decorator


__all__ = ["CacheStats", "ResultCache", "memoize", "stable_hash"]
