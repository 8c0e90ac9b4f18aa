"""Response cache wrapping an analysis capability.

Hash-based caching of successful ``AnalysisResponse`` objects with TTL
expiry and LRU eviction.  Failed calls are never cached, so a transient
provider error is retried on the next run.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable

from .capability import AnalysisCapability, AnalysisRequest, AnalysisResponse
from .errors import FatalConfigurationError

log = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    response: AnalysisResponse
    timestamp: float
    hit_count: int = 0

    def is_expired(self, ttl: float) -> bool:
        return time.time() - self.timestamp > ttl


@dataclass
class CacheStats:
    """Statistics for cache performance."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "size": self.size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CachedAnalyzer:
    """``AnalysisCapability`` that memoises another capability.

    Args:
        capability: The wrapped provider capability.
        ttl: Time-to-live in seconds (default 1 hour).
        max_size: Maximum number of cached responses.
    """

    def __init__(self, capability: AnalysisCapability, ttl: float = 3600.0, max_size: int = 500):
        self.capability = capability
        self.ttl = ttl
        self.max_size = max_size
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats = CacheStats()

    @staticmethod
    def cache_key(request: AnalysisRequest) -> str:
        content = json.dumps({
            "type": request.analysis_type,
            "scene": request.scene.id,
            "text": request.scene.text,
            "previous": [s.id for s in request.previous_scenes],
            "options": request.options,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    async def init(self) -> None:
        """Drop expired entries before a run starts."""
        expired = [key for key, entry in self._cache.items() if entry.is_expired(self.ttl)]
        for key in expired:
            del self._cache[key]
        self._stats.evictions += len(expired)
        log.info("Response cache ready: %d entries (%d expired)", len(self._cache), len(expired))

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        key = self.cache_key(request)
        cached = self._lookup(key)
        if cached is not None:
            return cached

        response = await self.capability.analyze(request)
        self._store(key, response)
        return response

    async def warm_cache(self, requests: Iterable[AnalysisRequest]) -> int:
        """Pre-populate the cache; returns how many new entries were stored."""
        stored = 0
        for request in requests:
            key = self.cache_key(request)
            entry = self._cache.get(key)
            if entry is not None and not entry.is_expired(self.ttl):
                continue
            try:
                response = await self.capability.analyze(request)
            except FatalConfigurationError:
                raise
            except Exception:
                log.debug("Cache warm-up failed for scene %s", request.scene.id, exc_info=True)
                continue
            self._store(key, response)
            stored += 1
        log.info("Cache warm-up stored %d responses", stored)
        return stored

    def clear(self) -> None:
        self._cache.clear()
        self._stats = CacheStats()

    def get_stats(self) -> CacheStats:
        self._stats.size = len(self._cache)
        return self._stats

    def _lookup(self, key: str) -> AnalysisResponse | None:
        entry = self._cache.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if entry.is_expired(self.ttl):
            del self._cache[key]
            self._stats.misses += 1
            self._stats.evictions += 1
            return None

        self._cache.move_to_end(key)
        entry.hit_count += 1
        self._stats.hits += 1
        log.debug("Cache hit for key %s... (hits: %d)", key[:8], entry.hit_count)

        response = copy.deepcopy(entry.response)
        response.metadata.cached = True
        return response

    def _store(self, key: str, response: AnalysisResponse) -> None:
        while len(self._cache) >= self.max_size and self._cache:
            self._cache.popitem(last=False)
            self._stats.evictions += 1
        self._cache[key] = CacheEntry(response=copy.deepcopy(response), timestamp=time.time())
