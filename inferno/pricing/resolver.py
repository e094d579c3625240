"""
Quote resolver: ordered fallback over quote sources, with a TTL cache.

Calls within the TTL never touch the network. Concurrent calls for the
same key that miss the cache wait on one per-key lock, so they collapse
into a single round of fetches.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from inferno.pricing.models import CacheEntry, Valuation, is_usable_price
from inferno.pricing.sources import BasePriceSource, TokenQuoteSource

logger = logging.getLogger(__name__)

BASE_KEY = "__base__"


class QuoteResolver:
    """Resolve token and SOL prices from an ordered list of sources."""

    def __init__(
        self,
        sources: Sequence[TokenQuoteSource],
        base_sources: Sequence[BasePriceSource],
        ttl_seconds: float = 30.0,
        grace_seconds: float = 300.0,
        timeout_seconds: float = 10.0,
        fallback_base_price: float = 200.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources: List[TokenQuoteSource] = list(sources)
        self.base_sources: List[BasePriceSource] = list(base_sources)
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = max(grace_seconds, ttl_seconds)
        self.timeout_seconds = timeout_seconds
        self.fallback_base_price = fallback_base_price
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _fresh(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is not None and entry.is_fresh(self._clock(), self.ttl_seconds):
            return entry
        return None

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one cache entry, or all of them."""
        if key is None:
            self._cache = {}
        else:
            self._cache.pop(key, None)

    async def resolve(self, asset_id: str) -> Valuation:
        """
        Value an asset.

        Returns the sentinel valuation (source "none") when every source
        fails and nothing usable is cached. Callers must not make
        threshold decisions on a sentinel.
        """
        entry = self._fresh(asset_id)
        if entry is not None:
            return entry.value

        async with self._lock_for(asset_id):
            # Another caller may have refreshed while we waited
            entry = self._fresh(asset_id)
            if entry is not None:
                return entry.value

            base_price = await self.get_base_price()
            for source in self.sources:
                try:
                    valuation = await asyncio.wait_for(
                        source.fetch(asset_id, base_price), self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Quote source {source.name} timed out after {self.timeout_seconds}s")
                    continue
                except Exception as exc:
                    logger.warning(f"Quote source {source.name} failed: {exc}")
                    continue

                if not is_usable_price(valuation.quote_unit_value):
                    logger.warning(f"Quote source {source.name} returned unusable price")
                    continue

                self._cache[asset_id] = CacheEntry(valuation, valuation.source, self._clock())
                logger.debug(
                    f"Resolved {asset_id[:8]}... via {valuation.source}: "
                    f"mcap ${valuation.total_valuation:,.0f}"
                )
                return valuation

            last = self._cache.get(asset_id)
            if last is not None and last.age(self._clock()) < self.grace_seconds:
                logger.warning(
                    f"All quote sources failed; using {last.age(self._clock()):.0f}s old "
                    f"{last.source} value"
                )
                return last.value

            logger.error(f"All quote sources failed for {asset_id[:8]}...; no usable cached value")
            return Valuation.sentinel(base_price)

    async def get_base_price(self) -> float:
        """USD per SOL. Falls back to the last known value, then the configured default."""
        entry = self._fresh(BASE_KEY)
        if entry is not None:
            return entry.value

        async with self._lock_for(BASE_KEY):
            entry = self._fresh(BASE_KEY)
            if entry is not None:
                return entry.value

            for source in self.base_sources:
                try:
                    price = await asyncio.wait_for(source.fetch(), self.timeout_seconds)
                except asyncio.TimeoutError:
                    logger.warning(f"SOL price source {source.name} timed out")
                    continue
                except Exception as exc:
                    logger.warning(f"SOL price source {source.name} failed: {exc}")
                    continue
                if not is_usable_price(price):
                    continue
                self._cache[BASE_KEY] = CacheEntry(price, source.name, self._clock())
                return price

            last = self._cache.get(BASE_KEY)
            if last is not None:
                logger.warning(f"SOL price sources failed; using last known ${last.value:.2f}")
                return last.value

            logger.warning(f"SOL price sources failed; using fallback ${self.fallback_base_price:.2f}")
            return self.fallback_base_price

    async def market_cap(self, asset_id: str) -> Optional[float]:
        """Market cap in USD, or None when no decision should be made."""
        valuation = await self.resolve(asset_id)
        return None if valuation.is_sentinel else valuation.total_valuation
