"""
Quote sources.

Each source answers one question ("what is this token worth?" or "what
is SOL worth?") from one place, and raises QuoteUnavailable when it
cannot. The resolver decides the order and handles the fallback.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from inferno.chain.client import LedgerClient
from inferno.chain.jupiter import SOL_MINT
from inferno.errors import QuoteUnavailable
from inferno.pricing.models import Valuation, is_usable_price

logger = logging.getLogger(__name__)

JUPITER_PRICE_API = "https://api.jup.ag/price/v3"
DEXSCREENER_API = "https://api.dexscreener.com/latest"


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class HttpJsonClient:
    """Shared aiohttp session for the HTTP quote sources."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_json(self, url: str, source: str, params: Optional[Dict[str, str]] = None) -> Any:
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    raise QuoteUnavailable(f"HTTP {resp.status}", source)
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise QuoteUnavailable(f"{type(exc).__name__}: {exc}", source) from exc


# =============================================================================
# Token sources
# =============================================================================

class TokenQuoteSource(ABC):
    name: str = "unknown"

    @abstractmethod
    async def fetch(self, asset_id: str, base_price: float) -> Valuation:
        """Value `asset_id`, converting with `base_price` (USD per SOL)."""


class BondingCurveSource(TokenQuoteSource):
    """Spot price from the pump.fun curve reserves. Only valid pre-listing."""
    name = "bonding_curve"

    def __init__(self, client: LedgerClient, total_supply: int, token_decimals: int = 6):
        self.client = client
        self.total_supply = total_supply
        self.token_decimals = token_decimals

    async def fetch(self, asset_id: str, base_price: float) -> Valuation:
        if await self.client.is_listed(asset_id):
            raise QuoteUnavailable("asset has left its bonding curve", self.name)

        curve = await self.client.get_bonding_curve(asset_id)
        if curve is None or curve.complete:
            raise QuoteUnavailable("no active bonding curve", self.name)

        price_sol = curve.price_in_sol(self.token_decimals)
        if not is_usable_price(price_sol):
            raise QuoteUnavailable("empty curve reserves", self.name)

        price_usd = price_sol * base_price
        return Valuation(
            native_unit_value=price_sol,
            quote_unit_value=price_usd,
            total_valuation=price_usd * self.total_supply,
            base_unit_value=base_price,
            source=self.name,
            is_post_listing=False,
        )


class JupiterPriceSource(TokenQuoteSource):
    """Jupiter Price API v3: {mint: {usdPrice}}."""
    name = "jupiter"

    def __init__(self, http: HttpJsonClient, total_supply: int, base_url: Optional[str] = None):
        self.http = http
        self.total_supply = total_supply
        self.base_url = base_url or os.environ.get("JUPITER_PRICE_API", JUPITER_PRICE_API)

    async def fetch(self, asset_id: str, base_price: float) -> Valuation:
        data = await self.http.get_json(self.base_url, self.name, params={"ids": asset_id})
        entry = data.get(asset_id) if isinstance(data, dict) else None
        price_usd = _safe_float((entry or {}).get("usdPrice"))
        if not is_usable_price(price_usd):
            raise QuoteUnavailable(f"no usdPrice for {asset_id[:8]}...", self.name)

        return Valuation(
            native_unit_value=price_usd / base_price,
            quote_unit_value=price_usd,
            total_valuation=price_usd * self.total_supply,
            base_unit_value=base_price,
            source=self.name,
            is_post_listing=True,
        )


def pick_best_pair(pairs: List[Dict]) -> Optional[Dict]:
    """Most liquid pair; the first one wins a tie."""
    if not pairs:
        return None

    def liquidity(pair: Dict) -> float:
        return _safe_float((pair.get("liquidity") or {}).get("usd"))

    return max(pairs, key=liquidity)


class DexScreenerSource(TokenQuoteSource):
    """DexScreener token pairs, priced from the most liquid venue."""
    name = "dexscreener"

    def __init__(self, http: HttpJsonClient, total_supply: int, base_url: Optional[str] = None):
        self.http = http
        self.total_supply = total_supply
        self.base_url = (base_url or os.environ.get("DEXSCREENER_API_URL", DEXSCREENER_API)).rstrip("/")

    async def fetch(self, asset_id: str, base_price: float) -> Valuation:
        data = await self.http.get_json(f"{self.base_url}/dex/tokens/{asset_id}", self.name)
        pairs = (data.get("pairs") or []) if isinstance(data, dict) else []
        pairs = [p for p in pairs if (p.get("baseToken") or {}).get("address") == asset_id]
        best = pick_best_pair(pairs)
        if best is None:
            raise QuoteUnavailable("no pairs with the token as base", self.name)

        price_usd = _safe_float(best.get("priceUsd"))
        if not is_usable_price(price_usd):
            raise QuoteUnavailable("best pair has no priceUsd", self.name)

        return Valuation(
            native_unit_value=price_usd / base_price,
            quote_unit_value=price_usd,
            total_valuation=price_usd * self.total_supply,
            base_unit_value=base_price,
            source=self.name,
            is_post_listing=True,
        )


# =============================================================================
# Base asset (SOL/USD) sources
# =============================================================================

class BasePriceSource(ABC):
    name: str = "unknown"

    @abstractmethod
    async def fetch(self) -> float:
        """USD per SOL."""


class JupiterBasePriceSource(BasePriceSource):
    name = "jupiter"

    def __init__(self, http: HttpJsonClient, base_url: Optional[str] = None):
        self.http = http
        self.base_url = base_url or os.environ.get("JUPITER_PRICE_API", JUPITER_PRICE_API)

    async def fetch(self) -> float:
        data = await self.http.get_json(self.base_url, self.name, params={"ids": SOL_MINT})
        entry = data.get(SOL_MINT) if isinstance(data, dict) else None
        price = _safe_float((entry or {}).get("usdPrice"))
        if not is_usable_price(price):
            raise QuoteUnavailable("no SOL usdPrice", self.name)
        return price


class DexScreenerBasePriceSource(BasePriceSource):
    name = "dexscreener"

    def __init__(self, http: HttpJsonClient, base_url: Optional[str] = None):
        self.http = http
        self.base_url = (base_url or os.environ.get("DEXSCREENER_API_URL", DEXSCREENER_API)).rstrip("/")

    async def fetch(self) -> float:
        data = await self.http.get_json(f"{self.base_url}/dex/tokens/{SOL_MINT}", self.name)
        pairs = (data.get("pairs") or []) if isinstance(data, dict) else []
        # priceUsd is quoted for the pair's base token, so SOL must be the base
        pairs = [p for p in pairs if (p.get("baseToken") or {}).get("address") == SOL_MINT]
        best = pick_best_pair(pairs)
        price = _safe_float((best or {}).get("priceUsd"))
        if not is_usable_price(price):
            raise QuoteUnavailable("no SOL pair with a price", self.name)
        return price
