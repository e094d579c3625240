"""Token and SOL price resolution with ordered fallback and caching."""

from inferno.chain.client import LedgerClient
from inferno.config import Settings

from .models import CacheEntry, Valuation
from .resolver import QuoteResolver
from .sources import (
    BondingCurveSource,
    DexScreenerBasePriceSource,
    DexScreenerSource,
    HttpJsonClient,
    JupiterBasePriceSource,
    JupiterPriceSource,
)


def build_resolver(settings: Settings, client: LedgerClient, http: HttpJsonClient) -> QuoteResolver:
    """Bonding curve first, then Jupiter, then DexScreener."""
    return QuoteResolver(
        sources=[
            BondingCurveSource(client, settings.initial_supply, settings.token_decimals),
            JupiterPriceSource(http, settings.initial_supply),
            DexScreenerSource(http, settings.initial_supply),
        ],
        base_sources=[
            JupiterBasePriceSource(http),
            DexScreenerBasePriceSource(http),
        ],
        ttl_seconds=settings.price_cache_ttl_seconds,
        grace_seconds=settings.quote_grace_seconds,
        timeout_seconds=settings.quote_timeout_seconds,
        fallback_base_price=settings.fallback_sol_price_usd,
    )


__all__ = [
    "CacheEntry",
    "HttpJsonClient",
    "QuoteResolver",
    "Valuation",
    "build_resolver",
]
