"""Valuation types shared by the quote sources and the resolver."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from inferno.ledger.models import ValuationSnapshot, utc_now

SENTINEL_SOURCE = "none"


@dataclass(frozen=True)
class Valuation:
    """
    A resolved token valuation.

    native_unit_value: price of one whole token in SOL
    quote_unit_value: price of one whole token in USD
    total_valuation: market cap in USD
    base_unit_value: SOL price in USD used for the conversion
    """
    native_unit_value: float
    quote_unit_value: float
    total_valuation: float
    base_unit_value: float
    source: str
    is_post_listing: bool
    fetched_at: datetime = field(default_factory=utc_now)

    @property
    def is_sentinel(self) -> bool:
        """True when no source answered; never compare this against thresholds."""
        return self.source == SENTINEL_SOURCE

    @classmethod
    def sentinel(cls, base_unit_value: float = 0.0) -> "Valuation":
        return cls(
            native_unit_value=0.0,
            quote_unit_value=0.0,
            total_valuation=0.0,
            base_unit_value=base_unit_value,
            source=SENTINEL_SOURCE,
            is_post_listing=False,
        )

    def to_snapshot(self) -> ValuationSnapshot:
        return ValuationSnapshot(
            asset_value_in_base=self.native_unit_value,
            base_value_in_quote=self.base_unit_value,
            derived_valuation_in_quote=self.total_valuation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "native_unit_value": self.native_unit_value,
            "quote_unit_value": self.quote_unit_value,
            "total_valuation": self.total_valuation,
            "base_unit_value": self.base_unit_value,
            "source": self.source,
            "is_post_listing": self.is_post_listing,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cache entry. The resolver only ever swaps whole entries."""
    value: Any
    source: str
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.age(now) < ttl


def is_usable_price(value: Optional[float]) -> bool:
    return value is not None and value == value and 0 < value < float("inf")
