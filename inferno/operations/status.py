"""Read-only status views for dashboards and the CLI."""

from __future__ import annotations

from typing import Any, Dict

from inferno.config import Settings
from inferno.ledger.models import OperationClass, utc_now
from inferno.ledger.store import OperationLedger
from inferno.pricing.resolver import QuoteResolver


class StatusService:
    def __init__(
        self,
        ledger: OperationLedger,
        resolver: QuoteResolver,
        settings: Settings,
        token_mint: str,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.settings = settings
        self.token_mint = token_mint

    def get_aggregate_stats(self, recent_limit: int = 10) -> Dict[str, Any]:
        total = self.ledger.total_destroyed()
        initial = self.settings.initial_supply_units
        return {
            "total_destroyed": total,
            "by_class": self.ledger.actions_grouped_by_class(),
            "last_24h": self.ledger.destroyed_last_24h(),
            "recent_actions": [r.to_dict() for r in self.ledger.recent_actions(recent_limit)],
            "initial_supply": initial,
            "circulating_supply": max(0, initial - total),
            "destroyed_percentage": (total / initial * 100) if initial else 0.0,
            "threshold_stats": self.ledger.threshold_stats(),
            "timestamp": utc_now().isoformat(),
        }

    async def get_threshold_status(self) -> Dict[str, Any]:
        valuation = await self.resolver.resolve(self.token_mint)
        current = None if valuation.is_sentinel else valuation.total_valuation

        thresholds = []
        next_due = None
        for definition in self.ledger.list_thresholds():
            eligible = current is not None and definition.is_eligible(current)
            entry = definition.to_dict()
            entry["is_eligible"] = eligible
            entry["is_pending"] = eligible and not definition.completed
            thresholds.append(entry)
            if next_due is None and not definition.completed:
                next_due = entry

        progress = None
        if next_due is not None and current is not None and next_due["trigger_value"] > 0:
            progress = min(100.0, current / next_due["trigger_value"] * 100)

        return {
            "thresholds": thresholds,
            "current_valuation": current,
            "valuation_source": valuation.source,
            "next_due": next_due,
            "progress": progress,
            "stats": self.ledger.threshold_stats(),
        }

    async def get_current_valuation(self) -> Dict[str, Any]:
        valuation = await self.resolver.resolve(self.token_mint)
        return valuation.to_dict()

    def describe_pending(self) -> Dict[str, Any]:
        pending = {}
        for operation_class in OperationClass:
            slot = self.ledger.read_slot(operation_class)
            pending[operation_class.value] = slot.to_dict() if slot else None
        return pending
