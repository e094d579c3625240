"""
Milestone orchestrator: burn a fixed amount once market cap crosses a
threshold.

    (none) -> STARTED -> ACTION_FINALIZED -> (none)

Due thresholds are burned one at a time in ascending order while holding
the shared finalize lock, with a cooldown between burns.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List

from inferno.chain.client import ActionKind
from inferno.config import format_market_cap
from inferno.errors import InsufficientFunds
from inferno.ledger.models import (
    ActionRecord,
    OperationClass,
    SlotState,
    ThresholdDefinition,
    ThresholdFinalized,
    ThresholdStarted,
    ValuationSnapshot,
)
from inferno.operations.base import OperationOrchestrator, TickResult, TickStatus

logger = logging.getLogger(__name__)


def build_threshold_definitions(schedule: List[dict], token_decimals: int) -> List[ThresholdDefinition]:
    """Schedule entries (whole tokens) to definitions (smallest units)."""
    unit = 10 ** token_decimals
    return [
        ThresholdDefinition(
            trigger_value=float(entry["market_cap"]),
            action_quantity=int(round(float(entry["burn_amount"]) * unit)),
            share_of_total=float(entry.get("percent", 0.0)),
        )
        for entry in schedule
    ]


class MilestoneOrchestrator(OperationOrchestrator):
    operation_class = OperationClass.THRESHOLD_ACTION

    def seed(self) -> int:
        """Insert any schedule entries missing from the ledger."""
        return self.ledger.seed_thresholds(
            build_threshold_definitions(self.settings.burn_schedule, self.settings.token_decimals)
        )

    async def _run(self) -> TickResult:
        valuation = await self.resolver.resolve(self.client.token_mint)
        if valuation.is_sentinel:
            logger.warning("No valuation available; skipping milestone check")
            return TickResult(TickStatus.NO_OP, "no valuation available")

        market_cap = valuation.total_valuation
        due = self.ledger.due_thresholds(market_cap)
        if not due:
            logger.info(f"Market cap {format_market_cap(market_cap)}: no milestones due")
            return TickResult(TickStatus.NO_OP, "no milestones due")

        logger.info(
            f"Market cap {format_market_cap(market_cap)} via {valuation.source}: "
            f"{len(due)} milestone(s) due"
        )
        snapshot = valuation.to_snapshot()
        references = []
        burned_total = 0

        async with self.finalize_lock:
            for index, threshold in enumerate(due):
                # Recovery or another process may have completed it meanwhile
                current = self.ledger.get_threshold(threshold.trigger_value)
                if current is None or current.completed:
                    logger.info(f"Milestone {format_market_cap(threshold.trigger_value)} already completed")
                    continue

                try:
                    await self._check_balance(current)
                except InsufficientFunds as exc:
                    logger.warning(f"Skipping milestone {format_market_cap(current.trigger_value)}: {exc}")
                    continue

                result = await self._burn(current, snapshot)
                if result.status != TickStatus.COMPLETED:
                    return TickResult(
                        TickStatus.FAILED,
                        result.reason,
                        references=tuple(references),
                        quantity=burned_total,
                        error=result.error,
                    )

                references.extend(result.references)
                burned_total += result.quantity

                if index < len(due) - 1:
                    await self._sleep(self.settings.milestone_cooldown_seconds)

        if not references:
            return TickResult(TickStatus.NO_OP, "no milestone burned")

        self._save_metrics(snapshot)
        return TickResult(
            TickStatus.COMPLETED,
            f"{len(references)} milestone(s) burned",
            references=tuple(references),
            quantity=burned_total,
        )

    async def _check_balance(self, threshold: ThresholdDefinition) -> None:
        available = await self.client.get_balance(self.client.operator_address, self.client.token_mint)
        if available < threshold.action_quantity:
            raise InsufficientFunds(
                f"wallet holds {self._describe(available)}, "
                f"milestone needs {self._describe(threshold.action_quantity)}",
                required=threshold.action_quantity,
                available=available,
            )

    async def _burn(self, threshold: ThresholdDefinition, snapshot: ValuationSnapshot) -> TickResult:
        slot = ThresholdStarted(
            trigger_value=threshold.trigger_value,
            action_quantity=threshold.action_quantity,
            valuation=snapshot,
        )
        self.ledger.write_slot(slot)

        def capture(reference: str) -> None:
            nonlocal slot
            slot = replace(slot, pending_reference=reference)
            self.ledger.write_slot(slot)

        try:
            burned = await self.client.submit_action(
                ActionKind.FINALIZE,
                {"quantity": threshold.action_quantity, "memo": self._memo(threshold.action_quantity)},
                on_reference=capture,
            )
        except Exception as exc:
            return self._fail(slot, "finalize", exc)

        finalized = ThresholdFinalized(
            trigger_value=threshold.trigger_value,
            action_quantity=threshold.action_quantity,
            finalize_reference=burned.reference,
            valuation=snapshot,
            started_at=slot.started_at,
        )
        self.ledger.write_slot(finalized)

        self._record(self._build_record(finalized, burned.reference, threshold.action_quantity, snapshot))
        self._on_complete(finalized, burned.reference)
        self.ledger.clear_slot(self.operation_class)

        logger.info(
            f"Milestone {format_market_cap(threshold.trigger_value)} burned "
            f"{self._describe(threshold.action_quantity)} tokens: {burned.reference}"
        )
        return TickResult(
            TickStatus.COMPLETED,
            "milestone burned",
            references=(burned.reference,),
            quantity=threshold.action_quantity,
        )

    def _on_complete(self, slot: SlotState, reference: str) -> None:
        self.ledger.complete_threshold(slot.trigger_value, reference)

    def _build_record(
        self,
        slot: SlotState,
        reference: str,
        quantity: int,
        snapshot: ValuationSnapshot,
    ) -> ActionRecord:
        return ActionRecord(
            operation_class=self.operation_class,
            quantity=quantity,
            external_reference=reference,
            valuation=snapshot,
            threshold_target=slot.trigger_value,
        )
