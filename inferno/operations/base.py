"""
Shared orchestrator machinery: the non-reentrant tick guard, recovery
dispatch, action recording and metrics snapshots.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from inferno.chain.client import LedgerClient
from inferno.config import Settings, format_token_amount
from inferno.errors import DuplicateReference
from inferno.ledger.models import (
    ActionRecord,
    MetricsSnapshot,
    OperationClass,
    SlotState,
    ValuationSnapshot,
)
from inferno.ledger.store import OperationLedger
from inferno.logging_config import CorrelationContext, get_logger
from inferno.operations.recovery import (
    RecoveryAction,
    RecoveryKind,
    client_verifier,
    plan_recovery,
)
from inferno.pricing.resolver import QuoteResolver

logger = logging.getLogger(__name__)
audit = get_logger("inferno.audit")

Sleep = Callable[[float], Awaitable[Any]]


class TickStatus(str, Enum):
    COMPLETED = "completed"
    NO_OP = "no_op"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNRESOLVED = "unresolved"


@dataclass
class TickResult:
    status: TickStatus
    reason: str = ""
    references: tuple = ()
    quantity: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "references": list(self.references),
            "quantity": self.quantity,
            "error": self.error,
        }


class OperationOrchestrator(ABC):
    """Drives one operation class. Subclasses implement `_run` and `_resume`."""

    operation_class: OperationClass

    def __init__(
        self,
        ledger: OperationLedger,
        client: LedgerClient,
        resolver: QuoteResolver,
        settings: Settings,
        finalize_lock: Optional[asyncio.Lock] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ledger = ledger
        self.client = client
        self.resolver = resolver
        self.settings = settings
        self.finalize_lock = finalize_lock or asyncio.Lock()
        self._sleep = sleep
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def tick(self) -> TickResult:
        """
        Run one attempt. Overlapping calls are skipped, not queued.

        A slot left behind by an earlier failed tick is recovered first;
        if recovery cannot resolve it, the tick does no new work.
        """
        if self._running:
            logger.info(f"{self.operation_class.value} tick still running; skipping")
            return TickResult(TickStatus.SKIPPED, "previous tick still running")

        self._running = True
        try:
            with CorrelationContext(operation_class=self.operation_class.value):
                if self.ledger.read_slot(self.operation_class) is not None:
                    await self.recover()
                    if self.ledger.read_slot(self.operation_class) is not None:
                        return TickResult(TickStatus.UNRESOLVED, "in-flight operation awaiting verification")
                return await self._run()
        finally:
            self._running = False

    async def recover(self) -> RecoveryAction:
        """Inspect the slot and resolve it. Safe to call repeatedly."""
        slot = self.ledger.read_slot(self.operation_class)
        action = await plan_recovery(slot, client_verifier(self.client))
        if slot is None:
            return action

        logger.info(
            f"Recovering {self.operation_class.value} slot at {slot.stage.value}: "
            f"{action.kind.value} ({action.reason})"
        )

        if action.kind == RecoveryKind.NO_OP:
            logger.warning(
                f"{self.operation_class.value} slot left at {slot.stage.value}; "
                f"will retry verification next tick"
            )
        elif action.kind == RecoveryKind.CLEAR:
            logger.warning(f"Clearing {self.operation_class.value} slot: {action.reason}")
            self.ledger.clear_slot(self.operation_class)
        elif action.kind == RecoveryKind.MARK_COMPLETE:
            if not self.ledger.has_action_with_reference(action.reference):
                snapshot = getattr(slot, "valuation", None) or await self._snapshot()
                self._record(self._build_record(slot, action.reference, action.quantity, snapshot))
            self._on_complete(slot, action.reference)
            self.ledger.clear_slot(self.operation_class)
            self._save_metrics(getattr(slot, "valuation", None))
        elif action.kind == RecoveryKind.RESUME_FROM:
            await self._resume(slot, action)
        return action

    @abstractmethod
    async def _run(self) -> TickResult:
        """The normal tick body, entered with no slot present."""

    async def _resume(self, slot: SlotState, action: RecoveryAction) -> TickResult:
        """Continue from a checkpoint. The slot is left in place when there is no path forward."""
        stage = action.stage.value if action.stage else None
        logger.error(
            f"{self.operation_class.value} has no resume path from {stage} "
            f"(slot at {slot.stage.value}); leaving slot for inspection"
        )
        return TickResult(TickStatus.UNRESOLVED, f"cannot resume from {stage}")

    @abstractmethod
    def _build_record(
        self,
        slot: SlotState,
        reference: str,
        quantity: int,
        snapshot: ValuationSnapshot,
    ) -> ActionRecord:
        """Action record for a finalize that landed from `slot`."""

    def _on_complete(self, slot: SlotState, reference: str) -> None:
        """Hook run after a finalize is recorded, before the slot is cleared."""

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fail(self, slot: SlotState, step: str, exc: BaseException) -> TickResult:
        """Persist the error on the last successful stage and surface it."""
        error = f"{step}: {type(exc).__name__}: {exc}"
        logger.error(f"{self.operation_class.value} {step} failed at {slot.stage.value}: {exc}")
        self.ledger.write_slot(slot.with_error(error))
        return TickResult(TickStatus.FAILED, f"{step} failed", error=error)

    def _record(self, record: ActionRecord) -> None:
        try:
            self.ledger.record_action(record)
        except DuplicateReference:
            logger.info(f"Action {record.external_reference[:16]}... already recorded")
            return
        audit.info(
            "Burn recorded",
            operation_class=record.operation_class.value,
            reference=record.external_reference,
            quantity=record.quantity,
            market_cap=record.valuation.derived_valuation_in_quote,
        )

    async def _snapshot(self) -> ValuationSnapshot:
        valuation = await self.resolver.resolve(self.client.token_mint)
        return valuation.to_snapshot()

    def _memo(self, quantity: int) -> str:
        label = self.operation_class.value.upper()
        whole = quantity // self.settings.token_unit
        return f"INFERNO {label} BURN: {whole} tokens"

    def _describe(self, quantity: int) -> str:
        return format_token_amount(quantity, self.settings.token_decimals)

    def _save_metrics(self, snapshot: Optional[ValuationSnapshot]) -> None:
        grouped = self.ledger.actions_grouped_by_class()
        total = self.ledger.total_destroyed()
        market_cap = snapshot.derived_valuation_in_quote if snapshot else 0.0
        self.ledger.save_metrics_snapshot(
            MetricsSnapshot(
                total_burned=total,
                circulating_supply=max(0, self.settings.initial_supply_units - total),
                milestone_burned=grouped[OperationClass.THRESHOLD_ACTION.value]["total"],
                buyback_burned=grouped[OperationClass.RECURRING_ACTION.value]["total"],
                market_cap=market_cap,
                token_price=market_cap / self.settings.initial_supply if market_cap else 0.0,
            )
        )
