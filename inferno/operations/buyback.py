"""
Buyback orchestrator: collect creator fees, buy the token, burn it.

    (none) -> STARTED -> INPUT_COLLECTED -> OUTPUT_ACQUIRED -> ACTION_FINALIZED -> (none)

The slot is written after every remote call returns, before the next
call starts. Quantities are always what the chain reported or what a
balance delta showed, never what was requested.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from inferno.chain.client import ActionKind
from inferno.ledger.models import (
    ActionRecord,
    OperationClass,
    RecurringFinalized,
    RecurringInputCollected,
    RecurringOutputAcquired,
    RecurringStarted,
    SlotState,
    Stage,
    ValuationSnapshot,
)
from inferno.operations.base import OperationOrchestrator, TickResult, TickStatus
from inferno.operations.recovery import RecoveryAction

logger = logging.getLogger(__name__)


def apply_margin(quantity: int, margin_bps: int) -> int:
    """Quantity left after holding back `margin_bps` basis points."""
    return quantity * (10_000 - margin_bps) // 10_000


class BuybackOrchestrator(OperationOrchestrator):
    operation_class = OperationClass.RECURRING_ACTION

    async def _run(self) -> TickResult:
        settings = self.settings
        client = self.client

        collectible = await client.get_balance(client.fee_vault_address)
        if collectible < settings.rewards_claim_threshold_lamports:
            logger.info(
                f"Creator fees {collectible / 1e9:.6f} SOL below threshold "
                f"{settings.rewards_claim_threshold_lamports / 1e9:.6f} SOL; nothing to do"
            )
            return TickResult(TickStatus.NO_OP, "collectible balance below threshold")

        slot: SlotState = RecurringStarted(collectible=collectible)
        self.ledger.write_slot(slot)
        logger.info(f"Buyback started: {collectible / 1e9:.6f} SOL collectible")

        # Collect
        try:
            balance_before = await client.get_balance(client.operator_address)
            collected = await client.submit_action(
                ActionKind.COLLECT_INPUT, {"fee_vault": client.fee_vault_address}
            )
        except Exception as exc:
            return self._fail(slot, "collect", exc)

        slot = RecurringInputCollected(
            collect_reference=collected.reference,
            balance_before=balance_before,
            started_at=slot.started_at,
        )
        self.ledger.write_slot(slot)

        try:
            await self._sleep(settings.settle_delay_seconds)
            balance_after = await client.get_balance(client.operator_address)
        except Exception as exc:
            return self._fail(slot, "collect balance check", exc)

        input_collected = balance_after - balance_before
        slot = replace(slot, input_collected=input_collected)
        self.ledger.write_slot(slot)
        logger.info(f"Collected {input_collected / 1e9:.6f} SOL: {collected.reference}")

        spend = input_collected - settings.gas_buffer_lamports
        if spend <= 0:
            logger.warning(
                f"Collected {input_collected / 1e9:.6f} SOL does not cover the "
                f"{settings.gas_buffer_lamports / 1e9:.4f} SOL gas buffer; leaving it in the wallet"
            )
            self.ledger.clear_slot(self.operation_class)
            return TickResult(
                TickStatus.NO_OP,
                "collected input below gas buffer",
                references=(collected.reference,),
            )

        # Acquire
        try:
            acquired = await client.submit_action(
                ActionKind.ACQUIRE_OUTPUT,
                {"amount": spend, "slippage_bps": settings.max_slippage_bps},
            )
        except Exception as exc:
            return self._fail(slot, "acquire", exc)

        if not acquired.reported_quantity or acquired.reported_quantity <= 0:
            return self._fail(
                slot, "acquire", ValueError(f"no output reported for {acquired.reference}")
            )

        slot = RecurringOutputAcquired(
            collect_reference=collected.reference,
            acquire_reference=acquired.reference,
            input_spent=spend,
            output_acquired=acquired.reported_quantity,
            started_at=slot.started_at,
        )
        self.ledger.write_slot(slot)
        logger.info(
            f"Bought {self._describe(acquired.reported_quantity)} tokens for "
            f"{spend / 1e9:.6f} SOL: {acquired.reference}"
        )

        return await self._finalize(slot)

    async def _resume(self, slot: SlotState, action: RecoveryAction) -> TickResult:
        if action.stage != Stage.OUTPUT_ACQUIRED or not isinstance(slot, RecurringOutputAcquired):
            return await super()._resume(slot, action)
        logger.info(f"Resuming buyback at finalize after {slot.acquire_reference}")
        return await self._finalize(slot)

    async def _finalize(self, slot: RecurringOutputAcquired) -> TickResult:
        quantity = apply_margin(slot.output_acquired, self.settings.finalize_margin_bps)
        if quantity <= 0:
            logger.warning(f"Nothing to burn from {slot.output_acquired} acquired units")
            self.ledger.clear_slot(self.operation_class)
            return TickResult(TickStatus.NO_OP, "margined quantity is zero")

        try:
            snapshot = await self._snapshot()
        except Exception as exc:
            return self._fail(slot, "valuation", exc)

        # A pending reference from an attempt that verified as failed is stale
        slot = replace(slot, pending_reference=None, pending_quantity=None, valuation=snapshot, error=None)
        self.ledger.write_slot(slot)

        def capture(reference: str) -> None:
            nonlocal slot
            slot = replace(slot, pending_reference=reference, pending_quantity=quantity)
            self.ledger.write_slot(slot)

        async with self.finalize_lock:
            try:
                burned = await self.client.submit_action(
                    ActionKind.FINALIZE,
                    {"quantity": quantity, "memo": self._memo(quantity)},
                    on_reference=capture,
                )
            except Exception as exc:
                return self._fail(slot, "finalize", exc)

        finalized = RecurringFinalized(
            collect_reference=slot.collect_reference,
            acquire_reference=slot.acquire_reference,
            input_spent=slot.input_spent,
            output_acquired=slot.output_acquired,
            finalize_reference=burned.reference,
            finalize_quantity=quantity,
            valuation=snapshot,
            started_at=slot.started_at,
        )
        self.ledger.write_slot(finalized)

        self._record(self._build_record(finalized, burned.reference, quantity, snapshot))
        self.ledger.clear_slot(self.operation_class)
        self._save_metrics(snapshot)

        logger.info(f"Buyback burned {self._describe(quantity)} tokens: {burned.reference}")
        return TickResult(
            TickStatus.COMPLETED,
            "buyback burned",
            references=(slot.collect_reference, slot.acquire_reference, burned.reference),
            quantity=quantity,
        )

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
            input_spent=getattr(slot, "input_spent", None),
            output_acquired=getattr(slot, "output_acquired", None),
        )
