"""
Crash recovery planning.

`decide_recovery` is a pure function of the slot and the verification
outcomes of its references. `plan_recovery` gathers those outcomes from
a verifier, asking only for the references the decision needs.

Rules, per slot:
- none: nothing to do
- STARTED / INPUT_COLLECTED: clear (nothing to resume safely)
- OUTPUT_ACQUIRED: a verified pending finalize counts as finalized;
  otherwise a verified acquire resumes at finalize, a failed one clears
- ACTION_FINALIZED: verified -> mark complete, failed -> clear
- any UNKNOWN verdict leaves the slot untouched
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from inferno.chain.client import LedgerClient
from inferno.errors import VerificationUnavailable
from inferno.ledger.models import (
    RecurringFinalized,
    RecurringInputCollected,
    RecurringOutputAcquired,
    RecurringStarted,
    SlotState,
    Stage,
    ThresholdFinalized,
    ThresholdStarted,
)

logger = logging.getLogger(__name__)


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    UNKNOWN = "unknown"


class RecoveryKind(str, Enum):
    NO_OP = "no_op"
    MARK_COMPLETE = "mark_complete"
    RESUME_FROM = "resume_from"
    CLEAR = "clear"


@dataclass(frozen=True)
class RecoveryAction:
    kind: RecoveryKind
    reason: str = ""
    # MARK_COMPLETE: the finalize reference and quantity to record
    reference: Optional[str] = None
    quantity: Optional[int] = None
    # RESUME_FROM: the last completed stage
    stage: Optional[Stage] = None

    @classmethod
    def no_op(cls, reason: str = "") -> "RecoveryAction":
        return cls(RecoveryKind.NO_OP, reason)

    @classmethod
    def clear(cls, reason: str) -> "RecoveryAction":
        return cls(RecoveryKind.CLEAR, reason)

    @classmethod
    def mark_complete(cls, reference: str, quantity: int, reason: str = "") -> "RecoveryAction":
        return cls(RecoveryKind.MARK_COMPLETE, reason, reference=reference, quantity=quantity)

    @classmethod
    def resume_from(cls, stage: Stage, reason: str = "") -> "RecoveryAction":
        return cls(RecoveryKind.RESUME_FROM, reason, stage=stage)

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "reason": self.reason,
            "reference": self.reference,
            "quantity": self.quantity,
            "stage": self.stage.value if self.stage else None,
        }


def references_to_verify(slot: Optional[SlotState]) -> List[str]:
    """References the decision may depend on, in the order they are consulted."""
    if isinstance(slot, (RecurringFinalized, ThresholdFinalized)):
        return [slot.finalize_reference]
    if isinstance(slot, RecurringOutputAcquired):
        refs = [slot.pending_reference] if slot.pending_reference else []
        return refs + [slot.acquire_reference]
    if isinstance(slot, ThresholdStarted) and slot.pending_reference:
        return [slot.pending_reference]
    return []


def decide_recovery(
    slot: Optional[SlotState],
    outcomes: Mapping[str, VerificationOutcome],
) -> RecoveryAction:
    """Map a slot and its verification outcomes to one recovery action."""

    def outcome(reference: str) -> VerificationOutcome:
        return outcomes.get(reference, VerificationOutcome.UNKNOWN)

    if slot is None:
        return RecoveryAction.no_op("no in-flight operation")

    if isinstance(slot, RecurringFinalized):
        verdict = outcome(slot.finalize_reference)
        if verdict == VerificationOutcome.VERIFIED:
            return RecoveryAction.mark_complete(
                slot.finalize_reference, slot.finalize_quantity, "finalize verified"
            )
        if verdict == VerificationOutcome.FAILED:
            return RecoveryAction.clear("finalize did not land; tokens stay in the wallet")
        return RecoveryAction.no_op("finalize verification unavailable")

    if isinstance(slot, ThresholdFinalized):
        verdict = outcome(slot.finalize_reference)
        if verdict == VerificationOutcome.VERIFIED:
            return RecoveryAction.mark_complete(
                slot.finalize_reference, slot.action_quantity, "finalize verified"
            )
        if verdict == VerificationOutcome.FAILED:
            return RecoveryAction.clear("finalize did not land")
        return RecoveryAction.no_op("finalize verification unavailable")

    if isinstance(slot, RecurringOutputAcquired):
        if slot.pending_reference:
            verdict = outcome(slot.pending_reference)
            if verdict == VerificationOutcome.VERIFIED:
                return RecoveryAction.mark_complete(
                    slot.pending_reference,
                    slot.pending_quantity,
                    "finalize landed before its checkpoint",
                )
            if verdict == VerificationOutcome.UNKNOWN:
                return RecoveryAction.no_op("pending finalize verification unavailable")
        verdict = outcome(slot.acquire_reference)
        if verdict == VerificationOutcome.VERIFIED:
            return RecoveryAction.resume_from(Stage.OUTPUT_ACQUIRED, "acquire verified")
        if verdict == VerificationOutcome.FAILED:
            return RecoveryAction.clear("acquire did not land")
        return RecoveryAction.no_op("acquire verification unavailable")

    if isinstance(slot, ThresholdStarted):
        if slot.pending_reference:
            verdict = outcome(slot.pending_reference)
            if verdict == VerificationOutcome.VERIFIED:
                return RecoveryAction.mark_complete(
                    slot.pending_reference,
                    slot.action_quantity,
                    "finalize landed before its checkpoint",
                )
            if verdict == VerificationOutcome.UNKNOWN:
                return RecoveryAction.no_op("pending finalize verification unavailable")
        return RecoveryAction.clear("nothing irreversible happened")

    if isinstance(slot, RecurringInputCollected):
        return RecoveryAction.clear("collected input is indistinguishable from idle balance")

    if isinstance(slot, RecurringStarted):
        return RecoveryAction.clear("nothing irreversible happened")

    raise TypeError(f"Unknown slot variant: {type(slot).__name__}")


Verifier = Callable[[str], Awaitable[VerificationOutcome]]


def client_verifier(client: LedgerClient) -> Verifier:
    """Adapt a ledger client's verify_finalized into a three-way verifier."""

    async def verify(reference: str) -> VerificationOutcome:
        try:
            result = await client.verify_finalized(reference)
        except VerificationUnavailable as exc:
            logger.warning(f"Verification of {reference[:16]}... unavailable: {exc}")
            return VerificationOutcome.UNKNOWN
        if result.verified:
            return VerificationOutcome.VERIFIED
        logger.info(f"Reference {reference[:16]}... not finalized: {result.error}")
        return VerificationOutcome.FAILED

    return verify


async def plan_recovery(slot: Optional[SlotState], verifier: Verifier) -> RecoveryAction:
    """Verify what the decision needs, then decide."""
    outcomes: Dict[str, VerificationOutcome] = {}
    for reference in references_to_verify(slot):
        outcomes[reference] = await verifier(reference)
        # Later references only matter when this one definitively failed
        if outcomes[reference] != VerificationOutcome.FAILED:
            break
    return decide_recovery(slot, outcomes)
