"""Operation orchestrators, crash recovery and status views."""

from .base import OperationOrchestrator, TickResult, TickStatus
from .buyback import BuybackOrchestrator, apply_margin
from .milestone import MilestoneOrchestrator, build_threshold_definitions
from .recovery import (
    RecoveryAction,
    RecoveryKind,
    VerificationOutcome,
    decide_recovery,
    plan_recovery,
)
from .status import StatusService

__all__ = [
    "BuybackOrchestrator",
    "MilestoneOrchestrator",
    "OperationOrchestrator",
    "RecoveryAction",
    "RecoveryKind",
    "StatusService",
    "TickResult",
    "TickStatus",
    "VerificationOutcome",
    "apply_margin",
    "build_threshold_definitions",
    "decide_recovery",
    "plan_recovery",
]
