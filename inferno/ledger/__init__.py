"""Durable operation ledger: action records, thresholds, in-flight slots."""

from .models import (
    ActionRecord,
    MetricsSnapshot,
    OperationClass,
    RecurringFinalized,
    RecurringInputCollected,
    RecurringOutputAcquired,
    RecurringStarted,
    SlotState,
    Stage,
    ThresholdDefinition,
    ThresholdFinalized,
    ThresholdStarted,
    ValuationSnapshot,
)
from .store import OperationLedger

__all__ = [
    "ActionRecord",
    "MetricsSnapshot",
    "OperationClass",
    "OperationLedger",
    "RecurringFinalized",
    "RecurringInputCollected",
    "RecurringOutputAcquired",
    "RecurringStarted",
    "SlotState",
    "Stage",
    "ThresholdDefinition",
    "ThresholdFinalized",
    "ThresholdStarted",
    "ValuationSnapshot",
]
