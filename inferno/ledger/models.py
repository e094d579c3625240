"""
Ledger models - Types for the operation ledger.

The in-flight slot is a tagged variant: one dataclass per (operation
class, stage) pair, each carrying exactly the references and quantities
that exist once that stage is reached. A slot at OUTPUT_ACQUIRED without
an acquire reference cannot be constructed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class OperationClass(str, Enum):
    """The two independent burn policies."""
    THRESHOLD_ACTION = "milestone"
    RECURRING_ACTION = "buyback"


class Stage(str, Enum):
    """Checkpoint stages of an in-flight operation."""
    STARTED = "started"
    INPUT_COLLECTED = "input_collected"
    OUTPUT_ACQUIRED = "output_acquired"
    ACTION_FINALIZED = "action_finalized"


@dataclass(frozen=True)
class ValuationSnapshot:
    """Pricing captured at the moment an action finalized."""
    asset_value_in_base: float = 0.0
    base_value_in_quote: float = 0.0
    derived_valuation_in_quote: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "asset_value_in_base": self.asset_value_in_base,
            "base_value_in_quote": self.base_value_in_quote,
            "derived_valuation_in_quote": self.derived_valuation_in_quote,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValuationSnapshot":
        data = data or {}
        return cls(
            asset_value_in_base=float(data.get("asset_value_in_base") or 0.0),
            base_value_in_quote=float(data.get("base_value_in_quote") or 0.0),
            derived_valuation_in_quote=float(data.get("derived_valuation_in_quote") or 0.0),
        )


@dataclass
class ActionRecord:
    """One completed burn. Written once, never mutated."""
    operation_class: OperationClass
    quantity: int
    external_reference: str
    valuation: ValuationSnapshot = field(default_factory=ValuationSnapshot)
    threshold_target: Optional[float] = None
    input_spent: Optional[int] = None
    output_acquired: Optional[int] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError("quantity must be non-negative")
        if not self.external_reference:
            raise ValueError("external_reference is required")
        if self.operation_class == OperationClass.THRESHOLD_ACTION:
            if self.threshold_target is None:
                raise ValueError("milestone records require a threshold_target")
            if self.input_spent is not None or self.output_acquired is not None:
                raise ValueError("milestone records carry no input/output quantities")
        elif self.threshold_target is not None:
            raise ValueError("buyback records carry no threshold_target")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_class": self.operation_class.value,
            "quantity": self.quantity,
            "external_reference": self.external_reference,
            "valuation": self.valuation.to_dict(),
            "threshold_target": self.threshold_target,
            "input_spent": self.input_spent,
            "output_acquired": self.output_acquired,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ThresholdDefinition:
    """A market-cap level that authorizes exactly one burn."""
    trigger_value: float
    action_quantity: int
    share_of_total: float
    completed: bool = False
    completed_at: Optional[datetime] = None
    external_reference: Optional[str] = None

    def is_eligible(self, valuation: float) -> bool:
        return valuation >= self.trigger_value

    def is_due(self, valuation: float) -> bool:
        return not self.completed and self.is_eligible(valuation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_value": self.trigger_value,
            "action_quantity": self.action_quantity,
            "share_of_total": self.share_of_total,
            "completed": self.completed,
            "completed_at": _iso(self.completed_at),
            "external_reference": self.external_reference,
        }


@dataclass
class MetricsSnapshot:
    total_burned: int
    circulating_supply: int
    milestone_burned: int
    buyback_burned: int
    market_cap: float
    token_price: float
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_burned": self.total_burned,
            "circulating_supply": self.circulating_supply,
            "milestone_burned": self.milestone_burned,
            "buyback_burned": self.buyback_burned,
            "market_cap": self.market_cap,
            "token_price": self.token_price,
            "created_at": _iso(self.created_at),
        }


# =============================================================================
# In-flight slot variants
# =============================================================================

_SLOT_TYPES: Dict[Tuple[OperationClass, Stage], Type["SlotState"]] = {}


@dataclass(frozen=True)
class SlotState:
    """Base of every slot variant. Subclasses register themselves by tag."""

    operation_class: ClassVar[OperationClass]
    stage: ClassVar[Stage]

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if "stage" in cls.__dict__:
            _SLOT_TYPES[(cls.operation_class, cls.stage)] = cls

    def with_error(self, error: Optional[str]) -> "SlotState":
        return replace(self, error=error)

    def payload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in ("started_at", "error"):
                continue
            value = getattr(self, f.name)
            if isinstance(value, ValuationSnapshot):
                value = value.to_dict()
            data[f.name] = value
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_class": self.operation_class.value,
            "stage": self.stage.value,
            "payload": self.payload(),
            "started_at": _iso(getattr(self, "started_at", None)),
            "error": getattr(self, "error", None),
        }

    @staticmethod
    def from_parts(
        operation_class: OperationClass,
        stage: Stage,
        payload: Dict[str, Any],
        started_at: Optional[str],
        error: Optional[str],
    ) -> "SlotState":
        cls = _SLOT_TYPES.get((OperationClass(operation_class), Stage(stage)))
        if cls is None:
            raise ValueError(f"No slot variant for {operation_class}/{stage}")
        kwargs = {}
        for f in fields(cls):
            if f.name in payload:
                value = payload[f.name]
                if f.name == "valuation" and value is not None:
                    value = ValuationSnapshot.from_dict(value)
                kwargs[f.name] = value
        return cls(**kwargs, started_at=_parse(started_at) or utc_now(), error=error)


@dataclass(frozen=True)
class RecurringStarted(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.RECURRING_ACTION
    stage: ClassVar[Stage] = Stage.STARTED

    collectible: int
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class RecurringInputCollected(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.RECURRING_ACTION
    stage: ClassVar[Stage] = Stage.INPUT_COLLECTED

    collect_reference: str
    balance_before: int
    input_collected: Optional[int] = None
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class RecurringOutputAcquired(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.RECURRING_ACTION
    stage: ClassVar[Stage] = Stage.OUTPUT_ACQUIRED

    collect_reference: str
    acquire_reference: str
    input_spent: int
    output_acquired: int
    # Finalize signature and quantity captured before its send returned
    pending_reference: Optional[str] = None
    pending_quantity: Optional[int] = None
    valuation: Optional[ValuationSnapshot] = None
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class RecurringFinalized(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.RECURRING_ACTION
    stage: ClassVar[Stage] = Stage.ACTION_FINALIZED

    collect_reference: str
    acquire_reference: str
    input_spent: int
    output_acquired: int
    finalize_reference: str
    finalize_quantity: int
    valuation: Optional[ValuationSnapshot] = None
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class ThresholdStarted(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.THRESHOLD_ACTION
    stage: ClassVar[Stage] = Stage.STARTED

    trigger_value: float
    action_quantity: int
    pending_reference: Optional[str] = None
    valuation: Optional[ValuationSnapshot] = None
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class ThresholdFinalized(SlotState):
    operation_class: ClassVar[OperationClass] = OperationClass.THRESHOLD_ACTION
    stage: ClassVar[Stage] = Stage.ACTION_FINALIZED

    trigger_value: float
    action_quantity: int
    finalize_reference: str
    valuation: Optional[ValuationSnapshot] = None
    started_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
