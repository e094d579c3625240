"""Remote ledger access: the client contract and its Solana implementation."""

from .client import (
    ActionKind,
    BondingCurveState,
    LedgerClient,
    SubmitResult,
    VerificationResult,
)

__all__ = [
    "ActionKind",
    "BondingCurveState",
    "LedgerClient",
    "SubmitResult",
    "VerificationResult",
]
