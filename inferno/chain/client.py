"""
Remote ledger client contract.

The orchestrators only talk to the chain through this interface, so the
whole pipeline can be driven against an in-memory fake in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union


class ActionKind(str, Enum):
    COLLECT_INPUT = "collect_input"
    ACQUIRE_OUTPUT = "acquire_output"
    FINALIZE = "finalize"


@dataclass
class SubmitResult:
    """A confirmed action: its reference and the quantity the chain reported."""
    reference: str
    reported_quantity: Optional[int] = None


@dataclass
class VerificationResult:
    verified: bool
    slot: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BondingCurveState:
    """Decoded pump.fun bonding curve account."""
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool

    def price_in_sol(self, token_decimals: int = 6) -> float:
        """Spot price of one whole token in SOL from the virtual reserves."""
        if self.virtual_token_reserves <= 0:
            return 0.0
        sol = self.virtual_sol_reserves / 1_000_000_000
        tokens = self.virtual_token_reserves / (10 ** token_decimals)
        return sol / tokens


# Called with the action's reference as soon as it is known, before the
# remote call returns.
ReferenceHook = Callable[[str], Union[None, Awaitable[None]]]


class LedgerClient(ABC):
    """Submit actions, verify references, read balances."""

    @property
    @abstractmethod
    def operator_address(self) -> str:
        """Operating wallet holding SOL and tokens."""

    @property
    @abstractmethod
    def fee_vault_address(self) -> str:
        """Account the collectible input accrues in."""

    @property
    @abstractmethod
    def token_mint(self) -> str:
        """The asset being burned."""

    @abstractmethod
    async def submit_action(
        self,
        kind: ActionKind,
        params: Dict[str, Any],
        on_reference: Optional[ReferenceHook] = None,
    ) -> SubmitResult:
        """
        Submit one action and wait for confirmation.

        Raises:
            RemoteTimeout: confirmation did not arrive in time. The action
                may still finalize; `reference` is set when it is known.
            RemoteRejected: the chain rejected the action.
        """

    @abstractmethod
    async def verify_finalized(self, reference: str) -> VerificationResult:
        """
        Ask whether a reference finalized successfully.

        Raises:
            VerificationUnavailable: no verdict could be reached.
        """

    @abstractmethod
    async def get_balance(self, account: str, asset_id: Optional[str] = None) -> int:
        """Native balance, or token balance of `asset_id` held by `account`."""

    @abstractmethod
    async def is_listed(self, asset_id: str) -> bool:
        """True once the asset has left its bonding curve."""

    @abstractmethod
    async def get_bonding_curve(self, asset_id: str) -> Optional[BondingCurveState]:
        """Bonding curve state, or None if there is none."""

    async def close(self) -> None:
        pass


async def call_hook(hook: Optional[ReferenceHook], reference: str) -> None:
    if hook is None:
        return
    result = hook(reference)
    if result is not None and hasattr(result, "__await__"):
        await result
