"""
In-memory stand-ins for the remote ledger and the quote sources.
"""

import asyncio
from itertools import count
from typing import Dict, List, Optional, Set

from inferno.chain.client import (
    ActionKind,
    BondingCurveState,
    LedgerClient,
    SubmitResult,
    VerificationResult,
    call_hook,
)
from inferno.errors import RemoteRejected, VerificationUnavailable
from inferno.pricing.models import Valuation
from inferno.pricing.sources import BasePriceSource, TokenQuoteSource

OPERATOR = "Operator1111111111111111111111111111111111"
FEE_VAULT = "FeeVault1111111111111111111111111111111111"
MINT = "Mint111111111111111111111111111111111111111"

SOL = 1_000_000_000


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-step."""


class FakeLedgerClient(LedgerClient):
    """
    In-memory chain.

    Collect moves the fee vault balance to the operator. Acquire spends
    SOL and credits `acquire_output` tokens (whatever was requested).
    Finalize burns tokens from the operator.
    """

    def __init__(self):
        self.balances: Dict[tuple, int] = {
            (OPERATOR, None): 1 * SOL,
            (FEE_VAULT, None): 0,
            (OPERATOR, MINT): 0,
        }
        self.acquire_output: int = 1_000_000_000
        self.landed: Dict[str, ActionKind] = {}
        self.burned: List[int] = []
        self.submissions: List[tuple] = []
        self.verifications: List[str] = []
        self.unverifiable: Set[str] = set()
        self.fail_on: Dict[ActionKind, BaseException] = {}
        self.crash_after_land: Dict[ActionKind, BaseException] = {}
        self.curve: Optional[BondingCurveState] = None
        self._ids = count(1)

    @property
    def operator_address(self) -> str:
        return OPERATOR

    @property
    def fee_vault_address(self) -> str:
        return FEE_VAULT

    @property
    def token_mint(self) -> str:
        return MINT

    def set_balance(self, account: str, amount: int, asset_id: Optional[str] = None) -> None:
        self.balances[(account, asset_id)] = amount

    async def get_balance(self, account: str, asset_id: Optional[str] = None) -> int:
        return self.balances.get((account, asset_id), 0)

    async def submit_action(self, kind, params, on_reference=None) -> SubmitResult:
        kind = ActionKind(kind)
        self.submissions.append((kind, dict(params)))
        if kind in self.fail_on:
            raise self.fail_on.pop(kind)

        reference = f"{kind.value}-{next(self._ids)}"
        await call_hook(on_reference, reference)

        reported = None
        if kind == ActionKind.COLLECT_INPUT:
            amount = self.balances[(FEE_VAULT, None)]
            self.balances[(FEE_VAULT, None)] = 0
            self.balances[(OPERATOR, None)] += amount
        elif kind == ActionKind.ACQUIRE_OUTPUT:
            if params["amount"] > self.balances[(OPERATOR, None)]:
                raise RemoteRejected("insufficient SOL", reference=reference)
            self.balances[(OPERATOR, None)] -= params["amount"]
            self.balances[(OPERATOR, MINT)] += self.acquire_output
            reported = self.acquire_output
        elif kind == ActionKind.FINALIZE:
            quantity = params["quantity"]
            if quantity > self.balances[(OPERATOR, MINT)]:
                raise RemoteRejected("insufficient tokens", reference=reference)
            self.balances[(OPERATOR, MINT)] -= quantity
            self.burned.append(quantity)
            reported = quantity

        self.landed[reference] = kind
        if kind in self.crash_after_land:
            raise self.crash_after_land.pop(kind)
        return SubmitResult(reference=reference, reported_quantity=reported)

    async def verify_finalized(self, reference: str) -> VerificationResult:
        self.verifications.append(reference)
        if reference in self.unverifiable:
            raise VerificationUnavailable("rpc down", reference)
        if reference in self.landed:
            return VerificationResult(verified=True, slot=100)
        return VerificationResult(verified=False, error="not_found")

    async def is_listed(self, asset_id: str) -> bool:
        return self.curve is None or self.curve.complete

    async def get_bonding_curve(self, asset_id: str) -> Optional[BondingCurveState]:
        return self.curve


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSource(TokenQuoteSource):
    """Returns `price_usd` (or raises `error`) and counts calls."""

    def __init__(self, name: str, price_usd: Optional[float] = None, error: Optional[Exception] = None,
                 delay: float = 0.0, total_supply: int = 1_000_000_000):
        self.name = name
        self.price_usd = price_usd
        self.error = error
        self.delay = delay
        self.total_supply = total_supply
        self.calls = 0

    async def fetch(self, asset_id: str, base_price: float) -> Valuation:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Valuation(
            native_unit_value=self.price_usd / base_price,
            quote_unit_value=self.price_usd,
            total_valuation=self.price_usd * self.total_supply,
            base_unit_value=base_price,
            source=self.name,
            is_post_listing=True,
        )


class ScriptedBaseSource(BasePriceSource):
    def __init__(self, name: str, price: Optional[float] = None, error: Optional[Exception] = None):
        self.name = name
        self.price = price
        self.error = error
        self.calls = 0

    async def fetch(self) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price


async def no_sleep(seconds: float) -> None:
    return None
