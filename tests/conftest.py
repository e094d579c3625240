"""
INFERNO Test Configuration

Shared fixtures: a temporary ledger, test settings, an in-memory remote
ledger client and a resolver with scripted quote sources.
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from inferno.config import Settings
from inferno.ledger.store import OperationLedger
from inferno.pricing.resolver import QuoteResolver
from tests.fakes import (
    MINT,
    SOL,
    FakeClock,
    FakeLedgerClient,
    ScriptedBaseSource,
    ScriptedSource,
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        token_address=MINT,
        wallet_private_key="unused",
        database_path=str(tmp_path / "inferno.db"),
        rewards_claim_threshold_lamports=int(0.02 * SOL),
        gas_buffer_lamports=int(0.005 * SOL),
        finalize_margin_bps=100,
        milestone_cooldown_seconds=0,
        settle_delay_seconds=0,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def ledger(settings):
    return OperationLedger(settings.database_path)


@pytest.fixture
def client():
    return FakeLedgerClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def price_source():
    # $0.00012 x 1B supply = $120K market cap
    return ScriptedSource("primary", price_usd=0.00012)


@pytest.fixture
def resolver(price_source, clock):
    return QuoteResolver(
        sources=[price_source],
        base_sources=[ScriptedBaseSource("base", price=150.0)],
        ttl_seconds=30,
        grace_seconds=300,
        timeout_seconds=1,
        clock=clock,
    )
