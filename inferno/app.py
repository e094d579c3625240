"""
Application wiring: builds the ledger, chain client, resolver and both
orchestrators from Settings, and runs them under the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Dict, List, Optional

from inferno.chain.client import LedgerClient
from inferno.config import Settings
from inferno.ledger.models import OperationClass
from inferno.ledger.store import OperationLedger
from inferno.operations.base import OperationOrchestrator
from inferno.operations.buyback import BuybackOrchestrator
from inferno.operations.milestone import MilestoneOrchestrator
from inferno.operations.status import StatusService
from inferno.pricing import HttpJsonClient, QuoteResolver, build_resolver
from inferno.scheduler import IntervalScheduler

logger = logging.getLogger(__name__)


class InfernoApp:
    def __init__(
        self,
        settings: Settings,
        client: LedgerClient,
        ledger: Optional[OperationLedger] = None,
        resolver: Optional[QuoteResolver] = None,
    ):
        self.settings = settings
        self.client = client
        self.ledger = ledger or OperationLedger(settings.database_path)
        self.http = HttpJsonClient(timeout_seconds=settings.quote_timeout_seconds)
        self.resolver = resolver or build_resolver(settings, client, self.http)

        # Shared so a milestone burn never interleaves with a buyback burn
        finalize_lock = asyncio.Lock()
        self.buyback = BuybackOrchestrator(self.ledger, client, self.resolver, settings, finalize_lock)
        self.milestone = MilestoneOrchestrator(self.ledger, client, self.resolver, settings, finalize_lock)
        self.status = StatusService(self.ledger, self.resolver, settings, client.token_mint)
        self.scheduler = IntervalScheduler()

    @classmethod
    def from_settings(cls, settings: Settings) -> "InfernoApp":
        from inferno.chain.solana_client import SolanaLedgerClient

        return cls(settings, SolanaLedgerClient.from_settings(settings))

    @property
    def orchestrators(self) -> Dict[OperationClass, OperationOrchestrator]:
        return {
            OperationClass.RECURRING_ACTION: self.buyback,
            OperationClass.THRESHOLD_ACTION: self.milestone,
        }

    def init_db(self) -> int:
        return self.milestone.seed()

    async def recover_all(self) -> Dict[str, dict]:
        """Startup recovery for every operation class."""
        results = {}
        for operation_class, orchestrator in self.orchestrators.items():
            action = await orchestrator.recover()
            results[operation_class.value] = action.to_dict()
        return results

    async def run(self, only: Optional[List[str]] = None) -> None:
        """Seed, recover, then tick on schedule until SIGINT/SIGTERM."""
        enabled = set(only or [c.value for c in OperationClass])
        self.init_db()
        await self.recover_all()

        if OperationClass.RECURRING_ACTION.value in enabled:
            self.scheduler.schedule_every(
                self.settings.buyback_interval_minutes * 60, self.buyback.tick, name="buyback"
            )
        if OperationClass.THRESHOLD_ACTION.value in enabled:
            self.scheduler.schedule_every(
                self.settings.milestone_check_interval_minutes * 60, self.milestone.tick, name="milestone"
            )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        self.scheduler.start()
        logger.info(
            f"INFERNO running: buyback every {self.settings.buyback_interval_minutes}m, "
            f"milestones every {self.settings.milestone_check_interval_minutes}m"
        )
        try:
            await stop.wait()
        finally:
            logger.info("Shutting down")
            await self.scheduler.stop()
            await self.close()

    async def close(self) -> None:
        await self.http.close()
        await self.client.close()
