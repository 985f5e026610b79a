"""Background job bodies; each opens its own session."""

from __future__ import annotations

from callcore.db.session import Database
from callcore.domain.models import (
    DrainSummary,
    QualityGateSummary,
    StreakSummary,
    SweepSummary,
)
from callcore.logging import logger
from callcore.services.marketplace import CallMarketplace
from callcore.services.outbox import SideEffectOutbox
from callcore.services.quality import QualityGate
from callcore.services.seeds import load_rate_config
from callcore.services.streaks import StreakService
from callcore.services.sweeper import ZombieSweeper


class MarketJobs:
    def __init__(self, database: Database) -> None:
        self.database = database
        self.settings = database.settings

    async def run_quality_gate(self) -> QualityGateSummary:
        async with self.database.session() as session:
            return await QualityGate(session, self.settings).run()

    async def run_daily_streaks(self) -> StreakSummary:
        async with self.database.session() as session:
            rate_config = await load_rate_config(session)
            return await StreakService(session, self.settings).run(rate_config=rate_config)

    async def sweep_zombie_calls(self) -> SweepSummary:
        async with self.database.session() as session:
            return await ZombieSweeper(session, self.settings).run()

    async def drain_outbox(self) -> DrainSummary:
        async with self.database.session() as session:
            return await SideEffectOutbox(session, self.settings).drain()

    async def expire_unanswered_call(self, call_id: int) -> bool:
        async with self.database.session() as session:
            expired = await CallMarketplace(session, self.settings).expire_unanswered_call(call_id)
        if expired:
            logger.info("ring_timeout_fired", call_id=call_id)
        return expired


__all__ = ["MarketJobs"]
