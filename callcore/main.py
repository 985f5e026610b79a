"""Worker entrypoint: scheduled quality, streak, sweep and outbox jobs."""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import OperationalError

from callcore.config import get_settings
from callcore.db.session import Database
from callcore.jobs.scheduler import MarketScheduler
from callcore.jobs.tasks import MarketJobs
from callcore.logging import configure_logging, logger
from callcore.services.seeds import ensure_rate_config
from callcore.utils.retry import retry_async


async def prepare_database(database: Database) -> None:
    if database.settings.database.create_schema:
        await database.create_schema()
    async with database.session() as seed_session:
        await ensure_rate_config(seed_session)


async def main(stop_event: asyncio.Event | None = None) -> None:
    configure_logging()
    settings = get_settings()
    database = Database(settings=settings)

    # The database may still be starting when the worker container comes up.
    await retry_async(
        lambda: prepare_database(database),
        max_attempts=5,
        base_delay=2.0,
        retry_on=(OperationalError, OSError),
        logger=logger,
        operation_name="prepare_database",
    )

    scheduler = MarketScheduler(MarketJobs(database), settings)
    scheduler.start()
    logger.info("worker_started", environment=settings.environment)
    try:
        await (stop_event or asyncio.Event()).wait()
    finally:
        scheduler.stop()
        await database.dispose()
        logger.info("worker_stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
