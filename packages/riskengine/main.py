"""Worker entry point: runs the background analytics jobs against PostgreSQL."""

from __future__ import annotations

import asyncio

import structlog

from riskengine.config import get_settings
from riskengine.data.scheduler import start_background_jobs
from riskengine.data.store import DatabaseHoldingsStore, DatabasePriceStore
from riskengine.db.engine import close_engine, init_db
from riskengine.logconfig import configure_logging
from riskengine.services.analytics import AnalyticsService

logger = structlog.get_logger()


def build_service(engine) -> AnalyticsService:
    return AnalyticsService(
        prices=DatabasePriceStore(engine),
        holdings=DatabaseHoldingsStore(engine),
        engine=engine,
        settings=get_settings(),
    )


async def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    engine = await init_db(settings.postgres_url)
    service = build_service(engine)
    tasks = start_background_jobs(service)
    logger.info("riskengine_worker_started", jobs=len(tasks))

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await service.beta_cache.clear()
        await close_engine()
        logger.info("riskengine_worker_stopped")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
