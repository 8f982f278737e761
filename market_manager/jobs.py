"""
Background Jobs Module
======================

Wires the dispatcher to its handlers and exposes it as arq tasks. A cron
schedule runs one dispatcher cycle every few minutes; ``enqueue_cycle``
triggers one on demand. Uses Redis as the job queue backend.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from arq import create_pool, cron
from arq.connections import RedisSettings

from market_manager.config import ProcessingConfig, get_default_config
from market_manager.core.enums import BatchType
from market_manager.db.engine import get_session_factory
from market_manager.processing.embeddings import get_embedding_generator
from market_manager.processing.engine import CycleResult, Dispatcher
from market_manager.processing.handlers import ImageVectorizationHandler, SessionFactory
from market_manager.processing.router import BatchRouter
from market_manager.processing.sales_csv import PROCESSOR_NAME as SALES_CSV_PROCESSOR
from market_manager.processing.sales_csv import SalesReportCsvProcessor
from market_manager.scrapers import SCRAPER_REGISTRY, ScraperBatchProcessor

logger = logging.getLogger(__name__)


def build_router(config: ProcessingConfig, session_factory: SessionFactory) -> BatchRouter:
    """Register the sales report parser and every known scraper."""
    router = BatchRouter(session_factory, config.global_config.stale_after_seconds)
    router.register(BatchType.SALES_REPORT, SALES_CSV_PROCESSOR, SalesReportCsvProcessor())
    for name, scraper_class in SCRAPER_REGISTRY.items():
        router.register(
            BatchType.WEB_SCRAPE,
            name,
            ScraperBatchProcessor(scraper_class, config.scraper, domain=scraper_class.domain),
        )
    return router


def build_dispatcher(
    config: ProcessingConfig | None = None,
    session_factory: SessionFactory | None = None,
) -> Dispatcher:
    """
    Build a dispatcher with all staging batch handlers, plus image
    vectorization when an embedding service is configured.

    Args:
        config: Processing configuration; defaults to get_default_config()
        session_factory: Session factory; defaults to the global one
    """
    config = config or get_default_config()
    session_factory = session_factory or get_session_factory()

    dispatcher = Dispatcher(config)
    for handler in build_router(config, session_factory).handlers():
        dispatcher.register(handler)

    if not config.embeddings.is_configured:
        logger.info("Embedding service not configured, image vectorization disabled")
        return dispatcher

    dispatcher.register(
        ImageVectorizationHandler(
            session_factory,
            get_embedding_generator(config.embeddings),
            dimensions=config.embeddings.dimensions,
        )
    )
    return dispatcher


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from environment."""
    return RedisSettings(
        host=os.environ.get("REDIS_HOST", "localhost"),
        port=int(os.environ.get("REDIS_PORT", "6379")),
        database=int(os.environ.get("REDIS_DB", "0")),
    )


async def startup(ctx: dict[str, Any]) -> None:
    """Build the dispatcher once per worker and release abandoned claims."""
    dispatcher = build_dispatcher()
    await dispatcher.recover()
    ctx["dispatcher"] = dispatcher
    logger.info("Processing worker started")


async def process_cycle(ctx: dict[str, Any]) -> dict[str, Any]:
    """
    Run one dispatcher cycle.

    Args:
        ctx: arq context; holds the dispatcher built at startup

    Returns:
        CycleResult as dictionary
    """
    dispatcher: Dispatcher | None = ctx.get("dispatcher")
    if dispatcher is None:
        dispatcher = build_dispatcher()
        ctx["dispatcher"] = dispatcher

    result: CycleResult = await dispatcher.process_cycle()
    return result.to_dict()


async def enqueue_cycle() -> str:
    """
    Enqueue a dispatcher cycle for the worker.

    Returns:
        Job ID
    """
    redis = await create_pool(get_redis_settings())
    job = await redis.enqueue_job("process_cycle")
    await redis.close()
    if job is None:
        raise RuntimeError("A processing cycle is already queued")
    return job.job_id


class WorkerSettings:
    """arq worker settings."""

    functions = [process_cycle]
    cron_jobs = [cron(process_cycle, minute=set(range(0, 60, 5)), unique=True)]
    on_startup = startup
    redis_settings = get_redis_settings()
    max_jobs = 1
    job_timeout = 3600  # 1 hour
    keep_result = 86400  # 24 hours
