"""
Work Item Handlers
==================

The two instantiations of the work item contract:

- StagingBatchHandler: claims queued staging batches for one
  (batch type, processor name) pair and runs the matching BatchProcessor.
- ImageVectorizationHandler: generates embedding vectors for product photos.

Both open one short-lived database session per fetch and one per item, so
every outcome is committed before the dispatcher moves on.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from market_manager.core.enums import BatchType, ProcessingStatus
from market_manager.db.models import ProductPhotoDB
from market_manager.db.repositories import StagingBatchRepository
from market_manager.processing import state
from market_manager.processing.base import BatchProcessor, WorkItem, WorkItemHandler
from market_manager.processing.embeddings import ImageEmbeddingGenerator
from market_manager.processing.errors import RECOVERABLE_ERRORS, RecoverableProcessingError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def handler_name(batch_type: BatchType, processor_name: str) -> str:
    """Build the handler name for a dispatch key."""
    return f"{batch_type.value}:{processor_name}"


class StagingBatchHandler(WorkItemHandler):
    """
    Handler for staging batches of one dispatch key.

    Only batches whose (batch_type, batch_processor_name) equal this
    handler's key are ever fetched.
    """

    def __init__(
        self,
        batch_type: BatchType,
        processor_name: str,
        processor: BatchProcessor,
        session_factory: SessionFactory,
        stale_after_seconds: float = 3600.0,
    ) -> None:
        self.batch_type = batch_type
        self.processor_name = processor_name
        self.processor = processor
        self.session_factory = session_factory
        self.stale_after_seconds = stale_after_seconds
        self.name = handler_name(batch_type, processor_name)

    async def fetch_next(self, max_items: int) -> list[WorkItem]:
        with self.session_factory() as session:
            repo = StagingBatchRepository(session)
            batches = repo.list_queued(self.batch_type, self.processor_name, max_items)
            items = [WorkItem(id=batch.id, payload=batch) for batch in batches]

        if items:
            logger.debug(f"{self.name}: fetched {len(items)} queued batch(es)")
        return items

    async def process(self, item: WorkItem) -> None:
        """
        Claim, process and finalize one batch.

        A recoverable error rolls back the processor's uncommitted work and
        records the batch as failed. Anything else propagates with the batch
        still in processing, where stale-claim recovery will find it.
        """
        with self.session_factory() as session:
            repo = StagingBatchRepository(session)

            if not repo.try_claim(item.id):
                session.rollback()
                logger.info(f"{self.name}: batch {item.id} was claimed elsewhere, skipping")
                return
            session.commit()

            batch = repo.get_by_id(item.id)
            if batch is None:
                logger.warning(f"{self.name}: batch {item.id} disappeared after claim, skipping")
                return
            logger.info(f"{self.name}: processing batch {batch.id}")

            try:
                await self.processor.process_batch(session, batch)
            except RECOVERABLE_ERRORS as e:
                session.rollback()
                batch = repo.get_by_id(item.id)
                state.fail(batch, f"{type(e).__name__}: {e}")
                session.commit()
                logger.warning(f"{self.name}: batch {item.id} failed: {e}")
                return

            state.complete(batch)
            session.commit()
            logger.info(f"{self.name}: batch {item.id} completed")

    async def recover(self) -> int:
        """Return processing batches claimed longer than the stale timeout to the queue."""
        cutoff = datetime.now(UTC) - timedelta(seconds=self.stale_after_seconds)
        with self.session_factory() as session:
            count = StagingBatchRepository(session).recover_stale(
                self.batch_type, self.processor_name, cutoff
            )
            session.commit()

        if count:
            logger.warning(f"{self.name}: re-queued {count} stale batch(es)")
        return count


class ImageVectorizationHandler(WorkItemHandler):
    """
    Handler that fills in embedding vectors for product photos.

    Photos without a vector are fetched oldest first, skipping those whose
    vectorization already failed.
    """

    name = "ImageVectorization"

    def __init__(
        self,
        session_factory: SessionFactory,
        generator: ImageEmbeddingGenerator,
        dimensions: int = 1024,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator
        self.dimensions = dimensions

    async def fetch_next(self, max_items: int) -> list[WorkItem]:
        stmt = (
            select(ProductPhotoDB)
            .where(ProductPhotoDB.vector_embedding_json.is_(None))
            .where(ProductPhotoDB.vectorization_status != ProcessingStatus.FAILED.value)
            .order_by(ProductPhotoDB.created_at, ProductPhotoDB.id)
            .limit(max_items)
        )
        with self.session_factory() as session:
            photos = session.execute(stmt).scalars().all()
            return [WorkItem(id=photo.id, payload=photo.url) for photo in photos]

    async def process(self, item: WorkItem) -> None:
        with self.session_factory() as session:
            photo = session.get(ProductPhotoDB, item.id)
            if photo is None or photo.vector_embedding_json is not None:
                logger.debug(f"Photo {item.id} no longer needs a vector, skipping")
                return

            try:
                vector = await self.generator.generate(photo.url)
                if len(vector) != self.dimensions:
                    raise RecoverableProcessingError(
                        f"Expected {self.dimensions} dimensions, got {len(vector)}"
                    )
            except RECOVERABLE_ERRORS as e:
                photo.vectorization_status = ProcessingStatus.FAILED.value
                photo.vectorization_error = str(e)
                session.commit()
                logger.warning(f"Vectorization failed for photo {item.id}: {e}")
                return

            photo.vector_embedding_json = json.dumps([float(v) for v in vector])
            photo.vectorization_status = ProcessingStatus.COMPLETED.value
            photo.vectorization_error = None
            photo.vectorized_at = datetime.now(UTC)
            session.commit()
            logger.info(f"Vectorized photo {item.id}")
