"""Repository classes for staging batch and scraper session operations."""

from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from market_manager.core.enums import BatchType, ProcessingStatus
from market_manager.db.models_staging import (
    ScraperSessionDB,
    StagingBatchDB,
    StagingPurchaseOrderDB,
    StagingPurchaseOrderItemDB,
    StagingSaleDB,
    StagingSaleItemDB,
)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class StagingBatchRepository:
    """
    Repository for staging batches and the staging records they own.

    The batch is the aggregate root: purchase orders and sales are looked up
    through it by batch id.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, batch: StagingBatchDB) -> StagingBatchDB:
        """Add a new batch and flush it to obtain defaults."""
        self.session.add(batch)
        self.session.flush()
        return batch

    def get_by_id(self, batch_id: str) -> StagingBatchDB | None:
        """Get a batch by ID."""
        stmt = select(StagingBatchDB).where(StagingBatchDB.id == str(batch_id))
        return self.session.execute(stmt).scalar_one_or_none()

    def find_active_by_hash(self, content_hash: str) -> StagingBatchDB | None:
        """Find the batch holding a content hash in any non-failed status."""
        stmt = (
            select(StagingBatchDB)
            .where(StagingBatchDB.content_hash == content_hash)
            .where(StagingBatchDB.status != ProcessingStatus.FAILED.value)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_queued(
        self,
        batch_type: BatchType,
        processor_name: str,
        limit: int,
    ) -> list[StagingBatchDB]:
        """
        List queued batches for one dispatch key, oldest first.

        Args:
            batch_type: Batch kind of the dispatch key
            processor_name: Processor name of the dispatch key
            limit: Maximum number of batches

        Returns:
            Queued batches ordered by start time ascending
        """
        stmt = (
            select(StagingBatchDB)
            .where(StagingBatchDB.status == ProcessingStatus.QUEUED.value)
            .where(StagingBatchDB.batch_type == batch_type.value)
            .where(StagingBatchDB.batch_processor_name == processor_name)
            .order_by(StagingBatchDB.started_at, StagingBatchDB.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_batches(
        self,
        status: ProcessingStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[StagingBatchDB]:
        """List batches, newest first, optionally filtered by status."""
        stmt = select(StagingBatchDB)
        if status is not None:
            stmt = stmt.where(StagingBatchDB.status == status.value)
        stmt = stmt.order_by(StagingBatchDB.started_at.desc()).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars().all())

    def list_completed(self) -> list[StagingBatchDB]:
        """List completed batches, oldest first."""
        stmt = (
            select(StagingBatchDB)
            .where(StagingBatchDB.status == ProcessingStatus.COMPLETED.value)
            .order_by(StagingBatchDB.started_at)
        )
        return list(self.session.execute(stmt).scalars().all())

    def count_by_status(self) -> dict[str, int]:
        """Count batches grouped by status."""
        stmt = select(StagingBatchDB.status, func.count()).group_by(StagingBatchDB.status)
        return {status: count for status, count in self.session.execute(stmt).all()}

    def try_claim(self, batch_id: str, now: datetime | None = None) -> bool:
        """
        Atomically move a batch from queued to processing.

        The update is guarded by the stored status, so when two dispatchers
        race for the same batch exactly one of them sees a row affected.

        Returns:
            True if this caller now owns the batch
        """
        now = now or _utc_now()
        stmt = (
            update(StagingBatchDB)
            .where(StagingBatchDB.id == str(batch_id))
            .where(StagingBatchDB.status == ProcessingStatus.QUEUED.value)
            .values(
                status=ProcessingStatus.PROCESSING.value,
                claimed_at=now,
                completed_at=None,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def recover_stale(
        self,
        batch_type: BatchType,
        processor_name: str,
        claimed_before: datetime,
    ) -> int:
        """
        Release processing claims older than a cutoff back to the queue.

        Only batches still in processing are touched, so a dispatcher that
        finishes concurrently keeps its terminal status.

        Returns:
            Number of batches returned to the queue
        """
        stmt = (
            update(StagingBatchDB)
            .where(StagingBatchDB.status == ProcessingStatus.PROCESSING.value)
            .where(StagingBatchDB.batch_type == batch_type.value)
            .where(StagingBatchDB.batch_processor_name == processor_name)
            .where(StagingBatchDB.claimed_at < claimed_before)
            .values(
                status=ProcessingStatus.QUEUED.value,
                claimed_at=None,
                completed_at=None,
                error_message=None,
                updated_at=_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount or 0

    # Staging children

    def purchase_orders(self, batch_id: str) -> list[StagingPurchaseOrderDB]:
        """Get the staging purchase orders of a batch."""
        stmt = (
            select(StagingPurchaseOrderDB)
            .where(StagingPurchaseOrderDB.staging_batch_id == str(batch_id))
            .order_by(StagingPurchaseOrderDB.created_at, StagingPurchaseOrderDB.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def purchase_order_items(self, staging_order_id: str) -> list[StagingPurchaseOrderItemDB]:
        """Get the line items of a staging purchase order."""
        stmt = (
            select(StagingPurchaseOrderItemDB)
            .where(StagingPurchaseOrderItemDB.staging_purchase_order_id == str(staging_order_id))
            .order_by(StagingPurchaseOrderItemDB.created_at, StagingPurchaseOrderItemDB.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def sales(self, batch_id: str) -> list[StagingSaleDB]:
        """Get the staging sales of a batch."""
        stmt = (
            select(StagingSaleDB)
            .where(StagingSaleDB.staging_batch_id == str(batch_id))
            .order_by(StagingSaleDB.created_at, StagingSaleDB.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def sale_items(self, staging_sale_id: str) -> list[StagingSaleItemDB]:
        """Get the line items of a staging sale."""
        stmt = (
            select(StagingSaleItemDB)
            .where(StagingSaleItemDB.staging_sale_id == str(staging_sale_id))
            .order_by(StagingSaleItemDB.created_at, StagingSaleItemDB.id)
        )
        return list(self.session.execute(stmt).scalars().all())


class ScraperSessionRepository:
    """Repository for scraper sessions and their persisted cookie state."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, scraper_session: ScraperSessionDB) -> ScraperSessionDB:
        """Add a new scraper session."""
        self.session.add(scraper_session)
        self.session.flush()
        return scraper_session

    def get_by_id(self, session_id: str) -> ScraperSessionDB | None:
        """Get a scraper session by ID."""
        stmt = select(ScraperSessionDB).where(ScraperSessionDB.id == str(session_id))
        return self.session.execute(stmt).scalar_one_or_none()

    def latest_cookie_session(self, domain: str, now: datetime) -> ScraperSessionDB | None:
        """
        Find the session holding the most recent non-expired cookies for a domain.

        Args:
            domain: Cookie domain (e.g. "shein.com")
            now: Reference time for expiry

        Returns:
            The session, or None if no usable cookies are stored
        """
        stmt = (
            select(ScraperSessionDB)
            .where(ScraperSessionDB.cookie_domain == domain)
            .where(ScraperSessionDB.cookie_file_json.is_not(None))
            .where(
                (ScraperSessionDB.cookie_expires_at.is_(None))
                | (ScraperSessionDB.cookie_expires_at > now)
            )
            .order_by(ScraperSessionDB.cookie_captured_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_for_batch(self, batch_id: str) -> list[ScraperSessionDB]:
        """List the scraper sessions that worked on a batch."""
        stmt = (
            select(ScraperSessionDB)
            .where(ScraperSessionDB.staging_batch_id == str(batch_id))
            .order_by(ScraperSessionDB.started_at)
        )
        return list(self.session.execute(stmt).scalars().all())
