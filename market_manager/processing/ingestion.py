"""
Batch Ingestion
===============

Creates staging batches from raw payloads behind the dedup gate, and the
operator actions that move a batch back into the queue.
"""

from __future__ import annotations

import hashlib
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_manager.core.enums import BatchType, ProcessingStatus
from market_manager.db.models_staging import StagingBatchDB
from market_manager.db.repositories import StagingBatchRepository
from market_manager.processing import state
from market_manager.processing.errors import DuplicateBatchError

logger = logging.getLogger(__name__)


def compute_content_hash(payload: bytes | str) -> str:
    """
    Compute the SHA-256 hash of a source payload.

    Args:
        payload: Raw bytes, or text encoded as UTF-8

    Returns:
        Hex-encoded SHA-256 hash
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class IngestionService:
    """Service for creating and re-queueing staging batches."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.batches = StagingBatchRepository(session)

    def check_duplicate(self, content_hash: str, exclude_batch_id: str | None = None) -> None:
        """
        Dedup gate: reject a hash already held by an active batch.

        Raises:
            DuplicateBatchError: If a non-failed batch holds the hash
        """
        existing = self.batches.find_active_by_hash(content_hash)
        if existing is not None and existing.id != exclude_batch_id:
            raise DuplicateBatchError(content_hash, existing.id)

    def ingest(
        self,
        payload: bytes | str,
        batch_type: BatchType,
        processor_name: str,
        supplier_id: str | None = None,
        notes: str | None = None,
        enqueue: bool = False,
        content_hash: str | None = None,
    ) -> StagingBatchDB:
        """
        Create a staging batch for a source payload.

        Args:
            payload: Raw source payload, stored as the batch's file contents
            batch_type: Batch kind
            processor_name: Processor that will handle the batch
            supplier_id: Optional owning supplier
            notes: Optional free-text notes
            enqueue: Create the batch already queued instead of pending
            content_hash: Precomputed hash; computed from the payload if omitted

        Returns:
            The created batch

        Raises:
            DuplicateBatchError: If an active batch already holds the content hash
        """
        content_hash = content_hash or compute_content_hash(payload)
        self.check_duplicate(content_hash)

        if isinstance(payload, bytes):
            file_contents = payload.decode("utf-8", errors="replace")
        else:
            file_contents = payload

        batch = StagingBatchDB(
            batch_type=BatchType(batch_type).value,
            batch_processor_name=processor_name,
            supplier_id=supplier_id,
            content_hash=content_hash,
            status=ProcessingStatus.PENDING.value,
            notes=notes,
            file_contents=file_contents,
        )
        if enqueue:
            state.queue(batch)

        try:
            self.batches.create(batch)
            self.session.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent ingestion of the same payload
            self.session.rollback()
            existing = self.batches.find_active_by_hash(content_hash)
            raise DuplicateBatchError(content_hash, existing.id if existing else None) from e

        logger.info(
            f"Ingested batch {batch.id} ({batch.batch_type}/{processor_name}, "
            f"status={batch.status}, hash={content_hash[:12]})"
        )
        return batch

    def _get_or_raise(self, batch_id: str) -> StagingBatchDB:
        batch = self.batches.get_by_id(batch_id)
        if batch is None:
            raise ValueError(f"Batch not found: {batch_id}")
        return batch

    def queue(self, batch_id: str) -> StagingBatchDB:
        """
        Operator action: accept a pending batch for processing.

        Raises:
            ValueError: If the batch does not exist
            InvalidTransitionError: If the batch is not pending
        """
        batch = self._get_or_raise(batch_id)
        state.queue(batch)
        self.session.commit()
        logger.info(f"Queued batch {batch.id}")
        return batch

    def requeue(self, batch_id: str) -> StagingBatchDB:
        """
        Operator action: retry a failed batch.

        The dedup gate is checked again, since another batch with the same
        content may have been ingested while this one was failed.

        Raises:
            ValueError: If the batch does not exist
            InvalidTransitionError: If the batch is not failed
            DuplicateBatchError: If another active batch now holds its hash
        """
        batch = self._get_or_raise(batch_id)
        if batch.processing_status == ProcessingStatus.FAILED:
            self.check_duplicate(batch.content_hash, exclude_batch_id=batch.id)
        state.requeue(batch)

        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateBatchError(batch.content_hash) from e

        logger.info(f"Re-queued batch {batch.id}")
        return batch
