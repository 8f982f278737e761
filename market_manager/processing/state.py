"""
Batch State Machine
===================

Governs the lifecycle of a staging batch:

    pending -> queued -> processing -> completed | failed

Completed and failed are terminal. ``completed_at`` is set exactly when the
status is terminal and ``error_message`` exactly when it is failed. An operator
re-queue moves a failed batch back to queued; abandoned processing claims
are released by StagingBatchRepository.recover_stale.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from market_manager.core.enums import ProcessingStatus
from market_manager.db.models_staging import StagingBatchDB
from market_manager.processing.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.PENDING: frozenset({ProcessingStatus.QUEUED}),
    ProcessingStatus.QUEUED: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset(
        {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED}
    ),
    ProcessingStatus.COMPLETED: frozenset(),
    ProcessingStatus.FAILED: frozenset(),
}


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    """Check whether a forward transition is allowed."""
    return target in ALLOWED_TRANSITIONS[current]


def transition(
    batch: StagingBatchDB,
    target: ProcessingStatus,
    error_message: str | None = None,
    now: datetime | None = None,
) -> StagingBatchDB:
    """
    Apply a forward transition to a batch in memory.

    The caller persists the change. Timestamps and the error message are
    kept consistent with the new status.

    Args:
        batch: Batch to update
        target: New status
        error_message: Required when moving to failed
        now: Optional clock override

    Returns:
        The updated batch

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    current = ProcessingStatus(batch.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)

    now = now or _utc_now()
    batch.status = target.value

    if target == ProcessingStatus.PROCESSING:
        batch.claimed_at = now

    if target.is_terminal:
        batch.completed_at = now
        if target == ProcessingStatus.FAILED:
            batch.error_message = error_message or "Processing failed"
        else:
            batch.error_message = None
    else:
        batch.completed_at = None
        batch.error_message = None

    logger.debug(f"Batch {batch.id}: {current.value} -> {target.value}")
    return batch


def queue(batch: StagingBatchDB) -> StagingBatchDB:
    """Mark a pending batch as eligible for the next fetch."""
    return transition(batch, ProcessingStatus.QUEUED)


def complete(batch: StagingBatchDB, now: datetime | None = None) -> StagingBatchDB:
    """Mark a processing batch as completed."""
    return transition(batch, ProcessingStatus.COMPLETED, now=now)


def fail(batch: StagingBatchDB, error_message: str, now: datetime | None = None) -> StagingBatchDB:
    """Mark a processing batch as failed with an error for operator review."""
    return transition(batch, ProcessingStatus.FAILED, error_message=error_message, now=now)


def requeue(batch: StagingBatchDB) -> StagingBatchDB:
    """
    Operator action: put a failed batch back in the queue to retry.

    Clears the completion timestamp and the error message.
    """
    current = ProcessingStatus(batch.status)
    if current != ProcessingStatus.FAILED:
        raise InvalidTransitionError(current.value, ProcessingStatus.QUEUED.value)

    batch.status = ProcessingStatus.QUEUED.value
    batch.completed_at = None
    batch.error_message = None
    batch.claimed_at = None
    return batch

