"""
Work Item Contract
==================

The minimal abstraction driven by the dispatcher: a handler fetches a bounded
slice of pending work and processes one item at a time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from market_manager.db.models_staging import StagingBatchDB


@dataclass(frozen=True)
class WorkItem:
    """
    Handle to one unit of pending work.

    Created by a handler's fetch step and never persisted. ``id`` is the
    stable key of the underlying record; ``payload`` is a read-only snapshot
    taken at fetch time.
    """

    id: str
    payload: Any = None


class WorkItemHandler(ABC):
    """
    Base class for handlers driven by the dispatcher.

    Subclasses must implement:
    - name: unique handler name, also the configuration key
    - fetch_next(): return at most max_items pending items, oldest first,
      without changing any state
    - process(): do the work for one item and leave it terminal
    """

    name: str = ""

    @abstractmethod
    async def fetch_next(self, max_items: int) -> list[WorkItem]:
        """
        Fetch the next slice of pending work.

        Args:
            max_items: Maximum number of items to return

        Returns:
            Items ordered by arrival time, oldest first
        """
        ...

    @abstractmethod
    async def process(self, item: WorkItem) -> None:
        """
        Process exactly one item.

        Expected domain failures are recorded on the item as a failed status
        and must not raise. Anything that does raise is treated by the
        dispatcher as a defect.
        """
        ...

    async def recover(self) -> int:
        """
        Release work abandoned by a crashed run.

        Returns:
            Number of items made fetchable again
        """
        return 0


class BatchProcessor(ABC):
    """
    Concrete logic for one (batch type, processor name) pair.

    Called with the batch already claimed and in processing status. The
    processor populates staging children on the given session; the handler
    owns the batch's terminal transition and the final commit. Raise one of
    the recoverable errors to fail the batch.
    """

    @abstractmethod
    async def process_batch(self, session: Session, batch: StagingBatchDB) -> None:
        """Parse or fetch the batch's source data into staging records."""
        ...
