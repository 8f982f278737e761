"""
Batch Router
============

Static mapping from a (batch type, processor name) pair to the handler that
processes batches with that key. Each registration creates a
StagingBatchHandler whose fetch only sees its own key, so a batch whose key
has no registration is never fetched by anyone.
"""

from __future__ import annotations

import logging

from market_manager.core.enums import BatchType
from market_manager.processing.base import BatchProcessor
from market_manager.processing.handlers import SessionFactory, StagingBatchHandler

logger = logging.getLogger(__name__)

RouteKey = tuple[BatchType, str]


class BatchRouter:
    """Registry of staging batch handlers keyed by dispatch key."""

    def __init__(self, session_factory: SessionFactory, stale_after_seconds: float = 3600.0) -> None:
        self.session_factory = session_factory
        self.stale_after_seconds = stale_after_seconds
        self._handlers: dict[RouteKey, StagingBatchHandler] = {}

    def register(
        self,
        batch_type: BatchType,
        processor_name: str,
        processor: BatchProcessor,
    ) -> StagingBatchHandler:
        """
        Register the processor for a dispatch key.

        Args:
            batch_type: Batch kind
            processor_name: Free-form processor name (e.g. "Shein")
            processor: Logic applied to each batch with this key

        Returns:
            The handler to hand to the dispatcher

        Raises:
            ValueError: If the key is already registered
        """
        key = (BatchType(batch_type), processor_name)
        if key in self._handlers:
            raise ValueError(
                f"A processor is already registered for {key[0].value}/{processor_name}"
            )

        handler = StagingBatchHandler(
            batch_type=key[0],
            processor_name=processor_name,
            processor=processor,
            session_factory=self.session_factory,
            stale_after_seconds=self.stale_after_seconds,
        )
        self._handlers[key] = handler
        logger.debug(f"Routed {key[0].value}/{processor_name} to {type(processor).__name__}")
        return handler

    def resolve(self, batch_type: BatchType | str, processor_name: str | None) -> StagingBatchHandler | None:
        """
        Look up the handler for a dispatch key.

        Returns:
            The handler, or None if no processor is registered
        """
        if processor_name is None:
            return None
        try:
            key = (BatchType(batch_type), processor_name)
        except ValueError:
            return None
        return self._handlers.get(key)

    def handlers(self) -> list[StagingBatchHandler]:
        """All registered handlers in registration order."""
        return list(self._handlers.values())

    def keys(self) -> list[RouteKey]:
        """All registered dispatch keys."""
        return list(self._handlers.keys())
