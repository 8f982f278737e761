"""
Polling Dispatcher
==================

Drives registered work item handlers forward. Each cycle asks every enabled
handler for its next bounded slice of work and processes the items one at a
time. Handlers are isolated from each other: a defect in one handler aborts
only that handler's slice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from market_manager.config import ProcessingConfig, get_default_config
from market_manager.processing.base import WorkItemHandler
from market_manager.processing.errors import FatalProcessingError

logger = logging.getLogger(__name__)

# Exceptions escaping process() that abort the rest of a handler's slice
FATAL_ERRORS: tuple[type[BaseException], ...] = (FatalProcessingError, SQLAlchemyError)


@dataclass
class HandlerRegistration:
    """A handler plus its per-cycle limit."""

    handler: WorkItemHandler
    max_items_per_cycle: int = 10
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.max_items_per_cycle < 1:
            raise ValueError(
                f"max_items_per_cycle must be >= 1, got {self.max_items_per_cycle}"
            )


@dataclass
class HandlerCycleResult:
    """Outcome of one handler's slice within a cycle."""

    handler_name: str
    fetched: int = 0
    processed: int = 0
    errors: int = 0
    aborted: bool = False
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "handler_name": self.handler_name,
            "fetched": self.fetched,
            "processed": self.processed,
            "errors": self.errors,
            "aborted": self.aborted,
            "error_messages": self.error_messages,
        }


@dataclass
class CycleResult:
    """Outcome of one dispatcher cycle across all handlers."""

    started_at: datetime
    completed_at: datetime | None = None
    handlers: list[HandlerCycleResult] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(h.processed for h in self.handlers)

    @property
    def total_errors(self) -> int:
        return sum(h.errors for h in self.handlers)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "handlers": [h.to_dict() for h in self.handlers],
        }


class Dispatcher:
    """
    Polling dispatcher over a set of work item handlers.

    Within a cycle, handlers run in sequence and items within a handler run
    in fetch order. The handler order rotates each cycle so no handler is
    always last.
    """

    def __init__(self, config: ProcessingConfig | None = None) -> None:
        self.config = config or get_default_config()
        self._registrations: list[HandlerRegistration] = []
        self._rotation = 0

    @property
    def registrations(self) -> list[HandlerRegistration]:
        return list(self._registrations)

    def register(
        self,
        handler: WorkItemHandler,
        max_items_per_cycle: int | None = None,
        enabled: bool | None = None,
    ) -> HandlerRegistration:
        """
        Register a handler.

        Limits not given explicitly come from the handler's entry in the
        processing configuration.

        Raises:
            ValueError: If a handler with the same name is already registered
        """
        if any(r.handler.name == handler.name for r in self._registrations):
            raise ValueError(f"Handler '{handler.name}' is already registered")

        handler_config = self.config.handler(handler.name)
        registration = HandlerRegistration(
            handler=handler,
            max_items_per_cycle=(
                max_items_per_cycle
                if max_items_per_cycle is not None
                else handler_config.max_items_per_cycle
            ),
            enabled=enabled if enabled is not None else handler_config.enabled,
        )
        self._registrations.append(registration)
        logger.debug(
            f"Registered handler '{handler.name}' "
            f"(max_items={registration.max_items_per_cycle}, enabled={registration.enabled})"
        )
        return registration

    def _cycle_order(self) -> list[HandlerRegistration]:
        """Enabled registrations in this cycle's round-robin order."""
        enabled = [r for r in self._registrations if r.enabled]
        if not enabled:
            return []
        offset = self._rotation % len(enabled)
        self._rotation += 1
        return enabled[offset:] + enabled[:offset]

    async def recover(self) -> int:
        """Ask every handler to release abandoned work."""
        total = 0
        for registration in self._registrations:
            try:
                recovered = await registration.handler.recover()
            except Exception:
                logger.exception(f"Recovery failed for handler '{registration.handler.name}'")
                continue
            if recovered:
                logger.warning(
                    f"Handler '{registration.handler.name}' re-queued {recovered} abandoned item(s)"
                )
            total += recovered
        return total

    async def _run_handler(self, registration: HandlerRegistration) -> HandlerCycleResult:
        handler = registration.handler
        result = HandlerCycleResult(handler_name=handler.name)

        try:
            items = await handler.fetch_next(registration.max_items_per_cycle)
        except Exception as e:
            logger.exception(f"Fetch failed for handler '{handler.name}'")
            result.aborted = True
            result.errors += 1
            result.error_messages.append(f"fetch: {e}")
            return result

        if len(items) > registration.max_items_per_cycle:
            logger.warning(
                f"Handler '{handler.name}' returned {len(items)} items, "
                f"truncating to {registration.max_items_per_cycle}"
            )
            items = items[: registration.max_items_per_cycle]

        result.fetched = len(items)
        logger.debug(f"Handler '{handler.name}' fetched {len(items)} item(s)")

        for item in items:
            try:
                await handler.process(item)
            except FATAL_ERRORS as e:
                logger.exception(
                    f"Fatal error in handler '{handler.name}' on item {item.id}; aborting slice"
                )
                result.errors += 1
                result.aborted = True
                result.error_messages.append(f"{item.id}: {e}")
                break
            except Exception as e:
                logger.exception(f"Unhandled error in handler '{handler.name}' on item {item.id}")
                result.errors += 1
                result.error_messages.append(f"{item.id}: {e}")
                continue
            result.processed += 1

        return result

    async def process_cycle(self) -> CycleResult:
        """
        Run one dispatch cycle over all enabled handlers.

        Returns:
            Per-handler counts for the cycle
        """
        cycle = CycleResult(started_at=datetime.now(UTC))

        for registration in self._cycle_order():
            cycle.handlers.append(await self._run_handler(registration))

        cycle.completed_at = datetime.now(UTC)
        if cycle.total_processed or cycle.total_errors:
            logger.info(
                f"Cycle complete: {cycle.total_processed} processed, "
                f"{cycle.total_errors} error(s) across {len(cycle.handlers)} handler(s)"
            )
        return cycle

    async def _wait(self, stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep until the timeout or the stop event. Returns True if stopped."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Run the polling loop until the stop event is set or the task is cancelled.

        Waits the configured startup delay, releases abandoned claims, then
        alternates cycles with the poll interval.
        """
        stop_event = stop_event or asyncio.Event()
        global_config = self.config.global_config

        logger.info(
            f"Dispatcher starting with {len(self._registrations)} handler(s), "
            f"polling every {global_config.poll_interval_seconds}s"
        )
        if await self._wait(stop_event, global_config.startup_delay_seconds):
            return

        await self.recover()

        while not stop_event.is_set():
            await self.process_cycle()
            if await self._wait(stop_event, global_config.poll_interval_seconds):
                break

        logger.info("Dispatcher stopped")
