"""
Processing Errors
=================

Error taxonomy for the ingestion and work-queue pipeline.

- Ingestion rejection: DuplicateBatchError, raised synchronously, nothing created.
- Recoverable failures: recorded on the batch/item, which is marked failed.
- Fatal failures: propagate out of the handler and abort its slice.
"""

from __future__ import annotations

import json

import httpx


class DuplicateBatchError(ValueError):
    """Raised when a payload's content hash is held by an active batch."""

    def __init__(self, content_hash: str, existing_batch_id: str | None = None) -> None:
        self.content_hash = content_hash
        self.existing_batch_id = existing_batch_id
        message = f"Content hash {content_hash} already belongs to an active batch"
        if existing_batch_id:
            message += f" ({existing_batch_id})"
        super().__init__(message)


class InvalidTransitionError(ValueError):
    """Raised for a status change the batch state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from '{current}' to '{target}'")


class RecoverableProcessingError(Exception):
    """Malformed source data or a transient downstream failure."""


class FatalProcessingError(Exception):
    """Programming or infrastructure defect; never recorded as a batch failure."""


# Exceptions a handler turns into a recorded failure. ValueError covers
# pydantic.ValidationError and json.JSONDecodeError.
RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (
    RecoverableProcessingError,
    ValueError,
    KeyError,
    json.JSONDecodeError,
    httpx.HTTPError,
)
