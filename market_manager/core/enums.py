"""Enums for staging batches, staging records and matching."""

from enum import Enum


class ProcessingStatus(str, Enum):
    """Lifecycle status of a staging batch, staging order or scraper session."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """True for statuses that end a processing run."""
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class CandidateStatus(str, Enum):
    """Matching status of a staged item against canonical products."""

    PENDING = "pending"  # Awaiting review and linking
    LINKED = "linked"  # Matched to an existing product
    REJECTED = "rejected"  # Determined not to match any product
    IGNORED = "ignored"  # Skipped during import


class BatchType(str, Enum):
    """Kind of ingestion event a staging batch records."""

    WEB_SCRAPE = "web_scrape"
    FILE_UPLOAD = "file_upload"
    SALES_REPORT = "sales_report"
