"""
Market Manager Processing Pipeline
==================================

Staging ingestion and work-queue processing.

Pipeline Stages:
1. Ingest - payloads become staging batches behind the content-hash dedup gate
2. Dispatch - the polling dispatcher asks each handler for its next slice
3. Route - (batch type, processor name) selects the batch processor
4. Process - the processor fills staging records; the batch ends completed or failed
5. Promote - completed staging records become canonical purchase orders and sales

Image vectorization is a second handler driven by the same dispatcher.
"""

from market_manager.processing.errors import (
    RECOVERABLE_ERRORS,
    DuplicateBatchError,
    FatalProcessingError,
    InvalidTransitionError,
    RecoverableProcessingError,
)
from market_manager.processing.base import (
    BatchProcessor,
    WorkItem,
    WorkItemHandler,
)
from market_manager.processing.engine import (
    CycleResult,
    Dispatcher,
    HandlerCycleResult,
    HandlerRegistration,
)
from market_manager.processing.handlers import (
    ImageVectorizationHandler,
    StagingBatchHandler,
)
from market_manager.processing.router import BatchRouter
from market_manager.processing.ingestion import (
    IngestionService,
    compute_content_hash,
)
from market_manager.processing.reconciliation import (
    ProductMatcher,
    PromotionEngine,
    PromotionResult,
    StagingLinkService,
)
from market_manager.processing.sessions import CookieManager

__all__ = [
    # Errors
    "RECOVERABLE_ERRORS",
    "DuplicateBatchError",
    "FatalProcessingError",
    "InvalidTransitionError",
    "RecoverableProcessingError",
    # Contract
    "BatchProcessor",
    "WorkItem",
    "WorkItemHandler",
    # Dispatcher
    "CycleResult",
    "Dispatcher",
    "HandlerCycleResult",
    "HandlerRegistration",
    # Handlers
    "ImageVectorizationHandler",
    "StagingBatchHandler",
    "BatchRouter",
    # Ingestion
    "IngestionService",
    "compute_content_hash",
    # Reconciliation
    "ProductMatcher",
    "PromotionEngine",
    "PromotionResult",
    "StagingLinkService",
    # Sessions
    "CookieManager",
]
