"""Database initialization and persistence layer."""

from market_manager.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
)
from market_manager.db.models import (
    Base,
    MarketEventDB,
    ProductDB,
    ProductPhotoDB,
    PurchaseOrderDB,
    PurchaseOrderItemDB,
    ReconciledSaleDB,
    SupplierDB,
)
from market_manager.db.models_staging import (
    ScraperSessionDB,
    StagingBatchDB,
    StagingPurchaseOrderDB,
    StagingPurchaseOrderItemDB,
    StagingSaleDB,
    StagingSaleItemDB,
)
from market_manager.db.repositories import (
    ScraperSessionRepository,
    StagingBatchRepository,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    # Canonical models
    "Base",
    "SupplierDB",
    "ProductDB",
    "ProductPhotoDB",
    "PurchaseOrderDB",
    "PurchaseOrderItemDB",
    "MarketEventDB",
    "ReconciledSaleDB",
    # Staging models
    "StagingBatchDB",
    "StagingPurchaseOrderDB",
    "StagingPurchaseOrderItemDB",
    "StagingSaleDB",
    "StagingSaleItemDB",
    "ScraperSessionDB",
    # Repositories
    "StagingBatchRepository",
    "ScraperSessionRepository",
]
