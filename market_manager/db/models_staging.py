"""SQLAlchemy ORM models for the staging side of the pipeline.

These models hold ingested data before it is promoted:
- StagingBatchDB (one ingestion event, the aggregate root)
- StagingPurchaseOrderDB, StagingPurchaseOrderItemDB
- StagingSaleDB, StagingSaleItemDB
- ScraperSessionDB (authenticated scraping run and its cookie state)

References are plain foreign-key columns; children are looked up by id
through the repositories rather than navigated through relationships.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from market_manager.core.enums import CandidateStatus, ProcessingStatus
from market_manager.db.models import Base


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


_ACTIVE_HASH_CLAUSE = text("status != 'failed'")


class StagingBatchDB(Base):
    """
    Database model for one ingestion event.

    A file upload, a scrape session or a sales report import. The
    (batch_type, batch_processor_name) pair selects the handler that
    processes it.
    """

    __tablename__ = "staging_batches"
    __table_args__ = (
        # A content hash may only be held by one batch that has not failed
        Index(
            "uq_staging_batches_active_hash",
            "content_hash",
            unique=True,
            sqlite_where=_ACTIVE_HASH_CLAUSE,
            postgresql_where=_ACTIVE_HASH_CLAUSE,
        ),
        Index("ix_staging_batches_dispatch", "status", "batch_type", "batch_processor_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    batch_type: Mapped[str] = mapped_column(String(30), nullable=False)
    batch_processor_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    supplier_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("suppliers.id"), nullable=True, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ProcessingStatus.PENDING.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_contents: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    @property
    def processing_status(self) -> ProcessingStatus:
        return ProcessingStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<StagingBatchDB(id={self.id}, type='{self.batch_type}', "
            f"processor='{self.batch_processor_name}', status='{self.status}')>"
        )


class StagingPurchaseOrderDB(Base):
    """Database model for a parsed supplier order awaiting promotion."""

    __tablename__ = "staging_purchase_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    staging_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staging_batches.id"), nullable=False, index=True
    )
    purchase_order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("purchase_orders.id"), nullable=True, index=True
    )
    supplier_reference: Mapped[str | None] = mapped_column(String(500), nullable=True)
    order_date: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    raw_data: Mapped[str] = mapped_column(Text, default="")
    is_imported: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default=ProcessingStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<StagingPurchaseOrderDB(id={self.id}, status='{self.status}')>"


class StagingPurchaseOrderItemDB(Base):
    """Database model for one line item of a staged supplier order."""

    __tablename__ = "staging_purchase_order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    staging_purchase_order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staging_purchase_orders.id"), nullable=False, index=True
    )
    product_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True, index=True
    )
    purchase_order_item_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("purchase_order_items.id"), nullable=True, index=True
    )
    supplier_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    supplier_product_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    listed_unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    actual_unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    raw_data: Mapped[str] = mapped_column(Text, default="")
    is_imported: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default=CandidateStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<StagingPurchaseOrderItemDB(id={self.id}, name='{self.name[:30]}')>"


class StagingSaleDB(Base):
    """Database model for a parsed sales report awaiting reconciliation."""

    __tablename__ = "staging_sales"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    staging_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staging_batches.id"), nullable=False, index=True
    )
    sale_date: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    raw_data: Mapped[str] = mapped_column(Text, default="")
    is_imported: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)

    def __repr__(self) -> str:
        return f"<StagingSaleDB(id={self.id}, imported={self.is_imported})>"


class StagingSaleItemDB(Base):
    """
    Database model for one raw sale line from a third-party report.

    The candidate status tracks whether the free-text description has been
    matched to a canonical product.
    """

    __tablename__ = "staging_sale_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    staging_sale_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("staging_sales.id"), nullable=False, index=True
    )
    product_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True, index=True
    )
    reconciled_sale_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("reconciled_sales.id"), nullable=True, index=True
    )
    product_description: Mapped[str] = mapped_column(Text, nullable=False)
    sale_date: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    market_event_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_data: Mapped[str] = mapped_column(Text, default="")
    is_imported: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default=CandidateStatus.PENDING.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<StagingSaleItemDB(id={self.id}, status='{self.status}')>"


class ScraperSessionDB(Base):
    """
    Database model for one authenticated scraping run.

    Kept separate from the batch because a session can fail before it
    produces one. The captured cookie bundle is stored as opaque JSON, with
    its domain and expiry copied into columns for lookup.
    """

    __tablename__ = "scraper_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    supplier_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("suppliers.id"), nullable=True, index=True
    )
    staging_batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("staging_batches.id"), nullable=True, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ProcessingStatus.PROCESSING.value)
    cookie_domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    cookie_captured_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    cookie_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cookie_file_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ScraperSessionDB(id={self.id}, status='{self.status}')>"
