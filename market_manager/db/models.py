"""SQLAlchemy ORM models for the canonical business entities.

The processing pipeline references these by id and only creates or updates
them during promotion:
- SupplierDB, ProductDB, ProductPhotoDB
- PurchaseOrderDB, PurchaseOrderItemDB
- MarketEventDB, ReconciledSaleDB
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from market_manager.core.enums import ProcessingStatus


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class SupplierDB(Base):
    """Database model for suppliers that orders are scraped or uploaded from."""

    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    website_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    contact_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<SupplierDB(id={self.id}, name='{self.name}')>"


class ProductDB(Base):
    """Database model for products held in stock and sold at market events."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    stock_on_hand: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<ProductDB(id={self.id}, name='{self.name}')>"


class ProductPhotoDB(Base):
    """
    Database model for product images.

    Each photo carries an embedding vector used for image similarity search,
    generated asynchronously by the image vectorization handler.
    """

    __tablename__ = "product_photos"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    vector_embedding_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON array
    vectorization_status: Mapped[str] = mapped_column(
        String(20), default=ProcessingStatus.PENDING.value, index=True
    )
    vectorization_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    vectorized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<ProductPhotoDB(id={self.id}, status='{self.vectorization_status}')>"


class PurchaseOrderDB(Base):
    """Database model for canonical supplier purchase orders."""

    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    supplier_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("suppliers.id"), nullable=False, index=True
    )
    supplier_reference: Mapped[str | None] = mapped_column(String(500), nullable=True, index=True)
    order_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ProcessingStatus.PENDING.value)
    shipping_fees: Mapped[float] = mapped_column(Float, default=0.0)
    import_fees: Mapped[float] = mapped_column(Float, default=0.0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<PurchaseOrderDB(id={self.id}, reference='{self.supplier_reference}')>"


class PurchaseOrderItemDB(Base):
    """Database model for line items of a canonical purchase order."""

    __tablename__ = "purchase_order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    purchase_order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("purchase_orders.id"), nullable=False, index=True
    )
    product_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True, index=True
    )
    supplier_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    supplier_product_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    listed_unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    actual_unit_price: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<PurchaseOrderItemDB(id={self.id}, name='{self.name[:30]}')>"


class MarketEventDB(Base):
    """Database model for market events where products are sold."""

    __tablename__ = "market_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<MarketEventDB(id={self.id}, name='{self.name}')>"


class ReconciledSaleDB(Base):
    """Database model for a confirmed sale of a product at a market event."""

    __tablename__ = "reconciled_sales"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    market_event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("market_events.id"), nullable=False, index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    sale_price: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<ReconciledSaleDB(id={self.id}, product_id={self.product_id})>"
