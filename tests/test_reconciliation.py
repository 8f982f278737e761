"""Tests for product matching, promotion and manual linking."""

import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from market_manager.config import ReconciliationConfig
from market_manager.core.enums import BatchType, CandidateStatus, ProcessingStatus
from market_manager.db.models import (
    Base,
    MarketEventDB,
    ProductDB,
    PurchaseOrderDB,
    PurchaseOrderItemDB,
    ReconciledSaleDB,
    SupplierDB,
)
from market_manager.db.models_staging import (
    StagingBatchDB,
    StagingPurchaseOrderDB,
    StagingPurchaseOrderItemDB,
    StagingSaleDB,
    StagingSaleItemDB,
)
from market_manager.processing.reconciliation import (
    ProductMatcher,
    PromotionEngine,
    StagingLinkService,
    levenshtein_distance,
    normalize_text,
    string_similarity,
)


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_reconciliation.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    engine = create_engine(f"sqlite:///{temp_db_path}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create a database session for testing."""
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def products(session) -> dict[str, ProductDB]:
    catalog = {
        "ring": ProductDB(sku="RING-001", name="Silver Moon Ring"),
        "necklace": ProductDB(sku="NECK-001", name="Gold Star Necklace"),
        "earrings": ProductDB(sku="EAR-001", name="Pearl Drop Earrings"),
    }
    session.add_all(catalog.values())
    session.commit()
    return catalog


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def _batch(session, batch_type: BatchType, supplier_id: str | None = None, **kwargs) -> StagingBatchDB:
    batch = StagingBatchDB(
        batch_type=batch_type.value,
        batch_processor_name="Test",
        supplier_id=supplier_id,
        content_hash=kwargs.pop("content_hash", f"hash-{datetime.now(UTC).timestamp()}"),
        status=kwargs.pop("status", ProcessingStatus.COMPLETED.value),
        **kwargs,
    )
    session.add(batch)
    session.flush()
    return batch


def _sale(session, descriptions: list[str], market_event_name: str | None = "Harvest Fair") -> StagingSaleDB:
    batch = _batch(session, BatchType.SALES_REPORT, content_hash=f"sales-{len(descriptions)}-{descriptions[0]}")
    sale = StagingSaleDB(staging_batch_id=batch.id, sale_date=datetime(2025, 10, 4, tzinfo=UTC))
    session.add(sale)
    session.flush()
    for description in descriptions:
        session.add(
            StagingSaleItemDB(
                staging_sale_id=sale.id,
                product_description=description,
                sale_date=datetime(2025, 10, 4, tzinfo=UTC),
                price=25.0,
                quantity=1,
                market_event_name=market_event_name,
            )
        )
    session.commit()
    return sale


def _sale_items(session, sale: StagingSaleDB) -> list[StagingSaleItemDB]:
    return list(
        session.execute(
            select(StagingSaleItemDB)
            .where(StagingSaleItemDB.staging_sale_id == sale.id)
            .order_by(StagingSaleItemDB.product_description)
        ).scalars()
    )


class TestTextHelpers:
    """Tests for normalization and similarity."""

    def test_normalize_text(self) -> None:
        """Case, outer and repeated whitespace are ignored."""
        assert normalize_text("  Silver   Moon\tRING ") == "silver moon ring"
        assert normalize_text(None) == ""

    def test_levenshtein_distance(self) -> None:
        """Edit distance counts single-character edits."""
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_string_similarity(self) -> None:
        """Similarity is 1.0 for equal text and 0.0 when one side is empty."""
        assert string_similarity("Ring", " ring ") == 1.0
        assert string_similarity("", "ring") == 0.0
        assert string_similarity("", "") == 0.0
        assert 0.9 < string_similarity("silver moon rings", "silver moon ring") < 1.0


class TestProductMatcher:
    """Tests for the matching policy."""

    def test_exact_name(self, session, products) -> None:
        """An exact normalized name links."""
        result = ProductMatcher(session).match("silver moon ring")

        assert result.status == CandidateStatus.LINKED
        assert result.product_id == products["ring"].id

    def test_exact_sku(self, session, products) -> None:
        """An exact SKU links."""
        result = ProductMatcher(session).match("neck-001")

        assert result.status == CandidateStatus.LINKED
        assert result.product_id == products["necklace"].id

    def test_ambiguous_exact_left_pending(self, session, products) -> None:
        """Two products with the same name need a human decision."""
        session.add(ProductDB(name="Silver Moon Ring"))
        session.commit()

        result = ProductMatcher(session).match("Silver Moon Ring")

        assert result.status == CandidateStatus.PENDING
        assert len(result.candidates) == 2
        assert result.product_id is None

    def test_fuzzy_above_threshold(self, session, products) -> None:
        """A near-identical description links to the single close product."""
        result = ProductMatcher(session, fuzzy_link_threshold=0.9).match("Silver Moon Rings")

        assert result.status == CandidateStatus.LINKED
        assert result.product_id == products["ring"].id
        assert result.candidates[0].confidence < 1.0

    def test_fuzzy_below_threshold_left_pending(self, session, products) -> None:
        """Loose resemblance is never linked automatically."""
        result = ProductMatcher(session).match("Silver ring")

        assert result.status == CandidateStatus.PENDING
        assert result.product_id is None

    def test_blank_rejected(self, session, products) -> None:
        """A blank description is rejected."""
        assert ProductMatcher(session).match("   ").status == CandidateStatus.REJECTED

    def test_from_config(self, session) -> None:
        """The fuzzy threshold comes from configuration."""
        matcher = ProductMatcher.from_config(session, ReconciliationConfig(fuzzy_link_threshold=0.8))
        assert matcher.fuzzy_link_threshold == 0.8


class TestPurchaseOrderPromotion:
    """Tests for promoting staged purchase orders."""

    @pytest.fixture
    def supplier(self, session) -> SupplierDB:
        supplier = SupplierDB(name="Shein")
        session.add(supplier)
        session.commit()
        return supplier

    def _staged_order(self, session, supplier_id, products, status=ProcessingStatus.COMPLETED) -> StagingPurchaseOrderDB:
        batch = _batch(session, BatchType.WEB_SCRAPE, supplier_id=supplier_id, content_hash=f"po-{status.value}")
        order = StagingPurchaseOrderDB(
            staging_batch_id=batch.id,
            supplier_reference="PO-1001",
            order_date=datetime(2025, 9, 1, tzinfo=UTC),
            status=status.value,
        )
        session.add(order)
        session.flush()
        session.add_all(
            [
                StagingPurchaseOrderItemDB(
                    staging_purchase_order_id=order.id,
                    supplier_reference="sku-a",
                    name="Silver Moon Ring",
                    quantity=5,
                    listed_unit_price=4.0,
                    actual_unit_price=3.5,
                    product_id=products["ring"].id,
                    status=CandidateStatus.LINKED.value,
                ),
                StagingPurchaseOrderItemDB(
                    staging_purchase_order_id=order.id,
                    supplier_reference="sku-b",
                    name="Mystery Bracelet",
                    quantity=2,
                ),
            ]
        )
        session.commit()
        return order

    def test_promotes_order_and_items(self, session, supplier, products) -> None:
        """A completed staging order becomes a purchase order with its items."""
        order = self._staged_order(session, supplier.id, products)

        result = PromotionEngine(session).promote_all()

        assert result.purchase_orders_created == 1
        assert result.purchase_order_items_created == 2
        assert result.staging_orders_imported == 1

        session.refresh(order)
        assert order.is_imported is True
        purchase_order = session.get(PurchaseOrderDB, order.purchase_order_id)
        assert purchase_order.supplier_reference == "PO-1001"
        assert purchase_order.supplier_id == supplier.id

        items = session.execute(
            select(PurchaseOrderItemDB).order_by(PurchaseOrderItemDB.supplier_reference)
        ).scalars().all()
        assert [i.product_id for i in items] == [products["ring"].id, None]
        assert items[0].actual_unit_price == 3.5

    def test_promotion_is_idempotent(self, session, supplier, products) -> None:
        """Running promotion twice creates nothing the second time."""
        self._staged_order(session, supplier.id, products)

        PromotionEngine(session).promote_all()
        second = PromotionEngine(session).promote_all()

        assert second.purchase_orders_created == 0
        assert second.purchase_order_items_created == 0
        assert second.staging_orders_imported == 0
        assert _count(session, PurchaseOrderDB) == 1
        assert _count(session, PurchaseOrderItemDB) == 2

    def test_reuses_existing_purchase_order(self, session, supplier, products) -> None:
        """An order already known by supplier reference is reused."""
        session.add(
            PurchaseOrderDB(
                supplier_id=supplier.id,
                supplier_reference="PO-1001",
                order_date=datetime(2025, 9, 1, tzinfo=UTC),
            )
        )
        session.commit()
        self._staged_order(session, supplier.id, products)

        result = PromotionEngine(session).promote_all()

        assert result.purchase_orders_created == 0
        assert result.purchase_order_items_created == 2
        assert _count(session, PurchaseOrderDB) == 1

    def test_failed_order_skipped(self, session, supplier, products) -> None:
        """Staging orders that did not complete are not promoted."""
        order = self._staged_order(session, supplier.id, products, status=ProcessingStatus.FAILED)

        result = PromotionEngine(session).promote_all()

        assert result.skipped == 1
        assert _count(session, PurchaseOrderDB) == 0
        session.refresh(order)
        assert order.is_imported is False

    def test_order_without_supplier_skipped(self, session, products) -> None:
        """Orders cannot be promoted without a supplier."""
        self._staged_order(session, None, products)

        result = PromotionEngine(session).promote_all()

        assert result.skipped == 1
        assert _count(session, PurchaseOrderDB) == 0

    def test_incomplete_batch_not_promoted(self, session, supplier, products) -> None:
        """Only completed batches are promoted."""
        order = self._staged_order(session, supplier.id, products)
        batch = session.get(StagingBatchDB, order.staging_batch_id)
        batch.status = ProcessingStatus.PROCESSING.value
        session.commit()

        result = PromotionEngine(session).promote_all()

        assert result.staging_orders_imported == 0
        assert result.skipped == 0


class TestSaleReconciliation:
    """Tests for reconciling staged sales."""

    def test_matched_items_become_reconciled_sales(self, session, products) -> None:
        """Matched items are promoted and the sale imported once all settle."""
        sale = _sale(session, ["silver moon ring", "  "])

        result = PromotionEngine(session).promote_all()

        assert result.sale_items_linked == 1
        assert result.sale_items_rejected == 1
        assert result.reconciled_sales_created == 1
        assert result.market_events_created == 1
        assert result.staging_sales_imported == 1

        session.refresh(sale)
        assert sale.is_imported is True
        reconciled = session.execute(select(ReconciledSaleDB)).scalar_one()
        assert reconciled.product_id == products["ring"].id
        assert reconciled.sale_price == 25.0
        event = session.execute(select(MarketEventDB)).scalar_one()
        assert event.name == "Harvest Fair"

    def test_pending_item_blocks_sale_import(self, session, products) -> None:
        """A sale with an unresolved item is not marked imported."""
        sale = _sale(session, ["silver moon ring", "hand knitted scarf"])

        result = PromotionEngine(session).promote_all()

        assert result.sale_items_pending == 1
        assert result.reconciled_sales_created == 1
        session.refresh(sale)
        assert sale.is_imported is False

    def test_manual_link_then_rerun(self, session, products) -> None:
        """Linking a pending item by hand lets the next run finish the sale."""
        sale = _sale(session, ["silver moon ring", "hand knitted scarf"])
        PromotionEngine(session).promote_all()

        pending = [i for i in _sale_items(session, sale) if i.status == CandidateStatus.PENDING.value]
        StagingLinkService(session).link_sale_item(pending[0].id, products["earrings"].id)
        result = PromotionEngine(session).promote_all()

        assert result.reconciled_sales_created == 1
        assert result.market_events_created == 0
        assert _count(session, ReconciledSaleDB) == 2
        session.refresh(sale)
        assert sale.is_imported is True

    def test_rerun_creates_nothing(self, session, products) -> None:
        """Reconciliation can be re-run without duplicating sales."""
        _sale(session, ["silver moon ring", "gold star necklace"])

        PromotionEngine(session).promote_all()
        second = PromotionEngine(session).promote_all()

        assert second.to_dict() == {key: 0 for key in second.to_dict()}
        assert _count(session, ReconciledSaleDB) == 2
        assert _count(session, MarketEventDB) == 1

    def test_linked_item_without_event_stays_staged(self, session, products) -> None:
        """Without a market event name a linked item is not promoted."""
        sale = _sale(session, ["silver moon ring"], market_event_name=None)

        result = PromotionEngine(session).promote_all()

        assert result.sale_items_linked == 1
        assert result.reconciled_sales_created == 0
        session.refresh(sale)
        assert sale.is_imported is False


class TestStagingLinkService:
    """Tests for manual linking actions."""

    def test_link_unlink_reject_sale_item(self, session, products) -> None:
        """Sale items move between linked, pending and rejected."""
        sale = _sale(session, ["mystery item"])
        item = _sale_items(session, sale)[0]
        service = StagingLinkService(session)

        linked = service.link_sale_item(item.id, products["ring"].id)
        assert linked.status == CandidateStatus.LINKED.value
        assert linked.product_id == products["ring"].id

        unlinked = service.unlink_sale_item(item.id)
        assert unlinked.status == CandidateStatus.PENDING.value
        assert unlinked.product_id is None

        rejected = service.reject_sale_item(item.id)
        assert rejected.status == CandidateStatus.REJECTED.value

    def test_imported_sale_item_locked(self, session, products) -> None:
        """Imported sale items cannot be changed."""
        sale = _sale(session, ["silver moon ring"])
        PromotionEngine(session).promote_all()
        item = _sale_items(session, sale)[0]
        service = StagingLinkService(session)

        with pytest.raises(ValueError):
            service.unlink_sale_item(item.id)
        with pytest.raises(ValueError):
            service.reject_sale_item(item.id)
        with pytest.raises(ValueError):
            service.link_sale_item(item.id, products["necklace"].id)

    def test_unknown_ids(self, session, products) -> None:
        """Missing items or products raise ValueError."""
        sale = _sale(session, ["mystery item"])
        item = _sale_items(session, sale)[0]
        service = StagingLinkService(session)

        with pytest.raises(ValueError):
            service.link_sale_item("missing", products["ring"].id)
        with pytest.raises(ValueError):
            service.link_sale_item(item.id, "missing")

    def test_link_imported_order_item_updates_canonical(self, session, products) -> None:
        """Linking a promoted order item links its purchase order item too."""
        supplier = SupplierDB(name="Shein")
        session.add(supplier)
        session.flush()
        batch = _batch(session, BatchType.WEB_SCRAPE, supplier_id=supplier.id, content_hash="po")
        order = StagingPurchaseOrderDB(
            staging_batch_id=batch.id,
            supplier_reference="PO-2",
            status=ProcessingStatus.COMPLETED.value,
        )
        session.add(order)
        session.flush()
        item = StagingPurchaseOrderItemDB(
            staging_purchase_order_id=order.id, supplier_reference="sku", name="Bracelet"
        )
        session.add(item)
        session.commit()
        PromotionEngine(session).promote_all()
        service = StagingLinkService(session)

        service.link_purchase_order_item(item.id, products["necklace"].id)

        order_item = session.get(PurchaseOrderItemDB, item.purchase_order_item_id)
        assert order_item.product_id == products["necklace"].id
        with pytest.raises(ValueError):
            service.unlink_purchase_order_item(item.id)
