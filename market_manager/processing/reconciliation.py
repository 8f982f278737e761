"""
Reconciliation and Promotion
============================

Promotes records of completed staging batches into canonical entities:

- Staging purchase orders become PurchaseOrder / PurchaseOrderItem rows.
- Staging sale items are matched to products by their free-text description,
  then promoted into ReconciledSale rows once linked.

Every step is guarded by the ``is_imported`` flag and the stored canonical
ids, so promotion can be re-run at any time without duplicating entities.

Matching policy for sale items:
1. Exact normalized match on product SKU or name. One product links, more
   than one leaves the item pending.
2. Otherwise Levenshtein similarity against product names. Exactly one product
   at or above the fuzzy threshold links, zero or several leave it pending.
3. A blank description is rejected outright.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from market_manager.config import ReconciliationConfig
from market_manager.core.enums import CandidateStatus, ProcessingStatus
from market_manager.db.models import (
    MarketEventDB,
    ProductDB,
    PurchaseOrderDB,
    PurchaseOrderItemDB,
    ReconciledSaleDB,
)
from market_manager.db.models_staging import (
    StagingPurchaseOrderDB,
    StagingPurchaseOrderItemDB,
    StagingSaleDB,
    StagingSaleItemDB,
)
from market_manager.db.repositories import StagingBatchRepository

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

# Items in these statuses no longer block their sale from being imported
_SETTLED_STATUSES = {CandidateStatus.REJECTED.value, CandidateStatus.IGNORED.value}


def normalize_text(value: str | None) -> str:
    """Case-fold, strip and collapse internal whitespace."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.casefold().strip())


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate the Levenshtein distance between two strings.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance
    """
    if len(s1) < len(s2):
        s1, s2 = s2, s1

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def string_similarity(s1: str, s2: str) -> float:
    """
    Similarity between two strings from their Levenshtein distance.

    Returns:
        Score between 0.0 and 1.0
    """
    s1 = normalize_text(s1)
    s2 = normalize_text(s2)

    if s1 == s2:
        return 1.0 if s1 else 0.0
    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    return 1.0 - (distance / max(len(s1), len(s2)))


@dataclass
class MatchCandidate:
    """A product that may correspond to a staged description."""

    product_id: str
    product_name: str
    confidence: float  # 0.0 - 1.0
    matched_value: str


@dataclass
class MatchResult:
    """Outcome of matching one description against the product catalog."""

    status: CandidateStatus
    product_id: str | None = None
    candidates: list[MatchCandidate] = field(default_factory=list)
    reason: str = ""


class ProductMatcher:
    """Resolves free-text sale descriptions to canonical products."""

    def __init__(self, session: Session, fuzzy_link_threshold: float = 0.92) -> None:
        self.session = session
        self.fuzzy_link_threshold = fuzzy_link_threshold
        self._products: list[ProductDB] | None = None

    @classmethod
    def from_config(cls, session: Session, config: ReconciliationConfig) -> ProductMatcher:
        """Create matcher from configuration."""
        return cls(session=session, fuzzy_link_threshold=config.fuzzy_link_threshold)

    def _all_products(self) -> list[ProductDB]:
        # The catalog is read once per matcher; promotion never creates products
        if self._products is None:
            self._products = list(self.session.execute(select(ProductDB)).scalars().all())
        return self._products

    def match(self, description: str | None) -> MatchResult:
        """
        Match a description to a product.

        Args:
            description: Free-text product description from a sales report

        Returns:
            MatchResult whose status is LINKED, PENDING or REJECTED
        """
        normalized = normalize_text(description)
        if not normalized:
            return MatchResult(status=CandidateStatus.REJECTED, reason="blank description")

        products = self._all_products()

        exact = [
            MatchCandidate(p.id, p.name, 1.0, normalized)
            for p in products
            if normalized in (normalize_text(p.sku), normalize_text(p.name))
        ]
        if len(exact) == 1:
            return MatchResult(
                status=CandidateStatus.LINKED,
                product_id=exact[0].product_id,
                candidates=exact,
                reason="exact match",
            )
        if len(exact) > 1:
            return MatchResult(
                status=CandidateStatus.PENDING,
                candidates=exact,
                reason=f"{len(exact)} exact matches",
            )

        fuzzy = []
        for product in products:
            confidence = string_similarity(normalized, product.name)
            if confidence >= self.fuzzy_link_threshold:
                fuzzy.append(MatchCandidate(product.id, product.name, confidence, normalized))
        fuzzy.sort(key=lambda c: c.confidence, reverse=True)

        if len(fuzzy) == 1:
            return MatchResult(
                status=CandidateStatus.LINKED,
                product_id=fuzzy[0].product_id,
                candidates=fuzzy,
                reason=f"fuzzy match ({fuzzy[0].confidence:.2f})",
            )
        if fuzzy:
            return MatchResult(
                status=CandidateStatus.PENDING,
                candidates=fuzzy,
                reason=f"{len(fuzzy)} fuzzy matches",
            )
        return MatchResult(status=CandidateStatus.PENDING, reason="no match")


@dataclass
class PromotionResult:
    """Counts from one promotion run."""

    purchase_orders_created: int = 0
    purchase_order_items_created: int = 0
    staging_orders_imported: int = 0
    sale_items_linked: int = 0
    sale_items_rejected: int = 0
    sale_items_pending: int = 0
    reconciled_sales_created: int = 0
    market_events_created: int = 0
    staging_sales_imported: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "purchase_orders_created": self.purchase_orders_created,
            "purchase_order_items_created": self.purchase_order_items_created,
            "staging_orders_imported": self.staging_orders_imported,
            "sale_items_linked": self.sale_items_linked,
            "sale_items_rejected": self.sale_items_rejected,
            "sale_items_pending": self.sale_items_pending,
            "reconciled_sales_created": self.reconciled_sales_created,
            "market_events_created": self.market_events_created,
            "staging_sales_imported": self.staging_sales_imported,
            "skipped": self.skipped,
        }


class PromotionEngine:
    """
    Promotes completed staging records into canonical entities.

    Each staging order and each staging sale is committed on its own, so a
    failure part way through leaves earlier promotions in place and a re-run
    picks up where it stopped.
    """

    def __init__(self, session: Session, matcher: ProductMatcher | None = None) -> None:
        self.session = session
        self.batches = StagingBatchRepository(session)
        self.matcher = matcher or ProductMatcher(session)

    def promote_all(self) -> PromotionResult:
        """Promote purchase orders and reconcile sales of every completed batch."""
        result = PromotionResult()
        for batch in self.batches.list_completed():
            for staging_order in self.batches.purchase_orders(batch.id):
                self._promote_purchase_order(batch.supplier_id, staging_order, result)
            for staging_sale in self.batches.sales(batch.id):
                self._reconcile_sale(staging_sale, result)

        logger.info(
            f"Promotion complete: {result.staging_orders_imported} order(s) imported, "
            f"{result.reconciled_sales_created} sale(s) reconciled, "
            f"{result.sale_items_pending} sale item(s) awaiting review"
        )
        return result

    # Purchase orders

    def _find_or_create_purchase_order(
        self,
        supplier_id: str,
        staging_order: StagingPurchaseOrderDB,
        result: PromotionResult,
    ) -> PurchaseOrderDB:
        if staging_order.purchase_order_id:
            existing = self.session.get(PurchaseOrderDB, staging_order.purchase_order_id)
            if existing is not None:
                return existing

        existing = self.session.execute(
            select(PurchaseOrderDB)
            .where(PurchaseOrderDB.supplier_id == supplier_id)
            .where(PurchaseOrderDB.supplier_reference == staging_order.supplier_reference)
            .limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        purchase_order = PurchaseOrderDB(
            supplier_id=supplier_id,
            supplier_reference=staging_order.supplier_reference,
            order_date=staging_order.order_date,
            status=ProcessingStatus.PENDING.value,
        )
        self.session.add(purchase_order)
        self.session.flush()
        result.purchase_orders_created += 1
        return purchase_order

    def _promote_purchase_order(
        self,
        supplier_id: str | None,
        staging_order: StagingPurchaseOrderDB,
        result: PromotionResult,
    ) -> None:
        if staging_order.is_imported:
            return
        if staging_order.status != ProcessingStatus.COMPLETED.value:
            result.skipped += 1
            return
        if supplier_id is None:
            logger.warning(
                f"Staging order {staging_order.id} has no supplier on its batch, skipping"
            )
            result.skipped += 1
            return

        purchase_order = self._find_or_create_purchase_order(supplier_id, staging_order, result)

        for staging_item in self.batches.purchase_order_items(staging_order.id):
            if staging_item.purchase_order_item_id is not None:
                staging_item.is_imported = True
                continue
            linked = staging_item.status == CandidateStatus.LINKED.value
            order_item = PurchaseOrderItemDB(
                purchase_order_id=purchase_order.id,
                product_id=staging_item.product_id if linked else None,
                supplier_reference=staging_item.supplier_reference,
                supplier_product_url=staging_item.supplier_product_url,
                name=staging_item.name,
                description=staging_item.description,
                quantity=staging_item.quantity,
                listed_unit_price=staging_item.listed_unit_price,
                actual_unit_price=staging_item.actual_unit_price,
            )
            self.session.add(order_item)
            self.session.flush()
            staging_item.purchase_order_item_id = order_item.id
            staging_item.is_imported = True
            result.purchase_order_items_created += 1

        staging_order.purchase_order_id = purchase_order.id
        staging_order.is_imported = True
        self.session.commit()
        result.staging_orders_imported += 1
        logger.debug(f"Imported staging order {staging_order.id} as {purchase_order.id}")

    # Sales

    def _find_or_create_market_event(
        self, name: str, sale_date: datetime, result: PromotionResult
    ) -> MarketEventDB:
        event = self.session.execute(
            select(MarketEventDB).where(MarketEventDB.name == name).limit(1)
        ).scalar_one_or_none()
        if event is not None:
            return event

        event = MarketEventDB(name=name, date=sale_date)
        self.session.add(event)
        self.session.flush()
        result.market_events_created += 1
        logger.info(f"Created market event '{name}'")
        return event

    def _promote_sale_item(self, item: StagingSaleItemDB, result: PromotionResult) -> None:
        if item.status == CandidateStatus.PENDING.value and item.product_id is None:
            match = self.matcher.match(item.product_description)
            if match.status == CandidateStatus.LINKED:
                item.product_id = match.product_id
                item.status = CandidateStatus.LINKED.value
                result.sale_items_linked += 1
            elif match.status == CandidateStatus.REJECTED:
                item.status = CandidateStatus.REJECTED.value
                result.sale_items_rejected += 1
            else:
                logger.debug(f"Sale item {item.id} left pending: {match.reason}")

        if item.status != CandidateStatus.LINKED.value or item.product_id is None:
            if item.status == CandidateStatus.PENDING.value:
                result.sale_items_pending += 1
            return

        event_name = (item.market_event_name or "").strip()
        if not event_name:
            return

        event = self._find_or_create_market_event(event_name, item.sale_date, result)
        sale = ReconciledSaleDB(
            product_id=item.product_id,
            market_event_id=event.id,
            quantity=item.quantity,
            sale_price=item.price,
        )
        self.session.add(sale)
        self.session.flush()
        item.reconciled_sale_id = sale.id
        item.is_imported = True
        result.reconciled_sales_created += 1

    def _reconcile_sale(self, staging_sale: StagingSaleDB, result: PromotionResult) -> None:
        if staging_sale.is_imported:
            return

        items = self.batches.sale_items(staging_sale.id)
        for item in items:
            if item.is_imported:
                continue
            self._promote_sale_item(item, result)

        if items and all(i.is_imported or i.status in _SETTLED_STATUSES for i in items):
            staging_sale.is_imported = True
            result.staging_sales_imported += 1

        self.session.commit()


class StagingLinkService:
    """Manual link, unlink and reject actions for staged items."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _get_product(self, product_id: str) -> ProductDB:
        product = self.session.get(ProductDB, product_id)
        if product is None:
            raise ValueError(f"Product not found: {product_id}")
        return product

    def _get_sale_item(self, item_id: str) -> StagingSaleItemDB:
        item = self.session.get(StagingSaleItemDB, item_id)
        if item is None:
            raise ValueError(f"Staging sale item not found: {item_id}")
        return item

    def _get_order_item(self, item_id: str) -> StagingPurchaseOrderItemDB:
        item = self.session.get(StagingPurchaseOrderItemDB, item_id)
        if item is None:
            raise ValueError(f"Staging purchase order item not found: {item_id}")
        return item

    def link_sale_item(self, item_id: str, product_id: str) -> StagingSaleItemDB:
        """
        Link a sale item to a product.

        Raises:
            ValueError: If the item or product is missing, or the item is imported
        """
        item = self._get_sale_item(item_id)
        if item.is_imported:
            raise ValueError(f"Sale item {item_id} is already imported")
        product = self._get_product(product_id)

        item.product_id = product.id
        item.status = CandidateStatus.LINKED.value
        self.session.commit()
        logger.info(f"Linked sale item {item_id} to product {product.id}")
        return item

    def unlink_sale_item(self, item_id: str) -> StagingSaleItemDB:
        """Return a sale item to pending review."""
        item = self._get_sale_item(item_id)
        if item.is_imported:
            raise ValueError(f"Sale item {item_id} is already imported and cannot be unlinked")

        item.product_id = None
        item.status = CandidateStatus.PENDING.value
        self.session.commit()
        logger.info(f"Unlinked sale item {item_id}")
        return item

    def reject_sale_item(self, item_id: str) -> StagingSaleItemDB:
        """Mark a sale item as matching no product."""
        item = self._get_sale_item(item_id)
        if item.is_imported:
            raise ValueError(f"Sale item {item_id} is already imported and cannot be rejected")

        item.product_id = None
        item.status = CandidateStatus.REJECTED.value
        self.session.commit()
        logger.info(f"Rejected sale item {item_id}")
        return item

    def link_purchase_order_item(self, item_id: str, product_id: str) -> StagingPurchaseOrderItemDB:
        """
        Link a staged order item to a product.

        If the item was already promoted, the canonical order item is linked too.
        """
        item = self._get_order_item(item_id)
        product = self._get_product(product_id)

        item.product_id = product.id
        item.status = CandidateStatus.LINKED.value
        if item.purchase_order_item_id:
            order_item = self.session.get(PurchaseOrderItemDB, item.purchase_order_item_id)
            if order_item is not None:
                order_item.product_id = product.id
        self.session.commit()
        logger.info(f"Linked order item {item_id} to product {product.id}")
        return item

    def unlink_purchase_order_item(self, item_id: str) -> StagingPurchaseOrderItemDB:
        """Clear the product link of a staged order item."""
        item = self._get_order_item(item_id)
        if item.is_imported:
            raise ValueError(f"Order item {item_id} is already imported and cannot be unlinked")

        item.product_id = None
        item.status = CandidateStatus.PENDING.value
        self.session.commit()
        logger.info(f"Unlinked order item {item_id}")
        return item
