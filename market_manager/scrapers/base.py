"""
Web Scraper Base
================

Base class for supplier website scrapers and the batch processor that drives
them. Concrete scrapers provide the URLs and HTML parsing; the base supplies
an authenticated httpx client built from a CookieFile and the scraper
configuration.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from http.cookiejar import Cookie
from types import TracebackType

import httpx
from sqlalchemy.orm import Session

from market_manager.config import ScraperConfig
from market_manager.core.enums import CandidateStatus, ProcessingStatus
from market_manager.core.schema import CookieData, CookieFile, ScrapedOrder
from market_manager.db.models_staging import (
    StagingBatchDB,
    StagingPurchaseOrderDB,
    StagingPurchaseOrderItemDB,
)
from market_manager.processing.base import BatchProcessor
from market_manager.processing.errors import RECOVERABLE_ERRORS
from market_manager.processing.sessions import CookieManager

logger = logging.getLogger(__name__)

# Values parsed from one row of the orders list page, e.g. {"orderId": "12345"}
OrderSummary = dict[str, str]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class WebScraper(ABC):
    """
    Base class for supplier scrapers.

    Subclasses must implement:
    - orders_list_url(): URL of the account's order history page
    - order_detail_url(): URL of one order, built from its list summary
    - parse_orders_list(): extract one summary per order from the list page
    - parse_order_details(): build a ScrapedOrder from a detail page

    Use as an async context manager; the HTTP client lives for the duration
    of the block.
    """

    domain: str = ""

    def __init__(
        self,
        config: ScraperConfig | None = None,
        cookie_file: CookieFile | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ScraperConfig()
        self.cookie_file = cookie_file
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._seeded: dict[tuple[str, str, str], tuple[Cookie, CookieData]] = {}

    @abstractmethod
    def orders_list_url(self) -> str:
        ...

    @abstractmethod
    def order_detail_url(self, summary: OrderSummary) -> str:
        ...

    @abstractmethod
    def parse_orders_list(self, html: str) -> list[OrderSummary]:
        ...

    @abstractmethod
    def parse_order_details(self, html: str, summary: OrderSummary) -> ScrapedOrder:
        ...

    def _build_cookies(self) -> httpx.Cookies:
        cookies = httpx.Cookies()
        if self.cookie_file is None:
            return cookies
        uploaded: dict[tuple[str, str, str], CookieData] = {}
        for cookie in self.cookie_file.cookies.values():
            domain = cookie.domain or self.cookie_file.domain or ""
            path = cookie.path or "/"
            cookies.set(cookie.name, cookie.value, domain=domain, path=path)
            uploaded[(domain, path, cookie.name)] = cookie
        # Jar entries are replaced, not mutated, when the site sets a cookie again
        for jar_cookie in cookies.jar:
            key = (jar_cookie.domain, jar_cookie.path, jar_cookie.name)
            self._seeded[key] = (jar_cookie, uploaded[key])
        return cookies

    async def __aenter__(self) -> WebScraper:
        headers = dict(self.config.headers)
        headers["User-Agent"] = self.config.user_agent
        self._client = httpx.AsyncClient(
            cookies=self._build_cookies(),
            headers=headers,
            timeout=self.config.request_timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Scraper must be used inside 'async with'")
        return self._client

    async def fetch_page(self, url: str) -> str:
        """
        Fetch a page and return its text.

        Raises:
            httpx.HTTPError: On transport failures or a non-2xx status
        """
        response = await self.client.get(url)
        response.raise_for_status()
        return response.text

    async def delay(self) -> None:
        """Wait the configured pause between requests."""
        if self.config.request_delay_seconds > 0:
            await asyncio.sleep(self.config.request_delay_seconds)

    def export_cookies(self) -> CookieFile:
        """
        Snapshot the client's current cookies as a CookieFile.

        Uploaded cookies the site left alone keep every attribute they came
        with. Cookies the site set during the run are taken from the jar, and
        uploaded cookies the site removed are dropped. The bundle expires with
        its earliest cookie; while any uploaded cookie is carried over, the
        uploaded bundle's own expiry still applies.
        """
        cookies: dict[str, CookieData] = {}
        carried_over = False
        for cookie in self.client.cookies.jar:
            seeded = self._seeded.get((cookie.domain, cookie.path, cookie.name))
            if seeded is not None and seeded[0] is cookie:
                cookies[cookie.name] = seeded[1].model_copy()
                carried_over = True
                continue
            cookies[cookie.name] = CookieData(
                name=cookie.name,
                value=cookie.value or "",
                domain=cookie.domain or None,
                path=cookie.path or None,
                secure=bool(cookie.secure),
                http_only=cookie.has_nonstandard_attr("HttpOnly"),
                expires=(
                    datetime.fromtimestamp(cookie.expires, UTC) if cookie.expires is not None else None
                ),
                same_site=cookie.get_nonstandard_attr("SameSite"),
            )

        expiries = [c.expires for c in cookies.values() if c.expires is not None]
        if carried_over and self.cookie_file is not None and self.cookie_file.expires_at is not None:
            expiries.append(self.cookie_file.expires_at)

        metadata = dict(self.cookie_file.metadata) if self.cookie_file else {}
        return CookieFile(
            domain=(self.cookie_file.domain if self.cookie_file else "") or self.domain,
            captured_at=datetime.now(UTC),
            expires_at=min(expiries, key=_as_utc) if expiries else None,
            cookies=cookies,
            metadata=metadata,
        )


ScraperFactory = Callable[[ScraperConfig, CookieFile | None], WebScraper]


class ScraperBatchProcessor(BatchProcessor):
    """
    Batch processor for ``web_scrape`` batches.

    Runs one scraper session per batch: the orders list is fetched first,
    then each order's detail page. Every order is committed as its own
    staging purchase order, so one bad order is recorded on that order and
    the batch carries on. Failing to load the orders list fails the batch.
    """

    def __init__(
        self,
        scraper_factory: ScraperFactory,
        config: ScraperConfig | None = None,
        domain: str = "",
    ) -> None:
        self.scraper_factory = scraper_factory
        self.config = config or ScraperConfig()
        self.domain = domain

    def _load_cookies(self, manager: CookieManager, batch: StagingBatchDB) -> CookieFile | None:
        """Cookies uploaded with the batch win over the latest stored bundle."""
        if batch.file_contents and batch.file_contents.strip():
            cookie_file = CookieFile.from_json(batch.file_contents)
            if not cookie_file.domain:
                cookie_file.domain = self.domain
            return cookie_file
        if self.domain:
            return manager.load_latest(self.domain)
        return None

    async def process_batch(self, session: Session, batch: StagingBatchDB) -> None:
        manager = CookieManager(session)
        scraper_session = manager.start_session(
            supplier_id=batch.supplier_id, batch_id=batch.id, domain=self.domain or None
        )

        try:
            cookie_file = self._load_cookies(manager, batch)
            if cookie_file is None:
                logger.info(f"Batch {batch.id}: no stored cookies, scraping unauthenticated")

            async with self.scraper_factory(self.config, cookie_file) as scraper:
                imported, failed = await self._scrape_orders(session, batch, scraper)
                manager.capture(scraper_session, scraper.export_cookies())
        except RECOVERABLE_ERRORS as e:
            session.rollback()
            manager.fail_session(scraper_session, f"{type(e).__name__}: {e}")
            raise

        scraper_session.notes = f"{imported} order(s) scraped, {failed} failed"
        manager.complete_session(scraper_session)

    async def _scrape_orders(
        self,
        session: Session,
        batch: StagingBatchDB,
        scraper: WebScraper,
    ) -> tuple[int, int]:
        logger.info(f"Batch {batch.id}: fetching orders list")
        list_html = await scraper.fetch_page(scraper.orders_list_url())
        summaries = scraper.parse_orders_list(list_html)
        logger.info(f"Batch {batch.id}: found {len(summaries)} order(s)")

        imported = 0
        failed = 0
        for summary in summaries:
            await scraper.delay()
            order_url = scraper.order_detail_url(summary)

            staging_order = StagingPurchaseOrderDB(
                staging_batch_id=batch.id,
                supplier_reference=order_url,
                raw_data=json.dumps(summary),
                is_imported=False,
                status=ProcessingStatus.PROCESSING.value,
            )
            session.add(staging_order)
            session.commit()

            try:
                detail_html = await scraper.fetch_page(order_url)
                order = scraper.parse_order_details(detail_html, summary)
                self._apply_order(session, staging_order, order)
                staging_order.status = ProcessingStatus.COMPLETED.value
                session.commit()
                imported += 1
            except RECOVERABLE_ERRORS as e:
                session.rollback()
                staging_order.status = ProcessingStatus.FAILED.value
                staging_order.error_message = f"{type(e).__name__}: {e}"
                session.commit()
                failed += 1
                logger.warning(f"Batch {batch.id}: failed to scrape {order_url}: {e}")

        return imported, failed

    @staticmethod
    def _apply_order(
        session: Session,
        staging_order: StagingPurchaseOrderDB,
        order: ScrapedOrder,
    ) -> None:
        staging_order.supplier_reference = order.supplier_reference or staging_order.supplier_reference
        staging_order.order_date = order.order_date
        if order.raw_data:
            staging_order.raw_data = order.raw_data

        for item in order.items:
            session.add(
                StagingPurchaseOrderItemDB(
                    staging_purchase_order_id=staging_order.id,
                    supplier_reference=item.supplier_reference,
                    supplier_product_url=item.supplier_product_url,
                    name=item.name,
                    description=item.description,
                    quantity=item.quantity,
                    listed_unit_price=item.listed_unit_price,
                    actual_unit_price=item.actual_unit_price,
                    raw_data=item.raw_data,
                    status=CandidateStatus.PENDING.value,
                )
            )
