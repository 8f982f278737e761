"""
Scraper Registry
================

Registry of supplier scrapers by processor name. A ``web_scrape`` batch
whose processor name is registered here is routed to a ScraperBatchProcessor
built around that scraper.
"""

from __future__ import annotations

from market_manager.scrapers.base import (
    OrderSummary,
    ScraperBatchProcessor,
    ScraperFactory,
    WebScraper,
)

# Registry mapping processor names to scraper classes
SCRAPER_REGISTRY: dict[str, type[WebScraper]] = {}


def get_scraper(name: str) -> type[WebScraper] | None:
    """
    Get a scraper class by processor name.

    Args:
        name: Processor name (e.g., "Shein")

    Returns:
        Scraper class, or None if not registered
    """
    return SCRAPER_REGISTRY.get(name)


def register_scraper(name: str, scraper_class: type[WebScraper]) -> None:
    """
    Register a scraper class under a processor name.

    Args:
        name: Processor name stored on web_scrape batches
        scraper_class: Scraper class (must inherit from WebScraper)
    """
    if not issubclass(scraper_class, WebScraper):
        raise TypeError(f"{scraper_class} must inherit from WebScraper")
    SCRAPER_REGISTRY[name] = scraper_class


def list_scrapers() -> list[str]:
    """List all registered scraper names."""
    return list(SCRAPER_REGISTRY.keys())


__all__ = [
    "OrderSummary",
    "ScraperBatchProcessor",
    "ScraperFactory",
    "WebScraper",
    "SCRAPER_REGISTRY",
    "get_scraper",
    "register_scraper",
    "list_scrapers",
]
