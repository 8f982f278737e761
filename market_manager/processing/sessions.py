"""
Session/Cookie Manager
======================

Persists the cookie bundle captured by a scraper session and rehydrates the
most recent usable bundle for a domain when the next session starts.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from market_manager.core.enums import ProcessingStatus
from market_manager.core.schema import CookieFile
from market_manager.db.models_staging import ScraperSessionDB
from market_manager.db.repositories import ScraperSessionRepository

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CookieManager:
    """Stores and loads CookieFile bundles through scraper sessions."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.sessions = ScraperSessionRepository(session)

    def start_session(
        self,
        supplier_id: str | None = None,
        batch_id: str | None = None,
        domain: str | None = None,
    ) -> ScraperSessionDB:
        """Record the start of a scraping run."""
        scraper_session = ScraperSessionDB(
            supplier_id=supplier_id,
            staging_batch_id=batch_id,
            status=ProcessingStatus.PROCESSING.value,
            cookie_domain=domain,
        )
        self.sessions.create(scraper_session)
        self.session.commit()
        logger.info(f"Started scraper session {scraper_session.id} for batch {batch_id}")
        return scraper_session

    def load_latest(self, domain: str, now: datetime | None = None) -> CookieFile | None:
        """
        Rehydrate the most recent non-expired cookie bundle for a domain.

        Returns:
            The bundle, or None if nothing usable is stored
        """
        now = now or _utc_now()
        stored = self.sessions.latest_cookie_session(domain, now)
        if stored is None or stored.cookie_file_json is None:
            logger.debug(f"No stored cookies for {domain}")
            return None

        cookie_file = CookieFile.from_json(stored.cookie_file_json)
        if cookie_file.is_expired(now):
            return None
        logger.debug(f"Loaded cookies for {domain} from session {stored.id}")
        return cookie_file

    def capture(self, scraper_session: ScraperSessionDB, cookie_file: CookieFile) -> None:
        """
        Persist a cookie bundle on a session.

        The newest capture for a domain supersedes older ones on the next load.
        """
        scraper_session.cookie_file_json = cookie_file.to_json()
        scraper_session.cookie_domain = cookie_file.domain or scraper_session.cookie_domain
        scraper_session.cookie_captured_at = cookie_file.captured_at
        scraper_session.cookie_expires_at = cookie_file.expires_at
        self.session.commit()
        logger.debug(
            f"Captured {len(cookie_file.cookies)} cookie(s) for {cookie_file.domain} "
            f"on session {scraper_session.id}"
        )

    def complete_session(self, scraper_session: ScraperSessionDB) -> None:
        """Mark a session completed."""
        scraper_session.status = ProcessingStatus.COMPLETED.value
        scraper_session.completed_at = _utc_now()
        scraper_session.error_message = None
        self.session.commit()

    def fail_session(self, scraper_session: ScraperSessionDB, error_message: str) -> None:
        """Mark a session failed with the error that stopped it."""
        scraper_session.status = ProcessingStatus.FAILED.value
        scraper_session.completed_at = _utc_now()
        scraper_session.error_message = error_message
        self.session.commit()
        logger.warning(f"Scraper session {scraper_session.id} failed: {error_message}")
