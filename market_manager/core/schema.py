"""Pydantic v2 models exchanged with the scraper collaborator.

- CookieData, CookieFile (portable session cookies, camelCase JSON)
- ScrapedOrder, ScrapedOrderItem (structured records produced by a scraper)
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    """Base for models serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CookieData(_CamelModel):
    """A single HTTP cookie captured from a browser session."""

    name: str
    value: str = ""
    domain: str | None = None  # e.g. ".shein.com"
    path: str | None = None
    secure: bool = False
    http_only: bool = False
    expires: datetime | None = None
    same_site: str | None = None  # None, Lax, Strict


class CookieFile(_CamelModel):
    """
    Bundle of authenticated-session cookies for one scraping domain.

    Cookies are keyed by cookie name. Serializes to a JSON document with
    camelCase keys and round-trips losslessly.
    """

    domain: str = ""
    captured_at: datetime = Field(default_factory=_utc_now)
    expires_at: datetime | None = None
    cookies: dict[str, CookieData] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the bundle should be re-captured."""
        if self.expires_at is None:
            return False
        now = now or _utc_now()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= now

    def to_json(self) -> str:
        """Serialize to the camelCase JSON document."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> "CookieFile":
        """Deserialize from a camelCase JSON document."""
        return cls.model_validate_json(data)


class ScrapedOrderItem(BaseModel):
    """One line item of a scraped supplier order."""

    supplier_reference: str
    name: str
    description: str | None = None
    supplier_product_url: str | None = None
    quantity: int = 1
    listed_unit_price: float = 0.0
    actual_unit_price: float = 0.0
    raw_data: str = ""

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class ScrapedOrder(BaseModel):
    """A supplier order parsed from an order detail page."""

    supplier_reference: str
    order_date: datetime = Field(default_factory=_utc_now)
    items: list[ScrapedOrderItem] = Field(default_factory=list)
    raw_data: str = ""
