"""Tests for the sales report CSV processor."""

import json
import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from market_manager.core.enums import BatchType, CandidateStatus
from market_manager.db.models import Base
from market_manager.db.repositories import StagingBatchRepository
from market_manager.processing.errors import RecoverableProcessingError
from market_manager.processing.ingestion import IngestionService
from market_manager.processing.sales_csv import SalesReportCsvProcessor, parse_sale_date


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_sales_csv.db"


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


def _batch(session, contents: str):
    return IngestionService(session).ingest(contents, BatchType.SALES_REPORT, "SalesCsv")


VALID_REPORT = """Date,Description,Quantity,Price,Market_Event
2025-10-04,Silver Moon Ring,2,25.00,Harvest Fair
2025-10-03T14:30:00,Gold Star Necklace,1,40,
"""


class TestParseSaleDate:
    """Tests for parse_sale_date."""

    def test_date_only(self) -> None:
        assert parse_sale_date("2025-10-04") == datetime(2025, 10, 4, tzinfo=UTC)

    def test_offset_kept(self) -> None:
        parsed = parse_sale_date("2025-10-04T10:00:00+02:00")
        assert parsed.utcoffset().total_seconds() == 7200

    def test_invalid(self) -> None:
        with pytest.raises(ValueError):
            parse_sale_date("04/10/2025")


class TestSalesReportCsvProcessor:
    """Tests for SalesReportCsvProcessor."""

    @pytest.mark.asyncio
    async def test_stages_rows(self, session) -> None:
        """Each valid row becomes a pending staging sale item."""
        batch = _batch(session, VALID_REPORT)

        await SalesReportCsvProcessor().process_batch(session, batch)
        session.commit()

        repo = StagingBatchRepository(session)
        sales = repo.sales(batch.id)
        assert len(sales) == 1
        assert sales[0].raw_data == VALID_REPORT
        assert sales[0].sale_date.date().isoformat() == "2025-10-03"

        items = sorted(repo.sale_items(sales[0].id), key=lambda i: i.product_description)
        assert [i.product_description for i in items] == ["Gold Star Necklace", "Silver Moon Ring"]
        assert items[1].quantity == 2
        assert items[1].price == 25.0
        assert items[1].market_event_name == "Harvest Fair"
        assert items[0].market_event_name is None
        assert all(i.status == CandidateStatus.PENDING.value for i in items)
        assert json.loads(items[1].raw_data)["description"] == "Silver Moon Ring"
        assert batch.notes is None

    @pytest.mark.asyncio
    async def test_malformed_rows_noted(self, session) -> None:
        """Malformed rows are skipped and listed in the batch notes."""
        report = (
            "date,description,quantity,price\n"
            "2025-10-04,Ring,1,10\n"
            "2025-10-04,,1,10\n"
            "2025-10-04,Necklace,two,10\n"
            "yesterday,Bracelet,1,10\n"
        )
        batch = _batch(session, report)

        await SalesReportCsvProcessor().process_batch(session, batch)
        session.commit()

        sale = StagingBatchRepository(session).sales(batch.id)[0]
        assert len(StagingBatchRepository(session).sale_items(sale.id)) == 1
        assert "Skipped malformed rows" in batch.notes
        assert "line 3" in batch.notes
        assert "line 4" in batch.notes
        assert "line 5" in batch.notes

    @pytest.mark.asyncio
    async def test_existing_notes_kept(self, session) -> None:
        """Skipped-row notes are appended to operator notes."""
        batch = IngestionService(session).ingest(
            "date,description,quantity,price\n2025-10-04,Ring,1,10\nbad,Ring,1,10\n",
            BatchType.SALES_REPORT,
            "SalesCsv",
            notes="October market",
        )

        await SalesReportCsvProcessor().process_batch(session, batch)

        assert batch.notes.startswith("October market\n")

    @pytest.mark.asyncio
    async def test_missing_columns(self, session) -> None:
        """A report without the required columns fails."""
        batch = _batch(session, "date,item\n2025-10-04,Ring\n")

        with pytest.raises(RecoverableProcessingError, match="quantity"):
            await SalesReportCsvProcessor().process_batch(session, batch)

    @pytest.mark.asyncio
    async def test_no_valid_rows(self, session) -> None:
        """A report with only malformed rows fails."""
        batch = _batch(session, "date,description,quantity,price\nbad,Ring,x,y\n")

        with pytest.raises(RecoverableProcessingError):
            await SalesReportCsvProcessor().process_batch(session, batch)

    @pytest.mark.asyncio
    async def test_empty_report(self, session) -> None:
        """An empty file fails."""
        batch = _batch(session, "")

        with pytest.raises(RecoverableProcessingError):
            await SalesReportCsvProcessor().process_batch(session, batch)
