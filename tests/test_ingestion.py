"""Tests for batch ingestion and the content-hash dedup gate."""

import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from market_manager.core.enums import BatchType, ProcessingStatus
from market_manager.db.models import Base
from market_manager.db.models_staging import StagingBatchDB
from market_manager.processing import state
from market_manager.processing.errors import DuplicateBatchError, InvalidTransitionError
from market_manager.processing.ingestion import IngestionService, compute_content_hash


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_ingestion.db"


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
def service(session):
    return IngestionService(session)


def _count_batches(session) -> int:
    return session.execute(select(func.count()).select_from(StagingBatchDB)).scalar_one()


def _force_status(session, batch: StagingBatchDB, status: ProcessingStatus) -> None:
    batch.status = status.value
    session.commit()


class TestContentHash:
    """Tests for compute_content_hash."""

    def test_deterministic(self) -> None:
        """Identical payloads hash identically."""
        assert compute_content_hash(b"payload") == compute_content_hash(b"payload")

    def test_text_and_bytes_agree(self) -> None:
        """Text is hashed as its UTF-8 encoding."""
        assert compute_content_hash("café") == compute_content_hash("café".encode("utf-8"))

    def test_distinct_payloads(self) -> None:
        """Different payloads hash differently."""
        assert compute_content_hash(b"a") != compute_content_hash(b"b")


class TestIngest:
    """Tests for IngestionService.ingest."""

    def test_creates_pending_batch(self, service, session) -> None:
        """A new payload becomes a pending batch holding the payload."""
        batch = service.ingest(
            b"date,description\n",
            BatchType.SALES_REPORT,
            "SalesCsv",
            notes="October market",
        )

        assert batch.status == ProcessingStatus.PENDING.value
        assert batch.batch_type == "sales_report"
        assert batch.batch_processor_name == "SalesCsv"
        assert batch.file_contents == "date,description\n"
        assert batch.content_hash == compute_content_hash(b"date,description\n")
        assert batch.completed_at is None
        assert batch.error_message is None
        assert _count_batches(session) == 1

    def test_enqueue_creates_queued_batch(self, service) -> None:
        """The enqueue flag skips the pending state."""
        batch = service.ingest(b"x", BatchType.FILE_UPLOAD, "Upload", enqueue=True)
        assert batch.status == ProcessingStatus.QUEUED.value

    def test_explicit_hash(self, service) -> None:
        """A caller-supplied hash is stored as given."""
        batch = service.ingest(b"{}", BatchType.WEB_SCRAPE, "Shein", content_hash="abc123")
        assert batch.content_hash == "abc123"

    @pytest.mark.parametrize(
        "status",
        [
            ProcessingStatus.PENDING,
            ProcessingStatus.QUEUED,
            ProcessingStatus.PROCESSING,
            ProcessingStatus.COMPLETED,
        ],
    )
    def test_rejects_duplicate_of_active_batch(self, service, session, status) -> None:
        """The same content is rejected while the first batch is not failed."""
        first = service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")
        _force_status(session, first, status)

        with pytest.raises(DuplicateBatchError) as exc_info:
            service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")

        assert exc_info.value.existing_batch_id == first.id
        assert _count_batches(session) == 1

    def test_accepts_duplicate_of_failed_batch(self, service, session) -> None:
        """Re-submitting content whose batch failed is a legitimate retry."""
        first = service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")
        _force_status(session, first, ProcessingStatus.FAILED)

        second = service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")

        assert second.id != first.id
        assert _count_batches(session) == 2

    def test_scenario_shein_duplicate(self, service, session) -> None:
        """Ingesting hash abc123 twice before failure leaves a single batch."""
        batch = service.ingest(b"{}", BatchType.WEB_SCRAPE, "Shein", content_hash="abc123")
        assert batch.status == ProcessingStatus.PENDING.value

        with pytest.raises(DuplicateBatchError):
            service.ingest(b"{}", BatchType.WEB_SCRAPE, "Shein", content_hash="abc123")

        assert _count_batches(session) == 1

    def test_unique_index_backs_the_gate(self, session) -> None:
        """The database refuses two active batches with one hash."""
        session.add(StagingBatchDB(batch_type="file_upload", content_hash="h", status="queued"))
        session.commit()
        session.add(StagingBatchDB(batch_type="file_upload", content_hash="h", status="pending"))

        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_unique_index_ignores_failed(self, session) -> None:
        """Failed batches do not hold their hash."""
        session.add(StagingBatchDB(batch_type="file_upload", content_hash="h", status="failed"))
        session.add(StagingBatchDB(batch_type="file_upload", content_hash="h", status="failed"))
        session.add(StagingBatchDB(batch_type="file_upload", content_hash="h", status="queued"))
        session.commit()

        assert _count_batches(session) == 3


class TestOperatorActions:
    """Tests for queue and requeue."""

    def test_queue_pending(self, service) -> None:
        """A pending batch can be queued."""
        batch = service.ingest(b"x", BatchType.FILE_UPLOAD, "Upload")
        queued = service.queue(batch.id)
        assert queued.status == ProcessingStatus.QUEUED.value

    def test_queue_missing(self, service) -> None:
        """Queueing an unknown batch raises."""
        with pytest.raises(ValueError):
            service.queue("missing")

    def test_queue_twice(self, service) -> None:
        """Queueing an already queued batch is not allowed."""
        batch = service.ingest(b"x", BatchType.FILE_UPLOAD, "Upload", enqueue=True)
        with pytest.raises(InvalidTransitionError):
            service.queue(batch.id)

    def test_requeue_failed(self, service, session) -> None:
        """A failed batch goes back to queued with its error cleared."""
        batch = service.ingest(b"x", BatchType.FILE_UPLOAD, "Upload", enqueue=True)
        state.transition(batch, ProcessingStatus.PROCESSING)
        state.fail(batch, "boom")
        session.commit()

        requeued = service.requeue(batch.id)

        assert requeued.status == ProcessingStatus.QUEUED.value
        assert requeued.error_message is None
        assert requeued.completed_at is None

    def test_requeue_completed_rejected(self, service, session) -> None:
        """Completed batches stay completed."""
        batch = service.ingest(b"x", BatchType.FILE_UPLOAD, "Upload")
        _force_status(session, batch, ProcessingStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            service.requeue(batch.id)

    def test_requeue_blocked_by_newer_active_batch(self, service, session) -> None:
        """Re-queue fails when the content was re-submitted meanwhile."""
        first = service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")
        _force_status(session, first, ProcessingStatus.FAILED)
        service.ingest(b"same", BatchType.FILE_UPLOAD, "Upload")

        with pytest.raises(DuplicateBatchError):
            service.requeue(first.id)

        session.refresh(first)
        assert first.status == ProcessingStatus.FAILED.value
