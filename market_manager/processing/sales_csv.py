"""
Sales Report CSV Processor
==========================

Parses a third-party sales report uploaded as CSV into one staging sale with
one staging sale item per valid row. Expected columns:

    date, description, quantity, price, market_event

Malformed rows are skipped and listed in the batch notes; a report without a
single valid row fails the batch.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from market_manager.core.enums import CandidateStatus
from market_manager.db.models_staging import StagingBatchDB, StagingSaleDB, StagingSaleItemDB
from market_manager.processing.base import BatchProcessor
from market_manager.processing.errors import RecoverableProcessingError

logger = logging.getLogger(__name__)

PROCESSOR_NAME = "SalesCsv"
REQUIRED_COLUMNS = ("date", "description", "quantity", "price")


def parse_sale_date(value: str) -> datetime:
    """Parse an ISO date or datetime, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SalesReportCsvProcessor(BatchProcessor):
    """Batch processor for ``sales_report`` batches named ``SalesCsv``."""

    async def process_batch(self, session: Session, batch: StagingBatchDB) -> None:
        if not batch.file_contents:
            raise RecoverableProcessingError("Sales report is empty")

        reader = csv.DictReader(io.StringIO(batch.file_contents))
        columns = {(name or "").strip().lower() for name in reader.fieldnames or []}
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise RecoverableProcessingError(f"Sales report is missing columns: {', '.join(missing)}")

        items: list[StagingSaleItemDB] = []
        skipped: list[str] = []

        # Header is line 1
        for line_number, raw_row in enumerate(reader, start=2):
            row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw_row.items()}
            try:
                description = row["description"]
                if not description:
                    raise ValueError("description is blank")
                items.append(
                    StagingSaleItemDB(
                        product_description=description,
                        sale_date=parse_sale_date(row["date"]),
                        quantity=int(row["quantity"]),
                        price=float(row["price"]),
                        market_event_name=row.get("market_event") or None,
                        raw_data=json.dumps(row),
                        status=CandidateStatus.PENDING.value,
                    )
                )
            except (KeyError, ValueError) as e:
                skipped.append(f"line {line_number}: {e}")

        if not items:
            raise RecoverableProcessingError(
                f"Sales report has no valid rows ({len(skipped)} malformed)"
            )

        sale = StagingSaleDB(
            staging_batch_id=batch.id,
            sale_date=min(item.sale_date for item in items),
            raw_data=batch.file_contents,
        )
        session.add(sale)
        session.flush()
        for item in items:
            item.staging_sale_id = sale.id
            session.add(item)

        if skipped:
            note = "Skipped malformed rows: " + "; ".join(skipped)
            batch.notes = f"{batch.notes}\n{note}" if batch.notes else note
            logger.warning(f"Batch {batch.id}: skipped {len(skipped)} malformed row(s)")

        logger.info(f"Batch {batch.id}: staged {len(items)} sale item(s)")
