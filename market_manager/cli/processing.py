"""
Processing CLI Commands
=======================

CLI commands for staging batches, the dispatcher, promotion and manual
sale item linking.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from market_manager.config import get_default_config
from market_manager.core.enums import BatchType, ProcessingStatus
from market_manager.db.engine import get_session
from market_manager.db.repositories import StagingBatchRepository
from market_manager.processing.errors import DuplicateBatchError
from market_manager.processing.ingestion import IngestionService
from market_manager.processing.reconciliation import (
    ProductMatcher,
    PromotionEngine,
    StagingLinkService,
)

console = Console()
batches_app = typer.Typer(help="Staging batch commands")
process_app = typer.Typer(help="Dispatcher commands")
sales_app = typer.Typer(help="Manual sale item reconciliation")

_STATUS_STYLES = {
    ProcessingStatus.PENDING.value: "dim",
    ProcessingStatus.QUEUED.value: "cyan",
    ProcessingStatus.PROCESSING.value: "yellow",
    ProcessingStatus.COMPLETED.value: "green",
    ProcessingStatus.FAILED.value: "red",
}


def _styled_status(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


# Batches subcommands


@batches_app.command("list")
def list_batches(
    status: Optional[ProcessingStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum batches to show"),
) -> None:
    """
    List staging batches, newest first.

    Examples:
        market-manager batches list
        market-manager batches list --status failed
    """
    with get_session() as session:
        repo = StagingBatchRepository(session)
        batches = repo.list_batches(status=status, limit=limit)

        if not batches:
            rprint("[yellow]No batches found[/yellow]")
            return

        table = Table(title="Staging Batches")
        table.add_column("ID", style="dim")
        table.add_column("Type")
        table.add_column("Processor", style="bold")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Error")

        for batch in batches:
            table.add_row(
                batch.id[:8],
                batch.batch_type,
                batch.batch_processor_name or "-",
                _styled_status(batch.status),
                batch.started_at.strftime("%Y-%m-%d %H:%M") if batch.started_at else "-",
                (batch.error_message or "")[:60],
            )

        console.print(table)


@batches_app.command("show")
def show_batch(
    batch_id: str = typer.Argument(..., help="Batch ID"),
) -> None:
    """Show a batch and its staging records."""
    with get_session() as session:
        repo = StagingBatchRepository(session)
        batch = repo.get_by_id(batch_id)
        if batch is None:
            rprint(f"[red]Error:[/red] Batch '{batch_id}' not found")
            raise typer.Exit(1)

        rprint(f"\n[bold]Batch: {batch.id}[/bold]")
        rprint(f"  Type: {batch.batch_type}")
        rprint(f"  Processor: {batch.batch_processor_name or '-'}")
        rprint(f"  Status: {_styled_status(batch.status)}")
        rprint(f"  Content hash: {batch.content_hash}")
        rprint(f"  Started: {batch.started_at}")
        if batch.completed_at:
            rprint(f"  Completed: {batch.completed_at}")
        if batch.error_message:
            rprint(f"  [red]Error:[/red] {batch.error_message}")
        if batch.notes:
            rprint(f"  Notes: {batch.notes}")

        orders = repo.purchase_orders(batch.id)
        if orders:
            rprint(f"\n[bold]Purchase Orders ({len(orders)}):[/bold]")
            for order in orders:
                imported = " [green](imported)[/green]" if order.is_imported else ""
                rprint(f"  • {order.supplier_reference} {_styled_status(order.status)}{imported}")

        sales = repo.sales(batch.id)
        for sale in sales:
            items = repo.sale_items(sale.id)
            rprint(f"\n[bold]Sale {sale.id[:8]} ({len(items)} items):[/bold]")
            for item in items:
                imported = " [green](imported)[/green]" if item.is_imported else ""
                rprint(f"  • {item.id[:8]} {item.product_description} [{item.status}]{imported}")


@batches_app.command("ingest")
def ingest_file(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to ingest"),
    batch_type: BatchType = typer.Option(..., "--type", "-t", help="Batch type"),
    processor: str = typer.Option(..., "--processor", "-p", help="Processor name"),
    supplier_id: Optional[str] = typer.Option(None, "--supplier", help="Owning supplier ID"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Free-text notes"),
    queue: bool = typer.Option(False, "--queue", "-q", help="Queue immediately"),
) -> None:
    """
    Ingest a file as a new staging batch.

    Examples:
        market-manager batches ingest report.csv --type sales_report --processor SalesCsv --queue
        market-manager batches ingest cookies.json -t web_scrape -p Shein --supplier <id>
    """
    payload = path.read_bytes()
    with get_session() as session:
        service = IngestionService(session)
        try:
            batch = service.ingest(
                payload,
                batch_type=batch_type,
                processor_name=processor,
                supplier_id=supplier_id,
                notes=notes,
                enqueue=queue,
            )
        except DuplicateBatchError as e:
            rprint(f"[red]Rejected:[/red] {e}")
            raise typer.Exit(1)

        rprint(f"[green]Batch created:[/green] {batch.id} ({_styled_status(batch.status)})")


@batches_app.command("queue")
def queue_batch(
    batch_id: str = typer.Argument(..., help="Batch ID"),
) -> None:
    """Accept a pending batch for processing."""
    with get_session() as session:
        try:
            batch = IngestionService(session).queue(batch_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        rprint(f"[green]Batch {batch.id} queued[/green]")


@batches_app.command("requeue")
def requeue_batch(
    batch_id: str = typer.Argument(..., help="Batch ID"),
) -> None:
    """Retry a failed batch."""
    with get_session() as session:
        try:
            batch = IngestionService(session).requeue(batch_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        rprint(f"[green]Batch {batch.id} re-queued[/green]")


# Process subcommands


def _display_cycle(result: dict) -> None:
    table = Table(title="Dispatcher Cycle")
    table.add_column("Handler", style="bold")
    table.add_column("Fetched", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Aborted")

    for handler in result["handlers"]:
        table.add_row(
            handler["handler_name"],
            str(handler["fetched"]),
            str(handler["processed"]),
            f"[red]{handler['errors']}[/red]" if handler["errors"] else "0",
            "[red]yes[/red]" if handler["aborted"] else "no",
        )
    console.print(table)


@process_app.command("once")
def process_once(
    recover: bool = typer.Option(True, "--recover/--no-recover", help="Re-queue stale claims first"),
) -> None:
    """Run a single dispatcher cycle in this process."""
    from market_manager.jobs import build_dispatcher

    async def _run() -> dict:
        dispatcher = build_dispatcher()
        if recover:
            await dispatcher.recover()
        return (await dispatcher.process_cycle()).to_dict()

    with console.status("[bold blue]Processing...[/bold blue]"):
        result = asyncio.run(_run())
    _display_cycle(result)


@process_app.command("run")
def process_run() -> None:
    """
    Run the polling dispatcher in the foreground until interrupted.

    Examples:
        market-manager process run
    """
    from market_manager.jobs import build_dispatcher

    config = get_default_config()
    rprint("[bold]Starting dispatcher...[/bold]")
    rprint(f"  Poll interval: {config.global_config.poll_interval_seconds}s")
    rprint("Press Ctrl+C to stop\n")

    async def _run() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await build_dispatcher(config).run(stop_event)

    asyncio.run(_run())


@process_app.command("worker")
def start_worker(
    burst: bool = typer.Option(False, "--burst", help="Run in burst mode (exit when queue empty)"),
) -> None:
    """
    Start the arq worker that runs dispatcher cycles from Redis.

    Examples:
        market-manager process worker
    """
    from arq import run_worker

    from market_manager.jobs import WorkerSettings

    rprint("[bold]Starting processing worker...[/bold]")
    rprint("Press Ctrl+C to stop\n")

    try:
        run_worker(WorkerSettings, burst=burst)
    except OSError as e:
        rprint(f"[red]Error:[/red] Worker failed: {e}")
        rprint("\nMake sure Redis is running:")
        rprint("  docker-compose up -d redis")
        raise typer.Exit(1)


@process_app.command("enqueue")
def enqueue() -> None:
    """Ask the arq worker to run a cycle now."""
    from market_manager.jobs import enqueue_cycle

    try:
        job_id = asyncio.run(enqueue_cycle())
    except (OSError, RuntimeError) as e:
        rprint(f"[red]Error:[/red] Failed to enqueue cycle: {e}")
        raise typer.Exit(1)
    rprint(f"[green]Cycle enqueued:[/green] {job_id}")


# Promotion


def promote() -> None:
    """Promote completed staging records into purchase orders and sales."""
    config = get_default_config()
    with get_session() as session:
        matcher = ProductMatcher.from_config(session, config.reconciliation)
        result = PromotionEngine(session, matcher).promote_all()

    table = Table(title="Promotion")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, value in result.to_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


# Sales subcommands


@sales_app.command("link")
def link_sale_item(
    item_id: str = typer.Argument(..., help="Staging sale item ID"),
    product_id: str = typer.Argument(..., help="Product ID"),
) -> None:
    """Link a sale item to a product."""
    with get_session() as session:
        try:
            StagingLinkService(session).link_sale_item(item_id, product_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    rprint(f"[green]Linked {item_id} to {product_id}[/green]")


@sales_app.command("unlink")
def unlink_sale_item(
    item_id: str = typer.Argument(..., help="Staging sale item ID"),
) -> None:
    """Return a sale item to pending review."""
    with get_session() as session:
        try:
            StagingLinkService(session).unlink_sale_item(item_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    rprint(f"[green]Unlinked {item_id}[/green]")


@sales_app.command("reject")
def reject_sale_item(
    item_id: str = typer.Argument(..., help="Staging sale item ID"),
) -> None:
    """Mark a sale item as matching no product."""
    with get_session() as session:
        try:
            StagingLinkService(session).reject_sale_item(item_id)
        except ValueError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    rprint(f"[yellow]Rejected {item_id}[/yellow]")
