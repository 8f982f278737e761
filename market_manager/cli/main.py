"""Market Manager CLI using Typer."""

import logging
from pathlib import Path

import typer
from dotenv import load_dotenv

from market_manager import __version__
from market_manager.cli.processing import batches_app, process_app, promote, sales_app

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

app = typer.Typer(
    name="market-manager",
    help="Market Manager - staging ingestion and processing for supplier orders and market sales",
    add_completion=False,
)
app.add_typer(batches_app, name="batches")
app.add_typer(process_app, name="process")
app.add_typer(sales_app, name="sales")
app.command("promote")(promote)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from market_manager.db.engine import init_db as db_init

    typer.echo("Initializing database...")
    db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def version() -> None:
    """Show the Market Manager version."""
    typer.echo(f"Market Manager v{__version__}")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    from market_manager.config import get_default_config
    from market_manager.db.engine import get_database_url

    typer.echo("Market Manager Configuration")
    typer.echo("=" * 40)

    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    config = get_default_config()
    typer.echo(f"  Processing config: {config.config_path or 'built-in defaults'}")
    typer.echo(f"  Poll interval: {config.global_config.poll_interval_seconds}s")
    embeddings = "configured" if config.embeddings.is_configured else "not configured"
    typer.echo(f"  Embedding service: {embeddings}")
    typer.echo(f"  Database: {get_database_url()}")


if __name__ == "__main__":
    app()
