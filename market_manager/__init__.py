"""Market Manager - staging ingestion and work-queue processing."""

__version__ = "0.1.0"
