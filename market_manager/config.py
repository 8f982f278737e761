"""
Processing Configuration
========================

Settings for the dispatcher, its handlers, the scraper collaborator,
reconciliation and the embedding service, loaded from a YAML file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass
class GlobalConfig:
    """Dispatcher loop timing."""

    poll_interval_seconds: float = 300.0
    startup_delay_seconds: float = 30.0
    stale_after_seconds: float = 3600.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            poll_interval_seconds=float(data.get("poll_interval_seconds", 300)),
            startup_delay_seconds=float(data.get("startup_delay_seconds", 30)),
            stale_after_seconds=float(data.get("stale_after_seconds", 3600)),
        )


@dataclass
class HandlerConfig:
    """Per-handler dispatch settings."""

    name: str
    max_items_per_cycle: int = 10
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HandlerConfig:
        """Create from dictionary."""
        max_items = int(data.get("max_items_per_cycle", 10))
        if max_items < 1:
            raise ValueError(
                f"Handler '{data['name']}': max_items_per_cycle must be >= 1, got {max_items}"
            )
        return cls(
            name=data["name"],
            max_items_per_cycle=max_items,
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class ScraperConfig:
    """HTTP settings handed to web scrapers."""

    user_agent: str = DEFAULT_USER_AGENT
    request_delay_seconds: float = 2.0
    request_timeout_seconds: float = 30.0
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ScraperConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        headers = dict(DEFAULT_HEADERS)
        headers.update(data.get("headers") or {})
        return cls(
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            request_delay_seconds=float(data.get("request_delay_seconds", 2.0)),
            request_timeout_seconds=float(data.get("request_timeout_seconds", 30.0)),
            headers=headers,
        )


@dataclass
class ReconciliationConfig:
    """Thresholds for matching staged items to products."""

    fuzzy_link_threshold: float = 0.92

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReconciliationConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(fuzzy_link_threshold=float(data.get("fuzzy_link_threshold", 0.92)))


@dataclass
class EmbeddingsConfig:
    """Image embedding service settings."""

    dimensions: int = 1024
    endpoint: str | None = None
    api_key: str | None = None
    model_version: str = "2023-04-15"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EmbeddingsConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        return cls(
            dimensions=int(data.get("dimensions", 1024)),
            endpoint=data.get("endpoint"),
            api_key=data.get("api_key"),
            model_version=str(data.get("model_version", "2023-04-15")),
        )

    @property
    def is_configured(self) -> bool:
        """True when an endpoint and key are both present."""
        return bool(self.endpoint and self.api_key)


@dataclass
class ProcessingConfig:
    """Complete processing configuration."""

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    handlers: dict[str, HandlerConfig] = field(default_factory=dict)
    scraper: ScraperConfig = field(default_factory=ScraperConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProcessingConfig:
        """Create from a parsed YAML document."""
        data = data or {}
        handlers: dict[str, HandlerConfig] = {}
        for handler_data in data.get("handlers") or []:
            handler = HandlerConfig.from_dict(handler_data)
            handlers[handler.name] = handler
        return cls(
            global_config=GlobalConfig.from_dict(data.get("global")),
            handlers=handlers,
            scraper=ScraperConfig.from_dict(data.get("scraper")),
            reconciliation=ReconciliationConfig.from_dict(data.get("reconciliation")),
            embeddings=EmbeddingsConfig.from_dict(data.get("embeddings")),
        )

    @classmethod
    def load(cls, config_path: Path | str) -> ProcessingConfig:
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the processing.yaml file

        Raises:
            FileNotFoundError: If the file does not exist
        """
        config_path = Path(config_path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f)

        config = cls.from_dict(data)
        config.config_path = config_path
        return config

    def handler(self, name: str) -> HandlerConfig:
        """Get settings for a handler, falling back to defaults."""
        return self.handlers.get(name) or HandlerConfig(name=name)


# Global configuration instance
_default_config: ProcessingConfig | None = None


def get_default_config() -> ProcessingConfig:
    """
    Get the default processing configuration.

    Loads from the path in the PROCESSING_CONFIG_PATH environment variable,
    or falls back to config/processing.yaml in the project root. A missing
    file yields the built-in defaults.
    """
    global _default_config

    if _default_config is None:
        config_path = os.environ.get("PROCESSING_CONFIG_PATH")
        if config_path:
            path = Path(config_path)
        else:
            project_root = Path(__file__).parent.parent
            path = project_root / "config" / "processing.yaml"

        if path.exists():
            _default_config = ProcessingConfig.load(path)
        else:
            _default_config = ProcessingConfig()

    return _default_config


def reset_default_config() -> None:
    """Reset the default configuration (useful for testing)."""
    global _default_config
    _default_config = None
