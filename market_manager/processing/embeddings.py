"""
Image Embedding Generators
==========================

Clients for the embedding service that turns a product image URL into a
fixed-length vector. The vector computation itself happens remotely.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from market_manager.config import EmbeddingsConfig
from market_manager.processing.errors import FatalProcessingError, RecoverableProcessingError

logger = logging.getLogger(__name__)

VECTORIZE_API_VERSION = "2024-02-01"


class ImageEmbeddingGenerator(ABC):
    """Produces an embedding vector for an image URL."""

    @abstractmethod
    async def generate(self, image_url: str) -> list[float]:
        """
        Generate the embedding for one image.

        Raises:
            RecoverableProcessingError: If the service returned no vector
            FatalProcessingError: If no embedding service is configured
            httpx.HTTPError: On transport or HTTP status failures
        """
        ...


class AzureVisionEmbeddingGenerator(ImageEmbeddingGenerator):
    """
    Generator backed by the Azure AI Vision ``retrieval:vectorizeImage`` API.

    Posts ``{"url": ...}`` and reads the ``vector`` field of the response.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model_version: str = "2023-04-15",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model_version = model_version
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: EmbeddingsConfig) -> AzureVisionEmbeddingGenerator:
        """Create generator from configuration."""
        if not config.endpoint or not config.api_key:
            raise ValueError("Embedding endpoint and api_key must both be configured")
        return cls(
            endpoint=config.endpoint,
            api_key=config.api_key,
            model_version=config.model_version,
        )

    @property
    def url(self) -> str:
        return (
            f"{self.endpoint}/computervision/retrieval:vectorizeImage"
            f"?api-version={VECTORIZE_API_VERSION}&model-version={self.model_version}"
        )

    async def generate(self, image_url: str) -> list[float]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.url,
                json={"url": image_url},
                headers={"Ocp-Apim-Subscription-Key": self.api_key},
            )
            response.raise_for_status()
            data = response.json()

        vector = data.get("vector") if isinstance(data, dict) else None
        if not vector:
            raise RecoverableProcessingError(f"No vector returned for {image_url}")
        return [float(v) for v in vector]


class NoOpEmbeddingGenerator(ImageEmbeddingGenerator):
    """
    Placeholder used when no embedding service is configured.

    Raises FatalProcessingError so photos are left untouched until the
    service is set up.
    """

    async def generate(self, image_url: str) -> list[float]:
        raise FatalProcessingError(
            "Embedding generation is not configured. Set embeddings.endpoint and embeddings.api_key."
        )


def get_embedding_generator(config: EmbeddingsConfig) -> ImageEmbeddingGenerator:
    """Pick the generator for the given configuration."""
    if config.is_configured:
        return AzureVisionEmbeddingGenerator.from_config(config)
    logger.warning("No embedding service configured, image vectorization is unavailable")
    return NoOpEmbeddingGenerator()
