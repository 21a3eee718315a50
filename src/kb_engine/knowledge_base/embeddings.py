"""Embedding backends used by vector-similarity scoring.

The HTTP backend speaks the OpenAI-compatible ``POST /embeddings`` protocol,
which is also served by Ollama, vLLM, LM Studio and similar local servers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import httpx
from loguru import logger

from ..errors import ScoringBackendError


class EmbeddingBackend(ABC):
    """Turns texts into embedding vectors."""

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed a batch of texts.

        Returns:
            One vector per input text, in input order

        Raises:
            ScoringBackendError: If the backend is unreachable or misbehaves
        """

    async def close(self) -> None:
        """Release network resources."""


class HTTPEmbeddingBackend(EmbeddingBackend):
    """Embedding backend for OpenAI-compatible HTTP endpoints."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the HTTP embedding backend.

        Args:
            base_url: API root, e.g. ``http://localhost:11434/v1``
            model: Embedding model name
            api_key: Optional bearer token
            timeout: Per-request timeout in seconds
            client: Optional shared client (not closed by this backend)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._get_client().post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": list(texts)},
                headers=headers,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error(f"❌ Embedding request to {self.base_url} failed: {e}")
            raise ScoringBackendError(
                f"Embedding backend request failed: {e}", base_url=self.base_url
            ) from e
        except ValueError as e:
            raise ScoringBackendError(
                f"Embedding backend returned invalid JSON: {e}", base_url=self.base_url
            ) from e

        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list) or len(items) != len(texts):
            raise ScoringBackendError(
                "Embedding backend returned an unexpected payload",
                expected=len(texts),
            )

        items = sorted(items, key=lambda item: item.get("index", 0))
        return [list(item["embedding"]) for item in items]

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
