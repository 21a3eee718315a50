"""
Relevance scoring for (query, chunk) pairs.

``Scorer`` is the single extension point between retrieval and relevance
backends. Exactly one scorer is active per deployment; it is picked from
configuration by ``build_scorer`` and the ranker never knows which one it is.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Dict, Optional

import numpy as np
from loguru import logger

from ..config_manager import KnowledgeBaseConfig
from ..errors import ScoringBackendError
from .embeddings import EmbeddingBackend, HTTPEmbeddingBackend
from .models import Chunk


class Scorer(ABC):
    """Computes a relevance score in [0, 1] for a query and a chunk."""

    @abstractmethod
    async def score(self, query_text: str, chunk: Chunk) -> float:
        """
        Score how well ``chunk.content`` answers ``query_text``.

        Raises:
            ScoringBackendError: If the scoring backend is unavailable
        """

    async def close(self) -> None:
        """Release backend resources."""


class SubstringScorer(Scorer):
    """
    Case-insensitive substring containment.

    Returns a fixed ``match_score`` when the chunk contains the query and 0
    otherwise. The constant only has to stay within (0, 1].
    """

    def __init__(self, match_score: float = 0.8):
        if not 0.0 < match_score <= 1.0:
            raise ValueError(f"match_score must be in (0, 1], got {match_score}")
        self.match_score = match_score

    async def score(self, query_text: str, chunk: Chunk) -> float:
        query = query_text.lower()
        if query and query in chunk.content.lower():
            return self.match_score
        return 0.0


class _LRUCache:
    """Tiny LRU mapping for embedding vectors."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._data: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def get(self, key: str) -> Optional[np.ndarray]:
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    def put(self, key: str, value: np.ndarray) -> None:
        if self.max_size <= 0:
            return
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors clamped to [0, 1]."""
    if a.shape != b.shape:
        raise ScoringBackendError(
            f"Embedding dimension mismatch: {a.shape[0]} vs {b.shape[0]}"
        )
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        raise ScoringBackendError("Embedding contains non-finite values")
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    similarity = float(np.dot(a, b)) / norm
    if not np.isfinite(similarity):
        raise ScoringBackendError("Cosine similarity is not finite")
    return max(0.0, min(1.0, similarity))


class EmbeddingScorer(Scorer):
    """
    Vector-similarity scorer.

    Uses each chunk's precomputed ``embedding`` when present and asks the
    backend otherwise. Query and chunk vectors are kept in small LRU caches
    so a query embeds its text once.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        query_cache_size: int = 128,
        chunk_cache_size: int = 4096,
    ):
        self.backend = backend
        self._query_cache = _LRUCache(query_cache_size)
        self._chunk_cache = _LRUCache(chunk_cache_size)

    async def _embed_one(self, text: str) -> np.ndarray:
        try:
            vectors = await self.backend.embed([text])
        except ScoringBackendError:
            raise
        except Exception as e:
            raise ScoringBackendError(f"Embedding backend failed: {e}") from e

        if len(vectors) != 1:
            raise ScoringBackendError("Embedding backend returned no vector")
        return np.asarray(vectors[0], dtype=np.float32)

    async def _cached(self, cache: _LRUCache, text: str) -> np.ndarray:
        vector = cache.get(text)
        if vector is None:
            vector = await self._embed_one(text)
            cache.put(text, vector)
        return vector

    async def score(self, query_text: str, chunk: Chunk) -> float:
        query_vector = await self._cached(self._query_cache, query_text)

        if chunk.embedding is not None:
            chunk_vector = np.asarray(chunk.embedding, dtype=np.float32)
        else:
            chunk_vector = await self._cached(self._chunk_cache, chunk.content)

        return cosine_similarity(query_vector, chunk_vector)

    async def close(self) -> None:
        await self.backend.close()


def _build_substring_scorer(
    config: KnowledgeBaseConfig, backend: Optional[EmbeddingBackend]
) -> Scorer:
    return SubstringScorer(match_score=config.match_score)


def _build_embedding_scorer(
    config: KnowledgeBaseConfig, backend: Optional[EmbeddingBackend]
) -> Scorer:
    embedding = config.embedding
    if backend is None:
        backend = HTTPEmbeddingBackend(
            base_url=embedding.base_url,
            model=embedding.model,
            api_key=embedding.api_key,
            timeout=embedding.request_timeout,
        )
    return EmbeddingScorer(
        backend,
        query_cache_size=embedding.query_cache_size,
        chunk_cache_size=embedding.chunk_cache_size,
    )


_SCORER_FACTORIES: Dict[
    str, Callable[[KnowledgeBaseConfig, Optional[EmbeddingBackend]], Scorer]
] = {
    "substring": _build_substring_scorer,
    "embedding": _build_embedding_scorer,
}


def build_scorer(
    config: KnowledgeBaseConfig, backend: Optional[EmbeddingBackend] = None
) -> Scorer:
    """
    Create the scorer selected by configuration.

    Args:
        config: Knowledge base settings (``scorer`` picks the variant)
        backend: Optional embedding backend overriding the configured endpoint

    Returns:
        The active scorer
    """
    scorer = _SCORER_FACTORIES[config.scorer](config, backend)
    logger.info(f"🎯 Using {type(scorer).__name__} for relevance scoring")
    return scorer
