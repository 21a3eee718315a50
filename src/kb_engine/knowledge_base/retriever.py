"""Query orchestration and ranking over a knowledge base's chunks.

Fans a query out over every chunk of a knowledge base snapshot, scores each
chunk with the active scorer, and returns a deterministic top-k ordering.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from ..errors import NotFoundError, ScoringBackendError, ValidationError
from .models import Chunk, Document, Query, ScoredChunk
from .scoring import Scorer
from .store import KBStore

# Give the event loop a chance to deliver cancellation between scorer calls.
_YIELD_EVERY = 32


def _matches_filter(filter: Dict[str, Any], document: Document, chunk: Chunk) -> bool:
    """Every filter key must equal the chunk's value, or the document's if the chunk lacks it."""
    for key, expected in filter.items():
        if key in chunk.metadata:
            actual = chunk.metadata[key]
        elif key in document.metadata:
            actual = document.metadata[key]
        else:
            return False
        if actual != expected:
            return False
    return True


def _rank_key(item: Tuple[float, Document, Chunk]):
    score, document, chunk = item
    return (-score, document.created_at, chunk.position_index, document.id)


class Ranker:
    """
    Scores, filters, sorts and truncates chunks into a result set.

    Reads go through ``KBStore.load_snapshot`` so a query never observes a
    partially written chunk set. Any scoring failure or timeout fails the
    whole query; partial rankings are never returned.
    """

    def __init__(
        self,
        store: KBStore,
        scorer: Scorer,
        default_limit: int = 5,
        score_timeout: Optional[float] = None,
    ):
        """
        Initialize the ranker.

        Args:
            store: Store to read chunk snapshots from
            scorer: Active relevance scorer
            default_limit: Result limit used when the caller passes none
            score_timeout: Default per-call scorer timeout in seconds (None = unbounded)
        """
        self.store = store
        self.scorer = scorer
        self.default_limit = default_limit
        self.score_timeout = score_timeout

    async def _score(self, query_text: str, chunk: Chunk, timeout: Optional[float]) -> float:
        try:
            if timeout is None:
                score = await self.scorer.score(query_text, chunk)
            else:
                score = await asyncio.wait_for(
                    self.scorer.score(query_text, chunk), timeout
                )
        except asyncio.TimeoutError as e:
            raise ScoringBackendError(
                f"Scoring timed out after {timeout}s", chunk_id=chunk.id
            ) from e

        if not 0.0 <= score <= 1.0:
            raise ScoringBackendError(
                f"Scorer returned out-of-range score {score}", chunk_id=chunk.id
            )
        return score

    async def retrieve(
        self,
        knowledge_base_id: str,
        query_text: str,
        limit: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Retrieve the highest-scoring chunks of a knowledge base.

        Args:
            knowledge_base_id: Knowledge base to search
            query_text: Query text
            limit: Maximum number of results (default from config)
            filter: Optional metadata equality filter on chunk/document metadata
            timeout: Per-call scorer timeout in seconds (default from config)

        Returns:
            Chunks with score > 0, sorted by score descending, then document
            creation time and chunk position ascending

        Raises:
            ValidationError: If limit or filter are malformed
            NotFoundError: If the knowledge base does not exist
            ScoringBackendError: If scoring fails or times out
        """
        limit = self.default_limit if limit is None else limit
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        if filter is not None and not isinstance(filter, dict):
            raise ValidationError("filter must be a mapping")
        timeout = self.score_timeout if timeout is None else timeout

        query = Query(
            knowledge_base_id=knowledge_base_id,
            text=query_text,
            limit=limit,
            filter=filter,
        )

        if await self.store.get_knowledge_base(query.knowledge_base_id) is None:
            raise NotFoundError(
                f"Knowledge base '{query.knowledge_base_id}' not found",
                knowledge_base_id=query.knowledge_base_id,
            )

        if not query.text.strip():
            logger.debug("🔍 Empty query, nothing to retrieve")
            return []

        snapshots = await self.store.load_snapshot(query.knowledge_base_id)
        candidates = [
            (snapshot.document, chunk)
            for snapshot in snapshots
            for chunk in snapshot.chunks
            if not query.filter or _matches_filter(query.filter, snapshot.document, chunk)
        ]

        scored: List[Tuple[float, Document, Chunk]] = []
        i = 0
        try:
            for i, (document, chunk) in enumerate(candidates):
                if i and i % _YIELD_EVERY == 0:
                    await asyncio.sleep(0)
                score = await self._score(query.text, chunk, timeout)
                if score > 0:
                    scored.append((score, document, chunk))
        except ScoringBackendError as e:
            logger.error(
                f"❌ Retrieval failed for knowledge base '{query.knowledge_base_id}': {e}"
            )
            raise
        except asyncio.CancelledError:
            logger.info(
                f"🛑 Retrieval cancelled after scoring {i} of {len(candidates)} chunks"
            )
            raise

        scored.sort(key=_rank_key)
        results = [
            ScoredChunk(
                id=chunk.id,
                content=chunk.content,
                metadata=chunk.metadata,
                score=score,
                document_id=document.id,
                document_name=document.name,
                position_index=chunk.position_index,
            )
            for score, document, chunk in scored[: query.limit]
        ]

        logger.debug(
            f"🔍 Found {len(results)} results for query '{query.text[:50]}' "
            f"({len(scored)} matches across {len(candidates)} chunks)"
        )
        return results
