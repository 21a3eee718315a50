"""Data models for knowledge bases, documents, chunks and retrieval results."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Timezone-aware current time used for all timestamps."""
    return datetime.now(timezone.utc)


def make_chunk_id(document_id: str, position_index: int) -> str:
    """Chunk IDs are derived from the owning document and the chunk position."""
    return f"{document_id}_{position_index}"


class KnowledgeBase(BaseModel):
    """A named collection of documents scoped to a workspace."""

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class Document(BaseModel):
    """A named unit of ingested text owned by a knowledge base.

    ``content`` is replaced wholesale on re-ingestion; ``created_at`` is kept
    so the document's position in tie-breaking does not move.
    """

    id: str = Field(default_factory=_new_id)
    knowledge_base_id: str
    name: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    checksum: str = ""
    chunk_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Chunk(BaseModel):
    """A bounded contiguous slice of a document's text, the unit of retrieval."""

    id: str
    document_id: str
    position_index: int = Field(..., ge=0)
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Reserved for vector scorers / an external vector store.
    embedding: list[float] | None = None
    external_index_ref: str | None = None


class DocumentSnapshot(BaseModel):
    """A document together with its complete chunk set, read in one step."""

    document: Document
    chunks: list[Chunk] = Field(default_factory=list)


class Query(BaseModel):
    """A transient retrieval request."""

    knowledge_base_id: str
    text: str
    limit: int = 5
    filter: dict[str, Any] | None = None


class ScoredChunk(BaseModel):
    """A chunk with its relevance score and denormalized document provenance."""

    id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float = Field(..., ge=0.0, le=1.0)
    document_id: str
    document_name: str
    position_index: int = 0


class QueryResult(BaseModel):
    """Ranked retrieval output."""

    chunks: list[ScoredChunk] = Field(default_factory=list)
