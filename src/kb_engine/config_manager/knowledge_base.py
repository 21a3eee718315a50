"""
Configuration models for knowledge base ingestion and retrieval settings.
"""

from pydantic import BaseModel, Field
from typing import Literal, Optional


class EmbeddingConfig(BaseModel):
    """Settings for the embedding backend used by the embedding scorer."""

    base_url: str = Field("http://localhost:11434/v1", alias="base_url")
    model: str = Field("nomic-embed-text", alias="model")
    api_key: Optional[str] = Field(None, alias="api_key")
    request_timeout: float = Field(30.0, alias="request_timeout", gt=0)
    query_cache_size: int = Field(128, alias="query_cache_size", ge=0)
    chunk_cache_size: int = Field(4096, alias="chunk_cache_size", ge=0)


class KnowledgeBaseConfig(BaseModel):
    """Configuration for chunking, ingestion limits and relevance scoring."""

    chunk_size: int = Field(1000, alias="chunk_size", ge=1)
    default_limit: int = Field(5, alias="default_limit", ge=1)
    max_context_chars: int = Field(2000, alias="max_context_chars", ge=1)
    max_document_name_chars: int = Field(100, alias="max_document_name_chars", ge=1)
    max_content_chars: int = Field(5_000_000, alias="max_content_chars", ge=1)
    scorer: Literal["substring", "embedding"] = Field("substring", alias="scorer")
    match_score: float = Field(0.8, alias="match_score", gt=0.0, le=1.0)
    score_timeout: Optional[float] = Field(10.0, alias="score_timeout", gt=0)
    reingest_policy: Literal["queue", "reject"] = Field(
        "queue", alias="reingest_policy"
    )
    embedding: EmbeddingConfig = Field(
        default_factory=EmbeddingConfig, alias="embedding"
    )
