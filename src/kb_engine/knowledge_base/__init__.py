"""
Knowledge base module for document ingestion and ranked retrieval.

Turns already-decoded text into paragraph-aligned chunks and answers queries
with scored, deterministically ordered evidence.
"""

from .embeddings import EmbeddingBackend, HTTPEmbeddingBackend
from .ingestion import IngestionPipeline, TextChunker, split_into_chunks
from .manager import KnowledgeBaseManager
from .models import (
    Chunk,
    Document,
    DocumentSnapshot,
    KnowledgeBase,
    Query,
    QueryResult,
    ScoredChunk,
)
from .retriever import Ranker
from .scoring import EmbeddingScorer, Scorer, SubstringScorer, build_scorer
from .sqlite_store import SQLiteKBStore
from .store import InMemoryKBStore, KBStore

__all__ = [
    "KnowledgeBaseManager",
    "IngestionPipeline",
    "TextChunker",
    "split_into_chunks",
    "Ranker",
    "Scorer",
    "SubstringScorer",
    "EmbeddingScorer",
    "build_scorer",
    "EmbeddingBackend",
    "HTTPEmbeddingBackend",
    "KBStore",
    "InMemoryKBStore",
    "SQLiteKBStore",
    "KnowledgeBase",
    "Document",
    "Chunk",
    "DocumentSnapshot",
    "Query",
    "QueryResult",
    "ScoredChunk",
]
