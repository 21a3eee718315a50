"""
Main knowledge base manager interface.

Coordinates storage, ingestion and retrieval for workspace knowledge bases.
Callers are expected to have authorized the user against the workspace before
calling any method here.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from ..config_manager import Config, KnowledgeBaseConfig
from ..errors import NotFoundError, ValidationError
from .embeddings import EmbeddingBackend
from .ingestion import IngestionPipeline, TextChunker
from .models import Chunk, Document, KnowledgeBase, QueryResult
from .retriever import Ranker
from .scoring import Scorer, build_scorer
from .sqlite_store import SQLiteKBStore
from .store import InMemoryKBStore, KBStore


class KnowledgeBaseManager:
    """
    High-level manager for knowledge bases.

    Provides a unified interface for ingestion, retrieval, and management
    operations over an explicitly supplied store and scorer.
    """

    def __init__(
        self,
        store: KBStore,
        scorer: Scorer,
        config: Optional[KnowledgeBaseConfig] = None,
        chunker: Optional[TextChunker] = None,
    ):
        """
        Initialize the knowledge base manager.

        Args:
            store: Persistence handle for knowledge bases, documents and chunks
            scorer: Active relevance scorer
            config: Knowledge base settings
            chunker: Optional chunker override
        """
        self.config = config or KnowledgeBaseConfig()
        self.store = store
        self.scorer = scorer
        self.ingestion = IngestionPipeline(store, config=self.config, chunker=chunker)
        self.ranker = Ranker(
            store,
            scorer,
            default_limit=self.config.default_limit,
            score_timeout=self.config.score_timeout,
        )

        logger.info("🧠 Knowledge Base Manager initialized")

    @classmethod
    def from_config(
        cls, config: Config, embedding_backend: Optional[EmbeddingBackend] = None
    ) -> "KnowledgeBaseManager":
        """
        Build a manager with the store and scorer selected by configuration.

        Args:
            config: Root configuration
            embedding_backend: Optional backend override for the embedding scorer
        """
        if config.storage.backend == "memory":
            store: KBStore = InMemoryKBStore()
        else:
            store = SQLiteKBStore(config.storage.db_path)

        scorer = build_scorer(config.knowledge_base, backend=embedding_backend)
        return cls(store, scorer, config=config.knowledge_base)

    async def initialize(self) -> None:
        """Prepare the underlying store."""
        await self.store.initialize()

    async def close(self) -> None:
        """Release store and scorer resources."""
        await self.scorer.close()
        await self.store.close()

    async def create_knowledge_base(
        self, workspace_id: str, name: str, description: str = ""
    ) -> KnowledgeBase:
        """
        Create a knowledge base in a workspace.

        Args:
            workspace_id: Owning workspace
            name: Knowledge base name (2-50 characters)
            description: Optional description (up to 500 characters)

        Returns:
            The created knowledge base
        """
        if not workspace_id:
            raise ValidationError("workspace_id must not be empty")
        name = (name or "").strip()
        if not 2 <= len(name) <= 50:
            raise ValidationError("Knowledge base name must be 2-50 characters")
        description = description or ""
        if len(description) > 500:
            raise ValidationError("Knowledge base description must be at most 500 characters")

        knowledge_base = await self.store.create_knowledge_base(
            KnowledgeBase(workspace_id=workspace_id, name=name, description=description)
        )
        logger.info(
            f"📚 Created knowledge base '{name}' (ID: {knowledge_base.id}) in workspace '{workspace_id}'"
        )
        return knowledge_base

    async def get_knowledge_base(self, knowledge_base_id: str) -> KnowledgeBase:
        """Return a knowledge base or raise NotFoundError."""
        knowledge_base = await self.store.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFoundError(
                f"Knowledge base '{knowledge_base_id}' not found",
                knowledge_base_id=knowledge_base_id,
            )
        return knowledge_base

    async def list_knowledge_bases(self, workspace_id: str) -> List[KnowledgeBase]:
        """List a workspace's knowledge bases, newest first."""
        return await self.store.list_knowledge_bases(workspace_id)

    async def ingest(
        self,
        knowledge_base_id: str,
        name: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Ingest already-decoded text as a new document.

        Args:
            knowledge_base_id: Target knowledge base
            name: Document name
            content: Plain text content
            metadata: Optional metadata such as ``{"fileType": ..., "fileSize": ...}``

        Returns:
            The stored document including ``chunk_count``
        """
        return await self.ingestion.ingest(knowledge_base_id, name, content, metadata)

    async def reingest(
        self,
        document_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """Replace a document's content and regenerate its chunks."""
        return await self.ingestion.reingest(document_id, content, metadata)

    async def rebuild_index(self, knowledge_base_id: str) -> int:
        """
        Re-chunk every document in a knowledge base.

        Returns:
            Number of documents rebuilt
        """
        return await self.ingestion.rebuild_index(knowledge_base_id)

    async def get_document(self, document_id: str) -> Document:
        """Return a document or raise NotFoundError."""
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError(
                f"Document '{document_id}' not found", document_id=document_id
            )
        return document

    async def get_document_chunks(self, document_id: str) -> List[Chunk]:
        """Return a document's chunks in position order."""
        await self.get_document(document_id)
        return await self.store.get_chunks(document_id)

    async def list_documents(self, knowledge_base_id: str) -> List[Document]:
        """
        List all documents in a knowledge base, newest first.

        Raises:
            NotFoundError: If the knowledge base does not exist
        """
        await self.get_knowledge_base(knowledge_base_id)
        return await self.store.list_documents(knowledge_base_id)

    async def delete_document(self, document_id: str) -> bool:
        """
        Delete a document and its chunks.

        Returns:
            True if deleted, False if not found
        """
        deleted = await self.ingestion.delete_document(document_id)
        if deleted:
            logger.info(f"🗑️ Deleted document '{document_id}'")
        return deleted

    async def retrieve(
        self,
        knowledge_base_id: str,
        query_text: str,
        limit: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> QueryResult:
        """
        Retrieve relevant chunks for a query.

        Args:
            knowledge_base_id: Knowledge base to search
            query_text: Search query
            limit: Number of results (default from config)
            filter: Optional metadata filter
            timeout: Per-call scorer timeout in seconds

        Returns:
            QueryResult whose ``chunks`` carry score and document provenance
        """
        logger.info(
            f"🔍 KB Manager: Searching '{knowledge_base_id}' for query='{query_text[:100]}', limit={limit}"
        )

        chunks = await self.ranker.retrieve(
            knowledge_base_id, query_text, limit=limit, filter=filter, timeout=timeout
        )

        logger.info(f"✅ KB Manager: Retrieved {len(chunks)} results")
        for i, chunk in enumerate(chunks[:3]):
            logger.debug(
                f"  Result {i + 1}: {chunk.document_name} ({chunk.score:.2f}) - {chunk.content[:100]}"
            )

        return QueryResult(chunks=chunks)

    async def get_stats(self, knowledge_base_id: str) -> Dict[str, int]:
        """
        Get statistics about a knowledge base.

        Returns:
            Statistics dictionary with document and chunk totals and the
            database size in bytes (0 for the in-memory store)
        """
        await self.get_knowledge_base(knowledge_base_id)
        return await self.store.get_stats(knowledge_base_id)

    def format_retrieved_context(
        self, result: QueryResult, include_sources: bool = True
    ) -> str:
        """
        Format retrieved chunks into a context block for LLM prompts.

        Stops adding chunks once ``max_context_chars`` would be exceeded; the
        first chunk is truncated rather than dropped.

        Args:
            result: Retrieval result
            include_sources: Whether to include source document names

        Returns:
            Formatted context string (empty if there are no results)
        """
        if not result.chunks:
            return ""

        budget = self.config.max_context_chars
        lines = ["[Retrieved Knowledge Base Context]"]
        used = 0

        for i, chunk in enumerate(result.chunks, 1):
            text = chunk.content
            if used + len(text) > budget:
                if i > 1:
                    break
                text = text[: budget - used] + "..."
            used += len(text)

            if include_sources:
                lines.append(f"{i}. {text} (Source: {chunk.document_name})")
            else:
                lines.append(f"{i}. {text}")

        lines.append("[End of Retrieved Context]")

        return "\n".join(lines)
