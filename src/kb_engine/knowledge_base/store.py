"""
Chunk store interface and the in-memory implementation.

A store owns knowledge bases, documents and their chunk sets. The one write
that matters for consistency is ``save_document``: it replaces a document
record and its entire chunk set as a single unit, so a reader either sees the
previous ingestion or the new one, never a mix.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .models import Chunk, Document, DocumentSnapshot, KnowledgeBase


class KBStore(ABC):
    """Abstract persistence layer passed explicitly to the pipeline and ranker."""

    async def initialize(self) -> None:
        """Prepare the backing storage. Safe to call more than once."""

    async def close(self) -> None:
        """Release any held resources."""

    @abstractmethod
    async def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        """Persist a new knowledge base."""

    @abstractmethod
    async def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        """Return the knowledge base or None if it does not exist."""

    @abstractmethod
    async def list_knowledge_bases(self, workspace_id: str) -> List[KnowledgeBase]:
        """List the knowledge bases of a workspace, newest first."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Document]:
        """Return the document or None if it does not exist."""

    @abstractmethod
    async def list_documents(self, knowledge_base_id: str) -> List[Document]:
        """List the documents of a knowledge base, newest first."""

    @abstractmethod
    async def get_chunks(self, document_id: str) -> List[Chunk]:
        """Return a document's chunks in position order."""

    @abstractmethod
    async def save_document(self, document: Document, chunks: Sequence[Chunk]) -> Document:
        """
        Upsert a document and replace its whole chunk set atomically.

        Either both the document record and the new chunk set become visible,
        or neither does.
        """

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """Delete a document and its chunks. Returns False if it was absent."""

    @abstractmethod
    async def load_snapshot(self, knowledge_base_id: str) -> List[DocumentSnapshot]:
        """Read every document of a knowledge base with its chunks at one point in time."""

    @abstractmethod
    async def get_stats(self, knowledge_base_id: Optional[str] = None) -> Dict[str, int]:
        """
        Return counts for one knowledge base or overall.

        Returns:
            Dictionary with 'total_documents', 'total_chunks', 'db_size_bytes'
        """

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove every knowledge base, document and chunk."""


class InMemoryKBStore(KBStore):
    """
    Dict-backed store for tests and ephemeral deployments.

    Each document's record and chunk tuple live together in one entry that is
    replaced in a single assignment with no await in between.
    """

    def __init__(self) -> None:
        self._knowledge_bases: Dict[str, KnowledgeBase] = {}
        self._documents: Dict[str, Tuple[Document, Tuple[Chunk, ...]]] = {}

    async def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        self._knowledge_bases[knowledge_base.id] = knowledge_base.model_copy(deep=True)
        return knowledge_base

    async def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        kb = self._knowledge_bases.get(knowledge_base_id)
        return kb.model_copy(deep=True) if kb else None

    async def list_knowledge_bases(self, workspace_id: str) -> List[KnowledgeBase]:
        kbs = [
            kb.model_copy(deep=True)
            for kb in self._knowledge_bases.values()
            if kb.workspace_id == workspace_id
        ]
        return sorted(kbs, key=lambda kb: kb.created_at, reverse=True)

    async def get_document(self, document_id: str) -> Optional[Document]:
        entry = self._documents.get(document_id)
        return entry[0].model_copy(deep=True) if entry else None

    async def list_documents(self, knowledge_base_id: str) -> List[Document]:
        docs = [
            doc.model_copy(deep=True)
            for doc, _ in self._documents.values()
            if doc.knowledge_base_id == knowledge_base_id
        ]
        return sorted(docs, key=lambda d: d.created_at, reverse=True)

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        entry = self._documents.get(document_id)
        if not entry:
            return []
        return [c.model_copy(deep=True) for c in entry[1]]

    async def save_document(self, document: Document, chunks: Sequence[Chunk]) -> Document:
        stored_doc = document.model_copy(deep=True)
        stored_chunks = tuple(
            sorted(
                (c.model_copy(deep=True) for c in chunks),
                key=lambda c: c.position_index,
            )
        )
        self._documents[document.id] = (stored_doc, stored_chunks)
        logger.debug(
            f"📝 Stored document '{document.id}' with {len(stored_chunks)} chunks"
        )
        return document

    async def delete_document(self, document_id: str) -> bool:
        return self._documents.pop(document_id, None) is not None

    async def load_snapshot(self, knowledge_base_id: str) -> List[DocumentSnapshot]:
        # Copy the entry references first; entries are immutable tuples.
        entries = [
            entry
            for entry in list(self._documents.values())
            if entry[0].knowledge_base_id == knowledge_base_id
        ]
        return [
            DocumentSnapshot(document=doc, chunks=list(chunks))
            for doc, chunks in entries
        ]

    async def get_stats(self, knowledge_base_id: Optional[str] = None) -> Dict[str, int]:
        entries = [
            entry
            for entry in self._documents.values()
            if knowledge_base_id is None or entry[0].knowledge_base_id == knowledge_base_id
        ]
        return {
            "total_documents": len(entries),
            "total_chunks": sum(len(chunks) for _, chunks in entries),
            "db_size_bytes": 0,
        }

    async def clear_all(self) -> None:
        self._knowledge_bases.clear()
        self._documents.clear()
        logger.warning("🗑️ Cleared all knowledge bases, documents and chunks")
