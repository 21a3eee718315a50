"""
Document ingestion pipeline for knowledge bases.

Handles validation, paragraph chunking, and the atomic write of a document
together with its chunk set.
"""

import asyncio
import hashlib
import json
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from loguru import logger

from ..config_manager import KnowledgeBaseConfig
from ..errors import ConflictError, NotFoundError, ValidationError
from .models import Chunk, Document, KnowledgeBase, make_chunk_id, utcnow
from .store import KBStore

# One or more blank lines (possibly containing whitespace) separate paragraphs.
_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_PARAGRAPH_JOINER = "\n\n"


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_paragraphs(text: str) -> List[str]:
    """Split text on blank-line boundaries, dropping whitespace-only pieces."""
    return [
        paragraph
        for paragraph in _PARAGRAPH_BREAK_RE.split(_normalize_newlines(text))
        if paragraph.strip()
    ]


def split_into_chunks(text: str, max_chunk_size: int) -> List[str]:
    """
    Greedily pack paragraphs into chunks of at most ``max_chunk_size`` chars.

    Paragraphs are joined by a blank line, and the two-character joiner counts
    toward the limit. A paragraph that is longer than ``max_chunk_size`` on
    its own is emitted as a single oversized chunk and never split.

    Args:
        text: Normalized document text
        max_chunk_size: Maximum chunk length in characters

    Returns:
        Chunk texts in document order (empty for blank input)
    """
    if max_chunk_size < 1:
        raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")

    chunks: List[str] = []
    current = ""

    for paragraph in split_paragraphs(text):
        if not current:
            current = paragraph
        elif len(current) + len(_PARAGRAPH_JOINER) + len(paragraph) > max_chunk_size:
            chunks.append(current)
            current = paragraph
        else:
            current = f"{current}{_PARAGRAPH_JOINER}{paragraph}"

    if current:
        chunks.append(current)

    return chunks


class TextChunker:
    """
    Paragraph-aligned text chunker.

    Deterministic and order-preserving: the same text always produces the
    same chunk sequence.
    """

    def __init__(self, chunk_size: int = 1000):
        """
        Initialize the text chunker.

        Args:
            chunk_size: Default maximum chunk size in characters
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def chunk(self, text: str, max_chunk_size: Optional[int] = None) -> List[str]:
        """Split text into chunk texts using ``max_chunk_size`` or the default size."""
        size = self.chunk_size if max_chunk_size is None else max_chunk_size
        return split_into_chunks(text, size)


def content_checksum(content: str) -> str:
    """SHA-256 of the document text, used to detect unchanged re-ingestions."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class _DocumentLocks:
    """Per-document mutual exclusion; entries are dropped when unused."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def busy(self, document_id: str) -> bool:
        return self._holders.get(document_id, 0) > 0

    @asynccontextmanager
    async def hold(self, document_id: str, wait: bool = True) -> AsyncIterator[None]:
        # The busy check and the registration happen without an await in between.
        if not wait and self.busy(document_id):
            raise ConflictError(
                f"Re-ingestion of document '{document_id}' is already in progress",
                document_id=document_id,
            )

        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._holders[document_id] = self._holders.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[document_id] -= 1
            if self._holders[document_id] == 0:
                del self._holders[document_id]
                del self._locks[document_id]


class IngestionPipeline:
    """
    Coordinates document ingestion: validation + chunking + atomic storage.

    Ingestions of the same document are serialized; with the ``reject``
    re-ingestion policy a second concurrent re-ingestion fails with
    ``ConflictError`` instead of waiting.
    """

    def __init__(
        self,
        store: KBStore,
        config: Optional[KnowledgeBaseConfig] = None,
        chunker: Optional[TextChunker] = None,
    ):
        """
        Initialize the ingestion pipeline.

        Args:
            store: Store that owns documents and chunks
            config: Knowledge base settings (limits, chunk size, policy)
            chunker: Chunker to use (defaults to one sized from config)
        """
        self.store = store
        self.config = config or KnowledgeBaseConfig()
        self.chunker = chunker or TextChunker(chunk_size=self.config.chunk_size)
        self._locks = _DocumentLocks()

    def _validate_name(self, name: str) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Document name must not be empty")
        name = name.strip()
        limit = self.config.max_document_name_chars
        if len(name) > limit:
            raise ValidationError(
                f"Document name must be at most {limit} characters",
                length=len(name),
            )
        return name

    def _validate_content(self, content: str) -> None:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Document content must not be empty")
        limit = self.config.max_content_chars
        if len(content) > limit:
            raise ValidationError(
                f"Document content must be at most {limit} characters",
                length=len(content),
            )

    def _validate_metadata(self, metadata: Any) -> Dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, dict) or not all(
            isinstance(key, str) for key in metadata
        ):
            raise ValidationError("Document metadata must be a mapping with string keys")
        # Stores persist metadata as JSON.
        try:
            json.dumps(metadata)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Document metadata must be JSON-serializable: {e}"
            ) from e
        return dict(metadata)

    async def _require_knowledge_base(self, knowledge_base_id: str) -> KnowledgeBase:
        knowledge_base = await self.store.get_knowledge_base(knowledge_base_id)
        if knowledge_base is None:
            raise NotFoundError(
                f"Knowledge base '{knowledge_base_id}' not found",
                knowledge_base_id=knowledge_base_id,
            )
        return knowledge_base

    def _build_chunks(self, document: Document) -> List[Chunk]:
        return [
            Chunk(
                id=make_chunk_id(document.id, index),
                document_id=document.id,
                position_index=index,
                content=text,
                metadata={"index": index},
            )
            for index, text in enumerate(self.chunker.chunk(document.content))
        ]

    async def _write(self, document: Document) -> Document:
        chunks = self._build_chunks(document)
        document = document.model_copy(update={"chunk_count": len(chunks)})

        try:
            await self.store.save_document(document, chunks)
        except Exception as e:
            logger.error(
                f"❌ Ingestion failed for document '{document.name}' (ID: {document.id}): {e}"
            )
            raise

        logger.info(
            f"📄 Processed '{document.name}': {len(document.content)} chars -> {len(chunks)} chunks"
        )
        return document

    async def ingest(
        self,
        knowledge_base_id: str,
        name: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Create a document in a knowledge base and store its chunks.

        Args:
            knowledge_base_id: Target knowledge base
            name: Document name
            content: Already-decoded document text
            metadata: Opaque metadata (e.g. file type and size)

        Returns:
            The stored document with its chunk count

        Raises:
            ValidationError: If name, content or metadata are invalid
            NotFoundError: If the knowledge base does not exist
        """
        name = self._validate_name(name)
        self._validate_content(content)
        metadata = self._validate_metadata(metadata)
        await self._require_knowledge_base(knowledge_base_id)

        now = utcnow()
        document = Document(
            knowledge_base_id=knowledge_base_id,
            name=name,
            content=content,
            metadata=metadata,
            checksum=content_checksum(content),
            created_at=now,
            updated_at=now,
        )

        async with self._locks.hold(document.id):
            document = await self._write(document)

        logger.success(
            f"✅ Ingested '{document.name}' into knowledge base '{knowledge_base_id}'"
        )
        return document

    async def reingest(
        self,
        document_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Replace a document's content and regenerate all of its chunks.

        Args:
            document_id: Document to update
            content: New document text
            metadata: New metadata, or None to keep the current metadata

        Returns:
            The updated document (unchanged if content and metadata are identical)

        Raises:
            ValidationError: If content or metadata are invalid
            NotFoundError: If the document does not exist
            ConflictError: If the policy is ``reject`` and a re-ingestion of
                this document is already running
        """
        self._validate_content(content)
        new_metadata = None if metadata is None else self._validate_metadata(metadata)
        wait = self.config.reingest_policy == "queue"

        async with self._locks.hold(document_id, wait=wait):
            existing = await self.store.get_document(document_id)
            if existing is None:
                raise NotFoundError(
                    f"Document '{document_id}' not found", document_id=document_id
                )

            if new_metadata is None:
                new_metadata = existing.metadata
            checksum = content_checksum(content)

            if checksum == existing.checksum and new_metadata == existing.metadata:
                logger.info(
                    f"⏭️ Document '{existing.name}' unchanged, keeping {existing.chunk_count} chunks"
                )
                return existing

            document = existing.model_copy(
                update={
                    "content": content,
                    "metadata": new_metadata,
                    "checksum": checksum,
                    "updated_at": utcnow(),
                }
            )
            document = await self._write(document)

        logger.success(f"✅ Re-ingested '{document.name}' (ID: {document_id})")
        return document

    async def rebuild_index(self, knowledge_base_id: str) -> int:
        """
        Re-chunk every document of a knowledge base with the current chunker.

        Args:
            knowledge_base_id: Knowledge base to rebuild

        Returns:
            Number of documents rebuilt
        """
        await self._require_knowledge_base(knowledge_base_id)
        logger.info(f"🔄 Rebuilding index for knowledge base '{knowledge_base_id}'...")

        rebuilt = 0
        for listed in await self.store.list_documents(knowledge_base_id):
            async with self._locks.hold(listed.id):
                document = await self.store.get_document(listed.id)
                if document is None:
                    # Deleted while the rebuild was running.
                    continue
                await self._write(document.model_copy(update={"updated_at": utcnow()}))
                rebuilt += 1

        logger.success(
            f"✅ Index rebuild complete for '{knowledge_base_id}' ({rebuilt} documents)"
        )
        return rebuilt

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document once no ingestion of it is running."""
        async with self._locks.hold(document_id):
            return await self.store.delete_document(document_id)
