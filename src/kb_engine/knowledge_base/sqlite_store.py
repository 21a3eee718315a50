"""SQLite-backed chunk store.

Persists knowledge bases, documents and chunks in a single SQLite database
using aiosqlite. Document writes replace the full chunk set inside one
``BEGIN IMMEDIATE`` transaction; snapshot reads are a single joined query.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite
from loguru import logger

from .models import Chunk, Document, DocumentSnapshot, KnowledgeBase
from .store import KBStore


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kb_knowledge_bases (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kb_documents (
        id TEXT PRIMARY KEY,
        knowledge_base_id TEXT NOT NULL
            REFERENCES kb_knowledge_bases(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        checksum TEXT NOT NULL DEFAULT '',
        chunk_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kb_chunks (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL
            REFERENCES kb_documents(id) ON DELETE CASCADE,
        position_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        embedding TEXT,
        external_index_ref TEXT,
        UNIQUE (document_id, position_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_kb_documents_kb ON kb_documents(knowledge_base_id)",
    "CREATE INDEX IF NOT EXISTS idx_kb_chunks_doc ON kb_chunks(document_id)",
)

_DOCUMENT_COLUMNS = (
    "id, knowledge_base_id, name, content, metadata, checksum, "
    "chunk_count, created_at, updated_at"
)


def _row_to_knowledge_base(row: aiosqlite.Row) -> KnowledgeBase:
    return KnowledgeBase(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        description=row["description"],
        created_at=row["created_at"],
    )


def _row_to_document(row: aiosqlite.Row) -> Document:
    return Document(
        id=row["id"],
        knowledge_base_id=row["knowledge_base_id"],
        name=row["name"],
        content=row["content"],
        metadata=json.loads(row["metadata"] or "{}"),
        checksum=row["checksum"],
        chunk_count=row["chunk_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: aiosqlite.Row, prefix: str = "") -> Chunk:
    embedding = row[f"{prefix}embedding"]
    return Chunk(
        id=row[f"{prefix}id"],
        document_id=row[f"{prefix}document_id"],
        position_index=row[f"{prefix}position_index"],
        content=row[f"{prefix}content"],
        metadata=json.loads(row[f"{prefix}metadata"] or "{}"),
        embedding=json.loads(embedding) if embedding else None,
        external_index_ref=row[f"{prefix}external_index_ref"],
    )


class SQLiteKBStore(KBStore):
    """
    Persistent store on a local SQLite database.

    Every operation opens its own connection so concurrent ingestions of
    different documents never share a transaction. WAL journaling lets
    readers keep their snapshot while a writer commits.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0):
        """
        Initialize the SQLite store.

        Args:
            db_path: Path to the SQLite database file
            busy_timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._initialized = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # Autocommit mode: transactions are opened explicitly where needed.
        async with aiosqlite.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        ) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def initialize(self) -> None:
        """Create the tables if they don't exist."""
        if self._initialized:
            return

        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                await db.execute(statement)

        self._initialized = True
        logger.info(f"✅ SQLite knowledge base store initialized at: {self.db_path}")

    async def create_knowledge_base(self, knowledge_base: KnowledgeBase) -> KnowledgeBase:
        await self.initialize()

        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO kb_knowledge_bases (id, workspace_id, name, description, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    knowledge_base.id,
                    knowledge_base.workspace_id,
                    knowledge_base.name,
                    knowledge_base.description,
                    knowledge_base.created_at.isoformat(),
                ),
            )

        return knowledge_base

    async def get_knowledge_base(self, knowledge_base_id: str) -> Optional[KnowledgeBase]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM kb_knowledge_bases WHERE id = ?", (knowledge_base_id,)
            )
            row = await cursor.fetchone()

        return _row_to_knowledge_base(row) if row else None

    async def list_knowledge_bases(self, workspace_id: str) -> List[KnowledgeBase]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM kb_knowledge_bases
                WHERE workspace_id = ?
                ORDER BY created_at DESC, id
                """,
                (workspace_id,),
            )
            rows = await cursor.fetchall()

        return [_row_to_knowledge_base(row) for row in rows]

    async def get_document(self, document_id: str) -> Optional[Document]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM kb_documents WHERE id = ?",
                (document_id,),
            )
            row = await cursor.fetchone()

        return _row_to_document(row) if row else None

    async def list_documents(self, knowledge_base_id: str) -> List[Document]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                SELECT {_DOCUMENT_COLUMNS} FROM kb_documents
                WHERE knowledge_base_id = ?
                ORDER BY created_at DESC, id
                """,
                (knowledge_base_id,),
            )
            rows = await cursor.fetchall()

        return [_row_to_document(row) for row in rows]

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM kb_chunks
                WHERE document_id = ?
                ORDER BY position_index
                """,
                (document_id,),
            )
            rows = await cursor.fetchall()

        return [_row_to_chunk(row) for row in rows]

    async def save_document(self, document: Document, chunks: Sequence[Chunk]) -> Document:
        await self.initialize()

        chunk_rows = [
            (
                chunk.id,
                chunk.document_id,
                chunk.position_index,
                chunk.content,
                json.dumps(chunk.metadata, ensure_ascii=False),
                json.dumps(chunk.embedding) if chunk.embedding is not None else None,
                chunk.external_index_ref,
            )
            for chunk in chunks
        ]

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute(
                    f"""
                    INSERT INTO kb_documents ({_DOCUMENT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        name = excluded.name,
                        content = excluded.content,
                        metadata = excluded.metadata,
                        checksum = excluded.checksum,
                        chunk_count = excluded.chunk_count,
                        updated_at = excluded.updated_at
                    """,
                    (
                        document.id,
                        document.knowledge_base_id,
                        document.name,
                        document.content,
                        json.dumps(document.metadata, ensure_ascii=False),
                        document.checksum,
                        document.chunk_count,
                        document.created_at.isoformat(),
                        document.updated_at.isoformat(),
                    ),
                )
                # Remove the previous ingestion's chunks (re-indexing case)
                await db.execute(
                    "DELETE FROM kb_chunks WHERE document_id = ?", (document.id,)
                )
                await db.executemany(
                    """
                    INSERT INTO kb_chunks (
                        id, document_id, position_index, content, metadata,
                        embedding, external_index_ref
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    chunk_rows,
                )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        logger.info(
            f"📚 Stored {len(chunk_rows)} chunks for document '{document.name}' (ID: {document.id})"
        )
        return document

    async def delete_document(self, document_id: str) -> bool:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM kb_documents WHERE id = ?", (document_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"🗑️ Deleted document '{document_id}' and its chunks")
        return deleted

    async def load_snapshot(self, knowledge_base_id: str) -> List[DocumentSnapshot]:
        await self.initialize()

        # One statement, so the whole read sees a single committed state.
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT
                    d.id, d.knowledge_base_id, d.name, d.content, d.metadata,
                    d.checksum, d.chunk_count, d.created_at, d.updated_at,
                    c.id AS c_id,
                    c.document_id AS c_document_id,
                    c.position_index AS c_position_index,
                    c.content AS c_content,
                    c.metadata AS c_metadata,
                    c.embedding AS c_embedding,
                    c.external_index_ref AS c_external_index_ref
                FROM kb_documents d
                LEFT JOIN kb_chunks c ON c.document_id = d.id
                WHERE d.knowledge_base_id = ?
                ORDER BY d.created_at, d.id, c.position_index
                """,
                (knowledge_base_id,),
            )
            rows = await cursor.fetchall()

        snapshots: Dict[str, DocumentSnapshot] = {}
        for row in rows:
            snapshot = snapshots.get(row["id"])
            if snapshot is None:
                snapshot = DocumentSnapshot(document=_row_to_document(row))
                snapshots[row["id"]] = snapshot
            if row["c_id"] is not None:
                snapshot.chunks.append(_row_to_chunk(row, prefix="c_"))

        return list(snapshots.values())

    async def get_stats(self, knowledge_base_id: Optional[str] = None) -> Dict[str, int]:
        """
        Get statistics about the stored documents.

        Returns:
            Dictionary with 'total_documents', 'total_chunks', 'db_size_bytes'
        """
        await self.initialize()

        async with self._connect() as db:
            if knowledge_base_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM kb_documents")
                total_docs = (await cursor.fetchone())[0]
                cursor = await db.execute("SELECT COUNT(*) FROM kb_chunks")
                total_chunks = (await cursor.fetchone())[0]
            else:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*), COALESCE(SUM(chunk_count), 0)
                    FROM kb_documents WHERE knowledge_base_id = ?
                    """,
                    (knowledge_base_id,),
                )
                total_docs, total_chunks = await cursor.fetchone()

        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0

        return {
            "total_documents": int(total_docs),
            "total_chunks": int(total_chunks),
            "db_size_bytes": db_size,
        }

    async def clear_all(self) -> None:
        """Clear all knowledge bases, documents and chunks."""
        await self.initialize()

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute("DELETE FROM kb_chunks")
                await db.execute("DELETE FROM kb_documents")
                await db.execute("DELETE FROM kb_knowledge_bases")
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        logger.warning("🗑️ Cleared all knowledge bases, documents and chunks")
