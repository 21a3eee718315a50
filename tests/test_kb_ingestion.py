"""Unit tests for document ingestion and re-ingestion.

Covers validation, not-found handling, per-document serialization and the
all-or-nothing replacement of a document's chunk set.
"""

from __future__ import annotations

import asyncio
import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from kb_engine.config_manager import KnowledgeBaseConfig  # noqa: E402
from kb_engine.errors import ConflictError, NotFoundError, ValidationError  # noqa: E402
from kb_engine.knowledge_base import (  # noqa: E402
    Chunk,
    Document,
    InMemoryKBStore,
    KnowledgeBaseManager,
    SQLiteKBStore,
    SubstringScorer,
    TextChunker,
)


class _SlowStore(InMemoryKBStore):
    """In-memory store that yields inside writes and tracks overlapping writers."""

    def __init__(self, delay: float = 0.02) -> None:
        super().__init__()
        self.delay = delay
        self.active: dict[str, int] = {}
        self.max_active = 0

    async def save_document(self, document, chunks):
        self.active[document.id] = self.active.get(document.id, 0) + 1
        self.max_active = max(self.max_active, self.active[document.id])
        try:
            await asyncio.sleep(self.delay)
            return await super().save_document(document, chunks)
        finally:
            self.active[document.id] -= 1


def _make_manager(store, **config) -> KnowledgeBaseManager:
    return KnowledgeBaseManager(
        store, SubstringScorer(), config=KnowledgeBaseConfig(**config)
    )


class TestIngestion(unittest.IsolatedAsyncioTestCase):
    """Tests for `KnowledgeBaseManager.ingest` on the in-memory store."""

    async def asyncSetUp(self) -> None:
        self.store = InMemoryKBStore()
        self.manager = _make_manager(self.store, chunk_size=15)
        await self.manager.initialize()
        self.kb = await self.manager.create_knowledge_base("ws-1", "Research notes")

    async def test_ingest_creates_document_and_chunks(self) -> None:
        document = await self.manager.ingest(
            self.kb.id,
            "facts.txt",
            "Alpha facts.\n\nBeta facts.\n\nGamma facts.",
            {"fileType": "text/plain", "fileSize": 40},
        )

        self.assertEqual(document.chunk_count, 3)
        self.assertEqual(document.knowledge_base_id, self.kb.id)
        self.assertEqual(document.metadata["fileType"], "text/plain")

        chunks = await self.manager.get_document_chunks(document.id)
        self.assertEqual(
            [c.content for c in chunks], ["Alpha facts.", "Beta facts.", "Gamma facts."]
        )
        self.assertEqual([c.position_index for c in chunks], [0, 1, 2])
        self.assertEqual([c.metadata["index"] for c in chunks], [0, 1, 2])
        self.assertTrue(all(c.document_id == document.id for c in chunks))

    async def test_ingest_with_large_chunk_size_gives_one_chunk(self) -> None:
        manager = _make_manager(self.store, chunk_size=100)
        document = await manager.ingest(
            self.kb.id, "facts.txt", "Alpha facts.\n\nBeta facts.\n\nGamma facts."
        )
        self.assertEqual(document.chunk_count, 1)

    async def test_validation_errors(self) -> None:
        manager = _make_manager(self.store, max_content_chars=20)

        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "", "content")
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "   ", "content")
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "n" * 101, "content")
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "doc", "")
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "doc", " \n\n ")
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "doc", "x" * 21)
        with self.assertRaises(ValidationError):
            await manager.ingest(self.kb.id, "doc", "content", ["not", "a", "dict"])

        self.assertEqual(await manager.list_documents(self.kb.id), [])

    async def test_validation_error_carries_kind(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            await self.manager.ingest(self.kb.id, "", "content")
        self.assertEqual(ctx.exception.kind, "validation")
        self.assertEqual(ctx.exception.to_dict()["kind"], "validation")

    async def test_metadata_must_be_json_serializable(self) -> None:
        with self.assertRaises(ValidationError):
            await self.manager.ingest(
                self.kb.id, "a.txt", "hello", {"uploadedAt": datetime(2026, 1, 1)}
            )
        self.assertEqual(await self.manager.list_documents(self.kb.id), [])

        document = await self.manager.ingest(self.kb.id, "a.txt", "hello")
        with self.assertRaises(ValidationError):
            await self.manager.reingest(document.id, "hello again", {"tags": {1, 2}})

    async def test_unknown_knowledge_base(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.manager.ingest("missing", "doc", "content")

    async def test_create_knowledge_base_validation(self) -> None:
        with self.assertRaises(ValidationError):
            await self.manager.create_knowledge_base("ws-1", "x")
        with self.assertRaises(ValidationError):
            await self.manager.create_knowledge_base("ws-1", "ok name", "d" * 501)
        with self.assertRaises(ValidationError):
            await self.manager.create_knowledge_base("", "ok name")

    async def test_list_knowledge_bases_by_workspace(self) -> None:
        await self.manager.create_knowledge_base("ws-2", "Other workspace")
        kbs = await self.manager.list_knowledge_bases("ws-1")
        self.assertEqual([kb.id for kb in kbs], [self.kb.id])

    async def test_reingest_replaces_all_chunks(self) -> None:
        document = await self.manager.ingest(
            self.kb.id, "doc", "Alpha facts.\n\nBeta facts.\n\nGamma facts."
        )
        updated = await self.manager.reingest(document.id, "Delta facts.")

        self.assertEqual(updated.id, document.id)
        self.assertEqual(updated.created_at, document.created_at)
        self.assertEqual(updated.chunk_count, 1)
        self.assertNotEqual(updated.checksum, document.checksum)

        chunks = await self.manager.get_document_chunks(document.id)
        self.assertEqual([c.content for c in chunks], ["Delta facts."])

    async def test_reingest_keeps_metadata_when_not_given(self) -> None:
        document = await self.manager.ingest(
            self.kb.id, "doc", "Alpha facts.", {"fileType": "text/markdown"}
        )
        updated = await self.manager.reingest(document.id, "Beta facts.")
        self.assertEqual(updated.metadata, {"fileType": "text/markdown"})

        replaced = await self.manager.reingest(document.id, "Beta facts.", {"v": 2})
        self.assertEqual(replaced.metadata, {"v": 2})

    async def test_unchanged_reingest_is_skipped(self) -> None:
        document = await self.manager.ingest(self.kb.id, "doc", "Alpha facts.")
        again = await self.manager.reingest(document.id, "Alpha facts.")
        self.assertEqual(again.updated_at, document.updated_at)
        self.assertEqual(again.chunk_count, document.chunk_count)

    async def test_reingest_unknown_document(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.manager.reingest("missing", "content")

    async def test_rebuild_index_uses_current_chunk_size(self) -> None:
        big = _make_manager(self.store, chunk_size=1000)
        document = await big.ingest(
            self.kb.id, "doc", "Alpha facts.\n\nBeta facts.\n\nGamma facts."
        )
        self.assertEqual(document.chunk_count, 1)

        rebuilt = await self.manager.rebuild_index(self.kb.id)

        self.assertEqual(rebuilt, 1)
        refreshed = await self.manager.get_document(document.id)
        self.assertEqual(refreshed.chunk_count, 3)

    async def test_delete_document(self) -> None:
        document = await self.manager.ingest(self.kb.id, "doc", "Alpha facts.")

        self.assertTrue(await self.manager.delete_document(document.id))
        self.assertFalse(await self.manager.delete_document(document.id))
        with self.assertRaises(NotFoundError):
            await self.manager.get_document(document.id)

        stats = await self.manager.get_stats(self.kb.id)
        self.assertEqual(stats["total_documents"], 0)
        self.assertEqual(stats["total_chunks"], 0)


class TestConcurrentReingestion(unittest.IsolatedAsyncioTestCase):
    """Tests for per-document serialization of re-ingestion."""

    FIRST = "First one.\n\nFirst two."
    SECOND = "Second one.\n\nSecond two.\n\nSecond three."

    async def test_concurrent_reingest_never_mixes_chunk_sets(self) -> None:
        store = _SlowStore()
        manager = _make_manager(store, chunk_size=12)
        kb = await manager.create_knowledge_base("ws-1", "Concurrency")
        document = await manager.ingest(kb.id, "doc", "Original.")

        await asyncio.gather(
            manager.reingest(document.id, self.FIRST),
            manager.reingest(document.id, self.SECOND),
        )

        self.assertEqual(store.max_active, 1)

        final = await manager.get_document(document.id)
        chunks = [c.content for c in await manager.get_document_chunks(document.id)]
        chunker = TextChunker(chunk_size=12)
        self.assertIn(final.content, (self.FIRST, self.SECOND))
        self.assertEqual(chunks, chunker.chunk(final.content))
        self.assertEqual(final.chunk_count, len(chunks))

    async def test_reject_policy_raises_conflict(self) -> None:
        store = _SlowStore()
        manager = _make_manager(store, chunk_size=12, reingest_policy="reject")
        kb = await manager.create_knowledge_base("ws-1", "Concurrency")
        document = await manager.ingest(kb.id, "doc", "Original.")

        results = await asyncio.gather(
            manager.reingest(document.id, self.FIRST),
            manager.reingest(document.id, self.SECOND),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        documents = [r for r in results if isinstance(r, Document)]
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(len(documents), 1)
        self.assertEqual(conflicts[0].kind, "conflict")

        final = await manager.get_document(document.id)
        self.assertEqual(final.content, documents[0].content)

    async def test_different_documents_ingest_in_parallel(self) -> None:
        store = _SlowStore(delay=0.05)
        manager = _make_manager(store)
        kb = await manager.create_knowledge_base("ws-1", "Parallel")

        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.gather(
            *(manager.ingest(kb.id, f"doc-{i}", f"Body {i}.") for i in range(5))
        )
        elapsed = loop.time() - started

        self.assertEqual(len(await manager.list_documents(kb.id)), 5)
        self.assertLess(elapsed, 0.05 * 5)


class TestSQLiteIngestion(unittest.IsolatedAsyncioTestCase):
    """Tests for ingestion against the persistent SQLite store."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SQLiteKBStore(Path(self._tmp.name) / "kb.db")
        self.manager = _make_manager(self.store, chunk_size=15)
        await self.manager.initialize()
        self.kb = await self.manager.create_knowledge_base("ws-1", "Persistent")

    async def asyncTearDown(self) -> None:
        await self.manager.close()
        self._tmp.cleanup()

    async def test_round_trip_document_and_chunks(self) -> None:
        document = await self.manager.ingest(
            self.kb.id,
            "facts.txt",
            "Alpha facts.\n\nBeta facts.\n\nGamma facts.",
            {"fileType": "text/plain", "fileSize": 40},
        )

        stored = await self.manager.get_document(document.id)
        self.assertEqual(stored.content, document.content)
        self.assertEqual(stored.metadata, {"fileType": "text/plain", "fileSize": 40})
        self.assertEqual(stored.chunk_count, 3)
        self.assertEqual(stored.created_at, document.created_at)

        chunks = await self.manager.get_document_chunks(document.id)
        self.assertEqual([c.position_index for c in chunks], [0, 1, 2])

    async def test_reingest_replaces_chunks(self) -> None:
        document = await self.manager.ingest(
            self.kb.id, "doc", "Alpha facts.\n\nBeta facts.\n\nGamma facts."
        )
        await self.manager.reingest(document.id, "Delta facts.")

        chunks = await self.manager.get_document_chunks(document.id)
        self.assertEqual([c.content for c in chunks], ["Delta facts."])
        stats = await self.manager.get_stats(self.kb.id)
        self.assertEqual(stats["total_chunks"], 1)

    async def test_failed_write_keeps_previous_chunk_set(self) -> None:
        document = await self.manager.ingest(
            self.kb.id, "doc", "Alpha facts.\n\nBeta facts."
        )
        broken = document.model_copy(update={"content": "Replaced.", "chunk_count": 2})
        duplicate = Chunk(
            id="dup", document_id=document.id, position_index=0, content="Replaced."
        )

        with self.assertRaises(sqlite3.IntegrityError):
            await self.store.save_document(broken, [duplicate, duplicate])

        stored = await self.manager.get_document(document.id)
        self.assertEqual(stored.content, "Alpha facts.\n\nBeta facts.")
        chunks = await self.manager.get_document_chunks(document.id)
        self.assertEqual([c.content for c in chunks], ["Alpha facts.", "Beta facts."])

    async def test_concurrent_reingest_on_sqlite(self) -> None:
        document = await self.manager.ingest(self.kb.id, "doc", "Original.")
        first = "First one.\n\nFirst two."
        second = "Second one.\n\nSecond two.\n\nSecond three."

        await asyncio.gather(
            self.manager.reingest(document.id, first),
            self.manager.reingest(document.id, second),
        )

        final = await self.manager.get_document(document.id)
        chunks = [c.content for c in await self.manager.get_document_chunks(document.id)]
        self.assertIn(final.content, (first, second))
        self.assertEqual(chunks, TextChunker(chunk_size=15).chunk(final.content))

    async def test_non_json_metadata_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            await self.manager.ingest(
                self.kb.id, "a.txt", "hello", {"uploadedAt": datetime(2026, 1, 1)}
            )
        self.assertEqual(ctx.exception.kind, "validation")
        self.assertEqual(await self.manager.list_documents(self.kb.id), [])

    async def test_documents_persist_across_store_instances(self) -> None:
        await self.manager.ingest(self.kb.id, "doc", "Alpha facts.")

        reopened = _make_manager(SQLiteKBStore(self.store.db_path))
        documents = await reopened.list_documents(self.kb.id)
        self.assertEqual([d.name for d in documents], ["doc"])


if __name__ == "__main__":
    unittest.main()
