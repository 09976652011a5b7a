"""Tests for the knowledge stores and blob stores."""

import sqlite3
from datetime import datetime, timedelta

import pytest

from kbrag.rag import (
    Chunk,
    Document,
    DocumentNotFoundError,
    DocumentStatus,
    FileType,
    InvalidStatusTransitionError,
    LocalBlobStore,
    MemoryBlobStore,
    QueryLogEntry,
    QueryLogError,
    SQLiteKnowledgeStore,
    StorageError,
)


def make_document(name: str = "guide.txt", **kwargs) -> Document:
    return Document(
        name=name,
        file_type=FileType.TXT,
        mime_type="text/plain",
        file_locator=f"files/{name}",
        **kwargs,
    )


def make_chunk(document_id: str, index: int, content: str, embedding: list[float]) -> Chunk:
    return Chunk(
        document_id=document_id,
        chunk_index=index,
        content=content,
        contextual_content=content,
        embedding=embedding,
        token_count=len(content) // 4,
        metadata={"total_chunks": 4, "document_title": "Guide"},
    )


async def make_ready_document(store, contents: list[tuple[str, list[float]]]) -> Document:
    document = await store.create_document(make_document())
    await store.update_document_status(document.id, DocumentStatus.PROCESSING)
    for i, (content, embedding) in enumerate(contents):
        await store.store_chunk(document.id, make_chunk(document.id, i, content, embedding))
    return await store.update_document_status(
        document.id, DocumentStatus.READY, chunk_count=len(contents), total_tokens=10
    )


SURVIVAL_CHUNKS = [
    ("water purification tablets", [1.0, 0.0, 0.0]),
    ("boil water before drinking", [0.7, 0.7, 0.0]),
    ("first aid kit bandages", [0.0, 1.0, 0.0]),
    ("radio batteries flashlight", [0.0, 0.0, 1.0]),
]


class ReadyMidSearchStore(SQLiteKnowledgeStore):
    """SQLite store that marks a document ready between the two search signals."""

    ready_before_lexical = None

    def _lexical_rows(self, conn, query_text, top_k):
        if self.ready_before_lexical is not None:
            document_id, self.ready_before_lexical = self.ready_before_lexical, None
            self._update_document_status_sync(document_id, DocumentStatus.READY, None, 1, 4)
        return super()._lexical_rows(conn, query_text, top_k)


class TestDocuments:
    """Tests for document records, run against every store."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Test creating and reading back a document."""
        document = make_document(description="Water guide", metadata={"source": "upload"})

        await store.create_document(document)
        loaded = await store.get_document(document.id)

        assert loaded is not None
        assert loaded.name == "guide.txt"
        assert loaded.description == "Water guide"
        assert loaded.status == DocumentStatus.PENDING
        assert loaded.metadata == {"source": "upload"}
        assert await store.get_document("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        """Test that a document id can only be created once."""
        document = make_document()
        await store.create_document(document)

        with pytest.raises(StorageError):
            await store.create_document(document)

    @pytest.mark.asyncio
    async def test_get_documents(self, store):
        """Test batch lookup skips unknown and repeated ids."""
        first = await store.create_document(make_document("a.txt"))
        second = await store.create_document(make_document("b.txt"))

        documents = await store.get_documents([first.id, first.id, "missing", second.id])

        assert [d.id for d in documents] == [first.id, second.id]
        assert await store.get_documents([]) == []

    @pytest.mark.asyncio
    async def test_list_documents(self, store):
        """Test listing newest first and filtering by status."""
        now = datetime.now()
        older = await store.create_document(make_document("old.txt", created_at=now - timedelta(hours=1)))
        newer = await store.create_document(make_document("new.txt", created_at=now))
        await store.update_document_status(newer.id, DocumentStatus.PROCESSING)

        assert [d.id for d in await store.list_documents()] == [newer.id, older.id]
        assert [d.id for d in await store.list_documents(DocumentStatus.PENDING)] == [older.id]
        assert [d.id for d in await store.list_documents(DocumentStatus.PROCESSING)] == [newer.id]

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, store):
        """Test the allowed transitions and their derived fields."""
        document = await store.create_document(make_document())

        processing = await store.update_document_status(document.id, DocumentStatus.PROCESSING)
        assert processing.status == DocumentStatus.PROCESSING

        ready = await store.update_document_status(
            document.id, DocumentStatus.READY, chunk_count=3, total_tokens=120
        )
        assert ready.chunk_count == 3
        assert ready.total_tokens == 120
        assert ready.error_message is None

        failed = await store.update_document_status(
            document.id, DocumentStatus.ERROR, error_message="boom"
        )
        assert failed.error_message == "boom"
        assert failed.chunk_count is None

        again = await store.update_document_status(document.id, DocumentStatus.PROCESSING)
        assert again.error_message is None

        loaded = await store.get_document(document.id)
        assert loaded.status == DocumentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_error_without_message(self, store):
        """Test that an error status always carries a message."""
        document = await store.create_document(make_document())

        failed = await store.update_document_status(document.id, DocumentStatus.ERROR)

        assert failed.error_message == "Unknown error"

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, store):
        """Test rejecting ready from pending and any return to pending."""
        document = await store.create_document(make_document())

        with pytest.raises(InvalidStatusTransitionError):
            await store.update_document_status(document.id, DocumentStatus.READY)

        await store.update_document_status(document.id, DocumentStatus.PROCESSING)
        with pytest.raises(InvalidStatusTransitionError):
            await store.update_document_status(document.id, DocumentStatus.PENDING)

        loaded = await store.get_document(document.id)
        assert loaded.status == DocumentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_update_unknown_document(self, store):
        """Test updating a document that does not exist."""
        with pytest.raises(DocumentNotFoundError):
            await store.update_document_status("missing", DocumentStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_delete_document(self, store):
        """Test that deleting a document removes its chunks."""
        document = await make_ready_document(store, SURVIVAL_CHUNKS)

        assert await store.delete_document(document.id) is True
        assert await store.get_document(document.id) is None
        assert await store.count_chunks(document.id) == 0
        assert await store.lexical_search("water", top_k=10) == []
        assert await store.delete_document(document.id) is False


class TestChunks:
    """Tests for chunk storage."""

    @pytest.mark.asyncio
    async def test_store_and_get_chunks(self, store):
        """Test that chunks come back in index order."""
        document = await store.create_document(make_document())
        for i in (2, 0, 1):
            await store.store_chunk(document.id, make_chunk(document.id, i, f"chunk {i}", [1.0, 0.0]))

        chunks = await store.get_chunks(document.id)

        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert chunks[0].content == "chunk 0"
        assert chunks[0].embedding == [1.0, 0.0]
        assert chunks[0].metadata["document_title"] == "Guide"
        assert await store.count_chunks(document.id) == 3
        assert await store.count_chunks() == 3

    @pytest.mark.asyncio
    async def test_duplicate_index_rejected(self, store):
        """Test that a chunk index is unique within a document."""
        document = await store.create_document(make_document())
        await store.store_chunk(document.id, make_chunk(document.id, 0, "first", [1.0, 0.0]))

        with pytest.raises(StorageError):
            await store.store_chunk(document.id, make_chunk(document.id, 0, "again", [1.0, 0.0]))

    @pytest.mark.asyncio
    async def test_chunk_validation(self, store):
        """Test rejecting mismatched owners, missing vectors and wrong dimensions."""
        document = await store.create_document(make_document())
        await store.store_chunk(document.id, make_chunk(document.id, 0, "first", [1.0, 0.0]))

        with pytest.raises(StorageError):
            await store.store_chunk(document.id, make_chunk("other", 1, "text", [1.0, 0.0]))

        no_embedding = make_chunk(document.id, 1, "text", [1.0, 0.0]).model_copy(
            update={"embedding": None}
        )
        with pytest.raises(StorageError):
            await store.store_chunk(document.id, no_embedding)

        with pytest.raises(StorageError):
            await store.store_chunk(document.id, make_chunk(document.id, 1, "text", [1.0, 0.0, 0.0]))

    @pytest.mark.asyncio
    async def test_chunk_for_unknown_document(self, store):
        """Test that chunks need an existing document."""
        with pytest.raises(StorageError):
            await store.store_chunk("missing", make_chunk("missing", 0, "text", [1.0]))

    @pytest.mark.asyncio
    async def test_delete_chunks(self, store):
        """Test deleting all chunks of one document."""
        first = await make_ready_document(store, SURVIVAL_CHUNKS[:2])
        second = await make_ready_document(store, SURVIVAL_CHUNKS[2:])

        assert await store.delete_chunks(first.id) == 2
        assert await store.delete_chunks(first.id) == 0
        assert await store.count_chunks(first.id) == 0
        assert await store.count_chunks(second.id) == 2


class TestSearch:
    """Tests for semantic, lexical and hybrid search."""

    @pytest.mark.asyncio
    async def test_only_ready_documents_visible(self, store):
        """Test that chunks are hidden until their document is ready."""
        document = await store.create_document(make_document())
        await store.update_document_status(document.id, DocumentStatus.PROCESSING)
        await store.store_chunk(
            document.id, make_chunk(document.id, 0, "water purification tablets", [1.0, 0.0, 0.0])
        )

        assert await store.semantic_search([1.0, 0.0, 0.0], top_k=5) == []
        assert await store.lexical_search("water", top_k=5) == []

        await store.update_document_status(
            document.id, DocumentStatus.READY, chunk_count=1, total_tokens=6
        )

        assert len(await store.semantic_search([1.0, 0.0, 0.0], top_k=5)) == 1
        assert len(await store.lexical_search("water", top_k=5)) == 1

        await store.update_document_status(document.id, DocumentStatus.PROCESSING)

        assert await store.lexical_search("water", top_k=5) == []

    @pytest.mark.asyncio
    async def test_semantic_search(self, store):
        """Test similarity ordering and ranks."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        results = await store.semantic_search([1.0, 0.0, 0.0], top_k=2)

        assert [r.content for r in results] == [
            "water purification tablets",
            "boil water before drinking",
        ]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(0.7071, abs=1e-4)
        assert [r.semantic_rank for r in results] == [1, 2]
        assert results[0].lexical_rank is None

    @pytest.mark.asyncio
    async def test_semantic_threshold(self, store):
        """Test that only similarities above the threshold are returned."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        above_half = await store.semantic_search([1.0, 0.0, 0.0], top_k=10, similarity_threshold=0.5)
        above_one = await store.semantic_search([1.0, 0.0, 0.0], top_k=10, similarity_threshold=1.0)

        assert len(above_half) == 2
        assert above_one == []

    @pytest.mark.asyncio
    async def test_query_dimension_checked(self, store):
        """Test rejecting a query vector of the wrong dimension."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        with pytest.raises(StorageError):
            await store.semantic_search([1.0, 0.0], top_k=5)

    @pytest.mark.asyncio
    async def test_lexical_search(self, store):
        """Test that matching chunks are ranked with positive scores."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        results = await store.lexical_search("water", top_k=10)

        assert sorted(r.content for r in results) == [
            "boil water before drinking",
            "water purification tablets",
        ]
        assert [r.lexical_rank for r in results] == [1, 2]
        assert all(r.score > 0 for r in results)

    @pytest.mark.asyncio
    async def test_lexical_search_requires_every_term(self, store):
        """Test that a chunk must contain all query terms."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        results = await store.lexical_search("water purification", top_k=10)

        assert [r.content for r in results] == ["water purification tablets"]

    @pytest.mark.asyncio
    async def test_lexical_search_ignores_stop_words(self, store):
        """Test that sharing only a stop word is not a match."""
        await make_ready_document(store, [
            ("evacuation routes for the coast", [1.0, 0.0, 0.0]),
            ("flood evacuation", [0.0, 1.0, 0.0]),
            ("the cat sat on the mat", [0.0, 0.0, 1.0]),
        ])

        results = await store.lexical_search("what is the evacuation", top_k=10)

        assert sorted(r.content for r in results) == [
            "evacuation routes for the coast",
            "flood evacuation",
        ]

    @pytest.mark.asyncio
    async def test_lexical_search_no_terms(self, store):
        """Test that queries without searchable terms match nothing."""
        await make_ready_document(store, SURVIVAL_CHUNKS)

        assert await store.lexical_search("?!", top_k=10) == []
        assert await store.lexical_search("what is the", top_k=10) == []
        assert await store.lexical_search("helicopter", top_k=10) == []

    @pytest.mark.asyncio
    async def test_sqlite_lexical_search_stems_terms(self, sqlite_store):
        """Test that inflected query terms match their stems."""
        await make_ready_document(sqlite_store, SURVIVAL_CHUNKS)

        results = await sqlite_store.lexical_search("drinks boiled", top_k=10)

        assert [r.content for r in results] == ["boil water before drinking"]

    @pytest.mark.asyncio
    async def test_hybrid_search(self, store):
        """Test fusing both signals with Reciprocal Rank Fusion."""
        await make_ready_document(store, SURVIVAL_CHUNKS[:3])

        results = await store.hybrid_search([1.0, 0.0, 0.0], "water purification", top_k=3)

        assert [r.content for r in results] == [
            "water purification tablets",
            "boil water before drinking",
            "first aid kit bandages",
        ]
        assert results[0].score == pytest.approx(2 / 61)
        assert results[1].score == pytest.approx(1 / 62)
        assert results[2].score == pytest.approx(1 / 63)
        assert (results[0].semantic_rank, results[0].lexical_rank) == (1, 1)
        assert (results[1].semantic_rank, results[1].lexical_rank) == (2, None)
        assert (results[2].semantic_rank, results[2].lexical_rank) == (3, None)

    @pytest.mark.asyncio
    async def test_sqlite_hybrid_search_reads_one_snapshot(self, tmp_path):
        """Test that a document becoming ready mid-search is seen by neither signal."""
        store = ReadyMidSearchStore(str(tmp_path / "kb.db"))
        await make_ready_document(store, SURVIVAL_CHUNKS[:1])
        late = await store.create_document(make_document("late.txt"))
        await store.update_document_status(late.id, DocumentStatus.PROCESSING)
        await store.store_chunk(
            late.id, make_chunk(late.id, 0, "water purification straw", [1.0, 0.0, 0.0])
        )
        store.ready_before_lexical = late.id

        results = await store.hybrid_search([1.0, 0.0, 0.0], "water purification", top_k=5)

        assert [r.content for r in results] == ["water purification tablets"]
        assert (await store.get_document(late.id)).status == DocumentStatus.READY

        after = await store.hybrid_search([1.0, 0.0, 0.0], "water purification", top_k=5)

        assert {r.document_id for r in after} == {results[0].document_id, late.id}
        assert all(r.lexical_rank is not None for r in after)


class TestQueryLog:
    """Tests for query log persistence."""

    @pytest.mark.asyncio
    async def test_memory_query_log(self, memory_store):
        """Test appending entries to the in-memory log."""
        entry = QueryLogEntry(query_text="water", model_used="retrieval")

        await memory_store.log_query(entry)

        assert [e.id for e in memory_store.query_log] == [entry.id]

    @pytest.mark.asyncio
    async def test_sqlite_query_log(self, sqlite_store):
        """Test writing and reading back query log rows."""
        entry = QueryLogEntry(
            user_id="user-1",
            community_id="community-1",
            query_text="water",
            retrieved_chunk_ids=["a", "b"],
            retrieval_scores=[0.5, 0.25],
            model_used="retrieval",
            latency_ms=12,
        )

        await sqlite_store.log_query(entry)
        entries = await sqlite_store.list_query_log()

        assert len(entries) == 1
        assert entries[0].id == entry.id
        assert entries[0].retrieved_chunk_ids == ["a", "b"]
        assert entries[0].retrieval_scores == [0.5, 0.25]
        assert entries[0].latency_ms == 12


class TestSQLiteErrors:
    """Tests for SQLite failures surfacing as knowledge base errors."""

    @pytest.mark.asyncio
    async def test_locked_database(self, tmp_path):
        """Test that writes against a locked database raise store errors."""
        db_path = str(tmp_path / "kb.db")
        store = SQLiteKnowledgeStore(db_path, timeout=0.05)
        document = await store.create_document(make_document())

        lock = sqlite3.connect(db_path)
        lock.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(StorageError, match="database is locked"):
                await store.update_document_status(document.id, DocumentStatus.PROCESSING)
            with pytest.raises(StorageError, match="database is locked"):
                await store.delete_document(document.id)
            with pytest.raises(QueryLogError, match="Failed to log query: database is locked"):
                await store.log_query(QueryLogEntry(query_text="water", model_used="retrieval"))
        finally:
            lock.rollback()
            lock.close()

        assert (await store.get_document(document.id)).status == DocumentStatus.PENDING


class TestBlobStores:
    """Tests for raw document storage."""

    @pytest.mark.asyncio
    async def test_memory_blob_store(self):
        """Test put, get and delete in memory."""
        blobs = MemoryBlobStore()

        await blobs.put("doc/guide.txt", b"data")

        assert "doc/guide.txt" in blobs
        assert await blobs.get("doc/guide.txt") == b"data"
        assert await blobs.delete("doc/guide.txt") is True
        assert await blobs.delete("doc/guide.txt") is False
        with pytest.raises(FileNotFoundError):
            await blobs.get("doc/guide.txt")

    @pytest.mark.asyncio
    async def test_local_blob_store(self, tmp_path):
        """Test put, get and delete on disk."""
        blobs = LocalBlobStore(tmp_path / "files")

        await blobs.put("doc/guide.txt", b"data")

        assert (tmp_path / "files" / "doc" / "guide.txt").read_bytes() == b"data"
        assert await blobs.get("doc/guide.txt") == b"data"
        assert await blobs.delete("doc/guide.txt") is True
        assert await blobs.delete("doc/guide.txt") is False
        with pytest.raises(FileNotFoundError):
            await blobs.get("doc/guide.txt")

    @pytest.mark.asyncio
    async def test_local_blob_store_rejects_escape(self, tmp_path):
        """Test that locators cannot leave the root directory."""
        blobs = LocalBlobStore(tmp_path / "files")

        with pytest.raises(StorageError):
            await blobs.put("../outside.txt", b"data")
        with pytest.raises(StorageError):
            await blobs.get("")
