"""Tests for fusion, retrieval and query logging."""

import logging

import pytest

from kbrag.rag import (
    Chunk,
    Document,
    DocumentStatus,
    FileType,
    InvalidQueryError,
    KnowledgeRetriever,
    MemoryKnowledgeStore,
    QueryLogError,
    RetrievalOptions,
    RetrievalResult,
    format_retrieval_context,
    fuse_results,
    reciprocal_rank_fusion,
)


def result(chunk_id: str, **kwargs) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=chunk_id,
        document_id=kwargs.pop("document_id", "doc-1"),
        content=kwargs.pop("content", f"content {chunk_id}"),
        contextual_content=kwargs.pop("contextual_content", f"context {chunk_id}"),
        **kwargs,
    )


async def index_texts(store, embedder, texts: list[str], name: str = "guide.txt") -> Document:
    """Store ``texts`` as the ready chunks of a new document."""
    document = await store.create_document(
        Document(name=name, file_type=FileType.TXT, mime_type="text/plain", file_locator=name)
    )
    await store.update_document_status(document.id, DocumentStatus.PROCESSING)
    for i, text in enumerate(texts):
        chunk = Chunk(
            document_id=document.id,
            chunk_index=i,
            content=text,
            contextual_content=text,
            embedding=await embedder.embed(text),
        )
        await store.store_chunk(document.id, chunk)
    return await store.update_document_status(
        document.id, DocumentStatus.READY, chunk_count=len(texts), total_tokens=0
    )


class FailingQueryLog(MemoryKnowledgeStore):
    """Store whose query log writes always fail."""

    async def log_query(self, entry):
        raise RuntimeError("log table locked")


class FullQueryLog(MemoryKnowledgeStore):
    """Store whose query log rejects writes with a store error."""

    async def log_query(self, entry):
        raise QueryLogError("disk full")


class TestReciprocalRankFusion:
    """Tests for Reciprocal Rank Fusion."""

    def test_interleaved_lists(self):
        """Test the fused order of two interleaved rankings."""
        fused = reciprocal_rank_fusion([["A", "B", "C"], ["B", "A", "D"]], rrf_k=60)

        ids = [item_id for item_id, _ in fused]
        scores = dict(fused)

        # A and B tie, A was seen first
        assert ids == ["A", "B", "C", "D"]
        assert scores["A"] == pytest.approx(1 / 61 + 1 / 62)
        assert scores["B"] == pytest.approx(scores["A"])
        assert scores["C"] == pytest.approx(1 / 63)
        assert scores["D"] == pytest.approx(1 / 63)

    def test_better_rank_scores_higher(self):
        """Test that improving a rank never lowers the fused score."""
        base = dict(reciprocal_rank_fusion([["A", "B", "C"], ["C", "B", "A"]]))
        improved = dict(reciprocal_rank_fusion([["A", "B", "C"], ["B", "C", "A"]]))

        assert improved["B"] > base["B"]

    def test_duplicate_counts_once(self):
        """Test that a repeated id only counts at its best rank in one list."""
        fused = dict(reciprocal_rank_fusion([["A", "A", "B"]], rrf_k=0))

        assert fused["A"] == pytest.approx(1.0)
        assert fused["B"] == pytest.approx(1 / 3)

    def test_top_k(self):
        """Test truncating the fused list."""
        fused = reciprocal_rank_fusion([["A", "B", "C"]], top_k=2)

        assert [item_id for item_id, _ in fused] == ["A", "B"]

    def test_empty_lists(self):
        """Test fusing nothing."""
        assert reciprocal_rank_fusion([[], []]) == []

    def test_negative_k_rejected(self):
        """Test rejecting a negative smoothing constant."""
        with pytest.raises(ValueError):
            reciprocal_rank_fusion([["A"]], rrf_k=-1)

    def test_fuse_results_ranks(self):
        """Test that fused rows carry their rank in each signal."""
        semantic = [result("A", score=0.9), result("B", score=0.8)]
        lexical = [result("C", score=3.0), result("A", score=2.0)]

        fused = fuse_results(semantic, lexical, rrf_k=60)

        assert [r.chunk_id for r in fused] == ["A", "C", "B"]
        assert (fused[0].semantic_rank, fused[0].lexical_rank) == (1, 2)
        assert (fused[1].semantic_rank, fused[1].lexical_rank) == (None, 1)
        assert (fused[2].semantic_rank, fused[2].lexical_rank) == (2, None)
        assert fused[0].score == pytest.approx(1 / 61 + 1 / 62)


class TestRetrievalOptions:
    """Tests for RetrievalOptions validation."""

    def test_defaults(self):
        """Test default retrieval options."""
        options = RetrievalOptions()
        assert options.top_k == 10
        assert options.use_hybrid is True
        assert options.rrf_k == 60
        assert options.semantic_threshold == 0.5

    def test_invalid_values(self):
        """Test rejecting a zero top_k and negative rrf_k."""
        with pytest.raises(ValueError):
            RetrievalOptions(top_k=0)
        with pytest.raises(ValueError):
            RetrievalOptions(rrf_k=-1)


class TestKnowledgeRetriever:
    """Tests for KnowledgeRetriever."""

    TEXTS = [
        "Boil water for at least one minute before drinking it.",
        "Keep a first aid kit with bandages and antiseptic.",
        "Store a battery powered radio and a flashlight.",
        "Purification tablets make stream water safe to drink.",
    ]

    @pytest.mark.asyncio
    async def test_hybrid_retrieval(self, store, embedder):
        """Test that hybrid retrieval surfaces the relevant chunks."""
        await index_texts(store, embedder, self.TEXTS)
        retriever = KnowledgeRetriever(embedder, store)

        results = await retriever.retrieve("How should I boil water?", RetrievalOptions(top_k=2))

        assert len(results) == 2
        assert results[0].content == self.TEXTS[0]
        assert results[0].semantic_rank == 1
        assert results[0].lexical_rank == 1
        assert results[0].score > results[1].score

    @pytest.mark.asyncio
    async def test_semantic_only(self, store, embedder):
        """Test semantic retrieval honours the similarity threshold."""
        await index_texts(store, embedder, self.TEXTS)
        retriever = KnowledgeRetriever(embedder, store)

        strict = await retriever.retrieve(
            "battery powered radio flashlight",
            RetrievalOptions(use_hybrid=False, semantic_threshold=0.5),
        )
        loose = await retriever.retrieve(
            "battery powered radio flashlight",
            RetrievalOptions(use_hybrid=False, semantic_threshold=-1.0),
        )

        assert [r.content for r in strict] == [self.TEXTS[2]]
        assert all(r.lexical_rank is None for r in strict)
        assert len(loose) == len(self.TEXTS)

    @pytest.mark.asyncio
    async def test_empty_query(self, memory_store, embedder):
        """Test that blank queries are rejected before embedding."""
        retriever = KnowledgeRetriever(embedder, memory_store)

        for query in ("", "   "):
            with pytest.raises(InvalidQueryError):
                await retriever.retrieve(query)
        assert embedder.provider.calls == 0

    @pytest.mark.asyncio
    async def test_empty_store(self, memory_store, embedder):
        """Test retrieval over an empty knowledge base."""
        retriever = KnowledgeRetriever(embedder, memory_store)

        assert await retriever.retrieve("water") == []

    @pytest.mark.asyncio
    async def test_get_document_info(self, memory_store, embedder):
        """Test provenance lookup for result documents."""
        document = await index_texts(memory_store, embedder, self.TEXTS[:1], name="water.txt")
        retriever = KnowledgeRetriever(embedder, memory_store, documents=memory_store)

        info = await retriever.get_document_info([document.id, document.id, "missing"])

        assert list(info) == [document.id]
        assert info[document.id].name == "water.txt"

    @pytest.mark.asyncio
    async def test_get_document_info_without_repository(self, memory_store, embedder):
        """Test that no repository means no provenance."""
        retriever = KnowledgeRetriever(embedder, memory_store)

        assert await retriever.get_document_info(["doc-1"]) == {}


class TestQueryLogging:
    """Tests for background query logging."""

    @pytest.mark.asyncio
    async def test_log_query(self, memory_store, embedder):
        """Test that a query is logged in the background."""
        retriever = KnowledgeRetriever(embedder, memory_store, query_log=memory_store)
        results = [result("A", score=0.5), result("B", score=0.25)]

        task = retriever.log_query(
            "water", results, model_used="retrieval", user_id="user-1", latency_ms=7
        )
        await retriever.wait_for_logs()

        assert task is not None and task.done()
        entry = memory_store.query_log[0]
        assert entry.query_text == "water"
        assert entry.retrieved_chunk_ids == ["A", "B"]
        assert entry.retrieval_scores == [0.5, 0.25]
        assert entry.user_id == "user-1"
        assert entry.latency_ms == 7

    @pytest.mark.asyncio
    async def test_log_failure_is_swallowed(self, embedder, caplog):
        """Test that a failing log write is reported but never raised."""
        store = FailingQueryLog()
        retriever = KnowledgeRetriever(embedder, store, query_log=store)

        with caplog.at_level(logging.ERROR):
            retriever.log_query("water", [], model_used="retrieval")
            await retriever.wait_for_logs()

        assert "Failed to log query: log table locked" in caplog.text

    @pytest.mark.asyncio
    async def test_log_store_error_is_reported_once(self, embedder, caplog):
        """Test that a store's own log error message is not prefixed twice."""
        store = FullQueryLog()
        retriever = KnowledgeRetriever(embedder, store, query_log=store)

        with caplog.at_level(logging.ERROR):
            retriever.log_query("water", [], model_used="retrieval")
            await retriever.wait_for_logs()

        assert "Failed to log query: disk full" in caplog.text
        assert "Failed to log query: Failed" not in caplog.text

    @pytest.mark.asyncio
    async def test_no_query_log(self, memory_store, embedder):
        """Test that logging is skipped without a destination."""
        retriever = KnowledgeRetriever(embedder, memory_store)

        assert retriever.log_query("water", [], model_used="retrieval") is None


class TestFormatRetrievalContext:
    """Tests for prompt context formatting."""

    def test_empty(self):
        """Test that no results format to an empty string."""
        assert format_retrieval_context([]) == ""

    def test_format(self):
        """Test reference headers, separators and the surrounding banner."""
        results = [
            result("A", contextual_content="Boil water.", metadata={"document_title": "Water", "page_number": 3}),
            result("B", contextual_content="Pack bandages."),
        ]

        context = format_retrieval_context(results)

        assert context == (
            "RELEVANT KNOWLEDGE BASE INFORMATION:\n\n"
            "[Reference 1] Source: Water (Page 3)\nBoil water."
            "\n\n---\n\n"
            "[Reference 2] Source: Knowledge Base Document\nPack bandages."
            "\n\nEND OF KNOWLEDGE BASE INFORMATION"
        )
