"""Knowledge base pipeline.

Wires the parser, chunker, embedder, store, retriever and reranker together
behind the application entry points: upload, process, reprocess, delete and
query.
"""

import logging
import re
import time
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from kbrag.utils.logging import set_log_level

from .base import BaseBlobStore, BaseChunker, BaseKnowledgeStore, BaseRerankProvider
from .blobs import LocalBlobStore, MemoryBlobStore
from .chunking import ContextualChunker, SimpleChunker
from .document import (
    Document,
    DocumentStatus,
    ProcessingResult,
    RetrievalResult,
    get_file_type_from_mime,
)
from .embeddings import Embedder, FakeEmbedding, LocalEmbedding, OpenAIEmbedding
from .exceptions import ConfigurationError, ParseError
from .parsers import DocumentParser
from .processor import DocumentProcessor
from .reranker import CrossEncoderRerankProvider, LLMRerankProvider, RerankOptions, Reranker
from .retriever import KnowledgeRetriever, RetrievalOptions, format_retrieval_context
from .store import MemoryKnowledgeStore, SQLiteKnowledgeStore
from .summarizer import LLMSummarizer

if TYPE_CHECKING:
    from kbrag.utils.config import KnowledgeBaseConfig

logger = logging.getLogger(__name__)


class QueryResponse(BaseModel):
    """Result of a knowledge base query."""

    results: list[RetrievalResult] = Field(default_factory=list)
    context: str = ""
    latency_ms: int = 0
    reranking_used: bool = False


def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^\w.\-]+", "_", name).strip("._")
    return cleaned or "document"


class KnowledgeBase:
    """Complete knowledge base pipeline.

    Example:
        kb = KnowledgeBase(store, blobs, chunker, embedder)
        document = await kb.upload("guide.txt", data, "text/plain")
        response = await kb.query("How do I prepare an emergency kit?")
    """

    def __init__(
        self,
        store: BaseKnowledgeStore,
        blobs: BaseBlobStore,
        chunker: BaseChunker,
        embedder: Embedder,
        parser: Optional[DocumentParser] = None,
        reranker: Optional[Reranker] = None,
        retrieval_options: Optional[RetrievalOptions] = None,
        rerank_model: Optional[str] = None,
        model_used: str = "retrieval",
    ):
        """Initialize the knowledge base.

        Args:
            store: Document, chunk and query log store
            blobs: Raw document bytes
            chunker: Chunking strategy
            embedder: Embedder shared by ingestion and queries
            parser: Document parser
            reranker: Reranking stage (disabled if None)
            retrieval_options: Defaults for rrf_k, hybrid mode and threshold
            rerank_model: Model override passed to the rerank provider
            model_used: Label written to the query log
        """
        self.store = store
        self.blobs = blobs
        self.embedder = embedder
        self.reranker = reranker or Reranker()
        self.retrieval_options = retrieval_options or RetrievalOptions()
        self.rerank_model = rerank_model
        self.model_used = model_used

        self.processor = DocumentProcessor(
            store=store,
            blobs=blobs,
            parser=parser or DocumentParser(),
            chunker=chunker,
            embedder=embedder,
        )
        self.retriever = KnowledgeRetriever(
            embedder=embedder,
            store=store,
            documents=store,
            query_log=store,
        )

    async def upload(
        self,
        name: str,
        data: bytes,
        mime_type: str,
        description: Optional[str] = None,
        process: bool = True,
    ) -> Document:
        """Store a new document and, by default, process it.

        Returns:
            The document record in its latest state

        Raises:
            ParseError: If the MIME type is unsupported or the file is empty
        """
        file_type = get_file_type_from_mime(mime_type)
        if file_type is None:
            raise ParseError(f"Unsupported file type: {mime_type}")
        if not data:
            raise ParseError("Document is empty")

        document = Document(
            name=name,
            description=description,
            file_type=file_type,
            mime_type=mime_type,
            file_locator="",
            file_size=len(data),
        )
        document.file_locator = f"{document.id}/{_safe_filename(name)}"

        await self.blobs.put(document.file_locator, data)
        await self.store.create_document(document)
        logger.info(f"Uploaded document {document.id}: {name} ({len(data)} bytes)")

        if process:
            await self.process(document.id)
            return await self.store.get_document(document.id) or document

        return document

    async def process(self, document_id: str) -> ProcessingResult:
        return await self.processor.process(document_id)

    async def reprocess(self, document_id: str) -> ProcessingResult:
        return await self.processor.reprocess(document_id)

    async def process_pending(self, max_concurrency: int = 1) -> list[ProcessingResult]:
        """Process every document still waiting in ``pending``."""
        pending = await self.store.list_documents(DocumentStatus.PENDING)
        return await self.processor.process_batch(
            [doc.id for doc in pending],
            max_concurrency=max_concurrency,
        )

    async def delete(self, document_id: str) -> None:
        await self.processor.delete(document_id)

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self.store.get_document(document_id)

    async def list_documents(self, status: Optional[DocumentStatus] = None) -> list[Document]:
        return await self.store.list_documents(status)

    async def query(
        self,
        query: str,
        top_k: int = 5,
        use_reranking: bool = True,
        user_id: Optional[str] = None,
        community_id: Optional[str] = None,
    ) -> QueryResponse:
        """Retrieve ranked fragments for a query.

        With reranking available, twice ``top_k`` candidates are retrieved and
        the reranker picks the final ``top_k``.

        Raises:
            InvalidQueryError: If the query is empty
            ValidationError: If ``top_k`` is below 1
        """
        start_time = time.monotonic()
        reranking_used = use_reranking and self.reranker.is_available

        rerank_options = RerankOptions(top_k=top_k, model=self.rerank_model)
        options = RetrievalOptions.model_validate({
            **self.retrieval_options.model_dump(),
            "top_k": top_k * 2 if reranking_used else top_k,
        })
        results = await self.retriever.retrieve(query, options)

        if reranking_used:
            results = await self.reranker.rerank_with_fallback(query, results, rerank_options)

        latency_ms = int((time.monotonic() - start_time) * 1000)
        self.retriever.log_query(
            query,
            results,
            model_used=self.model_used,
            user_id=user_id,
            community_id=community_id,
            latency_ms=latency_ms,
        )

        return QueryResponse(
            results=results,
            context=format_retrieval_context(results),
            latency_ms=latency_ms,
            reranking_used=reranking_used,
        )

    async def close(self) -> None:
        """Wait for pending background writes."""
        await self.retriever.wait_for_logs()

    @classmethod
    def from_config(cls, config: "KnowledgeBaseConfig") -> "KnowledgeBase":
        """Build a knowledge base from configuration."""
        from kbrag.providers import create_llm_provider

        set_log_level(config.log_level)

        # Storage
        if config.storage.backend == "sqlite":
            store: BaseKnowledgeStore = SQLiteKnowledgeStore(
                config.storage.db_path,
                embedding_dimension=config.embedding.dimension,
            )
        else:
            store = MemoryKnowledgeStore(embedding_dimension=config.embedding.dimension)

        if config.storage.blob_backend == "local":
            blobs: BaseBlobStore = LocalBlobStore(config.storage.blob_root)
        else:
            blobs = MemoryBlobStore()

        # Embedding
        emb = config.embedding
        if emb.provider == "openai":
            provider = OpenAIEmbedding(
                model=emb.model or "text-embedding-3-small",
                api_key=emb.api_key,
                base_url=emb.base_url,
                dimensions=emb.dimension,
            )
        elif emb.provider == "local":
            provider = LocalEmbedding(model_name=emb.model or "all-MiniLM-L6-v2")
        else:
            provider = FakeEmbedding(dimension=emb.dimension or 384)
        embedder = Embedder(provider, request_delay=emb.request_delay, timeout=emb.timeout)

        # Chunking
        summ = config.summarizer
        if summ.enabled:
            llm = create_llm_provider(
                summ.provider,
                api_key=summ.api_key,
                base_url=summ.base_url,
                timeout=summ.timeout,
            )
            chunker: BaseChunker = ContextualChunker(
                LLMSummarizer(llm, model=summ.model),
                options=config.chunking,
                max_concurrency=summ.max_concurrency,
                timeout=summ.timeout,
            )
        else:
            chunker = SimpleChunker(config.chunking)

        # Reranking
        rr = config.rerank
        rerank_provider: Optional[BaseRerankProvider] = None
        if rr.provider == "cross_encoder":
            rerank_provider = CrossEncoderRerankProvider(
                model_name=rr.model or "cross-encoder/ms-marco-MiniLM-L-6-v2"
            )
        elif rr.provider == "llm":
            rerank_provider = LLMRerankProvider(
                create_llm_provider(rr.llm_provider, api_key=rr.api_key, timeout=rr.timeout),
                model=rr.model,
            )
        elif rr.provider != "none":
            raise ConfigurationError(f"Unknown rerank provider: {rr.provider}")

        parser = DocumentParser(
            image_describer=create_llm_provider(config.image_provider)
            if config.image_provider else None,
        )

        return cls(
            store=store,
            blobs=blobs,
            chunker=chunker,
            embedder=embedder,
            parser=parser,
            reranker=Reranker(rerank_provider, timeout=rr.timeout),
            retrieval_options=config.retrieval,
        )
