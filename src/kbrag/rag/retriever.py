"""Retriever implementations."""

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, field_validator

from .base import BaseChunkStore, BaseDocumentRepository, BaseQueryLog, BaseRetriever
from .document import DocumentInfo, QueryLogEntry, RetrievalResult
from .embeddings import Embedder
from .exceptions import InvalidQueryError, QueryLogError
from .fusion import DEFAULT_RRF_K

logger = logging.getLogger(__name__)


class RetrievalOptions(BaseModel):
    """Options for a retrieval call."""

    top_k: int = 10
    use_hybrid: bool = True
    rrf_k: int = DEFAULT_RRF_K
    semantic_threshold: float = 0.5

    @field_validator("top_k")
    @classmethod
    def _check_top_k(cls, value: int) -> int:
        if value < 1:
            raise ValueError("top_k must be at least 1")
        return value

    @field_validator("rrf_k")
    @classmethod
    def _check_rrf_k(cls, value: int) -> int:
        if value < 0:
            raise ValueError("rrf_k must be non-negative")
        return value


class KnowledgeRetriever(BaseRetriever):
    """Hybrid retriever over the knowledge store.

    Embeds the query, then ranks chunks by Reciprocal Rank Fusion of semantic
    and lexical search, or by semantic similarity alone.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: BaseChunkStore,
        documents: Optional[BaseDocumentRepository] = None,
        query_log: Optional[BaseQueryLog] = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedder for queries
            store: Chunk store to search
            documents: Document repository for provenance lookups
            query_log: Destination of query analytics
        """
        self.embedder = embedder
        self.store = store
        self.documents = documents
        self.query_log = query_log
        self._pending_logs: set[asyncio.Task] = set()

    async def retrieve(
        self,
        query: str,
        options: Optional[RetrievalOptions] = None,
    ) -> list[RetrievalResult]:
        """Retrieve chunks for a query, hybrid by default.

        Raises:
            InvalidQueryError: If the query is empty
            EmbeddingProviderError: If the query cannot be embedded
        """
        options = options or RetrievalOptions()

        if options.use_hybrid:
            return await self.hybrid_search(query, options)
        return await self.semantic_search(query, options)

    async def hybrid_search(
        self,
        query: str,
        options: Optional[RetrievalOptions] = None,
    ) -> list[RetrievalResult]:
        """Rank chunks by RRF over semantic and lexical candidates."""
        options = options or RetrievalOptions()
        query = self._validate_query(query)

        query_embedding = await self.embedder.embed(query)
        results = await self.store.hybrid_search(
            query_embedding,
            query,
            top_k=options.top_k,
            rrf_k=options.rrf_k,
        )

        logger.debug(f"Hybrid search returned {len(results)} results")
        return results

    async def semantic_search(
        self,
        query: str,
        options: Optional[RetrievalOptions] = None,
    ) -> list[RetrievalResult]:
        """Rank chunks by cosine similarity above the semantic threshold."""
        options = options or RetrievalOptions()
        query = self._validate_query(query)

        query_embedding = await self.embedder.embed(query)
        results = await self.store.semantic_search(
            query_embedding,
            top_k=options.top_k,
            similarity_threshold=options.semantic_threshold,
        )

        logger.debug(f"Semantic search returned {len(results)} results")
        return results

    @staticmethod
    def _validate_query(query: str) -> str:
        if not query or not query.strip():
            raise InvalidQueryError()
        return query.strip()

    async def get_document_info(self, document_ids: list[str]) -> dict[str, DocumentInfo]:
        """Look up names and descriptions of the documents behind results.

        Lookup failures are logged and yield an empty mapping.
        """
        if self.documents is None or not document_ids:
            return {}

        try:
            documents = await self.documents.get_documents(list(dict.fromkeys(document_ids)))
        except Exception as e:
            logger.error(f"Error fetching document info: {e}")
            return {}

        return {
            doc.id: DocumentInfo(name=doc.name, description=doc.description)
            for doc in documents
        }

    def log_query(
        self,
        query_text: str,
        results: list[RetrievalResult],
        model_used: str,
        user_id: Optional[str] = None,
        community_id: Optional[str] = None,
        response_text: Optional[str] = None,
        latency_ms: Optional[int] = None,
    ) -> Optional[asyncio.Task]:
        """Record a query for analytics without blocking the caller.

        The write runs as a background task; failures are logged and never
        propagate. Must be called from a running event loop.
        """
        if self.query_log is None:
            return None

        entry = QueryLogEntry(
            user_id=user_id,
            community_id=community_id,
            query_text=query_text,
            retrieved_chunk_ids=[r.chunk_id for r in results],
            retrieval_scores=[r.score for r in results],
            model_used=model_used,
            response_text=response_text,
            latency_ms=latency_ms,
        )

        task = asyncio.get_running_loop().create_task(self._write_log(entry))
        self._pending_logs.add(task)
        task.add_done_callback(self._pending_logs.discard)
        return task

    async def _write_log(self, entry: QueryLogEntry) -> None:
        try:
            await self.query_log.log_query(entry)
        except QueryLogError as e:
            logger.error(e.message)
        except Exception as e:
            logger.error(f"Failed to log query: {e}")

    async def wait_for_logs(self) -> None:
        """Wait until all pending query log writes have finished."""
        if self._pending_logs:
            await asyncio.gather(*list(self._pending_logs))


def format_retrieval_context(results: list[RetrievalResult]) -> str:
    """Format results as a reference block for a prompt.

    Args:
        results: Ranked retrieval results

    Returns:
        The formatted context, or an empty string when there are no results
    """
    if not results:
        return ""

    parts = []
    for i, result in enumerate(results, start=1):
        title = result.metadata.get("document_title") or "Knowledge Base Document"
        page_number = result.metadata.get("page_number")
        page_info = f" (Page {page_number})" if page_number else ""
        parts.append(f"[Reference {i}] Source: {title}{page_info}\n{result.contextual_content}")

    body = "\n\n---\n\n".join(parts)
    return f"RELEVANT KNOWLEDGE BASE INFORMATION:\n\n{body}\n\nEND OF KNOWLEDGE BASE INFORMATION"
