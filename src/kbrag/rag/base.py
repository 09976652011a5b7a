"""Base classes and abstract interfaces for knowledge base components."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .document import (
        Chunk,
        Document,
        DocumentStatus,
        ParsedDocument,
        QueryLogEntry,
        RetrievalResult,
    )
    from .retriever import RetrievalOptions


class BaseEmbedding(ABC):
    """Abstract base class for embedding models.

    Embedding models convert text into dense vector representations.
    """

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors
        """
        pass

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query.

        Args:
            text: Query text to embed

        Returns:
            Embedding vector
        """
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of the embedding vectors."""
        pass


class BaseSummarizer(ABC):
    """Abstract base class for the text generation used by contextual chunking."""

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Generate a short text for a prompt.

        Args:
            prompt: Fully rendered prompt

        Returns:
            Generated text
        """
        pass


class BaseChunker(ABC):
    """Abstract base class for document chunkers.

    Chunkers split parsed documents into ordered chunks for indexing.
    """

    @abstractmethod
    async def chunk(self, document: "ParsedDocument", document_id: str = "") -> list["Chunk"]:
        """Split a document into chunks.

        Args:
            document: Parsed document
            document_id: ID of the owning document

        Returns:
            Chunks ordered by chunk_index, without embeddings
        """
        pass


class BaseChunkStore(ABC):
    """Abstract base class for the combined vector and full-text chunk store.

    Only chunks whose owning document is ``ready`` are visible to search.
    """

    @abstractmethod
    async def store_chunk(self, document_id: str, chunk: "Chunk") -> str:
        """Atomically append one chunk row, embedding included.

        Returns:
            The stored chunk ID
        """
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document in one atomic operation.

        Returns:
            Number of chunks deleted
        """
        pass

    @abstractmethod
    async def get_chunks(self, document_id: str) -> list["Chunk"]:
        """Return the chunks of a document ordered by chunk_index."""
        pass

    @abstractmethod
    async def count_chunks(self, document_id: Optional[str] = None) -> int:
        """Return the number of chunks, optionally for one document."""
        pass

    @abstractmethod
    async def semantic_search(
        self,
        query_embedding: list[float],
        top_k: int = 10,
        similarity_threshold: Optional[float] = None,
    ) -> list["RetrievalResult"]:
        """Nearest-neighbour search by cosine similarity.

        Args:
            query_embedding: Query vector
            top_k: Maximum number of rows
            similarity_threshold: Rows must score strictly above it when set

        Returns:
            Rows ranked by similarity with ``semantic_rank`` set
        """
        pass

    @abstractmethod
    async def lexical_search(self, query_text: str, top_k: int = 10) -> list["RetrievalResult"]:
        """Full-text search over raw chunk content.

        Returns:
            Rows ranked by lexical relevance with ``lexical_rank`` set
        """
        pass

    async def hybrid_search(
        self,
        query_embedding: list[float],
        query_text: str,
        top_k: int = 10,
        rrf_k: int = 60,
    ) -> list["RetrievalResult"]:
        """Fuse semantic and lexical candidates with Reciprocal Rank Fusion.

        Each signal contributes ``2 * top_k`` candidates. Stores able to fuse
        natively may override this as long as the ranking is identical.
        """
        from .fusion import fuse_results

        candidates = top_k * 2
        semantic = await self.semantic_search(query_embedding, candidates, None)
        lexical = await self.lexical_search(query_text, candidates)
        return fuse_results(semantic, lexical, rrf_k=rrf_k, top_k=top_k)


class BaseDocumentRepository(ABC):
    """Abstract base class for document records."""

    @abstractmethod
    async def create_document(self, document: "Document") -> "Document":
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional["Document"]:
        pass

    @abstractmethod
    async def get_documents(self, document_ids: list[str]) -> list["Document"]:
        pass

    @abstractmethod
    async def list_documents(self, status: Optional["DocumentStatus"] = None) -> list["Document"]:
        pass

    @abstractmethod
    async def update_document_status(
        self,
        document_id: str,
        status: "DocumentStatus",
        error_message: Optional[str] = None,
        chunk_count: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> "Document":
        """Move a document to ``status``.

        Raises:
            DocumentNotFoundError: If the document does not exist
            InvalidStatusTransitionError: If the lifecycle forbids the change
        """
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """Delete a document record and, by cascade, its chunks."""
        pass


class BaseQueryLog(ABC):
    """Abstract base class for the write-only query log."""

    @abstractmethod
    async def log_query(self, entry: "QueryLogEntry") -> None:
        pass


class BaseBlobStore(ABC):
    """Abstract base class for raw document bytes."""

    @abstractmethod
    async def put(self, locator: str, data: bytes) -> str:
        pass

    @abstractmethod
    async def get(self, locator: str) -> bytes:
        """Return the bytes stored under ``locator``.

        Raises:
            FileNotFoundError: If nothing is stored there
        """
        pass

    @abstractmethod
    async def delete(self, locator: str) -> bool:
        """Delete a blob. Missing blobs are not an error."""
        pass


class BaseRetriever(ABC):
    """Abstract base class for retrievers.

    Retrievers find relevant chunks for a given query.
    """

    @abstractmethod
    async def retrieve(
        self,
        query: str,
        options: Optional["RetrievalOptions"] = None,
    ) -> list["RetrievalResult"]:
        """Retrieve relevant chunks for a query.

        Args:
            query: Query string
            options: Retrieval options

        Returns:
            List of ranked results
        """
        pass


class BaseRerankProvider(ABC):
    """Abstract base class for relevance scoring providers.

    Rerank providers score each candidate against the query.
    """

    @abstractmethod
    async def score(
        self,
        query: str,
        documents: list[str],
        model: Optional[str] = None,
    ) -> list[float]:
        """Score candidate texts against a query.

        Args:
            query: Original query string
            documents: Candidate texts
            model: Optional model override

        Returns:
            One relevance score per candidate, higher is better
        """
        pass


class BaseKnowledgeStore(BaseChunkStore, BaseDocumentRepository, BaseQueryLog):
    """A single backend holding documents, their chunks and the query log."""
