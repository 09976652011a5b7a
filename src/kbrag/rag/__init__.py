"""Knowledge base ingestion and hybrid retrieval.

This module provides the complete knowledge base subsystem:
- Document, chunk and retrieval data structures
- Parsers for PDF, DOCX, plain text and images
- Overlapping, paragraph-aligned chunking with contextual summaries
- Embedding providers (OpenAI, local, fake) behind a rate-limited embedder
- Memory and SQLite stores with semantic, lexical and hybrid search
- Reciprocal Rank Fusion and optional reranking
- A document processor driving the document lifecycle

Example:
    ```python
    from kbrag.rag import (
        Embedder,
        FakeEmbedding,
        KnowledgeBase,
        MemoryBlobStore,
        MemoryKnowledgeStore,
        SimpleChunker,
    )

    kb = KnowledgeBase(
        store=MemoryKnowledgeStore(),
        blobs=MemoryBlobStore(),
        chunker=SimpleChunker(),
        embedder=Embedder(FakeEmbedding()),
    )

    document = await kb.upload("notes.txt", b"Boil water for one minute.", "text/plain")
    response = await kb.query("How long should water be boiled?")
    print(response.context)
    ```
"""

# Data structures
from .document import (
    Chunk,
    Document,
    DocumentInfo,
    DocumentStatus,
    FileType,
    PageText,
    ParsedDocument,
    ProcessingResult,
    QueryLogEntry,
    RetrievalResult,
    get_file_type_from_mime,
    is_valid_mime_type,
)

# Exceptions
from .exceptions import (
    ChunkingError,
    ConfigurationError,
    ContextGenerationError,
    DocumentNotFoundError,
    EmbeddingProviderError,
    InvalidQueryError,
    InvalidStatusTransitionError,
    KnowledgeBaseError,
    ParseError,
    QueryLogError,
    RerankProviderError,
    StorageError,
)

# Base classes
from .base import (
    BaseBlobStore,
    BaseChunker,
    BaseChunkStore,
    BaseDocumentRepository,
    BaseEmbedding,
    BaseKnowledgeStore,
    BaseQueryLog,
    BaseRerankProvider,
    BaseRetriever,
    BaseSummarizer,
)

# Parsing
from .parsers import DocumentParser, parse_docx, parse_pdf, parse_txt

# Chunking
from .chunking import (
    ChunkingOptions,
    ContextualChunker,
    SimpleChunker,
    estimate_tokens,
    split_into_chunks,
)
from .summarizer import FakeSummarizer, LLMSummarizer

# Embeddings
from .embeddings import (
    DummyEmbedding,
    Embedder,
    FakeEmbedding,
    LocalEmbedding,
    OpenAIEmbedding,
    format_embedding,
    parse_embedding,
)

# Storage
from .blobs import LocalBlobStore, MemoryBlobStore
from .store import MemoryKnowledgeStore, SQLiteKnowledgeStore, cosine_similarity

# Retrieval
from .fusion import fuse_results, reciprocal_rank_fusion
from .retriever import KnowledgeRetriever, RetrievalOptions, format_retrieval_context
from .reranker import (
    CrossEncoderRerankProvider,
    LLMRerankProvider,
    RerankOptions,
    Reranker,
)

# Processing
from .processor import DocumentProcessor
from .pipeline import KnowledgeBase, QueryResponse

__all__ = [
    # Data structures
    "Chunk",
    "Document",
    "DocumentInfo",
    "DocumentStatus",
    "FileType",
    "PageText",
    "ParsedDocument",
    "ProcessingResult",
    "QueryLogEntry",
    "RetrievalResult",
    "get_file_type_from_mime",
    "is_valid_mime_type",
    # Exceptions
    "ChunkingError",
    "ConfigurationError",
    "ContextGenerationError",
    "DocumentNotFoundError",
    "EmbeddingProviderError",
    "InvalidQueryError",
    "InvalidStatusTransitionError",
    "KnowledgeBaseError",
    "ParseError",
    "QueryLogError",
    "RerankProviderError",
    "StorageError",
    # Base classes
    "BaseBlobStore",
    "BaseChunker",
    "BaseChunkStore",
    "BaseDocumentRepository",
    "BaseEmbedding",
    "BaseKnowledgeStore",
    "BaseQueryLog",
    "BaseRerankProvider",
    "BaseRetriever",
    "BaseSummarizer",
    # Parsing
    "DocumentParser",
    "parse_docx",
    "parse_pdf",
    "parse_txt",
    # Chunking
    "ChunkingOptions",
    "ContextualChunker",
    "SimpleChunker",
    "estimate_tokens",
    "split_into_chunks",
    "FakeSummarizer",
    "LLMSummarizer",
    # Embeddings
    "DummyEmbedding",
    "Embedder",
    "FakeEmbedding",
    "LocalEmbedding",
    "OpenAIEmbedding",
    "format_embedding",
    "parse_embedding",
    # Storage
    "LocalBlobStore",
    "MemoryBlobStore",
    "MemoryKnowledgeStore",
    "SQLiteKnowledgeStore",
    "cosine_similarity",
    # Retrieval
    "fuse_results",
    "reciprocal_rank_fusion",
    "KnowledgeRetriever",
    "RetrievalOptions",
    "format_retrieval_context",
    "CrossEncoderRerankProvider",
    "LLMRerankProvider",
    "RerankOptions",
    "Reranker",
    # Processing
    "DocumentProcessor",
    "KnowledgeBase",
    "QueryResponse",
]
