"""
kbrag - Knowledge base ingestion and hybrid retrieval.
"""

from kbrag.rag import (
    Chunk,
    Document,
    DocumentStatus,
    KnowledgeBase,
    QueryResponse,
    RetrievalResult,
)

__version__ = "0.1.0"

__all__ = [
    "Chunk",
    "Document",
    "DocumentStatus",
    "KnowledgeBase",
    "QueryResponse",
    "RetrievalResult",
    "__version__",
]
