"""
Knowledge base exceptions.
"""


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base errors."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ParseError(KnowledgeBaseError):
    """Raised when a document cannot be read or its type is unsupported."""

    def __init__(self, message: str = "Failed to parse document"):
        super().__init__(message, code="parse_error")


class ChunkingError(KnowledgeBaseError):
    """Raised when no chunks can be produced from a document."""

    def __init__(self, message: str = "No chunks generated from document"):
        super().__init__(message, code="chunking_error")


class EmbeddingProviderError(KnowledgeBaseError):
    """Raised when the embedding provider fails.

    The ``reason`` is one of ``unavailable``, ``quota_exceeded``, ``auth``,
    ``malformed_input``, ``malformed_response`` or ``timeout``.
    """

    def __init__(self, message: str, reason: str = "unavailable"):
        self.reason = reason
        super().__init__(f"Failed to generate embedding: {message}", code="embedding_error")


class ContextGenerationError(KnowledgeBaseError):
    """Raised when a contextual summary cannot be generated."""

    def __init__(self, message: str):
        super().__init__(f"Context generation failed: {message}", code="context_error")


class StorageError(KnowledgeBaseError):
    """Raised when writing to or deleting from the store fails."""

    def __init__(self, message: str):
        super().__init__(message, code="storage_error")


class DocumentNotFoundError(KnowledgeBaseError):
    """Raised when a document id does not exist."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}", code="not_found")


class InvalidStatusTransitionError(KnowledgeBaseError):
    """Raised when a document status change violates the lifecycle."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid status transition: {current} -> {target}",
            code="invalid_transition",
        )


class RerankProviderError(KnowledgeBaseError):
    """Raised when the reranking provider fails."""

    def __init__(self, message: str):
        super().__init__(f"Reranking failed: {message}", code="rerank_error")


class QueryLogError(KnowledgeBaseError):
    """Raised when a query log entry cannot be written."""

    def __init__(self, message: str):
        super().__init__(f"Failed to log query: {message}", code="query_log_error")


class InvalidQueryError(KnowledgeBaseError, ValueError):
    """Raised when a retrieval call is malformed."""

    def __init__(self, message: str = "Query is required"):
        super().__init__(message, code="invalid_query")


class ConfigurationError(KnowledgeBaseError):
    """Raised when a component is missing required configuration."""

    def __init__(self, message: str):
        super().__init__(message, code="configuration_error")
