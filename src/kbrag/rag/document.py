"""Document, Chunk and retrieval data structures for the knowledge base."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .exceptions import InvalidStatusTransitionError


class FileType(str, Enum):
    """Declared type of an uploaded document."""

    PDF = "pdf"
    DOCX = "docx"
    TXT = "txt"
    IMAGE = "image"


MIME_TO_FILE_TYPE: dict[str, FileType] = {
    "application/pdf": FileType.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileType.DOCX,
    "text/plain": FileType.TXT,
    "image/jpeg": FileType.IMAGE,
    "image/png": FileType.IMAGE,
    "image/webp": FileType.IMAGE,
}


def get_file_type_from_mime(mime_type: str) -> Optional[FileType]:
    """Return the file type for a MIME type, or None if unsupported."""
    return MIME_TO_FILE_TYPE.get(mime_type)


def is_valid_mime_type(mime_type: str) -> bool:
    return mime_type in MIME_TO_FILE_TYPE


class DocumentStatus(str, Enum):
    """Lifecycle status of a document.

    ``pending -> processing -> {ready | error}``. Processing may be re-entered
    from any state, ``ready`` is only reachable from ``processing`` and any
    state may fail into ``error``.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"

    def can_transition_to(self, target: "DocumentStatus") -> bool:
        if target == DocumentStatus.PROCESSING or target == DocumentStatus.ERROR:
            return True
        if target == DocumentStatus.READY:
            return self == DocumentStatus.PROCESSING
        return False


def new_id() -> str:
    return str(uuid.uuid4())


class Document(BaseModel):
    """An uploaded source document and its processing state.

    Attributes:
        id: Unique identifier for the document
        name: Display name
        description: Optional free-text description
        file_type: Declared file type
        mime_type: Declared MIME type
        file_locator: Key of the raw bytes in the blob store
        file_size: Size of the raw bytes
        status: Lifecycle status
        error_message: Set only when status is ``error``
        chunk_count: Set only when status is ``ready``
        total_tokens: Set only when status is ``ready``
        metadata: Additional metadata
    """

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    file_type: FileType
    mime_type: str
    file_locator: str
    file_size: int = 0
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: Optional[str] = None
    chunk_count: Optional[int] = None
    total_tokens: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def with_status(
        self,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        chunk_count: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> "Document":
        """Return a copy moved to ``status``, keeping the derived fields consistent."""
        if not self.status.can_transition_to(status):
            raise InvalidStatusTransitionError(self.status.value, status.value)

        update: dict[str, Any] = {
            "status": status,
            "error_message": None,
            "chunk_count": None,
            "total_tokens": None,
            "updated_at": datetime.now(),
        }
        if status == DocumentStatus.ERROR:
            update["error_message"] = error_message or "Unknown error"
        elif status == DocumentStatus.READY:
            update["chunk_count"] = chunk_count
            update["total_tokens"] = total_tokens
        return self.model_copy(update=update)

    def __repr__(self) -> str:
        return f"Document(id={self.id!r}, name={self.name!r}, status={self.status.value!r})"


class Chunk(BaseModel):
    """A chunk of a document.

    Chunks are created by the chunkers and written once by the processor.

    Attributes:
        id: Unique identifier for the chunk
        document_id: ID of the parent document
        chunk_index: Zero-based position within the document
        content: Raw chunk text
        contextual_content: Raw text prefixed with its contextual summary
        embedding: Embedding of the contextual content
        token_count: Estimated token count
        metadata: total_chunks, page_number, document_title, contextual_summary
    """

    id: str = Field(default_factory=new_id)
    document_id: str
    chunk_index: int
    content: str
    contextual_content: str
    embedding: Optional[list[float]] = None
    token_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)

    def __repr__(self) -> str:
        content_preview = self.content[:30] + "..." if len(self.content) > 30 else self.content
        return (
            f"Chunk(id={self.id!r}, doc_id={self.document_id!r}, "
            f"index={self.chunk_index}, content={content_preview!r})"
        )


class PageText(BaseModel):
    """Text of one page (or pseudo page) of a parsed document."""

    page_number: int
    text: str


class ParsedDocument(BaseModel):
    """Normalized output of a parser."""

    text: str
    pages: list[PageText] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def title(self) -> Optional[str]:
        return self.metadata.get("title")


class RetrievalResult(BaseModel):
    """A ranked content fragment with provenance.

    Attributes:
        chunk_id: ID of the matching chunk
        document_id: ID of the owning document
        chunk_index: Position of the chunk within its document
        content: Raw chunk text
        contextual_content: Chunk text with its contextual summary
        metadata: Chunk metadata
        score: Similarity, lexical, fused or reranked score (higher is better)
        semantic_rank: 1-based rank in the semantic list, if present there
        lexical_rank: 1-based rank in the lexical list, if present there
    """

    chunk_id: str
    document_id: str
    chunk_index: Optional[int] = None
    content: str
    contextual_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float = 0.0
    semantic_rank: Optional[int] = None
    lexical_rank: Optional[int] = None

    def __repr__(self) -> str:
        return f"RetrievalResult(chunk_id={self.chunk_id!r}, score={self.score:.4f})"


class DocumentInfo(BaseModel):
    """Provenance details shown next to retrieved fragments."""

    name: str
    description: Optional[str] = None


class QueryLogEntry(BaseModel):
    """Analytics record of one knowledge base query."""

    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    community_id: Optional[str] = None
    query_text: str
    retrieved_chunk_ids: list[str] = Field(default_factory=list)
    retrieval_scores: list[float] = Field(default_factory=list)
    model_used: str
    response_text: Optional[str] = None
    latency_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ProcessingResult(BaseModel):
    """Outcome of one processing attempt."""

    success: bool
    document_id: str
    chunk_count: Optional[int] = None
    total_tokens: Optional[int] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
