"""Knowledge base storage: documents, chunks, search and the query log."""

import asyncio
import json
import logging
import math
import re
import sqlite3
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from .base import BaseKnowledgeStore
from .document import (
    Chunk,
    Document,
    DocumentStatus,
    FileType,
    QueryLogEntry,
    RetrievalResult,
)
from .embeddings import format_embedding, parse_embedding
from .exceptions import DocumentNotFoundError, QueryLogError, StorageError
from .fusion import DEFAULT_RRF_K, fuse_results

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Calculate cosine similarity between two vectors."""
    if len(a) != len(b):
        raise ValueError("Vectors must have the same dimension")

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


STOP_WORDS = frozenset({
    "a", "about", "above", "after", "again", "against", "all", "am", "an",
    "and", "any", "are", "as", "at", "be", "because", "been", "before",
    "being", "below", "between", "both", "but", "by", "can", "could", "did",
    "do", "does", "doing", "down", "during", "each", "few", "for", "from",
    "further", "had", "has", "have", "having", "he", "her", "here", "hers",
    "him", "his", "how", "i", "if", "in", "into", "is", "it", "its", "itself",
    "just", "me", "more", "most", "my", "no", "nor", "not", "now", "of",
    "off", "on", "once", "only", "or", "other", "our", "ours", "out", "over",
    "own", "same", "she", "should", "so", "some", "such", "than", "that",
    "the", "their", "theirs", "them", "then", "there", "these", "they",
    "this", "those", "through", "to", "too", "under", "until", "up", "very",
    "was", "we", "were", "what", "when", "where", "which", "while", "who",
    "whom", "why", "will", "with", "would", "you", "your", "yours",
})


def tokenize(text: str) -> list[str]:
    """Tokenize text into lowercase terms."""
    return re.findall(r"\w+", text.lower())


def query_terms(text: str) -> list[str]:
    """Distinct query terms in order, without stop words."""
    return list(dict.fromkeys(t for t in tokenize(text) if t not in STOP_WORDS))


class BM25Index:
    """BM25 scoring over a fixed set of texts.

    Every query term must occur in a text for it to match.
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        """Initialize the index.

        Args:
            k1: Term frequency saturation
            b: Document length normalization
        """
        self.k1 = k1
        self.b = b
        self._doc_lengths: dict[str, int] = {}
        self._term_freqs: dict[str, Counter] = {}
        self._doc_freqs: Counter = Counter()
        self._avg_doc_length: float = 0

    def add(self, doc_id: str, text: str) -> None:
        tokens = tokenize(text)
        self._doc_lengths[doc_id] = len(tokens)
        self._term_freqs[doc_id] = Counter(tokens)
        for term in set(tokens):
            self._doc_freqs[term] += 1

        total_length = sum(self._doc_lengths.values())
        self._avg_doc_length = total_length / len(self._doc_lengths)

    def score(self, query_tokens: list[str], doc_id: str) -> float:
        """Calculate the BM25 score of one text."""
        score = 0.0
        doc_len = self._doc_lengths.get(doc_id, 0)
        doc_term_freqs = self._term_freqs.get(doc_id, Counter())
        n = len(self._doc_lengths)

        for term in set(query_tokens):
            tf = doc_term_freqs.get(term, 0)
            if tf == 0:
                continue

            df = self._doc_freqs[term]
            idf = math.log((n - df + 0.5) / (df + 0.5) + 1)

            norm = doc_len / self._avg_doc_length if self._avg_doc_length else 1.0
            numerator = tf * (self.k1 + 1)
            denominator = tf + self.k1 * (1 - self.b + self.b * norm)
            score += idf * (numerator / denominator)

        return score

    def search(self, query: str, top_k: int) -> list[tuple[str, float]]:
        """Return up to ``top_k`` (id, score) pairs of texts containing every query term."""
        query_tokens = query_terms(query)
        if not query_tokens:
            return []

        scores = [
            (doc_id, self.score(query_tokens, doc_id))
            for doc_id, term_freqs in self._term_freqs.items()
            if all(term in term_freqs for term in query_tokens)
        ]
        scores.sort(key=lambda x: x[1], reverse=True)
        return scores[:top_k]


def _check_chunk(chunk: Chunk, document_id: str, dimension: Optional[int]) -> None:
    if chunk.document_id != document_id:
        raise StorageError(
            f"Chunk belongs to document {chunk.document_id}, not {document_id}"
        )
    if not chunk.embedding:
        raise StorageError(f"Chunk {chunk.chunk_index} has no embedding")
    if dimension is not None and len(chunk.embedding) != dimension:
        raise StorageError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(chunk.embedding)}"
        )


def _check_query_dimension(query_embedding: list[float], dimension: Optional[int]) -> None:
    if dimension is not None and len(query_embedding) != dimension:
        raise StorageError(
            f"Query embedding dimension mismatch: expected {dimension}, got {len(query_embedding)}"
        )


def _to_result(chunk: Chunk, score: float, **ranks: int) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=chunk.id,
        document_id=chunk.document_id,
        chunk_index=chunk.chunk_index,
        content=chunk.content,
        contextual_content=chunk.contextual_content,
        metadata=dict(chunk.metadata),
        score=score,
        **ranks,
    )


class MemoryKnowledgeStore(BaseKnowledgeStore):
    """In-memory knowledge store for testing and small datasets.

    Performs exact cosine similarity search and builds a BM25 index per
    lexical query; query terms match exactly, without stemming. Not suitable
    for large-scale production use.
    """

    def __init__(self, embedding_dimension: Optional[int] = None) -> None:
        """Initialize the memory store.

        Args:
            embedding_dimension: Required vector dimension (taken from the
                first stored chunk if None)
        """
        self.embedding_dimension = embedding_dimension
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, dict[int, Chunk]] = {}
        self._query_log: list[QueryLogEntry] = []

    @property
    def query_log(self) -> list[QueryLogEntry]:
        return list(self._query_log)

    # Documents

    async def create_document(self, document: Document) -> Document:
        if document.id in self._documents:
            raise StorageError(f"Document already exists: {document.id}")
        self._documents[document.id] = document
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)

    async def get_documents(self, document_ids: list[str]) -> list[Document]:
        return [self._documents[i] for i in dict.fromkeys(document_ids) if i in self._documents]

    async def list_documents(self, status: Optional[DocumentStatus] = None) -> list[Document]:
        documents = [
            doc for doc in self._documents.values()
            if status is None or doc.status == status
        ]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        chunk_count: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> Document:
        document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        updated = document.with_status(status, error_message, chunk_count, total_tokens)
        self._documents[document_id] = updated
        return updated

    async def delete_document(self, document_id: str) -> bool:
        self._chunks.pop(document_id, None)
        return self._documents.pop(document_id, None) is not None

    # Chunks

    def _dimension(self) -> Optional[int]:
        if self.embedding_dimension is not None:
            return self.embedding_dimension
        for chunks in self._chunks.values():
            for chunk in chunks.values():
                return len(chunk.embedding or [])
        return None

    async def store_chunk(self, document_id: str, chunk: Chunk) -> str:
        if document_id not in self._documents:
            raise StorageError(f"Cannot store chunk for unknown document: {document_id}")
        _check_chunk(chunk, document_id, self._dimension())

        chunks = self._chunks.setdefault(document_id, {})
        if chunk.chunk_index in chunks:
            raise StorageError(
                f"Duplicate chunk_index {chunk.chunk_index} for document {document_id}"
            )
        chunks[chunk.chunk_index] = chunk.model_copy(deep=True)
        return chunk.id

    async def delete_chunks(self, document_id: str) -> int:
        return len(self._chunks.pop(document_id, {}))

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        chunks = self._chunks.get(document_id, {})
        return [chunks[i] for i in sorted(chunks)]

    async def count_chunks(self, document_id: Optional[str] = None) -> int:
        if document_id is not None:
            return len(self._chunks.get(document_id, {}))
        return sum(len(chunks) for chunks in self._chunks.values())

    def _searchable_chunks(self) -> list[Chunk]:
        searchable = []
        for document_id, chunks in self._chunks.items():
            document = self._documents.get(document_id)
            if document is None or document.status != DocumentStatus.READY:
                continue
            searchable.extend(chunks[i] for i in sorted(chunks))
        return searchable

    async def semantic_search(
        self,
        query_embedding: list[float],
        top_k: int = 10,
        similarity_threshold: Optional[float] = None,
    ) -> list[RetrievalResult]:
        _check_query_dimension(query_embedding, self._dimension())

        similarities = []
        for chunk in self._searchable_chunks():
            score = cosine_similarity(query_embedding, chunk.embedding or [])
            if similarity_threshold is not None and score <= similarity_threshold:
                continue
            similarities.append((chunk, score))

        similarities.sort(key=lambda x: x[1], reverse=True)

        return [
            _to_result(chunk, score, semantic_rank=rank)
            for rank, (chunk, score) in enumerate(similarities[:top_k], start=1)
        ]

    async def lexical_search(self, query_text: str, top_k: int = 10) -> list[RetrievalResult]:
        chunks = {chunk.id: chunk for chunk in self._searchable_chunks()}
        if not chunks:
            return []

        index = BM25Index()
        for chunk_id, chunk in chunks.items():
            index.add(chunk_id, chunk.content)

        return [
            _to_result(chunks[chunk_id], score, lexical_rank=rank)
            for rank, (chunk_id, score) in enumerate(index.search(query_text, top_k), start=1)
        ]

    # Query log

    async def log_query(self, entry: QueryLogEntry) -> None:
        self._query_log.append(entry)


SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    file_type TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    file_locator TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'ready', 'error')),
    error_message TEXT,
    chunk_count INTEGER,
    total_tokens INTEGER,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status);

CREATE TABLE IF NOT EXISTS document_chunks (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    contextual_content TEXT NOT NULL,
    embedding TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    UNIQUE (document_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_document_chunks_document_id
ON document_chunks(document_id);

CREATE VIRTUAL TABLE IF NOT EXISTS document_chunks_fts USING fts5(
    content,
    content='document_chunks',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS document_chunks_ai AFTER INSERT ON document_chunks BEGIN
    INSERT INTO document_chunks_fts(rowid, content) VALUES (new.rowid, new.content);
END;

CREATE TRIGGER IF NOT EXISTS document_chunks_ad AFTER DELETE ON document_chunks BEGIN
    INSERT INTO document_chunks_fts(document_chunks_fts, rowid, content)
    VALUES ('delete', old.rowid, old.content);
END;

CREATE TABLE IF NOT EXISTS rag_query_log (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    community_id TEXT,
    query_text TEXT NOT NULL,
    retrieved_chunk_ids TEXT NOT NULL DEFAULT '[]',
    retrieval_scores TEXT NOT NULL DEFAULT '[]',
    model_used TEXT NOT NULL,
    response_text TEXT,
    latency_ms INTEGER,
    created_at TEXT NOT NULL
);
"""


def _sql_cosine_similarity(a: str, b: str) -> float:
    return cosine_similarity(parse_embedding(a), parse_embedding(b))


class SQLiteKnowledgeStore(BaseKnowledgeStore):
    """SQLite-based knowledge store.

    Provides persistent storage for documents, chunks and the query log.
    Lexical search uses an FTS5 index kept in sync by triggers, semantic
    search a ``cosine_similarity`` SQL function over the stored vectors.
    Suitable for single-machine deployments. Every operation opens its own
    connection, so ``db_path`` must name a file. The database runs in WAL
    mode so searches read a consistent snapshot while documents are written.
    """

    CHUNK_COLUMNS = (
        "c.id, c.document_id, c.chunk_index, c.content, "
        "c.contextual_content, c.metadata"
    )

    def __init__(
        self,
        db_path: str = "kbrag.db",
        embedding_dimension: Optional[int] = None,
        timeout: float = 5.0,
    ):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
            embedding_dimension: Required vector dimension (taken from the
                stored chunks if None)
            timeout: Seconds to wait for a locked database
        """
        self.db_path = db_path
        self.embedding_dimension = embedding_dimension
        self.timeout = timeout
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.create_function("cosine_similarity", 2, _sql_cosine_similarity, deterministic=True)
        return conn

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        """Ensure the knowledge base tables exist."""
        if self._initialized:
            return
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        self._initialized = True

    async def _run(self, func, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # Documents

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            file_type=FileType(row["file_type"]),
            mime_type=row["mime_type"],
            file_locator=row["file_locator"],
            file_size=row["file_size"],
            status=DocumentStatus(row["status"]),
            error_message=row["error_message"],
            chunk_count=row["chunk_count"],
            total_tokens=row["total_tokens"],
            metadata=json.loads(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def create_document(self, document: Document) -> Document:
        await self._run(self._create_document_sync, document)
        return document

    def _create_document_sync(self, document: Document) -> None:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute(
                """
                INSERT INTO documents
                (id, name, description, file_type, mime_type, file_locator, file_size,
                 status, error_message, chunk_count, total_tokens, metadata,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.name,
                    document.description,
                    document.file_type.value,
                    document.mime_type,
                    document.file_locator,
                    document.file_size,
                    document.status.value,
                    document.error_message,
                    document.chunk_count,
                    document.total_tokens,
                    json.dumps(document.metadata),
                    document.created_at.isoformat(),
                    document.updated_at.isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Failed to create document {document.id}: {e}") from e
        finally:
            conn.close()

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self._run(self._get_document_sync, document_id)

    def _get_document_sync(self, document_id: str) -> Optional[Document]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?",
                (document_id,),
            ).fetchone()
            return self._row_to_document(row) if row else None
        finally:
            conn.close()

    async def get_documents(self, document_ids: list[str]) -> list[Document]:
        return await self._run(self._get_documents_sync, list(dict.fromkeys(document_ids)))

    def _get_documents_sync(self, document_ids: list[str]) -> list[Document]:
        if not document_ids:
            return []
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            placeholders = ", ".join("?" for _ in document_ids)
            rows = conn.execute(
                f"SELECT * FROM documents WHERE id IN ({placeholders})",
                document_ids,
            ).fetchall()
            by_id = {row["id"]: self._row_to_document(row) for row in rows}
            return [by_id[i] for i in document_ids if i in by_id]
        finally:
            conn.close()

    async def list_documents(self, status: Optional[DocumentStatus] = None) -> list[Document]:
        return await self._run(self._list_documents_sync, status)

    def _list_documents_sync(self, status: Optional[DocumentStatus]) -> list[Document]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM documents ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE status = ? ORDER BY created_at DESC",
                    (status.value,),
                ).fetchall()
            return [self._row_to_document(row) for row in rows]
        finally:
            conn.close()

    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        chunk_count: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> Document:
        return await self._run(
            self._update_document_status_sync,
            document_id,
            status,
            error_message,
            chunk_count,
            total_tokens,
        )

    def _update_document_status_sync(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str],
        chunk_count: Optional[int],
        total_tokens: Optional[int],
    ) -> Document:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?",
                (document_id,),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise DocumentNotFoundError(document_id)

            try:
                updated = self._row_to_document(row).with_status(
                    status, error_message, chunk_count, total_tokens
                )
            except Exception:
                conn.rollback()
                raise

            conn.execute(
                """
                UPDATE documents
                SET status = ?, error_message = ?, chunk_count = ?, total_tokens = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    updated.status.value,
                    updated.error_message,
                    updated.chunk_count,
                    updated.total_tokens,
                    updated.updated_at.isoformat(),
                    document_id,
                ),
            )
            conn.commit()
            return updated
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update status of document {document_id}: {e}") from e
        finally:
            conn.close()

    async def delete_document(self, document_id: str) -> bool:
        return await self._run(self._delete_document_sync, document_id)

    def _delete_document_sync(self, document_id: str) -> bool:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            # Chunks go first so the FTS delete trigger sees every row
            conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (document_id,))
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete document {document_id}: {e}") from e
        finally:
            conn.close()

    # Chunks

    def _stored_dimension(self, conn: sqlite3.Connection) -> Optional[int]:
        if self.embedding_dimension is not None:
            return self.embedding_dimension
        row = conn.execute("SELECT embedding FROM document_chunks LIMIT 1").fetchone()
        return len(parse_embedding(row["embedding"])) if row else None

    async def store_chunk(self, document_id: str, chunk: Chunk) -> str:
        await self._run(self._store_chunk_sync, document_id, chunk)
        return chunk.id

    def _store_chunk_sync(self, document_id: str, chunk: Chunk) -> None:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            _check_chunk(chunk, document_id, self._stored_dimension(conn))
            conn.execute(
                """
                INSERT INTO document_chunks
                (id, document_id, chunk_index, content, contextual_content,
                 embedding, token_count, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chunk.id,
                    document_id,
                    chunk.chunk_index,
                    chunk.content,
                    chunk.contextual_content,
                    format_embedding(chunk.embedding or []),
                    chunk.token_count,
                    json.dumps(chunk.metadata),
                    chunk.created_at.isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise StorageError(
                f"Failed to store chunk {chunk.chunk_index} of document {document_id}: {e}"
            ) from e
        finally:
            conn.close()

    async def delete_chunks(self, document_id: str) -> int:
        return await self._run(self._delete_chunks_sync, document_id)

    def _delete_chunks_sync(self, document_id: str) -> int:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            cursor = conn.execute(
                "DELETE FROM document_chunks WHERE document_id = ?",
                (document_id,),
            )
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete chunks of document {document_id}: {e}") from e
        finally:
            conn.close()

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        return await self._run(self._get_chunks_sync, document_id)

    def _get_chunks_sync(self, document_id: str) -> list[Chunk]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            rows = conn.execute(
                """
                SELECT * FROM document_chunks
                WHERE document_id = ?
                ORDER BY chunk_index
                """,
                (document_id,),
            ).fetchall()

            return [
                Chunk(
                    id=row["id"],
                    document_id=row["document_id"],
                    chunk_index=row["chunk_index"],
                    content=row["content"],
                    contextual_content=row["contextual_content"],
                    embedding=parse_embedding(row["embedding"]),
                    token_count=row["token_count"],
                    metadata=json.loads(row["metadata"]),
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    async def count_chunks(self, document_id: Optional[str] = None) -> int:
        return await self._run(self._count_chunks_sync, document_id)

    def _count_chunks_sync(self, document_id: Optional[str]) -> int:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            if document_id is None:
                row = conn.execute("SELECT COUNT(*) FROM document_chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM document_chunks WHERE document_id = ?",
                    (document_id,),
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    @staticmethod
    def _row_to_result(row: sqlite3.Row, score: float, **ranks: int) -> RetrievalResult:
        return RetrievalResult(
            chunk_id=row["id"],
            document_id=row["document_id"],
            chunk_index=row["chunk_index"],
            content=row["content"],
            contextual_content=row["contextual_content"],
            metadata=json.loads(row["metadata"]),
            score=score,
            **ranks,
        )

    async def semantic_search(
        self,
        query_embedding: list[float],
        top_k: int = 10,
        similarity_threshold: Optional[float] = None,
    ) -> list[RetrievalResult]:
        return await self._run(
            self._semantic_search_sync,
            query_embedding,
            top_k,
            similarity_threshold,
        )

    def _semantic_search_sync(
        self,
        query_embedding: list[float],
        top_k: int,
        similarity_threshold: Optional[float],
    ) -> list[RetrievalResult]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            return self._semantic_rows(conn, query_embedding, top_k, similarity_threshold)
        finally:
            conn.close()

    def _semantic_rows(
        self,
        conn: sqlite3.Connection,
        query_embedding: list[float],
        top_k: int,
        similarity_threshold: Optional[float],
    ) -> list[RetrievalResult]:
        _check_query_dimension(query_embedding, self._stored_dimension(conn))

        threshold = "" if similarity_threshold is None else "WHERE similarity > ?"
        params: list[Any] = [format_embedding(query_embedding)]
        if similarity_threshold is not None:
            params.append(similarity_threshold)
        params.append(top_k)

        rows = conn.execute(
            f"""
            SELECT * FROM (
                SELECT {self.CHUNK_COLUMNS}, c.rowid AS position,
                       cosine_similarity(c.embedding, ?) AS similarity
                FROM document_chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE d.status = 'ready'
            )
            {threshold}
            ORDER BY similarity DESC, position
            LIMIT ?
            """,
            params,
        ).fetchall()

        return [
            self._row_to_result(row, row["similarity"], semantic_rank=rank)
            for rank, row in enumerate(rows, start=1)
        ]

    async def lexical_search(self, query_text: str, top_k: int = 10) -> list[RetrievalResult]:
        return await self._run(self._lexical_search_sync, query_text, top_k)

    def _lexical_search_sync(self, query_text: str, top_k: int) -> list[RetrievalResult]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            return self._lexical_rows(conn, query_text, top_k)
        finally:
            conn.close()

    def _lexical_rows(
        self,
        conn: sqlite3.Connection,
        query_text: str,
        top_k: int,
    ) -> list[RetrievalResult]:
        terms = query_terms(query_text)
        if not terms:
            return []
        # Space-separated phrases are ANDed by FTS5
        match = " ".join(f'"{term}"' for term in terms)

        # bm25() is lower-is-better, negate it so scores sort like similarity
        rows = conn.execute(
            f"""
            SELECT {self.CHUNK_COLUMNS}, -bm25(document_chunks_fts) AS rank_score
            FROM document_chunks_fts
            JOIN document_chunks c ON c.rowid = document_chunks_fts.rowid
            JOIN documents d ON d.id = c.document_id
            WHERE document_chunks_fts MATCH ? AND d.status = 'ready'
            ORDER BY rank_score DESC, c.rowid
            LIMIT ?
            """,
            (match, top_k),
        ).fetchall()

        return [
            self._row_to_result(row, row["rank_score"], lexical_rank=rank)
            for rank, row in enumerate(rows, start=1)
        ]

    async def hybrid_search(
        self,
        query_embedding: list[float],
        query_text: str,
        top_k: int = 10,
        rrf_k: int = DEFAULT_RRF_K,
    ) -> list[RetrievalResult]:
        """Fuse semantic and lexical candidates read from one snapshot."""
        semantic, lexical = await self._run(
            self._hybrid_candidates_sync,
            query_embedding,
            query_text,
            top_k * 2,
        )
        return fuse_results(semantic, lexical, rrf_k=rrf_k, top_k=top_k)

    def _hybrid_candidates_sync(
        self,
        query_embedding: list[float],
        query_text: str,
        candidates: int,
    ) -> tuple[list[RetrievalResult], list[RetrievalResult]]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute("BEGIN")
            try:
                semantic = self._semantic_rows(conn, query_embedding, candidates, None)
                lexical = self._lexical_rows(conn, query_text, candidates)
            finally:
                conn.rollback()
            return semantic, lexical
        finally:
            conn.close()

    # Query log

    async def log_query(self, entry: QueryLogEntry) -> None:
        await self._run(self._log_query_sync, entry)

    def _log_query_sync(self, entry: QueryLogEntry) -> None:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            conn.execute(
                """
                INSERT INTO rag_query_log
                (id, user_id, community_id, query_text, retrieved_chunk_ids,
                 retrieval_scores, model_used, response_text, latency_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.community_id,
                    entry.query_text,
                    json.dumps(entry.retrieved_chunk_ids),
                    json.dumps(entry.retrieval_scores),
                    entry.model_used,
                    entry.response_text,
                    entry.latency_ms,
                    entry.created_at.isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise QueryLogError(str(e)) from e
        finally:
            conn.close()

    async def list_query_log(self, limit: int = 100) -> list[QueryLogEntry]:
        """Return the most recent query log entries, newest first."""
        return await self._run(self._list_query_log_sync, limit)

    def _list_query_log_sync(self, limit: int) -> list[QueryLogEntry]:
        conn = self._get_connection()
        try:
            self._ensure_table(conn)
            rows = conn.execute(
                "SELECT * FROM rag_query_log ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()

            return [
                QueryLogEntry(
                    id=row["id"],
                    user_id=row["user_id"],
                    community_id=row["community_id"],
                    query_text=row["query_text"],
                    retrieved_chunk_ids=json.loads(row["retrieved_chunk_ids"]),
                    retrieval_scores=json.loads(row["retrieval_scores"]),
                    model_used=row["model_used"],
                    response_text=row["response_text"],
                    latency_ms=row["latency_ms"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]
        finally:
            conn.close()
