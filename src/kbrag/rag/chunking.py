"""Document chunking strategies.

Chunks are sized with a character-based token approximation, overlap their
predecessor by a trailing character window, and stay aligned to paragraph
boundaries wherever a paragraph fits in the budget.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Iterator, Optional

from pydantic import BaseModel, model_validator

from .base import BaseChunker, BaseSummarizer
from .document import Chunk, PageText, ParsedDocument
from .exceptions import ChunkingError, ContextGenerationError

logger = logging.getLogger(__name__)

# Approximation, not a tokenizer: roughly four characters per token.
CHARS_PER_TOKEN = 4

PARAGRAPH_SEPARATOR = "\n\n"
_PARAGRAPH_BREAK = re.compile(r"\n[ \t\r\f\v]*\n\s*")
_SENTENCE_SEPARATORS = [". ", "! ", "? ", "\n", " "]


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` from its length."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    """Convert a token budget to the matching character budget."""
    return tokens * CHARS_PER_TOKEN


class ChunkingOptions(BaseModel):
    """Chunk sizing, all values in estimated tokens."""

    chunk_size: int = 800
    chunk_overlap: int = 400
    min_chunk_size: int = 100

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingOptions":
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.chunk_overlap < 0 or self.min_chunk_size < 0:
            raise ValueError("chunk_overlap and min_chunk_size must be non-negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        if self.min_chunk_size >= self.chunk_size:
            raise ValueError("min_chunk_size must be less than chunk_size")
        return self


@dataclass
class TextSpan:
    """Text of a finished chunk and its approximate start offset in the source."""

    text: str
    start: int


def _split_oversized(text: str, limit: int, separators: list[str]) -> list[str]:
    """Split text longer than ``limit`` on the coarsest separator available."""
    if len(text) <= limit:
        return [text]

    separator = next((sep for sep in separators if sep in text), None)
    if separator is None:
        pieces = [text[i:i + limit] for i in range(0, len(text), limit)]
        return [p.strip() for p in pieces if p.strip()]

    finer = separators[separators.index(separator) + 1:]
    parts = text.split(separator)
    pieces: list[str] = []
    current = ""

    for i, part in enumerate(parts):
        segment = part + separator if i < len(parts) - 1 else part
        if current and len(current) + len(segment) > limit:
            pieces.append(current)
            current = ""
        if len(segment) > limit:
            pieces.extend(_split_oversized(segment, limit, finer))
        else:
            current += segment

    if current:
        pieces.append(current)

    return [p.strip() for p in pieces if p.strip()]


def _iter_pieces(text: str, limit: int) -> Iterator[tuple[str, str, int]]:
    """Yield ``(piece, joiner, offset)`` triples.

    Pieces are paragraphs, or fragments of paragraphs longer than ``limit``.
    The joiner is the separator to place before the piece: a paragraph break
    for a new paragraph, a space for the continuation of a split paragraph.
    """
    position = 0
    for part in _PARAGRAPH_BREAK.split(text):
        start = text.find(part, position) if part else position
        position = start + len(part)

        paragraph = part.strip()
        if not paragraph:
            continue
        paragraph_start = start + (len(part) - len(part.lstrip()))

        cursor = 0
        for i, piece in enumerate(_split_oversized(paragraph, limit, _SENTENCE_SEPARATORS)):
            found = paragraph.find(piece, cursor)
            offset = found if found >= 0 else cursor
            cursor = offset + len(piece)
            yield piece, PARAGRAPH_SEPARATOR if i == 0 else " ", paragraph_start + offset


def split_into_chunks(text: str, options: Optional[ChunkingOptions] = None) -> list[TextSpan]:
    """Split text into overlapping, paragraph-aligned chunks.

    Pieces accumulate in a buffer until the next one would push it over the
    character budget; the buffer is then closed as a chunk and the next one is
    seeded with its trailing overlap window. A sub-minimum remainder is merged
    into the previous chunk.

    Args:
        text: Normalized document text
        options: Chunk sizing

    Returns:
        Finished chunks in document order
    """
    options = options or ChunkingOptions()
    size_chars = tokens_to_chars(options.chunk_size)
    overlap_chars = tokens_to_chars(options.chunk_overlap)
    min_chars = tokens_to_chars(options.min_chunk_size)

    # A piece must fit next to the overlap seed, and closing a buffer must
    # leave a chunk longer than both the overlap window and the minimum size.
    piece_limit = max(1, size_chars - max(overlap_chars, min_chars) - len(PARAGRAPH_SEPARATOR))

    chunks: list[TextSpan] = []
    buffer = ""
    buffer_start = 0
    fresh_from = 0

    for piece, joiner, offset in _iter_pieces(text, piece_limit):
        has_fresh = fresh_from < len(buffer)
        if has_fresh and len(buffer) + len(joiner) + len(piece) > size_chars:
            chunks.append(TextSpan(buffer, buffer_start))
            seed = buffer[-overlap_chars:].strip() if overlap_chars > 0 else ""
            buffer_start += len(buffer) - len(seed)
            buffer = seed
            fresh_from = len(seed)

        if buffer:
            buffer += joiner + piece
        else:
            buffer = piece
            buffer_start = offset
            fresh_from = 0

    if fresh_from < len(buffer):
        if len(buffer) >= min_chars or not chunks:
            chunks.append(TextSpan(buffer, buffer_start))
        else:
            remainder = buffer[fresh_from:].strip()
            last = chunks[-1]
            chunks[-1] = TextSpan(last.text + PARAGRAPH_SEPARATOR + remainder, last.start)

    return chunks


def resolve_page_number(pages: list[PageText], start: int) -> Optional[int]:
    """Best-effort page of a chunk from cumulative page lengths."""
    if not pages:
        return None

    accumulated = 0
    for page in pages:
        accumulated += len(page.text)
        if accumulated >= start:
            return page.page_number
    return pages[-1].page_number


def _build_chunk(
    document: ParsedDocument,
    document_id: str,
    span: TextSpan,
    index: int,
    total: int,
    contextual_summary: Optional[str] = None,
) -> Chunk:
    metadata: dict = {"total_chunks": total}
    page_number = resolve_page_number(document.pages, span.start)
    if page_number is not None:
        metadata["page_number"] = page_number
    if document.title:
        metadata["document_title"] = document.title

    if contextual_summary is None:
        contextual_content = span.text
    else:
        metadata["contextual_summary"] = contextual_summary
        contextual_content = f"{contextual_summary}{PARAGRAPH_SEPARATOR}{span.text}"

    return Chunk(
        document_id=document_id,
        chunk_index=index,
        content=span.text,
        contextual_content=contextual_content,
        token_count=estimate_tokens(contextual_content),
        metadata=metadata,
    )


class SimpleChunker(BaseChunker):
    """Overlap-aware chunking without contextual summaries.

    Suited to large or latency-sensitive ingestion.
    """

    def __init__(self, options: Optional[ChunkingOptions] = None):
        self.options = options or ChunkingOptions()

    async def chunk(self, document: ParsedDocument, document_id: str = "") -> list[Chunk]:
        spans = split_into_chunks(document.text, self.options)
        return [
            _build_chunk(document, document_id, span, i, len(spans))
            for i, span in enumerate(spans)
        ]


class ContextualChunker(BaseChunker):
    """Contextual retrieval chunking.

    A whole-document summary is generated first, then every chunk gets a short
    summary situating it in the document, prepended to its content before
    embedding. Summary failures fall back to deterministic text.
    """

    DOCUMENT_SUMMARY_PROMPT = """Summarize the main topics and purpose of this document in 2-3 sentences. This summary will be used to provide context for individual chunks during retrieval.

Document title: {title}
Document content (excerpt):
{excerpt}

Provide ONLY the summary (2-3 sentences). Do not include any other text or formatting."""

    CHUNK_CONTEXT_PROMPT = """You are preparing document chunks for a knowledge base retrieval system. Given a chunk of text from a document, provide a brief 1-2 sentence contextual summary that situates this chunk within the broader document.

Document title: {title}
Document overview: {summary}
Chunk position: {position} of {total}

Chunk content:
{chunk}

Provide ONLY the contextual summary (1-2 sentences) that explains what this chunk covers and its relevance to the document. Do not include any other text or formatting."""

    SUMMARY_EXCERPT_CHARS = 4000

    def __init__(
        self,
        summarizer: BaseSummarizer,
        options: Optional[ChunkingOptions] = None,
        max_concurrency: int = 1,
        timeout: Optional[float] = None,
    ):
        """Initialize the contextual chunker.

        Args:
            summarizer: Text generator for summaries
            options: Chunk sizing
            max_concurrency: Number of chunk contexts generated at once
            timeout: Seconds allowed per summary call (None for no limit)
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.summarizer = summarizer
        self.options = options or ChunkingOptions()
        self.max_concurrency = max_concurrency
        self.timeout = timeout

    async def chunk(self, document: ParsedDocument, document_id: str = "") -> list[Chunk]:
        spans = split_into_chunks(document.text, self.options)
        if not spans:
            raise ChunkingError()

        title = document.title
        summary = await self.generate_document_summary(document.text, title)

        total = len(spans)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def situate(index: int, span: TextSpan) -> str:
            async with semaphore:
                return await self.generate_chunk_context(span.text, title, summary, index, total)

        contexts = await asyncio.gather(*(situate(i, span) for i, span in enumerate(spans)))

        return [
            _build_chunk(document, document_id, span, i, total, contexts[i])
            for i, span in enumerate(spans)
        ]

    async def generate_document_summary(self, text: str, title: Optional[str]) -> str:
        prompt = self.DOCUMENT_SUMMARY_PROMPT.format(
            title=title or "Untitled",
            excerpt=text[: self.SUMMARY_EXCERPT_CHARS],
        )
        try:
            return await self._generate(prompt)
        except ContextGenerationError as e:
            logger.warning(f"Error generating document summary: {e}")
            return f"Document about {title}" if title else "Document content"

    async def generate_chunk_context(
        self,
        chunk: str,
        title: Optional[str],
        summary: str,
        index: int,
        total: int,
    ) -> str:
        prompt = self.CHUNK_CONTEXT_PROMPT.format(
            title=title or "Untitled",
            summary=summary,
            position=index + 1,
            total=total,
            chunk=chunk,
        )
        try:
            return await self._generate(prompt)
        except ContextGenerationError as e:
            logger.warning(f"Error generating context for chunk {index}: {e}")
            return f"From {title or 'document'}, section {index + 1} of {total}."

    async def _generate(self, prompt: str) -> str:
        try:
            if self.timeout is None:
                text = await self.summarizer.generate(prompt)
            else:
                text = await asyncio.wait_for(self.summarizer.generate(prompt), self.timeout)
        except asyncio.TimeoutError as e:
            raise ContextGenerationError("timed out") from e
        except ContextGenerationError:
            raise
        except Exception as e:
            raise ContextGenerationError(str(e) or type(e).__name__) from e

        text = (text or "").strip()
        if not text:
            raise ContextGenerationError("empty response")
        return text
