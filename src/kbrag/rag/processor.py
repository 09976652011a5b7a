"""Document processing: parse, chunk, embed and store."""

import asyncio
import logging
import time
from typing import Optional

from .base import BaseBlobStore, BaseChunker, BaseKnowledgeStore
from .document import Document, DocumentStatus, ProcessingResult
from .embeddings import Embedder
from .exceptions import ChunkingError, DocumentNotFoundError, StorageError
from .parsers import DocumentParser

logger = logging.getLogger(__name__)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class DocumentProcessor:
    """Drives documents through ``pending -> processing -> {ready | error}``.

    Chunks are embedded and written one at a time, in order. Any failure moves
    the document to ``error`` with a message and removes the chunks written so
    far; nothing is retried automatically.

    Example:
        processor = DocumentProcessor(store, blobs, DocumentParser(), chunker, embedder)
        result = await processor.process(document_id)
    """

    def __init__(
        self,
        store: BaseKnowledgeStore,
        blobs: BaseBlobStore,
        parser: DocumentParser,
        chunker: BaseChunker,
        embedder: Embedder,
    ):
        """Initialize the processor.

        Args:
            store: Document and chunk store
            blobs: Raw document bytes
            parser: Document parser
            chunker: Chunking strategy
            embedder: Embedder for chunk contextual content
        """
        self.store = store
        self.blobs = blobs
        self.parser = parser
        self.chunker = chunker
        self.embedder = embedder

    async def process(self, document_id: str) -> ProcessingResult:
        """Process a document.

        Returns:
            The outcome; failures are reported here and in the document status

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        start_time = time.monotonic()

        try:
            document = await self.store.update_document_status(
                document_id, DocumentStatus.PROCESSING
            )
        except StorageError as e:
            message = _error_message(e)
            logger.error(f"Error starting document {document_id}: {message}")
            return ProcessingResult(
                success=False,
                document_id=document_id,
                error=message,
                processing_time_ms=self._elapsed_ms(start_time),
            )

        try:
            chunk_count, total_tokens = await self._run_pipeline(document)
            await self.store.update_document_status(
                document_id,
                DocumentStatus.READY,
                chunk_count=chunk_count,
                total_tokens=total_tokens,
            )
        except asyncio.CancelledError:
            await self._fail(document_id, "Processing cancelled")
            raise
        except Exception as e:
            message = _error_message(e)
            logger.error(f"Error processing document {document_id}: {message}")
            await self._fail(document_id, message)
            return ProcessingResult(
                success=False,
                document_id=document_id,
                error=message,
                processing_time_ms=self._elapsed_ms(start_time),
            )

        processing_time = self._elapsed_ms(start_time)
        logger.info(f"Document processed in {processing_time}ms: {document.name}")

        return ProcessingResult(
            success=True,
            document_id=document_id,
            chunk_count=chunk_count,
            total_tokens=total_tokens,
            processing_time_ms=processing_time,
        )

    async def _run_pipeline(self, document: Document) -> tuple[int, int]:
        stale = await self.store.count_chunks(document.id)
        if stale:
            logger.warning(f"Removing {stale} stale chunks of document {document.id}")
            await self.store.delete_chunks(document.id)

        try:
            data = await self.blobs.get(document.file_locator)
        except FileNotFoundError as e:
            raise StorageError(f"Failed to download file: {document.file_locator}") from e

        logger.info(f"Parsing {document.file_type.value} document: {document.name}")
        parsed = await self.parser.parse(data, document.file_type, document.mime_type)
        if "title" not in parsed.metadata:
            parsed.metadata["title"] = document.name

        logger.info(f"Chunking document: {document.name}")
        chunks = await self.chunker.chunk(parsed, document.id)
        if not chunks:
            raise ChunkingError()

        logger.info(f"Storing {len(chunks)} chunks with embeddings")
        for chunk in chunks:
            embedding = await self.embedder.embed(chunk.contextual_content)
            await self.store.store_chunk(
                document.id,
                chunk.model_copy(update={"embedding": embedding}),
            )

        return len(chunks), sum(chunk.token_count for chunk in chunks)

    async def _fail(self, document_id: str, message: str) -> None:
        try:
            await self.store.delete_chunks(document_id)
        except Exception as e:
            logger.warning(f"Failed to clean up chunks of document {document_id}: {e}")

        try:
            await self.store.update_document_status(
                document_id,
                DocumentStatus.ERROR,
                error_message=message,
            )
        except Exception as e:
            logger.error(f"Failed to record error for document {document_id}: {e}")

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.monotonic() - start_time) * 1000)

    async def reprocess(self, document_id: str) -> ProcessingResult:
        """Delete all chunks of a document, then process it again."""
        try:
            await self.store.delete_chunks(document_id)
        except Exception as e:
            message = f"Failed to delete existing chunks: {_error_message(e)}"
            logger.error(f"Error reprocessing document {document_id}: {message}")
            await self._fail(document_id, message)
            return ProcessingResult(success=False, document_id=document_id, error=message)

        return await self.process(document_id)

    async def delete(self, document_id: str) -> None:
        """Delete a document with its chunks and raw bytes.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        document = await self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        await self.blobs.delete(document.file_locator)
        await self.store.delete_chunks(document_id)
        await self.store.delete_document(document_id)
        logger.info(f"Deleted document {document_id}: {document.name}")

    async def process_batch(
        self,
        document_ids: list[str],
        max_concurrency: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[ProcessingResult]:
        """Process independent documents, optionally in parallel.

        Documents not yet started when ``cancel_event`` is set are skipped and
        keep their status.

        Returns:
            One result per id, in input order
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        semaphore = asyncio.Semaphore(max_concurrency)

        async def run(document_id: str) -> ProcessingResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return ProcessingResult(
                        success=False,
                        document_id=document_id,
                        error="Processing cancelled",
                    )
                try:
                    return await self.process(document_id)
                except DocumentNotFoundError as e:
                    return ProcessingResult(success=False, document_id=document_id, error=str(e))

        return list(await asyncio.gather(*(run(i) for i in document_ids)))
