"""Document parsers.

Each parser turns raw bytes into a :class:`ParsedDocument` with normalized
text, per-page (or pseudo-page) text and metadata. Every failure is reported
as :class:`ParseError`.
"""

import asyncio
import io
import logging
import re
from typing import TYPE_CHECKING, Any, Optional

from .document import FileType, PageText, ParsedDocument
from .exceptions import ParseError

if TYPE_CHECKING:
    from kbrag.providers.base import LLMProvider

logger = logging.getLogger(__name__)

PSEUDO_PAGE_CHARS = 3000
MAX_TITLE_CHARS = 200

_TXT_SECTION_BREAK = re.compile(r"\n{3,}|(?:^|\n)(?:={3,}|-{3,}|\*{3,})(?:\n|$)")
_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


def group_into_pages(sections: list[str], page_chars: int = PSEUDO_PAGE_CHARS) -> list[PageText]:
    """Group text sections into logical pages of about ``page_chars`` characters."""
    pages: list[PageText] = []
    current = ""

    for section in sections:
        if current and len(current) + len(section) > page_chars:
            pages.append(PageText(page_number=len(pages) + 1, text=current.strip()))
            current = section
        else:
            current = f"{current}\n\n{section}" if current else section

    if current.strip():
        pages.append(PageText(page_number=len(pages) + 1, text=current.strip()))

    return pages


def parse_txt(data: bytes) -> ParsedDocument:
    """Parse a UTF-8 plain text file.

    Sections are detected from runs of blank lines and ``===``, ``---`` or
    ``***`` rules. The first line becomes the title when it is short enough.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"Failed to parse text file: {e}") from e

    if not text.strip():
        raise ParseError("Failed to parse text file: No text content found in file")

    sections = [s for s in _TXT_SECTION_BREAK.split(text) if s.strip()]
    pages = group_into_pages(sections)

    metadata: dict[str, Any] = {"page_count": len(pages)}
    first_line = text.strip().split("\n")[0].strip()
    if first_line and len(first_line) < MAX_TITLE_CHARS:
        metadata["title"] = first_line

    return ParsedDocument(text=text.strip(), pages=pages, metadata=metadata)


def parse_pdf(data: bytes) -> ParsedDocument:
    """Parse a PDF page by page with pypdf."""
    try:
        import pypdf
    except ImportError:
        raise ImportError(
            "PDF parsing requires 'pypdf'. "
            "Install it with: pip install pypdf"
        )

    try:
        reader = pypdf.PdfReader(io.BytesIO(data))
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        raise ParseError(f"Failed to parse PDF: {e}") from e

    pages = [
        PageText(page_number=i + 1, text=text.strip())
        for i, text in enumerate(page_texts)
        if text.strip()
    ]
    if not pages:
        raise ParseError("Failed to parse PDF: No text content found in document")

    metadata: dict[str, Any] = {"page_count": len(page_texts)}
    try:
        info = reader.metadata
        if info is not None:
            if info.title:
                metadata["title"] = str(info.title)
            if info.author:
                metadata["author"] = str(info.author)
            if info.creation_date:
                metadata["created_at"] = info.creation_date.isoformat()
    except Exception as e:
        logger.debug(f"PDF metadata extraction failed: {e}")

    text = "\n\n".join(page.text for page in pages)
    return ParsedDocument(text=text, pages=pages, metadata=metadata)


def parse_docx(data: bytes) -> ParsedDocument:
    """Parse a Word document with python-docx.

    Paragraphs are grouped into pseudo pages since DOCX has no fixed pages.
    """
    try:
        from docx import Document as DocxDocument
    except ImportError:
        raise ImportError(
            "DOCX parsing requires 'python-docx'. "
            "Install it with: pip install python-docx"
        )

    try:
        doc = DocxDocument(io.BytesIO(data))
        paragraphs = [p.text.strip() for p in doc.paragraphs if p.text.strip()]
        properties = doc.core_properties
    except Exception as e:
        raise ParseError(f"Failed to parse DOCX: {e}") from e

    if not paragraphs:
        raise ParseError("Failed to parse DOCX: No text content found in document")

    pages = group_into_pages(paragraphs)
    metadata: dict[str, Any] = {"page_count": len(pages)}
    if properties.title:
        metadata["title"] = properties.title
    if properties.author:
        metadata["author"] = properties.author

    return ParsedDocument(text="\n\n".join(paragraphs), pages=pages, metadata=metadata)


class DocumentParser:
    """Dispatches raw bytes to the parser for their declared type.

    Example:
        parser = DocumentParser()
        parsed = await parser.parse(data, FileType.PDF, "application/pdf")
    """

    IMAGE_PROMPT = """You are analyzing an image for a knowledge base. Please provide a detailed description of this image including:

1. Main subject/content of the image
2. Any text visible in the image (transcribe it exactly)
3. Any diagrams, charts, or instructional content shown
4. Important details that would help someone understand this content without seeing the image

Format your response as clear, structured text that can be used as reference material for an AI assistant."""

    def __init__(
        self,
        image_describer: Optional["LLMProvider"] = None,
        image_model: Optional[str] = None,
    ):
        """Initialize the parser.

        Args:
            image_describer: Vision-capable LLM provider for image documents
            image_model: Model override for image descriptions
        """
        self.image_describer = image_describer
        self.image_model = image_model

    async def parse(self, data: bytes, file_type: FileType, mime_type: str = "") -> ParsedDocument:
        """Parse document bytes.

        Args:
            data: Raw file bytes
            file_type: Declared file type
            mime_type: Declared MIME type (used for images)

        Returns:
            Parsed document

        Raises:
            ParseError: If the bytes cannot be parsed or the type is unsupported
        """
        if not data:
            raise ParseError("Document is empty")

        if file_type == FileType.IMAGE:
            return await self.parse_image(data, mime_type)

        sync_parsers = {
            FileType.TXT: parse_txt,
            FileType.PDF: parse_pdf,
            FileType.DOCX: parse_docx,
        }
        parser = sync_parsers.get(file_type)
        if parser is None:
            raise ParseError(f"Unsupported file type: {file_type}")

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, parser, data)

    async def parse_image(self, data: bytes, mime_type: str) -> ParsedDocument:
        if self.image_describer is None:
            raise ParseError("Failed to parse image: no image description provider configured")

        try:
            text = await self.image_describer.describe_image(
                data,
                mime_type,
                self.IMAGE_PROMPT,
                model=self.image_model,
            )
        except Exception as e:
            raise ParseError(f"Failed to parse image: {e}") from e

        text = (text or "").strip()
        if not text:
            raise ParseError("Failed to parse image: No description generated from image")

        return ParsedDocument(
            text=text,
            pages=[PageText(page_number=1, text=text)],
            metadata={"title": "Image Document", "page_count": 1, "mime_type": mime_type},
        )
