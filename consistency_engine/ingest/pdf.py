"""
PDF Text Parser
===============

PDF parser for text-based PDFs (not scanned).
Uses pypdf for extraction.
"""

import io
import logging
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .base import (
    DocumentParser,
    ParseResult,
    PageContent,
    ParserError,
    normalize_text,
)

logger = logging.getLogger(__name__)


class PDFTextParser(DocumentParser):
    """
    PDF text parser.

    Extracts text from PDFs that have embedded text. Scanned PDFs yield
    no text and are rejected, since there is nothing to reconcile.
    """

    @property
    def file_kind(self) -> str:
        return "pdf"

    def parse(self, data: bytes, filename: Optional[str] = None) -> ParseResult:
        """Parse PDF file"""
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = []
            for page_no, page in enumerate(reader.pages, start=1):
                page_text = normalize_text(page.extract_text() or "")
                pages.append(PageContent(page_no=page_no, text=page_text))
        except (PyPdfError, ValueError, KeyError) as e:
            raise ParserError(f"Failed to parse PDF file: {e}", code="pdf_parse_failed") from e

        full_text = "\n".join(p.text for p in pages if p.text)
        if not full_text.strip():
            raise ParserError(
                "PDF contains no extractable text (scanned documents are not supported)",
                code="pdf_no_text",
            )

        metadata = {"page_count": len(pages)}
        if reader.metadata and reader.metadata.title:
            metadata["title"] = reader.metadata.title

        logger.debug(f"Extracted {len(full_text)} chars from {len(pages)} PDF pages ({filename})")
        return ParseResult(
            full_text=full_text,
            pages=pages,
            page_count=len(pages),
            metadata=metadata,
        )
