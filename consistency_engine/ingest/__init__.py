"""
Ingest Pipeline
===============

Text extraction for reconciliation uploads (PDF and DOCX).
"""

from .base import ParseResult, PageContent, ParserError, UnsupportedFormatError
from .docx import DOCXParser
from .pdf import PDFTextParser
from .factory import parse_document, extract_text, detect_file_kind, is_supported, list_supported_kinds

__all__ = [
    # Base types
    "ParseResult", "PageContent", "ParserError", "UnsupportedFormatError",
    # Parsers
    "DOCXParser", "PDFTextParser",
    # Factory
    "parse_document", "extract_text", "detect_file_kind", "is_supported", "list_supported_kinds",
]
