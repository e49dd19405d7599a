"""
Parser Factory
==============

Kind detection and text extraction for reconciliation uploads.
"""

import mimetypes
from typing import Dict, List, Optional

from .base import DocumentParser, ParseResult, UnsupportedFormatError
from .docx import DOCXParser
from .pdf import PDFTextParser


_docx_parser = DOCXParser()
_pdf_parser = PDFTextParser()

_parsers: Dict[str, DocumentParser] = {
    _pdf_parser.file_kind: _pdf_parser,
    _docx_parser.file_kind: _docx_parser,
}

_mime_kinds = {
    "application/pdf": "pdf",
    "application/x-pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}


def detect_file_kind(filename: str, data: Optional[bytes] = None) -> Optional[str]:
    """
    Detect the reconciliation file kind (pdf, docx) from the name, then content.

    Returns None when the kind cannot be determined.
    """
    ext = filename.lower().rsplit('.', 1)[-1] if '.' in filename else ''
    if ext in _parsers:
        return ext

    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type and mime_type in _mime_kinds:
        return _mime_kinds[mime_type]

    # Magic numbers
    if data:
        if data[:4] == b'%PDF':
            return "pdf"
        if data[:4] == b'PK\x03\x04' and b'word/' in data[:2000]:
            return "docx"

    return None


def is_supported(kind: str) -> bool:
    return (kind or "").lower() in _parsers


def list_supported_kinds() -> List[str]:
    return sorted(_parsers.keys())


def parse_document(data: bytes, kind: str, filename: Optional[str] = None) -> ParseResult:
    """
    Parse an upload with the parser for its kind.

    Raises:
        UnsupportedFormatError: If the kind is not pdf or docx
        ParserError: If parsing fails
    """
    parser = _parsers.get((kind or "").lower())
    if parser is None:
        raise UnsupportedFormatError(
            f"Unsupported file kind: {kind}. Supported: {list_supported_kinds()}"
        )
    return parser.parse(data, filename)


def extract_text(data: bytes, kind: str, filename: Optional[str] = None) -> str:
    """Text-extraction entry point used by the reconciliation engine."""
    return parse_document(data, kind, filename).full_text
