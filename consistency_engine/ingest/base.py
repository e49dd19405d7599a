"""
Ingest Base Types
=================

Unified output types for the reconciliation text extractors.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field


class ParserError(Exception):
    """Base exception for parser errors"""

    def __init__(self, message: str, code: str = "parse_failed"):
        super().__init__(message)
        self.message = message
        self.code = code


class UnsupportedFormatError(ParserError):
    """File format not supported"""

    def __init__(self, message: str):
        super().__init__(message, code="unsupported_format")


@dataclass
class PageContent:
    """
    Single page of a document.
    """
    page_no: int
    text: str


@dataclass
class ParseResult:
    """
    Unified result from any parser.

    Contains the extracted full text plus per-page text.
    """
    full_text: str
    pages: List[PageContent]
    page_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class DocumentParser(ABC):
    """
    Abstract base class for document parsers.
    """

    @property
    @abstractmethod
    def file_kind(self) -> str:
        """Reconciliation file kind handled by this parser (pdf, docx)"""
        pass

    @abstractmethod
    def parse(self, data: bytes, filename: Optional[str] = None) -> ParseResult:
        """
        Parse document data.

        Args:
            data: Binary document data
            filename: Optional filename for error messages

        Returns:
            ParseResult with full text and per-page content
        """
        pass


def normalize_text(text: str) -> str:
    """
    Normalize extracted text, keeping line structure.

    - Collapse runs of spaces within each line
    - Remove zero-width characters and BOMs
    - Drop empty lines
    """
    if not text:
        return ""

    text = text.replace('\u200b', '')  # Zero-width space
    text = text.replace('\ufeff', '')  # BOM

    lines = [' '.join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line).strip()
