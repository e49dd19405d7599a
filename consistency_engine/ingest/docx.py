"""
DOCX Parser
===========

Microsoft Word document parser using python-docx, with a raw XML fallback
for files python-docx refuses to open.
"""

import io
import logging
import zipfile
from typing import List, Optional
from xml.etree import ElementTree as ET

from docx import Document
from docx.opc.exceptions import PackageNotFoundError

from .base import (
    DocumentParser,
    ParseResult,
    PageContent,
    ParserError,
    normalize_text,
)

DOCX_NS = {
    "w": "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
}

logger = logging.getLogger(__name__)


def _read_document_xml(data: bytes) -> Optional[str]:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            if "word/document.xml" not in zf.namelist():
                return None
            xml_bytes = zf.read("word/document.xml")
            return xml_bytes.decode("utf-8", errors="ignore")
    except zipfile.BadZipFile:
        return None


def _extract_text_from_paragraph(node: ET.Element) -> str:
    parts: List[str] = []
    for text_node in node.findall(".//w:t", DOCX_NS):
        if text_node.text:
            parts.append(text_node.text)
    return "".join(parts).strip()


def _extract_lines_from_xml(xml_text: str) -> List[str]:
    root = ET.fromstring(xml_text)
    body = root.find("w:body", DOCX_NS)
    if body is None:
        return []

    lines: List[str] = []
    for child in list(body):
        if child.tag == f"{{{DOCX_NS['w']}}}p":
            text = _extract_text_from_paragraph(child)
            if text:
                lines.append(text)
        elif child.tag == f"{{{DOCX_NS['w']}}}tbl":
            for row in child.findall(".//w:tr", DOCX_NS):
                row_cells: List[str] = []
                for cell in row.findall(".//w:tc", DOCX_NS):
                    cell_parts = [
                        _extract_text_from_paragraph(para)
                        for para in cell.findall(".//w:p", DOCX_NS)
                    ]
                    cell_text = " ".join(p for p in cell_parts if p).strip()
                    if cell_text:
                        row_cells.append(cell_text)
                if row_cells:
                    lines.append(" | ".join(row_cells))
    return lines


def _extract_lines_with_python_docx(data: bytes) -> List[str]:
    doc = Document(io.BytesIO(data))
    lines: List[str] = []

    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            lines.append(text)

    # Tables carry most of the numbers in loan schedules
    for table in doc.tables:
        for row in table.rows:
            row_texts = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if row_texts:
                lines.append(" | ".join(row_texts))
    return lines


class DOCXParser(DocumentParser):
    """
    Microsoft Word (.docx) parser.

    Uses python-docx to extract paragraphs and table rows.
    """

    @property
    def file_kind(self) -> str:
        return "docx"

    def parse(self, data: bytes, filename: Optional[str] = None) -> ParseResult:
        """Parse DOCX file"""
        parser_name = "python_docx"
        try:
            lines = _extract_lines_with_python_docx(data)
        except (PackageNotFoundError, KeyError, ValueError, zipfile.BadZipFile) as exc:
            document_xml = _read_document_xml(data)
            if not document_xml:
                raise ParserError(
                    f"Failed to parse DOCX file: {exc}",
                    code="docx_parse_failed",
                ) from exc
            try:
                lines = _extract_lines_from_xml(document_xml)
            except ET.ParseError as inner_exc:
                raise ParserError(
                    f"Failed to parse DOCX file: {inner_exc}",
                    code="docx_xml_parse_failed",
                ) from inner_exc
            parser_name = "xml_fallback"
            logger.warning(f"python-docx could not open {filename or 'upload'}; used XML fallback")

        full_text = normalize_text("\n".join(lines))
        if not full_text:
            raise ParserError("DOCX file contains no text", code="docx_empty")

        return ParseResult(
            full_text=full_text,
            pages=[PageContent(page_no=1, text=full_text)],
            page_count=1,
            metadata={"line_count": len(lines), "parser": parser_name},
        )
