"""
Ingest Tests (PDF / DOCX text extraction)
"""

import io
import zipfile
from pathlib import Path

import pytest

from consistency_engine.ingest import (
    DOCXParser,
    PDFTextParser,
    ParserError,
    UnsupportedFormatError,
    detect_file_kind,
    extract_text,
    is_supported,
    list_supported_kinds,
)
from consistency_engine.ingest.base import normalize_text


def _build_docx(tmp_path: Path, paragraphs=(), table_rows=None) -> bytes:
    from docx import Document

    doc = Document()
    for para in paragraphs:
        doc.add_paragraph(para)
    if table_rows:
        table = doc.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r_idx, row in enumerate(table_rows):
            for c_idx, value in enumerate(row):
                table.cell(r_idx, c_idx).text = value
    file_path = tmp_path / "markup.docx"
    doc.save(file_path)
    return file_path.read_bytes()


def _build_docx_with_document_xml(xml_text: str, tmp_path: Path) -> bytes:
    content_types = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">
  <Default Extension="xml" ContentType="application/xml"/>
  <Override PartName="/word/document.xml" ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>
</Types>
"""
    file_path = tmp_path / "bare.docx"
    with zipfile.ZipFile(file_path, "w") as zf:
        zf.writestr("[Content_Types].xml", content_types)
        zf.writestr("word/document.xml", xml_text)
    return file_path.read_bytes()


def _blank_pdf() -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


# =============================================================================
# DOCX
# =============================================================================

def test_docx_paragraphs_and_tables(tmp_path):
    data = _build_docx(
        tmp_path,
        paragraphs=["1. Facility Amount", "The Facility Amount is $1,200,000."],
        table_rows=[["Term", "Value"], ["Max Leverage", "4.25x"]],
    )

    result = DOCXParser().parse(data, filename="markup.docx")

    assert result.page_count == 1
    assert result.metadata["parser"] == "python_docx"
    lines = result.full_text.splitlines()
    assert lines[:2] == ["1. Facility Amount", "The Facility Amount is $1,200,000."]
    assert "Max Leverage | 4.25x" in lines


def test_docx_xml_fallback(tmp_path):
    xml = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">
  <w:body>
    <w:p><w:r><w:t>Commitment Fee: </w:t></w:r><w:r><w:t>0.75%</w:t></w:r></w:p>
  </w:body>
</w:document>
"""
    data = _build_docx_with_document_xml(xml, tmp_path)

    result = DOCXParser().parse(data, filename="bare.docx")

    assert result.full_text == "Commitment Fee: 0.75%"
    assert result.metadata["parser"] == "xml_fallback"


def test_docx_empty_document(tmp_path):
    data = _build_docx(tmp_path)
    with pytest.raises(ParserError) as exc_info:
        DOCXParser().parse(data)
    assert exc_info.value.code == "docx_empty"


def test_docx_not_a_zip():
    with pytest.raises(ParserError) as exc_info:
        DOCXParser().parse(b"this is not a word document")
    assert exc_info.value.code == "docx_parse_failed"


# =============================================================================
# PDF
# =============================================================================

def test_pdf_without_text_is_rejected():
    with pytest.raises(ParserError) as exc_info:
        PDFTextParser().parse(_blank_pdf(), filename="scan.pdf")
    assert exc_info.value.code == "pdf_no_text"


def test_pdf_corrupt():
    with pytest.raises(ParserError) as exc_info:
        PDFTextParser().parse(b"%PDF-1.4 truncated garbage")
    assert exc_info.value.code in ("pdf_parse_failed", "pdf_no_text")


# =============================================================================
# Factory
# =============================================================================

@pytest.mark.parametrize("filename,data,expected", [
    ("markup.pdf", None, "pdf"),
    ("Markup.DOCX", None, "docx"),
    ("upload.bin", b"%PDF-1.7 ...", "pdf"),
    ("upload", b"PK\x03\x04....word/document.xml", "docx"),
    ("notes.txt", b"plain", None),
    ("noextension", None, None),
])
def test_detect_file_kind(filename, data, expected):
    assert detect_file_kind(filename, data) == expected


def test_supported_kinds():
    assert list_supported_kinds() == ["docx", "pdf"]
    assert is_supported("PDF")
    assert not is_supported("txt")


def test_extract_text_dispatches_by_kind(tmp_path):
    data = _build_docx(tmp_path, paragraphs=["Leverage  Ratio   4.25x"])
    assert extract_text(data, "docx", "markup.docx") == "Leverage Ratio 4.25x"


def test_extract_text_unsupported_kind():
    with pytest.raises(UnsupportedFormatError) as exc_info:
        extract_text(b"data", "rtf")
    assert exc_info.value.code == "unsupported_format"


def test_normalize_text():
    assert normalize_text("\ufeffA  b\u200b\n\n  c   d  ") == "A b\nc d"
    assert normalize_text("") == ""
