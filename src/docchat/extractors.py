# /docchat/extractors.py
"""
Converts a stored upload plus its declared MIME type into plain text.
Dispatch resolves a format tag first, then looks the handler up in a strategy table.
"""
from __future__ import annotations

import csv
from enum import Enum
from pathlib import Path
from typing import Callable

from docx import Document as DocxDocument
from docx.table import Table as DocxTable
from langchain_community.document_loaders import TextLoader

from .errors import ExtractionError, UnsupportedFormatError
from .observability import get_logger

logger = get_logger(__name__)

CSV_MIME = "text/csv"
TEXT_MIME = "text/plain"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class DocumentFormat(str, Enum):
    CSV = "csv"
    DOCX = "docx"
    TEXT = "text"


def detect_format(path: str | Path, mime_type: str | None) -> DocumentFormat:
    """
    Resolves the handler tag; first match wins.
    A text/plain upload with a .csv suffix is parsed as CSV.
    """
    suffix = Path(path).suffix.lower()
    mime = (mime_type or "").strip().lower()

    if mime == CSV_MIME or (mime == TEXT_MIME and suffix == ".csv"):
        return DocumentFormat.CSV
    if mime == DOCX_MIME or suffix == ".docx":
        return DocumentFormat.DOCX
    if mime == TEXT_MIME or suffix == ".txt":
        return DocumentFormat.TEXT
    raise UnsupportedFormatError(mime_type or "unknown", str(path))


def extract_csv_text(path: Path) -> str:
    """Renders each data row as `key: value` pairs in column order, one row per line."""
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.reader(handle, strict=True)
            header: list[str] | None = None
            lines: list[str] = []
            for row in reader:
                if not row:
                    continue
                if header is None:
                    header = row
                    continue
                if len(row) != len(header):
                    raise csv.Error(
                        f"Invalid record length on line {reader.line_num}: "
                        f"expected {len(header)} columns, got {len(row)}"
                    )
                lines.append(", ".join(f"{key}: {value}" for key, value in zip(header, row)))
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ExtractionError(f"Failed to extract CSV text: {exc}", exc) from exc
    return "\n".join(lines)


def extract_docx_text(path: Path) -> str:
    """Returns the visible text of a Word document in body order, table cells inline."""
    try:
        document = DocxDocument(str(path))
    except Exception as exc:
        raise ExtractionError(f"Failed to extract DOCX text: {exc}", exc) from exc

    blocks: list[str] = []
    for item in document.iter_inner_content():
        if isinstance(item, DocxTable):
            for row in item.rows:
                for cell in row.cells:
                    blocks.extend(paragraph.text for paragraph in cell.paragraphs)
        else:
            blocks.append(item.text)
    return "\n\n".join(blocks)


def extract_plain_text(path: Path) -> str:
    try:
        docs = TextLoader(str(path), encoding="utf-8").load()
    except Exception as exc:
        raise ExtractionError(f"Failed to extract text file: {exc}", exc) from exc
    return "".join(doc.page_content for doc in docs)


_HANDLERS: dict[DocumentFormat, Callable[[Path], str]] = {
    DocumentFormat.CSV: extract_csv_text,
    DocumentFormat.DOCX: extract_docx_text,
    DocumentFormat.TEXT: extract_plain_text,
}


def extract_text(path: str | Path, mime_type: str | None) -> str:
    """Reads `path` and returns its plain text. Never modifies the source file."""
    source = Path(path)
    fmt = detect_format(source, mime_type)
    text = _HANDLERS[fmt](source)
    logger.info(
        "text_extracted",
        path=str(source),
        mime_type=str(mime_type or ""),
        format=fmt.value,
        chars=len(text),
    )
    return text
