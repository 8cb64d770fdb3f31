"""
Plain-text extraction for uploaded résumés and job specifications.

Each supported format is a ``MediaKind`` bound to exactly one handler in
``_HANDLERS``. Declared media types are resolved to a kind first; anything that
does not resolve ends in ``ExtractionError``. Handlers may raise whatever their
parser raises, ``extract_text`` converts all of it into ``ExtractionError``.
"""

from __future__ import annotations

import io
import logging
import os
import re
from collections.abc import Callable
from enum import Enum

from cvtailor.errors import ExtractionError
from cvtailor.parse_utils import decode_text_with_fallback, normalize_text
from cvtailor.settings import DOCX_MEDIA_TYPE

logger = logging.getLogger(__name__)


class MediaKind(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    PLAINTEXT = "plaintext"


MEDIA_TYPE_KINDS: dict[str, MediaKind] = {
    "application/pdf": MediaKind.PDF,
    "application/x-pdf": MediaKind.PDF,
    DOCX_MEDIA_TYPE: MediaKind.DOCX,
    "text/plain": MediaKind.PLAINTEXT,
    "text/markdown": MediaKind.PLAINTEXT,
}

EXTENSION_KINDS: dict[str, MediaKind] = {
    ".pdf": MediaKind.PDF,
    ".docx": MediaKind.DOCX,
    ".txt": MediaKind.PLAINTEXT,
    ".md": MediaKind.PLAINTEXT,
}

_GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}
_BLANK_RUNS = re.compile(r"\n{3,}")


def resolve_media_kind(declared_media_type: str | None, filename: str | None = None) -> MediaKind:
    media_type = (declared_media_type or "").split(";", 1)[0].strip().lower()
    kind = MEDIA_TYPE_KINDS.get(media_type)
    if kind is not None:
        return kind
    if media_type in _GENERIC_MEDIA_TYPES and filename:
        ext = os.path.splitext(filename)[1].lower()
        kind = EXTENSION_KINDS.get(ext)
        if kind is not None:
            return kind
    raise ExtractionError(
        f"unsupported document type: {media_type or 'unknown'}",
        code="EXTRACTION_UNSUPPORTED_TYPE",
    )


def _import_pymupdf():
    try:
        import pymupdf
    except ImportError as exc:
        raise ExtractionError("pymupdf is required for PDF extraction", code="PARSER_DEPENDENCY_MISSING") from exc
    return pymupdf


def _import_docx():
    try:
        import docx
    except ImportError as exc:
        raise ExtractionError("python-docx is required for DOCX extraction", code="PARSER_DEPENDENCY_MISSING") from exc
    return docx


def extract_pdf_text(file_bytes: bytes) -> str:
    """Text of every page, in reading order, pages separated by a blank line."""
    pymupdf = _import_pymupdf()
    doc = pymupdf.open(stream=file_bytes, filetype="pdf")
    try:
        pages = [page.get_text("text") for page in doc]
    finally:
        doc.close()
    return "\n\n".join(p.strip() for p in pages if p.strip())


def extract_docx_text(file_bytes: bytes) -> str:
    docx = _import_docx()
    document = docx.Document(io.BytesIO(file_bytes))
    lines = [para.text.strip() for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append(" | ".join(cells))
    return "\n".join(lines)


def extract_plain_text(file_bytes: bytes) -> str:
    return decode_text_with_fallback(file_bytes)


_HANDLERS: dict[MediaKind, Callable[[bytes], str]] = {
    MediaKind.PDF: extract_pdf_text,
    MediaKind.DOCX: extract_docx_text,
    MediaKind.PLAINTEXT: extract_plain_text,
}


def extract_text(file_bytes: bytes, declared_media_type: str | None, *, filename: str | None = None) -> str:
    if not file_bytes:
        raise ExtractionError("uploaded document is empty", code="EXTRACTION_EMPTY")
    kind = resolve_media_kind(declared_media_type, filename)
    try:
        text = _HANDLERS[kind](file_bytes)
    except ExtractionError:
        raise
    except Exception as exc:
        logger.warning(
            "extraction_failed kind=%s filename=%s error=%s",
            kind.value,
            filename,
            type(exc).__name__,
        )
        raise ExtractionError(
            f"could not read {kind.value} document",
            code="EXTRACTION_CORRUPT",
        ) from exc
    text = _BLANK_RUNS.sub("\n\n", normalize_text(text)).strip()
    if not text:
        raise ExtractionError("no text could be extracted from the document", code="EXTRACTION_EMPTY")
    return text
