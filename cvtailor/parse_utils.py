from __future__ import annotations

import codecs

from cvtailor.errors import ExtractionError

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    return "".join(ch for ch in normalized if ch in {"\n", "\t"} or ord(ch) >= 32)


def decode_text_with_fallback(raw: bytes) -> str:
    for bom, encoding in _BOMS:
        if raw.startswith(bom):
            try:
                return normalize_text(raw.decode(encoding))
            except UnicodeDecodeError:
                break
    if b"\x00" in raw:
        raise ExtractionError("content is not plain text", code="EXTRACTION_CORRUPT")
    for encoding in ("utf-8", "cp1252"):
        try:
            return normalize_text(raw.decode(encoding))
        except UnicodeDecodeError:
            continue

    raise ExtractionError("text encoding unsupported", code="EXTRACTION_ENCODING_UNSUPPORTED")
