"""
Structured CV -> HTML -> PDF.

The HTML comes from an autoescaped Jinja2 template; the PDF from a pluggable
engine exposing ``to_pdf(html) -> bytes``. ``ArtifactRenderer.render`` either
returns a complete PDF or raises RenderError, never a partial binary.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape
from pydantic import ValidationError as PydanticValidationError

from cvtailor.deadlines import call_with_deadline
from cvtailor.errors import RenderError
from cvtailor.schemas import TailoredCv
from cvtailor.settings import Settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
DEFAULT_TEMPLATE = "cv_template.html"
PDF_SIGNATURE = b"%PDF-"
# A4 margins in points
_PAGE_MARGIN = 40


def _import_pymupdf():
    try:
        import pymupdf
    except ImportError as exc:
        raise RenderError("pymupdf is required for the pymupdf render engine", code="RENDER_DEPENDENCY_MISSING") from exc
    return pymupdf


class PyMuPdfEngine:
    """In-process HTML layout through MuPDF's Story API."""

    name = "pymupdf"

    def to_pdf(self, html: str) -> bytes:
        pymupdf = _import_pymupdf()
        buffer = io.BytesIO()
        writer = pymupdf.DocumentWriter(buffer)
        mediabox = pymupdf.paper_rect("a4")
        where = mediabox + (_PAGE_MARGIN, _PAGE_MARGIN, -_PAGE_MARGIN, -_PAGE_MARGIN)
        story = pymupdf.Story(html=html)
        more = 1
        while more:
            device = writer.begin_page(mediabox)
            more, _ = story.place(where)
            story.draw(device)
            writer.end_page()
        writer.close()
        return buffer.getvalue()


class PlaywrightEngine:
    """Headless Chromium, for templates that need a full browser layout."""

    name = "playwright"

    def __init__(self, *, timeout_ms: int = 30_000) -> None:
        self.timeout_ms = timeout_ms

    def to_pdf(self, html: str) -> bytes:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as exc:
            raise RenderError(
                "playwright is required for the playwright render engine",
                code="RENDER_DEPENDENCY_MISSING",
            ) from exc
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=True, args=["--no-sandbox", "--disable-setuid-sandbox"])
            try:
                page = browser.new_page()
                page.set_content(html, wait_until="networkidle", timeout=self.timeout_ms)
                return page.pdf(format="A4", print_background=True)
            finally:
                browser.close()


def create_render_engine(settings: Settings) -> PyMuPdfEngine | PlaywrightEngine:
    if settings.render_engine == "playwright":
        return PlaywrightEngine(timeout_ms=settings.render_timeout_ms)
    if settings.render_engine == "pymupdf":
        return PyMuPdfEngine()
    raise RuntimeError(f"unsupported render engine: {settings.render_engine}")


class ArtifactRenderer:
    def __init__(
        self,
        *,
        engine: Any,
        timeout_ms: int = 30_000,
        template_dir: str | Path | None = None,
        template_name: str = DEFAULT_TEMPLATE,
    ) -> None:
        self.engine = engine
        self.timeout_s = max(1, int(timeout_ms)) / 1000.0
        self.template_name = template_name
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render_html(self, structured: TailoredCv | dict[str, Any]) -> str:
        try:
            cv = structured if isinstance(structured, TailoredCv) else TailoredCv.model_validate(structured)
        except PydanticValidationError as exc:
            raise RenderError("tailored CV data is incomplete", code="RENDER_INPUT_INVALID") from exc
        try:
            return self._env.get_template(self.template_name).render(**cv.model_dump())
        except TemplateError as exc:
            logger.exception("render_template_failed template=%s", self.template_name)
            raise RenderError() from exc

    def render(self, structured: TailoredCv | dict[str, Any]) -> bytes:
        html = self.render_html(structured)
        engine_name = getattr(self.engine, "name", type(self.engine).__name__)
        try:
            pdf = call_with_deadline(self.engine.to_pdf, html, timeout_s=self.timeout_s, name="renderer")
        except TimeoutError as exc:
            logger.error("render_timeout engine=%s timeout_s=%s", engine_name, self.timeout_s)
            raise RenderError("rendering timed out", code="RENDER_TIMEOUT") from exc
        except RenderError:
            raise
        except Exception as exc:
            logger.exception("render_engine_failed engine=%s", engine_name)
            raise RenderError() from exc
        if not isinstance(pdf, (bytes, bytearray)):
            pdf = b""
        if not bytes(pdf).startswith(PDF_SIGNATURE):
            logger.error("render_output_invalid engine=%s size=%s", engine_name, len(pdf))
            raise RenderError("rendering produced no document", code="RENDER_OUTPUT_INVALID")
        return bytes(pdf)
