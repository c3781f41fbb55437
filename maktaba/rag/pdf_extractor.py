"""Per-page text extraction with vision-OCR fallback.

Native text comes from pypdf. Pages with too little native text, or pages
that are Arabic (whose native text layer is usually unusable), are rendered
with PyMuPDF and read by a vision model through the invocation layer.
"""

import asyncio
import io
import logging
import re
from dataclasses import dataclass

import fitz  # PyMuPDF
from pypdf import PdfReader

from maktaba.config import Settings
from maktaba.exceptions import ExtractionError
from maktaba.models import Language
from maktaba.rag.invocation import ModelInvoker, Task
from maktaba.rag.language import arabic_ratio, detect_language

logger = logging.getLogger(__name__)

ARABIC_PAGE_RATIO = 0.3

OCR_PROMPT = (
    "Extract ALL text from this book page EXACTLY as it appears. "
    "Preserve the original language, spelling, diacritics, punctuation and "
    "paragraph breaks. Read right-to-left for Arabic. Do not translate, "
    "summarize, correct or describe the page. Do not add commentary or "
    "formatting. If the page has no text, return nothing."
)


class PdfDocument:
    """Page-level access to one PDF held in memory."""

    def __init__(self, data: bytes):
        try:
            self.reader = PdfReader(io.BytesIO(data))
            self.doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Cannot open PDF: {e}") from e
        self.page_count = len(self.doc)

    def native_text(self, page_number: int) -> str:
        text = self.reader.pages[page_number - 1].extract_text() or ""
        lines = [" ".join(line.split()) for line in text.splitlines()]
        return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()

    def render_png(self, page_number: int, scale: float, rotation: int = 0) -> bytes:
        page = self.doc[page_number - 1]
        matrix = fitz.Matrix(scale, scale).prerotate(rotation)
        pix = page.get_pixmap(matrix=matrix)
        return pix.tobytes("png")

    def close(self) -> None:
        self.doc.close()


@dataclass
class PageText:
    page_number: int
    text: str
    method: str
    used_rotation: bool
    language: Language


class PageExtractor:
    """Choose native text or OCR for each page.

    Args:
        settings: Thresholds (``min_native_chars``, ``ocr_scale``,
            ``ocr_retry_min_chars``, ``min_chunk_chars``).
        invoker: Model invocation layer used for the OCR task.
    """

    def __init__(self, settings: Settings, invoker: ModelInvoker) -> None:
        self.settings = settings
        self.invoker = invoker

    def needs_ocr(self, native: str, language_hint: Language | None = None) -> bool:
        stripped = native.strip()
        if len(stripped) < self.settings.min_native_chars:
            return True
        if language_hint == Language.AR:
            return True
        return arabic_ratio(stripped) > ARABIC_PAGE_RATIO

    async def _ocr(self, pdf: PdfDocument, page_number: int, rotation: int) -> str:
        try:
            image = await asyncio.to_thread(
                pdf.render_png, page_number, self.settings.ocr_scale, rotation
            )
        except Exception as e:
            logger.warning(f"Rendering page {page_number} failed: {e}")
            return ""
        result = await self.invoker.invoke(Task.OCR, OCR_PROMPT, image=image)
        if not result.ok:
            logger.warning(f"OCR failed for page {page_number}: {result.error}")
            return ""
        return result.value.strip()

    async def extract(
        self,
        pdf: PdfDocument,
        page_number: int,
        language_hint: Language | None = None,
    ) -> PageText | None:
        """Extract one page, or return None when it has no indexable text."""
        try:
            native = await asyncio.to_thread(pdf.native_text, page_number)
        except Exception as e:
            logger.warning(f"Native extraction failed on page {page_number}: {e}")
            native = ""

        text, method, used_rotation = native, "native", False
        if self.needs_ocr(native, language_hint):
            ocr = await self._ocr(pdf, page_number, rotation=0)
            if len(ocr) < self.settings.ocr_retry_min_chars:
                rotated = await self._ocr(pdf, page_number, rotation=90)
                if len(rotated) > len(ocr):
                    logger.info(f"Page {page_number}: rotated OCR read more text")
                    ocr, used_rotation = rotated, True
            text, method = ocr, "ocr"
            if len(native) > len(ocr) and len(native) >= self.settings.ocr_retry_min_chars:
                text, method, used_rotation = native, "native", False

        if len(text.strip()) < self.settings.min_chunk_chars:
            logger.info(f"Page {page_number}: no indexable text, skipping")
            return None
        return PageText(
            page_number=page_number,
            text=text,
            method=method,
            used_rotation=used_rotation,
            language=detect_language(text),
        )
