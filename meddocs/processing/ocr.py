"""
Text Extraction Strategies - PDFs and Images
══════════════════════════════════════════════

Design: Strategy
────────────────
Each strategy turns raw file bytes into page texts. The orchestrator in
extractor.py decides which ones run and in what order.

  Strategy 1: PyMuPDF (fitz)
    - Native PDF text layer extraction (microseconds per page)
    - Runs entirely in-process
    - Returns empty text for scanned pages

  Strategy 2: Tesseract on images
    - pytesseract + Pillow, English and Hebrew recognized together
      (languages "eng+heb"), so mixed-language reports keep both scripts
    - Used directly for JPEG / PNG uploads

  Strategy 3: Tesseract on rasterized PDF pages
    - Each page rendered to a PNG pixmap by PyMuPDF, then OCR'd as in 2
    - Page count capped (ocr_max_pages); scanned reports rarely exceed it

All strategies share the same contract:
  - Accept raw bytes (never a path; the caller reads the file once)
  - Return ExtractionStrategyResult
  - Never raise: errors and timeouts come back as an empty result with
    `error` set, so the caller can fall through to the next strategy
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from meddocs.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number       : 1-based page index (images are a single page)
    text              : raw extracted text, stripped
    extraction_method : "pymupdf" | "tesseract" | "tesseract_pdf"
    """
    page_number:       int
    text:              str
    extraction_method: str = "unknown"


@dataclass
class ExtractionStrategyResult:
    """
    Full result from a single strategy run.

    pages         : list of PageText (one per page)
    strategy_name : which strategy produced this result
    elapsed_ms    : wall-clock time for the strategy (ms)
    used_ocr      : True if image-based OCR was invoked
    error         : set when the strategy failed or timed out
    """
    pages:         list[PageText]
    strategy_name: str
    elapsed_ms:    float = 0.0
    used_ocr:      bool = False
    error:         str | None = None

    @property
    def full_text(self) -> str:
        """Concatenate all non-empty pages with blank-line separators."""
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.

    Subclasses implement the blocking `_extract_sync`; `extract` runs it in
    the default thread executor under an optional deadline and converts any
    failure into an empty result.
    """

    uses_ocr: bool = False

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    def _extract_sync(self, data: bytes) -> list[PageText]:
        """Blocking extraction - runs in thread executor."""

    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        loop = asyncio.get_running_loop()
        t0   = time.monotonic()
        error: str | None = None
        pages: list[PageText] = []

        try:
            future = loop.run_in_executor(None, self._extract_sync, data)
            if self._timeout:
                pages = await asyncio.wait_for(future, timeout=self._timeout)
            else:
                pages = await future
        except asyncio.TimeoutError:
            error = f"{self.strategy_name} timed out after {self._timeout:.0f}s"
            logger.error("%s | timed out after %.0fs", self.strategy_name, self._timeout)
        except Exception as exc:
            error = f"{self.strategy_name} failed: {exc}"
            logger.warning("%s | extraction failed: %s", self.strategy_name, exc, exc_info=True)

        result = ExtractionStrategyResult(
            pages=pages,
            strategy_name=self.strategy_name,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            used_ocr=self.uses_ocr,
            error=error,
        )
        logger.info(
            "%s | pages=%d total_chars=%d elapsed_ms=%.0f",
            self.strategy_name, len(result.pages), result.total_chars, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 1: PyMuPDF (fitz)
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BaseTextExtractor):
    """
    Reads the native PDF text layer.

    Limitations:
      - Cannot OCR image-only pages (returns empty string for those)
      - Encrypted PDFs return empty (password-protection)
    """

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    def _extract_sync(self, data: bytes) -> list[PageText]:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(
                    page_number=page_num,
                    text=raw.strip(),
                    extraction_method=self.strategy_name,
                ))
        return pages


# ---------------------------------------------------------------------------
# Strategy 2: Tesseract on images
# ---------------------------------------------------------------------------

class TesseractExtractor(BaseTextExtractor):
    """
    OCR for JPEG / PNG bytes via pytesseract.

    Requires the tesseract binary plus the `eng` and `heb` traineddata in the
    container. A missing binary surfaces as an empty result with `error` set.
    """

    uses_ocr = True

    def __init__(
        self,
        languages:       str | None = None,
        timeout_seconds: float | None = None,
        tesseract_cmd:   str | None = None,
    ) -> None:
        super().__init__(
            timeout_seconds if timeout_seconds is not None else settings.ocr_timeout_seconds
        )
        self._languages     = languages or settings.ocr_languages
        self._tesseract_cmd = tesseract_cmd if tesseract_cmd is not None else settings.tesseract_cmd

    @property
    def strategy_name(self) -> str:
        return "tesseract"

    def _ocr_image(self, image) -> str:
        import pytesseract

        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd
        return (pytesseract.image_to_string(image, lang=self._languages) or "").strip()

    def _extract_sync(self, data: bytes) -> list[PageText]:
        from PIL import Image

        with Image.open(io.BytesIO(data)) as image:
            text = self._ocr_image(image)
        return [PageText(page_number=1, text=text, extraction_method=self.strategy_name)]


# ---------------------------------------------------------------------------
# Strategy 3: Tesseract on rasterized PDF pages
# ---------------------------------------------------------------------------

class PdfOcrExtractor(TesseractExtractor):
    """
    OCR for scanned PDFs: render each page with PyMuPDF, then run Tesseract.

    Only the first `max_pages` pages are processed.
    """

    def __init__(
        self,
        languages:       str | None = None,
        timeout_seconds: float | None = None,
        tesseract_cmd:   str | None = None,
        dpi:             int | None = None,
        max_pages:       int | None = None,
    ) -> None:
        super().__init__(languages, timeout_seconds, tesseract_cmd)
        self._dpi       = dpi or settings.ocr_dpi
        self._max_pages = max_pages or settings.ocr_max_pages

    @property
    def strategy_name(self) -> str:
        return "tesseract_pdf"

    def _extract_sync(self, data: bytes) -> list[PageText]:
        import fitz
        from PIL import Image

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                if page_num > self._max_pages:
                    logger.info(
                        "%s | page cap reached | max_pages=%d total_pages=%d",
                        self.strategy_name, self._max_pages, doc.page_count,
                    )
                    break
                pix = page.get_pixmap(dpi=self._dpi, alpha=False)
                with Image.open(io.BytesIO(pix.tobytes("png"))) as image:
                    text = self._ocr_image(image)
                pages.append(PageText(
                    page_number=page_num,
                    text=text,
                    extraction_method=self.strategy_name,
                ))
        return pages
