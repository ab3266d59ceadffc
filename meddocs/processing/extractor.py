"""
Text Extraction Orchestrator
════════════════════════════

Routes a stored file to the right strategy cascade and applies the
acceptance thresholds.

Strategy selection flow:
  application/pdf
    1.  PyMuPDF text layer      ── trimmed chars ≥ 50?  → embedded_text ✓
    2.  Rasterize + Tesseract   ── trimmed chars ≥ 20?  → ocr ✓
    3.  Neither                 → none, carrying the longer partial text
  image/*
    1.  Tesseract               ── trimmed chars ≥ 20?  → ocr ✓
    2.  Otherwise               → none
  anything else                 → none, "Unsupported file type"

The embedded-text bar is higher than the OCR bar: a real text layer yields
far more than a noisy photo, and a low bar would accept corrupt extracts.

A missing or zero-byte file short-circuits to `none` without running any
strategy. This module is the only place that knows about the cascade;
the pipeline only sees ExtractionResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from meddocs.processing.ocr import (
    BaseTextExtractor,
    PdfOcrExtractor,
    PyMuPDFExtractor,
    TesseractExtractor,
)
from meddocs.schemas.documents import ExtractionMethod

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Thresholds (trimmed character counts)
# ---------------------------------------------------------------------------

EMBEDDED_TEXT_MIN_CHARS = 50
OCR_MIN_CHARS           = 20

FILE_NOT_FOUND_ERROR     = "File not found on server"
FILE_EMPTY_ERROR         = "File is empty"
UNSUPPORTED_TYPE_ERROR   = "Unsupported file type"
PDF_INSUFFICIENT_ERROR   = (
    "Could not extract sufficient text. The document may be unreadable "
    "or contain only images without text."
)
IMAGE_INSUFFICIENT_ERROR = (
    "Could not extract text from image. The image may be too blurry "
    "or contain no readable text."
)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Extraction output handed to the pipeline.

    text       : trimmed extracted text (partial text when method is none)
    method     : embedded_text | ocr | none
    error      : user-facing reason, set only when method is none
    elapsed_ms : total extraction wall time (ms)
    """
    text:       str
    method:     ExtractionMethod
    error:      str | None = None
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.method is not ExtractionMethod.NONE

    @classmethod
    def failed(cls, error: str, text: str = "") -> "ExtractionResult":
        return cls(text=text, method=ExtractionMethod.NONE, error=error)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractorOrchestrator:
    """
    Stateless orchestrator - select and execute the right extraction cascade.

    Strategies are injectable so tests can substitute fakes:
        orchestrator = TextExtractorOrchestrator(embedded=FakeExtractor("..."))
        result = await orchestrator.extract("/uploads/ab12.pdf", "application/pdf")

    Never raises.
    """

    def __init__(
        self,
        embedded:  BaseTextExtractor | None = None,
        pdf_ocr:   BaseTextExtractor | None = None,
        image_ocr: BaseTextExtractor | None = None,
    ) -> None:
        self._embedded  = embedded or PyMuPDFExtractor()
        self._pdf_ocr   = pdf_ocr or PdfOcrExtractor()
        self._image_ocr = image_ocr or TesseractExtractor()

    async def extract(self, file_path: str, mime_type: str) -> ExtractionResult:
        t0 = time.monotonic()
        try:
            if mime_type == "application/pdf":
                result = await self.extract_pdf(file_path)
            elif mime_type.startswith("image/"):
                result = await self.extract_image(file_path)
            else:
                result = ExtractionResult.failed(UNSUPPORTED_TYPE_ERROR)
        except Exception as exc:
            logger.error("Extraction | unexpected failure | path=%s error=%s", file_path, exc, exc_info=True)
            result = ExtractionResult.failed(f"Text extraction failed: {exc}")

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Extraction | path=%s mime=%s method=%s chars=%d elapsed_ms=%.0f",
            file_path, mime_type, result.method.value, len(result.text), result.elapsed_ms,
        )
        return result

    async def extract_pdf(self, file_path: str) -> ExtractionResult:
        """
        ┌─────────────────────────────────────────────────────────────────┐
        │  1. PyMuPDF   ──► trimmed ≥ 50?  YES → embedded_text ✓          │
        │                                  NO  → treat as scanned         │
        │  2. OCR       ──► trimmed ≥ 20?  YES → ocr ✓                    │
        │  3. none, text = longer of the two partials                     │
        └─────────────────────────────────────────────────────────────────┘
        """
        data, error = await self._read(file_path)
        if error:
            return ExtractionResult.failed(error)

        embedded = (await self._embedded.extract(data)).full_text.strip()
        if len(embedded) >= EMBEDDED_TEXT_MIN_CHARS:
            return ExtractionResult(text=embedded, method=ExtractionMethod.EMBEDDED_TEXT)

        logger.info(
            "Extraction | PDF appears scanned (%d chars < %d). Falling back to OCR",
            len(embedded), EMBEDDED_TEXT_MIN_CHARS,
        )
        ocr = (await self._pdf_ocr.extract(data)).full_text.strip()
        if len(ocr) >= OCR_MIN_CHARS:
            return ExtractionResult(text=ocr, method=ExtractionMethod.OCR)

        partial = embedded if len(embedded) >= len(ocr) else ocr
        return ExtractionResult.failed(PDF_INSUFFICIENT_ERROR, text=partial)

    async def extract_image(self, file_path: str) -> ExtractionResult:
        data, error = await self._read(file_path)
        if error:
            return ExtractionResult.failed(error)

        ocr = (await self._image_ocr.extract(data)).full_text.strip()
        if len(ocr) >= OCR_MIN_CHARS:
            return ExtractionResult(text=ocr, method=ExtractionMethod.OCR)
        return ExtractionResult.failed(IMAGE_INSUFFICIENT_ERROR, text=ocr)

    @staticmethod
    async def _read(file_path: str) -> tuple[bytes, str | None]:
        path = Path(file_path)
        if not path.is_file():
            logger.warning("Extraction | file missing | path=%s", file_path)
            return b"", FILE_NOT_FOUND_ERROR

        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, path.read_bytes)
        if not data:
            logger.warning("Extraction | file empty | path=%s", file_path)
            return b"", FILE_EMPTY_ERROR
        return data, None
