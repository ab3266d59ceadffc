"""
Document Text Extraction Package
════════════════════════════════

Turns a stored upload into plain text:

  PDF text layer → OCR fallback (PDF pages or images) → ExtractionResult

Modules
───────
  ocr.py        Strategy pattern for text extraction (PyMuPDF → Tesseract)
  extractor.py  Orchestrator that routes by MIME type and applies thresholds
"""

from meddocs.processing.extractor import ExtractionResult, TextExtractorOrchestrator

__all__ = [
    "ExtractionResult",
    "TextExtractorOrchestrator",
]
