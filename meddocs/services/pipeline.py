"""
Document Pipeline - extraction state machine

  PENDING ──► PROCESSING ──► SUCCESS   extracted_json + summary_text set
                        └──► FAILED    extracted_json NULL, summary_text = reason

Run:
  1. Claim the document: PENDING → PROCESSING (single conditional UPDATE;
     a run that loses the claim does nothing)
  2. Text extraction (route by mime type)
  3. Extraction method none, or text < 10 chars → FAILED(extractor error)
  4. Structured extraction
  5. Payload → SUCCESS; None → FAILED(AI failure message)
  6. Deadline exceeded → FAILED("Processing timed out")
     Any other exception → FAILED(unexpected error message)

Each status write is its own short transaction so pollers see every
transition. `run` never raises. A run cancelled at shutdown is marked FAILED
by the dispatcher; a run lost to a crash of the process itself is recovered
by fail_stale_documents(), which runs at startup and then periodically
(Celery beat, or sweep_stale_documents_forever() in-process).
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meddocs.core.config import settings
from meddocs.db.session import get_pipeline_db
from meddocs.llm.structured import StructuredDataExtractor
from meddocs.models.documents import MedicalDocument
from meddocs.processing.extractor import ExtractionResult, TextExtractorOrchestrator
from meddocs.schemas.documents import ExtractionStatus, PromptLanguage

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

MIN_TEXT_CHARS = 10

EXTRACTION_FALLBACK_MESSAGE = "Could not extract text from document"
AI_FAILURE_MESSAGE          = (
    "AI processing failed. The AI service quota may be exceeded or the service "
    "is unavailable. Please try again later."
)
UNEXPECTED_ERROR_MESSAGE    = "An unexpected error occurred during processing"
TIMEOUT_MESSAGE             = "Processing timed out"
STALE_MESSAGE               = "Processing was interrupted. Please reprocess the document."


class DocumentPipeline:
    """
    Stateless per run; one instance is shared by the dispatcher.

    Usage::

        pipeline = DocumentPipeline(TextExtractorOrchestrator(), build_structured_extractor())
        status = await pipeline.run(document_id, language="he")
    """

    def __init__(
        self,
        text_extractor:       TextExtractorOrchestrator,
        structured_extractor: StructuredDataExtractor,
        session_factory:      SessionFactory = get_pipeline_db,
        timeout_seconds:      float | None = None,
    ) -> None:
        self._text       = text_extractor
        self._structured = structured_extractor
        self._session    = session_factory
        self._timeout    = timeout_seconds or settings.pipeline_timeout_seconds

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self, document_id: str, language: str | None = "en") -> ExtractionStatus | None:
        """
        Process one document end to end.

        Returns the terminal status written, or None when the run did not
        claim the document (missing, deleted, or not PENDING).
        """
        t0 = time.monotonic()
        lang = PromptLanguage.from_request(language)

        try:
            doc = await self._claim(document_id)
        except Exception as exc:
            logger.error("Pipeline claim failed | doc=%s error=%s", document_id, exc, exc_info=True)
            return None
        if doc is None:
            return None

        logger.info(
            "Pipeline start | doc=%s mime=%s doc_type=%s lang=%s",
            document_id, doc.mime_type, doc.doc_type.value, lang.value,
        )

        try:
            status = await asyncio.wait_for(self._process(doc, lang), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Pipeline timed out | doc=%s timeout=%.0fs", document_id, self._timeout)
            status = await self._finish_failed(document_id, TIMEOUT_MESSAGE)
        except Exception as exc:
            logger.exception("Pipeline unexpected error | doc=%s error=%s", document_id, exc)
            status = await self._finish_failed(document_id, UNEXPECTED_ERROR_MESSAGE)

        logger.info(
            "Pipeline end | doc=%s status=%s elapsed_ms=%.0f",
            document_id, status.value if status else None, (time.monotonic() - t0) * 1000,
        )
        return status

    async def mark_failed(self, document_id: str, reason: str) -> None:
        """Force a non-terminal document to FAILED (used by the dispatcher's error boundary)."""
        await self._write(
            document_id,
            ExtractionStatus.FAILED,
            summary_text=reason,
            only_from=(ExtractionStatus.PENDING, ExtractionStatus.PROCESSING),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _claim(self, document_id: str) -> MedicalDocument | None:
        async with self._session() as db:
            result = await db.execute(
                update(MedicalDocument)
                .where(
                    MedicalDocument.id == document_id,
                    MedicalDocument.deleted_at.is_(None),
                    MedicalDocument.extraction_status == ExtractionStatus.PENDING,
                )
                .values(extraction_status=ExtractionStatus.PROCESSING, extracted_json=None)
            )
            if result.rowcount == 0:
                logger.warning("Pipeline skipped, document not claimable | doc=%s", document_id)
                return None

            row = await db.execute(select(MedicalDocument).where(MedicalDocument.id == document_id))
            return row.scalar_one()

    async def _process(self, doc: MedicalDocument, lang: PromptLanguage) -> ExtractionStatus:
        extraction: ExtractionResult = await self._text.extract(doc.storage_path, doc.mime_type)

        if not extraction.succeeded or len(extraction.text) < MIN_TEXT_CHARS:
            reason = extraction.error or EXTRACTION_FALLBACK_MESSAGE
            logger.info(
                "Pipeline extraction failed | doc=%s method=%s chars=%d reason=%s",
                doc.id, extraction.method.value, len(extraction.text), reason,
            )
            return await self._finish_failed(doc.id, reason)

        data = await self._structured.extract_structured(extraction.text, doc.doc_type, lang)
        if data is None:
            return await self._finish_failed(doc.id, AI_FAILURE_MESSAGE)

        payload = data.model_copy(update={"extraction_method": extraction.method})
        await self._write(
            doc.id,
            ExtractionStatus.SUCCESS,
            summary_text=payload.short_summary,
            extracted_json=payload.to_json(),
        )
        return ExtractionStatus.SUCCESS

    async def _finish_failed(self, document_id: str, reason: str) -> ExtractionStatus:
        try:
            await self._write(document_id, ExtractionStatus.FAILED, summary_text=reason)
        except Exception as exc:
            # Left in PROCESSING; the stale-run sweeper fails it later
            logger.error("Pipeline could not record failure | doc=%s error=%s", document_id, exc, exc_info=True)
        return ExtractionStatus.FAILED

    async def _write(
        self,
        document_id:    str,
        status:         ExtractionStatus,
        summary_text:   str | None,
        extracted_json: str | None = None,
        only_from:      tuple[ExtractionStatus, ...] = (ExtractionStatus.PROCESSING,),
    ) -> None:
        if status is not ExtractionStatus.SUCCESS:
            extracted_json = None

        async with self._session() as db:
            await db.execute(
                update(MedicalDocument)
                .where(
                    MedicalDocument.id == document_id,
                    MedicalDocument.extraction_status.in_(only_from),
                )
                .values(
                    extraction_status=status,
                    summary_text=summary_text,
                    extracted_json=extracted_json,
                )
            )
        logger.info("Status write | doc=%s status=%s", document_id, status.value)


# ---------------------------------------------------------------------------
# Stale-run sweeper
# ---------------------------------------------------------------------------

async def fail_stale_documents(
    session_factory:    SessionFactory = get_pipeline_db,
    older_than_minutes: int | None = None,
) -> int:
    """
    FAILED every document stuck in PROCESSING longer than the threshold.
    Recovers runs lost to a process crash. Returns the number of rows updated.
    """
    minutes = older_than_minutes if older_than_minutes is not None else settings.stale_processing_minutes
    cutoff  = datetime.now(timezone.utc) - timedelta(minutes=minutes)

    async with session_factory() as db:
        result = await db.execute(
            update(MedicalDocument)
            .where(
                MedicalDocument.extraction_status == ExtractionStatus.PROCESSING,
                MedicalDocument.updated_at < cutoff,
            )
            .values(
                extraction_status=ExtractionStatus.FAILED,
                summary_text=STALE_MESSAGE,
                extracted_json=None,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0

    if count:
        logger.warning("Stale sweeper | failed=%d older_than_minutes=%d", count, minutes)
    return count


async def sweep_stale_documents_forever(
    interval_seconds:   float,
    session_factory:    SessionFactory = get_pipeline_db,
    older_than_minutes: int | None = None,
) -> None:
    """
    In-process counterpart of the Celery beat sweep: run fail_stale_documents()
    every `interval_seconds` until cancelled. The first sweep happens one
    interval after start; startup runs its own. A failed sweep is logged and
    retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await fail_stale_documents(session_factory, older_than_minutes)
        except Exception as exc:
            logger.error("Stale sweeper failed | error=%s", exc, exc_info=True)
