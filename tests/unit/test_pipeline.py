"""
Unit Tests - DocumentPipeline
══════════════════════════════
State machine against a real SQLite schema, with fake text and structured
extractors.

  PENDING ──► PROCESSING ──► SUCCESS   extracted_json set
                        └──► FAILED    extracted_json NULL

Every test asserts the terminal row, never an intermediate one, except the
claim tests.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from meddocs.db.session import get_pipeline_db
from meddocs.processing.extractor import PDF_INSUFFICIENT_ERROR, ExtractionResult
from meddocs.schemas.documents import (
    ExtractedDocumentData,
    ExtractionMethod,
    ExtractionStatus,
    PromptLanguage,
)
from meddocs.services.dispatcher import InProcessDispatcher
from meddocs.services.pipeline import (
    AI_FAILURE_MESSAGE,
    EXTRACTION_FALLBACK_MESSAGE,
    STALE_MESSAGE,
    TIMEOUT_MESSAGE,
    UNEXPECTED_ERROR_MESSAGE,
    DocumentPipeline,
    fail_stale_documents,
    sweep_stale_documents_forever,
)
from tests.conftest import SAMPLE_PAYLOAD, load_document

pytestmark = pytest.mark.unit


class FakeTextExtractor:
    def __init__(self, result: ExtractionResult | None = None, error: Exception | None = None, delay: float = 0):
        self.result = result or ExtractionResult(text="Hemoglobin 13.5 g/dL normal", method=ExtractionMethod.EMBEDDED_TEXT)
        self.error  = error
        self.delay  = delay
        self.calls: list[tuple[str, str]] = []

    async def extract(self, file_path: str, mime_type: str) -> ExtractionResult:
        self.calls.append((file_path, mime_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class FakeStructured:
    def __init__(self, data: ExtractedDocumentData | None = None, error: Exception | None = None):
        self.data  = data
        self.error = error
        self.calls: list[tuple] = []

    async def extract_structured(self, raw_text, doc_type, language):
        self.calls.append((raw_text, doc_type, language))
        if self.error:
            raise self.error
        return self.data


def _payload() -> ExtractedDocumentData:
    return ExtractedDocumentData.model_validate(SAMPLE_PAYLOAD)


def _assert_invariant(doc):
    if doc.extraction_status is ExtractionStatus.SUCCESS:
        assert doc.extracted_json is not None
    else:
        assert doc.extracted_json is None


class TestHappyPath:

    async def test_success_writes_payload_and_summary(self, make_document):
        doc = await make_document()
        structured = FakeStructured(_payload())
        pipeline = DocumentPipeline(FakeTextExtractor(), structured)

        status = await pipeline.run(doc.id, "en")

        assert status is ExtractionStatus.SUCCESS
        stored = await load_document(doc.id)
        assert stored.extraction_status is ExtractionStatus.SUCCESS
        assert stored.summary_text == SAMPLE_PAYLOAD["shortSummary"]
        payload = json.loads(stored.extracted_json)
        assert payload["labs"][0]["testName"] == "Hemoglobin"
        assert payload["extractionMethod"] == "embedded_text"
        _assert_invariant(stored)

    async def test_language_and_doc_type_are_forwarded(self, make_document):
        doc = await make_document()
        structured = FakeStructured(_payload())
        text = FakeTextExtractor()

        await DocumentPipeline(text, structured).run(doc.id, "he")

        assert text.calls == [(doc.storage_path, "application/pdf")]
        _, doc_type, language = structured.calls[0]
        assert doc_type is doc.doc_type
        assert language is PromptLanguage.HE

    async def test_ocr_method_recorded(self, make_document):
        doc = await make_document(mime_type="image/png", filename="scan.png")
        text = FakeTextExtractor(ExtractionResult(text="scanned text of a lab", method=ExtractionMethod.OCR))

        await DocumentPipeline(text, FakeStructured(_payload())).run(doc.id)

        stored = await load_document(doc.id)
        assert json.loads(stored.extracted_json)["extractionMethod"] == "ocr"


class TestFailures:

    async def test_extraction_failure_uses_extractor_error(self, make_document):
        doc = await make_document()
        text = FakeTextExtractor(ExtractionResult.failed(PDF_INSUFFICIENT_ERROR, text="abc"))
        structured = FakeStructured(_payload())

        status = await DocumentPipeline(text, structured).run(doc.id)

        assert status is ExtractionStatus.FAILED
        stored = await load_document(doc.id)
        assert stored.summary_text == PDF_INSUFFICIENT_ERROR
        assert structured.calls == []
        _assert_invariant(stored)

    async def test_short_text_fails_with_fallback_message(self, make_document):
        doc = await make_document()
        text = FakeTextExtractor(ExtractionResult(text="tiny", method=ExtractionMethod.OCR))

        await DocumentPipeline(text, FakeStructured(_payload())).run(doc.id)

        stored = await load_document(doc.id)
        assert stored.extraction_status is ExtractionStatus.FAILED
        assert stored.summary_text == EXTRACTION_FALLBACK_MESSAGE

    async def test_structured_none_is_ai_failure(self, make_document):
        doc = await make_document()

        await DocumentPipeline(FakeTextExtractor(), FakeStructured(None)).run(doc.id)

        stored = await load_document(doc.id)
        assert stored.extraction_status is ExtractionStatus.FAILED
        assert stored.summary_text == AI_FAILURE_MESSAGE
        _assert_invariant(stored)

    async def test_unexpected_exception_is_failed(self, make_document):
        doc = await make_document()
        text = FakeTextExtractor(error=RuntimeError("disk on fire"))

        status = await DocumentPipeline(text, FakeStructured(_payload())).run(doc.id)

        assert status is ExtractionStatus.FAILED
        stored = await load_document(doc.id)
        assert stored.summary_text == UNEXPECTED_ERROR_MESSAGE
        _assert_invariant(stored)

    async def test_timeout_is_failed(self, make_document):
        doc = await make_document()
        text = FakeTextExtractor(delay=5)

        status = await DocumentPipeline(text, FakeStructured(_payload()), timeout_seconds=0.05).run(doc.id)

        assert status is ExtractionStatus.FAILED
        stored = await load_document(doc.id)
        assert stored.summary_text == TIMEOUT_MESSAGE


class TestClaim:

    @pytest.mark.parametrize(
        "status",
        [ExtractionStatus.PROCESSING, ExtractionStatus.SUCCESS, ExtractionStatus.FAILED],
    )
    async def test_only_pending_documents_are_claimed(self, make_document, status):
        doc = await make_document(status=status, summary_text="before")
        text = FakeTextExtractor()

        assert await DocumentPipeline(text, FakeStructured(_payload())).run(doc.id) is None

        stored = await load_document(doc.id)
        assert stored.extraction_status is status
        assert stored.summary_text == "before"
        assert text.calls == []

    async def test_deleted_document_is_not_claimed(self, make_document):
        doc = await make_document(deleted_at=datetime.now(timezone.utc))

        assert await DocumentPipeline(FakeTextExtractor(), FakeStructured(_payload())).run(doc.id) is None

    async def test_unknown_document(self, db_tables):
        assert await DocumentPipeline(FakeTextExtractor(), FakeStructured(_payload())).run("missing") is None

    async def test_concurrent_runs_process_once(self, make_document):
        doc = await make_document()
        text = FakeTextExtractor()
        pipeline = DocumentPipeline(text, FakeStructured(_payload()))

        results = await asyncio.gather(pipeline.run(doc.id), pipeline.run(doc.id))

        assert sorted(results, key=lambda s: s is None) == [ExtractionStatus.SUCCESS, None]
        assert len(text.calls) == 1


class TestMaintenance:

    async def test_mark_failed_only_touches_non_terminal(self, make_document):
        pending = await make_document()
        done    = await make_document(status=ExtractionStatus.SUCCESS, extracted={"labs": []}, summary_text="ok")
        pipeline = DocumentPipeline(FakeTextExtractor(), FakeStructured(None))

        await pipeline.mark_failed(pending.id, "boom")
        await pipeline.mark_failed(done.id, "boom")

        assert (await load_document(pending.id)).extraction_status is ExtractionStatus.FAILED
        assert (await load_document(done.id)).extraction_status is ExtractionStatus.SUCCESS

    async def test_stale_processing_documents_are_failed(self, make_document):
        old   = datetime.now(timezone.utc) - timedelta(hours=2)
        stale = await make_document(status=ExtractionStatus.PROCESSING, updated_at=old)
        fresh = await make_document(status=ExtractionStatus.PROCESSING)

        count = await fail_stale_documents(get_pipeline_db, older_than_minutes=15)

        assert count == 1
        stored = await load_document(stale.id)
        assert stored.extraction_status is ExtractionStatus.FAILED
        assert stored.summary_text == STALE_MESSAGE
        assert (await load_document(fresh.id)).extraction_status is ExtractionStatus.PROCESSING


async def _wait_for_status(document_id: str, expected: ExtractionStatus, attempts: int = 200):
    for _ in range(attempts):
        doc = await load_document(document_id)
        if doc.extraction_status is expected:
            return doc
        await asyncio.sleep(0.01)
    raise AssertionError(f"{document_id} never reached {expected.value}")


class TestShutdownAndRestart:

    async def test_run_cancelled_at_shutdown_is_failed(self, make_document):
        doc = await make_document()
        pipeline   = DocumentPipeline(FakeTextExtractor(delay=30), FakeStructured(_payload()))
        dispatcher = InProcessDispatcher(pipeline)

        await dispatcher.submit(doc.id, "en")
        await _wait_for_status(doc.id, ExtractionStatus.PROCESSING)
        await dispatcher.drain(timeout=0.05)

        stored = await load_document(doc.id)
        assert stored.extraction_status is ExtractionStatus.FAILED
        assert stored.summary_text == STALE_MESSAGE
        _assert_invariant(stored)

    async def test_periodic_sweeper_fails_stale_rows(self, make_document):
        old   = datetime.now(timezone.utc) - timedelta(hours=2)
        stale = await make_document(status=ExtractionStatus.PROCESSING, updated_at=old)

        sweeper = asyncio.create_task(sweep_stale_documents_forever(0.01, older_than_minutes=15))
        try:
            stored = await _wait_for_status(stale.id, ExtractionStatus.FAILED)
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

        assert stored.summary_text == STALE_MESSAGE

    async def test_periodic_sweeper_survives_a_failed_sweep(self):
        calls = 0

        def broken_session():
            nonlocal calls
            calls += 1
            raise RuntimeError("database unavailable")

        sweeper = asyncio.create_task(sweep_stale_documents_forever(0.01, session_factory=broken_session))
        await asyncio.sleep(0.1)
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)

        assert calls >= 2
