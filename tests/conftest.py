"""
Root conftest.py - Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : db_tables, db_session, make_document, chat_client,
                    recording_sleep, api (httpx client over the ASGI app)

Environment strategy:
  - SQLite file database in a temp directory; tables created and dropped
    around every test that asks for db_tables.
  - Uploads go to pytest's tmp_path.
  - No Tesseract binary and no model endpoint are needed: OCR strategies and
    the chat client are replaced by fakes wherever a test would reach them.
  - Celery is never contacted (DISPATCH_BACKEND=inprocess, memory broker).

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP-level tests
  pytest tests/unit/test_retry.py # single file
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any meddocs imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="meddocs-tests-"))

os.environ.setdefault("DATABASE_URL",          f"sqlite+aiosqlite:///{_TEST_ROOT / 'meddocs_test.db'}")
os.environ.setdefault("UPLOADS_DIR",           str(_TEST_ROOT / "uploads"))
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("DISPATCH_BACKEND",      "inprocess")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DB_AUTO_CREATE",        "false")

from meddocs.db.session import AsyncSessionLocal, engine          # noqa: E402
from meddocs.llm.prompts import PromptStore                       # noqa: E402
from meddocs.llm.retry import RetryPolicy, exponential_backoff    # noqa: E402
from meddocs.llm.structured import StructuredDataExtractor         # noqa: E402
from meddocs.models.documents import Base, MedicalDocument        # noqa: E402
from meddocs.processing.extractor import TextExtractorOrchestrator  # noqa: E402
from meddocs.processing.ocr import BaseTextExtractor, PageText     # noqa: E402
from meddocs.schemas.documents import DocType, ExtractionStatus   # noqa: E402

TEST_USER_ID  = "user-aaaa-1111"
OTHER_USER_ID = "user-bbbb-2222"


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_tables() -> AsyncGenerator[None, None]:
    """Fresh schema for every test that touches the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(db_tables):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def make_document(db_tables, tmp_path):
    """
    Factory fixture: insert a MedicalDocument row (and optionally its file).

    Usage:
        doc = await make_document(status=ExtractionStatus.FAILED)
        doc = await make_document(content=None)            # no file on disk
        doc = await make_document(extracted={"labs": []})  # SUCCESS payload
    """
    async def _build(
        user_id:      str = TEST_USER_ID,
        status:       ExtractionStatus = ExtractionStatus.PENDING,
        mime_type:    str = "application/pdf",
        filename:     str = "report.pdf",
        content:      bytes | None = b"%PDF-1.4 test",
        doc_type:     DocType = DocType.BLOOD_TEST,
        extracted:    dict | None = None,
        summary_text: str | None = None,
        **columns,
    ) -> MedicalDocument:
        path = tmp_path / f"stored-{os.urandom(6).hex()}{Path(filename).suffix}"
        if content is not None:
            path.write_bytes(content)
        doc = MedicalDocument(
            user_id=user_id,
            filename=filename,
            storage_path=str(path),
            mime_type=mime_type,
            size_bytes=len(content or b""),
            doc_type=doc_type,
            extraction_status=status,
            extracted_json=json.dumps(extracted) if extracted is not None else None,
            summary_text=summary_text,
            **columns,
        )
        async with AsyncSessionLocal() as session:
            session.add(doc)
            await session.commit()
        return doc

    return _build


async def load_document(document_id: str) -> MedicalDocument | None:
    async with AsyncSessionLocal() as session:
        return await session.get(MedicalDocument, document_id)


# ─────────────────────────────────────────────────────────────────────────────
# Text extraction fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeStrategy(BaseTextExtractor):
    """Strategy that returns fixed text (or raises) and counts calls."""

    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        super().__init__()
        self.text  = text
        self.error = error
        self.calls = 0

    @property
    def strategy_name(self) -> str:
        return "fake"

    def _extract_sync(self, data: bytes) -> list[PageText]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [PageText(page_number=1, text=self.text, extraction_method=self.strategy_name)]


def text_pdf_bytes(*lines: str) -> bytes:
    """Real single-page PDF with a text layer, built with PyMuPDF."""
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    for i, line in enumerate(lines):
        page.insert_text((72, 72 + 18 * i), line, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Chat model fakes
# ─────────────────────────────────────────────────────────────────────────────

def chat_response(content: str | None):
    """Shape of openai ChatCompletion as read by StructuredDataExtractor."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


SAMPLE_PAYLOAD = {
    "docTypeGuess": "BLOOD_TEST",
    "docDateGuess": "2024-03-01",
    "labs": [
        {
            "testName": "Hemoglobin",
            "value": "13.5",
            "unit": "g/dL",
            "refRange": "12-16",
            "flag": "normal",
            "resultDate": "2024-03-01",
        }
    ],
    "medsMentioned": [],
    "diagnosesMentioned": [],
    "followupStatements": [],
    "shortSummary": "Routine blood count within normal limits.",
    "confidence": 0.92,
}


class FakeChatClient:
    """
    Stand-in for openai.AsyncOpenAI.

    `outcomes` is consumed one per call: a str/None becomes the message
    content, an Exception is raised. The last outcome repeats once the
    list is exhausted.
    """

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes) or [json.dumps(SAMPLE_PAYLOAD)]
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        index   = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return chat_response(outcome)


class StaticPrompts:
    """PromptStore stand-in for tests that have no database."""

    def __init__(self, text: str = "SYSTEM PROMPT") -> None:
        self.text = text
        self.requests: list[tuple] = []

    async def get_prompt(self, prompt_type, language, db=None) -> str:
        self.requests.append((prompt_type, language))
        return self.text


class RecordingSleep:
    """Injected into RetryPolicy so back-off is asserted without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_structured(recording_sleep):
    """Factory: StructuredDataExtractor with a fake client and no real sleeping."""
    def _build(client=None, prompts=None, **kwargs) -> StructuredDataExtractor:
        return StructuredDataExtractor(
            client=client,
            prompts=prompts or StaticPrompts(),
            retry_policy=RetryPolicy(
                max_attempts=3,
                backoff=exponential_backoff(5.0),
                sleep=recording_sleep,
            ),
            **kwargs,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# HTTP client over the full app
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def api(db_tables, tmp_path, chat_client, recording_sleep):
    """
    httpx AsyncClient bound to meddocs.main.app with app.state built for tests.

    Real: routing, validation, DocumentService, PyMuPDF text layer, Pillow
          decoding, DocumentPipeline, InProcessDispatcher, SQLite.
    Fake: scanned-PDF OCR (returns no text) and the chat model.

    Yields a namespace with `client`, `app`, `dispatcher`, `chat` and
    `sleep`; call `await api.settle()` to wait for background pipelines.
    """
    from meddocs.main import app
    from meddocs.services.dispatcher import InProcessDispatcher
    from meddocs.services.pipeline import DocumentPipeline
    from meddocs.storage.local import LocalFileStore

    prompt_store = PromptStore()
    structured = StructuredDataExtractor(
        client=chat_client,
        prompts=prompt_store,
        retry_policy=RetryPolicy(
            max_attempts=3,
            backoff=exponential_backoff(5.0),
            sleep=recording_sleep,
        ),
    )
    pipeline   = DocumentPipeline(TextExtractorOrchestrator(pdf_ocr=FakeStrategy("")), structured)
    dispatcher = InProcessDispatcher(pipeline)

    app.state.file_store   = LocalFileStore(tmp_path / "uploads")
    app.state.prompt_store = prompt_store
    app.state.pipeline     = pipeline
    app.state.dispatcher   = dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield SimpleNamespace(
            client=client,
            app=app,
            dispatcher=dispatcher,
            chat=chat_client,
            sleep=recording_sleep,
            uploads=tmp_path / "uploads",
            settle=lambda: dispatcher.drain(timeout=30),
        )
        await dispatcher.drain(timeout=30)
