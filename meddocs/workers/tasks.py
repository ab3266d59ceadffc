"""
Celery Tasks - Document Pipeline

Task: process_document
  Runs DocumentPipeline.run() for one document. The pipeline owns every
  status write and never raises, so the task never retries: a FAILED
  document is retried by the user through reprocess.

Task: fail_stale_documents
  Beat task - marks documents stuck in PROCESSING (worker crash, lost
  message) as FAILED so they can be reprocessed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from meddocs.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# One event loop per worker process, running on a daemon thread. Every task
# submits its coroutine there, so pooled DB connections always belong to a
# live loop. Created lazily, i.e. after the prefork worker has forked.
# ---------------------------------------------------------------------------

_worker_loop: asyncio.AbstractEventLoop | None = None
_worker_loop_lock = threading.Lock()


def get_worker_loop() -> asyncio.AbstractEventLoop:
    global _worker_loop
    with _worker_loop_lock:
        if _worker_loop is None or _worker_loop.is_closed():
            _worker_loop = asyncio.new_event_loop()
            threading.Thread(
                target=_worker_loop.run_forever,
                name="meddocs-worker-loop",
                daemon=True,
            ).start()
        return _worker_loop


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    return asyncio.run_coroutine_threadsafe(coro, get_worker_loop()).result()


# ---------------------------------------------------------------------------
# Pipeline task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="meddocs.workers.tasks.process_document",
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(*, document_id: str, language: str = "en") -> dict[str, Any]:
    return run_async(_process_document_async(document_id, language))


async def _process_document_async(document_id: str, language: str) -> dict[str, Any]:
    from meddocs.llm.structured import build_structured_extractor
    from meddocs.processing.extractor import TextExtractorOrchestrator
    from meddocs.services.pipeline import DocumentPipeline

    pipeline = DocumentPipeline(TextExtractorOrchestrator(), build_structured_extractor())
    status = await pipeline.run(document_id, language)
    return {
        "document_id": document_id,
        "status":      status.value if status else "skipped",
    }


# ---------------------------------------------------------------------------
# Stale-run sweeper - runs periodically via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="meddocs.workers.tasks.fail_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def fail_stale_documents() -> dict[str, int]:
    from meddocs.services.pipeline import fail_stale_documents as sweep

    return {"failed": run_async(sweep())}
