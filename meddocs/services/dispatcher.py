"""
Pipeline Dispatch - hand a document to the pipeline without blocking the request

Backends (settings.dispatch_backend):
  inprocess  InProcessDispatcher - named asyncio task per document, strong
             reference held until completion, supervised error boundary,
             drain() on shutdown. Default; no broker needed.
  celery     CeleryDispatcher - publishes process_document to the broker for
             deployments that need retry-after-crash guarantees.

Both expose the same coroutine:
    await dispatcher.submit(document_id, language)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from meddocs.core.config import settings
from meddocs.services.pipeline import STALE_MESSAGE, UNEXPECTED_ERROR_MESSAGE, DocumentPipeline

logger = logging.getLogger(__name__)


class PipelineDispatcher(Protocol):
    async def submit(self, document_id: str, language: str | None) -> None: ...

    async def drain(self, timeout: float | None = None) -> None: ...


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------

class InProcessDispatcher:
    """
    Runs pipelines on the API's own event loop.

    Every task is kept in `_tasks` until it finishes so the loop never
    garbage-collects a running pipeline, and every task runs inside
    `_supervise`, which turns an escaping exception into a FAILED status.
    A run cancelled by drain() at shutdown is also written FAILED so the
    document can be reprocessed after restart.
    """

    def __init__(self, pipeline: DocumentPipeline) -> None:
        self._pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def submit(self, document_id: str, language: str | None = "en") -> None:
        task = asyncio.create_task(
            self._supervise(document_id, language),
            name=f"pipeline:{document_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Pipeline dispatched | doc=%s backend=inprocess in_flight=%d", document_id, len(self._tasks))

    async def _supervise(self, document_id: str, language: str | None) -> None:
        try:
            await self._pipeline.run(document_id, language)
        except asyncio.CancelledError:
            logger.warning("Pipeline cancelled | doc=%s", document_id)
            try:
                await asyncio.shield(self._pipeline.mark_failed(document_id, STALE_MESSAGE))
            except Exception:
                logger.exception("Could not mark cancelled document failed | doc=%s", document_id)
            raise
        except Exception as exc:
            logger.exception("Pipeline escaped error boundary | doc=%s error=%s", document_id, exc)
            try:
                await self._pipeline.mark_failed(document_id, UNEXPECTED_ERROR_MESSAGE)
            except Exception:
                logger.exception("Could not mark document failed | doc=%s", document_id)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight pipelines; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("Draining pipelines | in_flight=%d timeout=%s", len(pending), timeout)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            logger.warning("Pipelines cancelled at shutdown | count=%d", len(not_done))


# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------

class CeleryDispatcher:
    """
    Sends process_document to the Celery broker.
    Import is deferred so the broker is not required at module load time.
    """

    async def submit(self, document_id: str, language: str | None = "en") -> None:
        from meddocs.workers.tasks import process_document

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(
                kwargs={"document_id": document_id, "language": language or "en"},
            ),
        )
        logger.info("Pipeline dispatched | doc=%s backend=celery", document_id)

    async def drain(self, timeout: float | None = None) -> None:
        return None


def build_dispatcher(pipeline: DocumentPipeline) -> PipelineDispatcher:
    backend = settings.dispatch_backend.lower()
    if backend == "celery":
        return CeleryDispatcher()
    if backend != "inprocess":
        logger.warning("Unknown dispatch backend %r, using inprocess", backend)
    return InProcessDispatcher(pipeline)
