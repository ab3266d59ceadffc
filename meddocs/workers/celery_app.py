"""
Celery Application Factory

Optional durable backend for pipeline runs (DISPATCH_BACKEND=celery).
Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional - document state lives in the database).

Queue topology:
  documents.extract  - pipeline runs, one per uploaded / reprocessed document
  documents.sweep    - periodic stale-run sweeper

Task arguments carry only the document id and language; file bytes are read
from the file store inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from meddocs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.extract",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.extract",
        durable=True,
    ),
    Queue(
        "documents.sweep",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.sweep",
        durable=True,
    ),
)

TASK_ROUTES = {
    "meddocs.workers.tasks.process_document":     {"queue": "documents.extract"},
    "meddocs.workers.tasks.fail_stale_documents": {"queue": "documents.sweep"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("meddocs")

    # The whole-run deadline is enforced inside the pipeline; the hard limit is a backstop
    hard_limit = int(settings.pipeline_timeout_seconds) + 60

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.extract",
        task_default_exchange="documents",
        task_default_routing_key="documents.extract",

        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        task_soft_time_limit=hard_limit - 30,
        task_time_limit=hard_limit,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "fail-stale-documents": {
                "task":     "meddocs.workers.tasks.fail_stale_documents",
                "schedule": settings.stale_sweep_interval_seconds,
                "options":  {"queue": "documents.sweep"},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["meddocs.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals - task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, (kwargs or {}).get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
