"""
Celery Application Factory

Drives the two ingestion stages as independent, short tasks.
Broker: Redis by default (CELERY_BROKER_URL), RabbitMQ works unchanged.
Result backend: Redis (optional; progress is tracked in the database).

Queue topology:
  documents.extract  — Stage 1: download, extract, chunk
  documents.embed    — Stage 2: one bounded embedding call per task
  documents.sweep    — beat task resuming documents left in `extracted`

Task payloads carry document ids and storage keys only, never file bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from doc_ingest.core.config import settings
from doc_ingest.core.logging import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

EXTRACT_QUEUE = "documents.extract"
EMBED_QUEUE   = "documents.embed"
SWEEP_QUEUE   = "documents.sweep"

TASK_QUEUES = (
    Queue(EXTRACT_QUEUE, exchange=DOCUMENTS_EXCHANGE, routing_key=EXTRACT_QUEUE, durable=True),
    Queue(EMBED_QUEUE,   exchange=DOCUMENTS_EXCHANGE, routing_key=EMBED_QUEUE,   durable=True),
    Queue(SWEEP_QUEUE,   exchange=DOCUMENTS_EXCHANGE, routing_key=SWEEP_QUEUE,   durable=True),
)

TASK_ROUTES = {
    "doc_ingest.workers.tasks.extract_document":           {"queue": EXTRACT_QUEUE},
    "doc_ingest.workers.tasks.embed_document":             {"queue": EMBED_QUEUE},
    "doc_ingest.workers.tasks.resume_extracted_documents": {"queue": SWEEP_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("doc_ingest")

    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=EXTRACT_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=EXTRACT_QUEUE,

        # ack only after the task finishes; a crashed worker's task is redelivered
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # Each stage call must finish within ~60 s
        task_soft_time_limit=55,
        task_time_limit=60,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        beat_schedule={
            "resume-extracted-documents-every-60s": {
                "task":     "doc_ingest.workers.tasks.resume_extracted_documents",
                "schedule": 60,
                "options":  {"queue": SWEEP_QUEUE},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["doc_ingest.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger=None, **_):
    configure_logging(settings)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )
