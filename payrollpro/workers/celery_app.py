# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the knowledge-file ingestion pipeline in the background:
#   Upload → Extract text → Chunk → Embed → Store
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │(producer)│     │(broker)│    │  (consumer)  │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────┘                                    └── db 1
#
# The API returns a task id at once and clients poll
# GET /knowledge/uploads/{task_id}.
# =============================================================================

from celery import Celery

from payrollpro.config import settings

celery_app = Celery(
    "payrollpro.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only: pickle can execute arbitrary code when deserialised
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Acknowledge after completion so a crashed worker's task is re-queued
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Ingestion tasks are long; fetch one at a time
    worker_prefetch_multiplier=1,

    # Soft limit lets the task mark its upload FAILED before the hard kill
    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,

    include=["payrollpro.workers.tasks"],
)
