"""
Celery application configuration.

This module creates and configures the Celery app instance used by
the graph ingestion worker.

Usage:
    # Start worker:
    celery -A rfp_graphrag.workers.celery_app worker -l info -P solo -Q graph_ingestion

    # -P solo is required because we use asyncio inside tasks
"""

from celery import Celery

from rfp_graphrag.core.config import settings

# Create Celery app
celery_app = Celery(
    "rfp_graphrag",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_acks_late=True,  # Acknowledge after task completes (reliability)
    worker_prefetch_multiplier=1,  # One document at a time (LLM calls are slow)

    # Eager mode: execute tasks synchronously in-process (for testing)
    task_always_eager=settings.celery_task_always_eager,

    # Result settings
    result_expires=86400,  # 24 hours

    # Task routes
    task_routes={
        "rfp_graphrag.workers.tasks.*": {"queue": "graph_ingestion"},
    },

    # Default queue
    task_default_queue="graph_ingestion",
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["rfp_graphrag.workers"])
