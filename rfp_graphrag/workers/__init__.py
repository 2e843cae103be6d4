"""
Workers module: Celery tasks for graph ingestion off the request path.

Architecture:
    FastAPI API  ──dispatch──>  Redis Queue  ──consume──>  Celery Worker
                                                              │
    Graph store  <──entities, mentions, relationships─────────┘

Start worker:
    celery -A rfp_graphrag.workers.celery_app worker -l info -P solo -Q graph_ingestion

The -P solo pool is required because tasks use asyncio.run() internally.
"""

from rfp_graphrag.workers.celery_app import celery_app

__all__ = [
    "celery_app",
]
