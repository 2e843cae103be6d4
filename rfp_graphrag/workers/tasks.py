"""
Celery tasks for graph ingestion.

Each task bridges Celery's synchronous execution model with the async
retrieval engine using asyncio.run(). A task builds its own retrieval
context, so worker processes share nothing with the API process but the
graph store itself; ingestion is idempotent, so a redelivered task is safe.

Usage:
    # From the service (dispatch to queue):
    from rfp_graphrag.workers.tasks import process_for_graph_task
    process_for_graph_task.delay(workflow_id="wf-1", document_id="doc-1", text=text)

    # Start worker:
    celery -A rfp_graphrag.workers.celery_app worker -l info -P solo -Q graph_ingestion
"""

import asyncio

from rfp_graphrag.core.logging import bind_context, clear_context, get_logger
from rfp_graphrag.workers.celery_app import celery_app

logger = get_logger(__name__)


async def _run_graph_ingestion(
    workflow_id: str,
    document_id: str,
    text: str,
    filename: str | None,
) -> dict:
    """
    Async implementation of graph ingestion.

    The service rebuilds chunks with the same settings the API used to
    index the document, so chunk ids match the vector index.
    """
    from rfp_graphrag.core.config import get_settings
    from rfp_graphrag.core.scope import WorkflowScope
    from rfp_graphrag.services.context import build_context
    from rfp_graphrag.services.retrieval import KnowledgeRetrievalService

    scope = WorkflowScope(workflow_id)
    ctx = build_context(get_settings())
    await ctx.connect(start_probe=False)
    try:
        service = KnowledgeRetrievalService(ctx)
        return await service.process_for_graph(scope, document_id, text, filename=filename)
    finally:
        await ctx.disconnect()


@celery_app.task(
    name="rfp_graphrag.workers.tasks.process_for_graph_task",
    bind=True,
    max_retries=3,
    acks_late=True,
)
def process_for_graph_task(
    self,
    workflow_id: str,
    document_id: str,
    text: str,
    filename: str | None = None,
) -> dict:
    """
    Celery task: extract one document into the knowledge graph.

    A document deferred because the graph store is unavailable is retried
    with backoff, since the worker's in-memory backlog does not outlive
    the task.

    Args:
        workflow_id: Owning workflow
        document_id: Document identifier
        text: Parsed document text
        filename: Original filename

    Returns:
        dict with extraction results
    """
    bind_context(task_id=self.request.id, workflow_id=workflow_id, document_id=document_id)
    logger.info("Celery worker: starting graph ingestion", attempt=self.request.retries)

    try:
        # Bridge async code into Celery's sync execution
        result = asyncio.run(_run_graph_ingestion(workflow_id, document_id, text, filename))
    finally:
        clear_context()

    if result.get("status") == "deferred":
        logger.warning(
            "Celery worker: graph unavailable, retrying",
            workflow_id=workflow_id,
            document_id=document_id,
        )
        raise self.retry(countdown=30 * (2 ** self.request.retries))

    logger.info(
        "Celery worker: graph ingestion complete",
        workflow_id=workflow_id,
        document_id=document_id,
        result=result,
    )

    return result
