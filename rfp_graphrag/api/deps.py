"""FastAPI dependencies."""

from fastapi import HTTPException, Path, Request, status

from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.services.retrieval import KnowledgeRetrievalService


def get_service(request: Request) -> KnowledgeRetrievalService:
    """Retrieval service created by the application lifespan."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Retrieval service is not initialized",
        )
    return service


def get_scope(
    workflow_id: str = Path(description="Workflow identifier", examples=["wf-2024-001"]),
) -> WorkflowScope:
    """Validate the workflow id of the path into a scope."""
    try:
        return WorkflowScope(workflow_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
