"""Graph store health endpoints."""

from fastapi import APIRouter, Depends

from rfp_graphrag.api.deps import get_service
from rfp_graphrag.schemas import GraphHealthResponse
from rfp_graphrag.services.retrieval import KnowledgeRetrievalService

router = APIRouter()


@router.get(
    "/health",
    response_model=GraphHealthResponse,
    summary="Graph store health",
)
async def graph_health(
    service: KnowledgeRetrievalService = Depends(get_service),
) -> GraphHealthResponse:
    """Current health controller state."""
    return GraphHealthResponse(**service.health())


@router.post(
    "/probe",
    response_model=GraphHealthResponse,
    summary="Probe the graph store",
    description="Re-checks graph connectivity now, ignoring the cooldown.",
)
async def probe_graph(
    service: KnowledgeRetrievalService = Depends(get_service),
) -> GraphHealthResponse:
    """Force a health probe."""
    return GraphHealthResponse(**await service.probe(force=True))
