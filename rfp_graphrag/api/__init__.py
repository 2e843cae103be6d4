"""API routers for the RFP GraphRAG retrieval service."""

from rfp_graphrag.api.graph import router as graph_router
from rfp_graphrag.api.workflows import router as workflows_router

__all__ = [
    "graph_router",
    "workflows_router",
]
