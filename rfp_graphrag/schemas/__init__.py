"""Pydantic schemas for API request/response models."""

from rfp_graphrag.schemas.common import (
    ErrorDetail,
    ErrorResponse,
    GraphHealthResponse,
    HealthResponse,
    ValidationErrorResponse,
)
from rfp_graphrag.schemas.documents import (
    ChunkInput,
    DocumentIngestRequest,
    DocumentIngestResponse,
    GraphDocumentRequest,
    GraphIngestionResponse,
    WorkflowDeletionResponse,
)
from rfp_graphrag.schemas.graph import (
    GraphEdge,
    GraphNode,
    GraphStats,
    WorkflowGraphResponse,
)
from rfp_graphrag.schemas.search import (
    ProvenanceSummary,
    SearchRequest,
    SearchResponseModel,
    SearchResultItem,
)

__all__ = [
    # Common
    "ErrorDetail",
    "ErrorResponse",
    "GraphHealthResponse",
    "HealthResponse",
    "ValidationErrorResponse",
    # Documents
    "ChunkInput",
    "DocumentIngestRequest",
    "DocumentIngestResponse",
    "GraphDocumentRequest",
    "GraphIngestionResponse",
    "WorkflowDeletionResponse",
    # Graph
    "GraphEdge",
    "GraphNode",
    "GraphStats",
    "WorkflowGraphResponse",
    # Search
    "ProvenanceSummary",
    "SearchRequest",
    "SearchResponseModel",
    "SearchResultItem",
]
