"""Common Pydantic schemas used across API endpoints."""

from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Error Responses
# =============================================================================


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: str | None = Field(default=None, description="Field that caused the error")
    message: str = Field(description="Error message")
    code: str | None = Field(default=None, description="Error code")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error type")
    message: str = Field(description="Human-readable error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Additional error details"
    )


class ValidationErrorResponse(BaseModel):
    """Validation error response (422)."""

    detail: list[dict[str, Any]] = Field(description="Validation error details")


# =============================================================================
# Health
# =============================================================================


class GraphHealthResponse(BaseModel):
    """Graph store health as reported by the health controller."""

    graph_store_status: str = Field(
        description="GraphEnabled, GraphDegraded or VectorOnly",
        examples=["GraphEnabled"],
    )
    graph_enabled: bool = Field(description="Whether the graph is enabled by configuration")
    consecutive_failures: int = Field(description="Failing requests since the last success")
    failure_threshold: int = Field(description="Failures before switching to vector-only")
    cooldown_remaining_s: float = Field(description="Seconds until a probe may restore the graph")
    last_error: str | None = Field(default=None, description="Most recent graph error")
    vector_backend: str = Field(description="Configured vector index backend")
    graph_sync_backlog: int = Field(description="Documents waiting for graph ingestion")
    pending_graph_tasks: int = Field(description="Background graph ingestions in flight")


class HealthResponse(BaseModel):
    """Service health."""

    status: str = Field(description="Overall status", examples=["healthy"])
    version: str = Field(description="Service version")
    graph_store_status: str = Field(description="Graph store status")
