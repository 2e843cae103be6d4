"""Pydantic schemas for the hybrid search endpoint."""

from pydantic import BaseModel, Field

# =============================================================================
# Request Schemas
# =============================================================================


class SearchRequest(BaseModel):
    """Hybrid search request."""

    query: str = Field(description="Natural-language query", examples=["Lambda storage access"])
    limit: int | None = Field(default=None, ge=1, le=100, description="Results to return")
    vector_weight: float | None = Field(default=None, ge=0.0, description="Weight of vector similarity")
    graph_weight: float | None = Field(default=None, ge=0.0, description="Weight of graph proximity")
    top_k: int | None = Field(default=None, ge=1, le=200, description="Vector candidates to fetch")
    max_hops: int | None = Field(default=None, ge=0, le=4, description="Graph traversal depth")
    min_score: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Minimum combined score of graph-only results"
    )


# =============================================================================
# Response Schemas
# =============================================================================


class SearchResultItem(BaseModel):
    """One ranked chunk."""

    chunk_id: str = Field(description="Chunk identifier")
    document_id: str = Field(description="Owning document")
    text: str = Field(description="Chunk text")
    vector_score: float = Field(description="Raw vector similarity in [0, 1]")
    graph_score: float = Field(description="Raw graph score in [0, 1]")
    combined_score: float = Field(ge=0.0, le=1.0, description="Fused score")
    provenance: str = Field(description="vector, graph or hybrid")
    matched_entities: list[str] = Field(default_factory=list, description="Entities linking the chunk to the query")


class ProvenanceSummary(BaseModel):
    """Result counts per provenance."""

    vector: int = 0
    graph: int = 0
    hybrid: int = 0


class SearchResponseModel(BaseModel):
    """Hybrid search response."""

    query: str = Field(description="Query as received")
    workflow_id: str = Field(description="Searched workflow")
    results: list[SearchResultItem] = Field(description="Ranked results")
    provenance_summary: ProvenanceSummary = Field(description="Result counts per provenance")
    mode: str = Field(description="hybrid or vector_only")
    graph_status: str = Field(description="Graph store status at query time")
    timed_out: list[str] = Field(default_factory=list, description="Stages that timed out")
    failed_stages: list[str] = Field(default_factory=list, description="Stages that failed")
    partial: bool = Field(description="Whether a stage was skipped")
    explanation: str = Field(description="Human-readable summary of how results were produced")
