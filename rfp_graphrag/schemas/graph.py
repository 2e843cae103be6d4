"""Pydantic schemas for the workflow graph export."""

from pydantic import BaseModel, Field


class GraphNode(BaseModel):
    """Node for graph visualization (entity or document)."""

    id: str = Field(description="Node identifier")
    label: str = Field(description="Display label")
    type: str = Field(description="Entity type, or DOCUMENT")
    frequency: int = Field(description="Mention frequency")


class GraphEdge(BaseModel):
    """Edge for graph visualization."""

    source: str = Field(description="Source node id")
    target: str = Field(description="Target node id")
    type: str = Field(description="Relationship type, or MENTIONS")
    confidence: float = Field(ge=0.0, le=1.0, description="Edge confidence")


class GraphStats(BaseModel):
    """Counts of the exported graph."""

    entity_count: int = Field(description="Entities")
    document_count: int = Field(description="Documents")
    relationship_count: int = Field(description="Entity-entity edges")
    mention_count: int = Field(description="Document mention edges")
    entity_types: dict[str, int] = Field(description="Entities per type")


class WorkflowGraphResponse(BaseModel):
    """Workflow graph export."""

    workflow_id: str = Field(description="Exported workflow")
    nodes: list[GraphNode] = Field(description="Entity and document nodes")
    edges: list[GraphEdge] = Field(description="Relationship and mention edges")
    stats: GraphStats = Field(description="Graph statistics")
