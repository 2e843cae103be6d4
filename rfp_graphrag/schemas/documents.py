"""Pydantic schemas for document ingestion endpoints."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Request Schemas
# =============================================================================


class ChunkInput(BaseModel):
    """A pre-computed chunk supplied by the caller."""

    id: str = Field(min_length=1, max_length=36, description="Chunk identifier")
    text: str = Field(min_length=1, description="Chunk text")
    chunk_index: int = Field(ge=0, description="Position within the document")
    start_offset: int = Field(default=0, ge=0, description="Start offset in the document text")
    end_offset: int = Field(default=0, ge=0, description="End offset in the document text")


class GraphDocumentRequest(BaseModel):
    """Request to extract a document into the workflow's knowledge graph."""

    document_id: str = Field(
        min_length=1, max_length=128, description="Document identifier", examples=["rfp-001"]
    )
    text: str = Field(description="Parsed document text")
    filename: str | None = Field(default=None, max_length=512, description="Original filename")
    chunks: list[ChunkInput] | None = Field(
        default=None, description="Chunks to extract window by window (optional)"
    )

    @field_validator("document_id")
    @classmethod
    def document_id_not_blank(cls, v: str) -> str:
        """Reject whitespace-only ids."""
        if not v.strip():
            raise ValueError("document_id must not be blank")
        return v


class DocumentIngestRequest(BaseModel):
    """Request to index a document for vector search and graph extraction."""

    document_id: str = Field(
        min_length=1, max_length=128, description="Document identifier", examples=["rfp-001"]
    )
    text: str = Field(description="Parsed document text")
    filename: str | None = Field(default=None, max_length=512, description="Original filename")
    mode: Literal["background", "queued"] = Field(
        default="background",
        description="Run graph ingestion in-process (background) or on the Celery queue",
    )

    @field_validator("document_id")
    @classmethod
    def document_id_not_blank(cls, v: str) -> str:
        """Reject whitespace-only ids."""
        if not v.strip():
            raise ValueError("document_id must not be blank")
        return v


# =============================================================================
# Response Schemas
# =============================================================================


class GraphIngestionResponse(BaseModel):
    """Outcome of graph ingestion for one document."""

    document_id: str = Field(description="Document identifier")
    status: str = Field(description="completed or deferred (graph unavailable)")
    entities_extracted: int = Field(description="Distinct entities merged into the graph")
    relationships: int = Field(default=0, description="Explicit relationships written")
    cooccurrence_edges: int = Field(default=0, description="Co-occurrence edges written")
    windows: int = Field(default=0, description="Extraction windows")
    failed_windows: int = Field(default=0, description="Windows skipped (timeout, LLM or parse error)")
    dropped_relationships: int = Field(
        default=0, description="Relationships whose endpoints were not extracted"
    )
    graph_status: str = Field(description="Graph store status after ingestion")


class DocumentIngestResponse(BaseModel):
    """Outcome of full ingestion."""

    document_id: str = Field(description="Document identifier")
    chunk_count: int = Field(description="Chunks indexed for vector search")
    graph: str = Field(description="How graph ingestion was dispatched (background or queued)")


class WorkflowDeletionResponse(BaseModel):
    """Rows and points removed by a workflow teardown."""

    workflow_id: str = Field(description="Deleted workflow")
    documents: int = Field(description="Documents removed")
    chunks: int = Field(description="Chunks removed")
    entities: int = Field(description="Entities removed")
    mentions: int = Field(description="Document mention edges removed")
    chunk_mentions: int = Field(description="Chunk mention edges removed")
    relationships: int = Field(description="Relationship edges removed")
    vectors: int = Field(description="Vector index points removed")
