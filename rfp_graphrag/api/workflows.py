"""Workflow-scoped ingestion, search, export and teardown endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from rfp_graphrag.api.deps import get_scope, get_service
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.schemas import (
    DocumentIngestRequest,
    DocumentIngestResponse,
    GraphDocumentRequest,
    GraphIngestionResponse,
    SearchRequest,
    SearchResponseModel,
    WorkflowDeletionResponse,
    WorkflowGraphResponse,
)
from rfp_graphrag.services.graph_store import ChunkRecord, GraphStoreError
from rfp_graphrag.services.hybrid_search import SearchOptions
from rfp_graphrag.services.retrieval import IngestDocument, KnowledgeRetrievalService

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Helper Functions
# =============================================================================


def graph_unavailable(e: GraphStoreError) -> HTTPException:
    """503 for operations that need the graph store."""
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Graph store unavailable: {e}",
    )


def unprocessable(e: ValueError) -> HTTPException:
    """422 for input the service rejected."""
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=str(e),
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/{workflow_id}/graph/documents",
    response_model=GraphIngestionResponse,
    summary="Extract a document into the knowledge graph",
    description=(
        "Runs LLM extraction over the document and merges entities, mentions and "
        "relationships into the workflow graph. Idempotent: re-processing the same "
        "document does not duplicate entities or edges. When the graph store is "
        "unavailable the document is deferred and replayed on recovery."
    ),
)
async def process_for_graph(
    request: GraphDocumentRequest,
    scope: WorkflowScope = Depends(get_scope),
    service: KnowledgeRetrievalService = Depends(get_service),
) -> GraphIngestionResponse:
    """Extract one document into the graph."""
    chunks = None
    if request.chunks:
        chunks = [
            ChunkRecord(
                id=chunk.id,
                document_id=request.document_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
            )
            for chunk in request.chunks
        ]

    try:
        result = await service.process_for_graph(
            scope,
            request.document_id,
            request.text,
            filename=request.filename,
            chunks=chunks,
        )
    except ValueError as e:
        raise unprocessable(e) from e

    return GraphIngestionResponse(**result)


@router.post(
    "/{workflow_id}/documents",
    response_model=DocumentIngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a document",
    description=(
        "Chunks and embeds the document into the vector index, then schedules graph "
        "extraction in the background (or on the Celery queue with mode=queued)."
    ),
)
async def process_document(
    request: DocumentIngestRequest,
    scope: WorkflowScope = Depends(get_scope),
    service: KnowledgeRetrievalService = Depends(get_service),
) -> DocumentIngestResponse:
    """Index a document and dispatch graph ingestion."""
    document = IngestDocument(
        document_id=request.document_id,
        text=request.text,
        filename=request.filename,
    )
    try:
        result = await service.process_document(scope, document, mode=request.mode)
    except ValueError as e:
        raise unprocessable(e) from e
    return DocumentIngestResponse(**result)


@router.post(
    "/{workflow_id}/search",
    response_model=SearchResponseModel,
    summary="Hybrid search",
    description=(
        "Fuses vector similarity with knowledge-graph traversal. When the graph "
        "store is unavailable the response is vector-ranked and tagged vector_only."
    ),
)
async def hybrid_search(
    request: SearchRequest,
    scope: WorkflowScope = Depends(get_scope),
    service: KnowledgeRetrievalService = Depends(get_service),
) -> SearchResponseModel:
    """Search one workflow."""
    options = SearchOptions(
        limit=request.limit,
        vector_weight=request.vector_weight,
        graph_weight=request.graph_weight,
        top_k=request.top_k,
        max_hops=request.max_hops,
        min_score=request.min_score,
    )
    try:
        response = await service.hybrid_search(scope, request.query, options)
    except ValueError as e:
        raise unprocessable(e) from e
    return SearchResponseModel(**response.to_dict())


@router.get(
    "/{workflow_id}/graph",
    response_model=WorkflowGraphResponse,
    summary="Export the workflow graph",
    description="Entities, documents, relationships and mention edges for visualization.",
)
async def get_workflow_graph(
    scope: WorkflowScope = Depends(get_scope),
    service: KnowledgeRetrievalService = Depends(get_service),
) -> WorkflowGraphResponse:
    """Export nodes and edges of one workflow."""
    try:
        graph = await service.get_workflow_graph(scope)
    except GraphStoreError as e:
        raise graph_unavailable(e) from e
    return WorkflowGraphResponse(workflow_id=scope.workflow_id, **graph.to_dict())


@router.delete(
    "/{workflow_id}",
    response_model=WorkflowDeletionResponse,
    summary="Delete workflow data",
    description="Removes the workflow's documents, chunks, entities and edges, and its vector points.",
)
async def delete_workflow_data(
    scope: WorkflowScope = Depends(get_scope),
    service: KnowledgeRetrievalService = Depends(get_service),
) -> WorkflowDeletionResponse:
    """Tear down one workflow."""
    try:
        result = await service.delete_workflow_data(scope)
    except GraphStoreError as e:
        raise graph_unavailable(e) from e
    logger.info("Workflow deleted via API", workflow_id=scope.workflow_id)
    return WorkflowDeletionResponse(workflow_id=scope.workflow_id, **result)
