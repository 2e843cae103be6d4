"""
Knowledge retrieval service.

Facade over the retrieval context used by the API, the worker and the
scripts:
- process_for_graph: extract one document into the knowledge graph
- process_document: chunk + embed into the vector index now, graph later
- hybrid_search: fused vector/graph search
- get_workflow_graph, health, delete_workflow_data

Graph ingestion that cannot run because the graph is unavailable is kept
in a bounded backlog and replayed when the health controller reports the
graph store back.
"""

import asyncio
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Literal

from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.services.chunking import chunk_id_for, chunk_text
from rfp_graphrag.services.context import RetrievalContext
from rfp_graphrag.services.extraction import ExtractionSummary, KnowledgeExtractor
from rfp_graphrag.services.fallback import GraphHealthController
from rfp_graphrag.services.graph_store import (
    ChunkRecord,
    GraphStoreError,
    WorkflowGraph,
)
from rfp_graphrag.services.hybrid_search import (
    HybridSearchCoordinator,
    SearchOptions,
    SearchResponse,
)
from rfp_graphrag.services.vector_index import VectorRecord

logger = get_logger(__name__)

IngestionMode = Literal["background", "queued"]


@dataclass(frozen=True)
class IngestDocument:
    """A parsed document handed over for ingestion."""

    document_id: str
    text: str
    filename: str | None = None


@dataclass(frozen=True)
class _PendingGraphSync:
    scope: WorkflowScope
    document_id: str
    text: str
    filename: str | None
    chunks: tuple[ChunkRecord, ...] | None


def _celery_available() -> bool:
    """Check if the Celery broker is reachable."""
    from rfp_graphrag.workers.celery_app import celery_app

    if celery_app.conf.task_always_eager:
        return False
    try:
        conn = celery_app.connection()
        conn.ensure_connection(max_retries=1, timeout=2)
        conn.close()
        return True
    except Exception:
        return False


class KnowledgeRetrievalService:
    """
    External interface of the retrieval engine.

    Usage:
        ctx = build_context(settings)
        await ctx.connect()
        service = KnowledgeRetrievalService(ctx)
        await service.process_for_graph(scope, "doc-1", text)
        response = await service.hybrid_search(scope, "cloud storage")
        await service.drain()
        await ctx.disconnect()
    """

    def __init__(
        self,
        context: RetrievalContext,
        extractor: KnowledgeExtractor | None = None,
        coordinator: HybridSearchCoordinator | None = None,
    ):
        self.context = context
        cfg = context.settings
        self.extractor = extractor or KnowledgeExtractor.from_settings(
            context.graph_store, context.llm, cfg
        )
        self.coordinator = coordinator or HybridSearchCoordinator.from_settings(
            context.graph_store,
            context.vector_index,
            context.embedder,
            context.controller,
            cfg,
        )
        self.backlog_size = cfg.graph_sync_backlog_size
        self._backlog: OrderedDict[tuple[str, str], _PendingGraphSync] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        context.controller.add_recovery_hook(self.replay_backlog)

    @property
    def controller(self) -> GraphHealthController:
        """Graph health controller of the context."""
        return self.context.controller

    @property
    def backlog_length(self) -> int:
        """Documents waiting for graph ingestion."""
        return len(self._backlog)

    @property
    def pending_tasks(self) -> int:
        """Background graph ingestions still running."""
        return len(self._tasks)

    # =========================================================================
    # Graph ingestion
    # =========================================================================

    async def process_for_graph(
        self,
        scope: WorkflowScope,
        document_id: str,
        text: str,
        filename: str | None = None,
        chunks: Sequence[ChunkRecord] | None = None,
    ) -> dict[str, Any]:
        """
        Extract entities and relationships of one document into the graph.

        Without `chunks` the document is split by the same chunker as
        `process_document`, so graph chunk ids match vector chunk ids.

        When the graph store is unavailable the document is queued in the
        backlog and `status` is "deferred".

        Returns:
            dict with entities_extracted, status and extraction counts
        """
        if not document_id or not document_id.strip():
            raise ValueError("document_id must not be empty")

        if chunks is None:
            chunks = self.build_chunks(scope, IngestDocument(document_id, text, filename))

        with self.controller.request() as graph:
            if not graph.allowed:
                self._defer(scope, document_id, text, filename, chunks)
                return {
                    "document_id": document_id,
                    "entities_extracted": 0,
                    "status": "deferred",
                    "graph_status": self.controller.health().value,
                }
            try:
                summary: ExtractionSummary = await self.extractor.extract(
                    document_id, text, scope, chunks=chunks, filename=filename
                )
                graph.mark_success()
            except GraphStoreError as e:
                graph.mark_failure(str(e) or type(e).__name__)
                logger.warning(
                    "Graph ingestion failed, deferring document",
                    workflow_id=scope.workflow_id,
                    document_id=document_id,
                    error=str(e),
                )
                self._defer(scope, document_id, text, filename, chunks)
                return {
                    "document_id": document_id,
                    "entities_extracted": 0,
                    "status": "deferred",
                    "graph_status": self.controller.health().value,
                }

        result = summary.to_dict()
        result["status"] = "completed"
        result["graph_status"] = self.controller.health().value
        return result

    def _defer(
        self,
        scope: WorkflowScope,
        document_id: str,
        text: str,
        filename: str | None,
        chunks: Sequence[ChunkRecord] | None,
    ) -> None:
        key = (scope.workflow_id, document_id)
        self._backlog.pop(key, None)
        self._backlog[key] = _PendingGraphSync(
            scope=scope,
            document_id=document_id,
            text=text,
            filename=filename,
            chunks=tuple(chunks) if chunks else None,
        )
        while len(self._backlog) > self.backlog_size:
            (workflow_id, dropped), _ = self._backlog.popitem(last=False)
            logger.warning(
                "Graph sync backlog full, dropping oldest document",
                workflow_id=workflow_id,
                document_id=dropped,
                backlog_size=self.backlog_size,
            )

    async def replay_backlog(self) -> int:
        """Re-run graph ingestion for deferred documents; returns how many succeeded."""
        replayed = 0
        while self._backlog and self.controller.allows_graph():
            key, pending = self._backlog.popitem(last=False)
            result = await self.process_for_graph(
                pending.scope,
                pending.document_id,
                pending.text,
                filename=pending.filename,
                chunks=pending.chunks,
            )
            if result["status"] != "completed":
                break
            replayed += 1
        if replayed:
            logger.info("Replayed deferred graph ingestion", documents=replayed, remaining=len(self._backlog))
        return replayed

    # =========================================================================
    # Full ingestion
    # =========================================================================

    def build_chunks(self, scope: WorkflowScope, document: IngestDocument) -> list[ChunkRecord]:
        """Split a document into the chunks shared by both stores."""
        cfg = self.context.settings
        return [
            ChunkRecord(
                id=chunk_id_for(scope.workflow_id, document.document_id, piece.chunk_index),
                document_id=document.document_id,
                chunk_index=piece.chunk_index,
                text=piece.text,
                start_offset=piece.start_offset,
                end_offset=piece.end_offset,
                token_count=piece.token_count,
            )
            for piece in chunk_text(document.text, cfg.chunk_size, cfg.chunk_overlap)
        ]

    async def process_document(
        self,
        scope: WorkflowScope,
        document: IngestDocument,
        mode: IngestionMode = "background",
    ) -> dict[str, Any]:
        """
        Index a document for vector search, then hand it to graph ingestion.

        Vector indexing completes before returning. Graph ingestion is
        fire-and-forget: an asyncio task of this service ("background") or
        a Celery task ("queued", falling back to background when the broker
        is unreachable).

        Returns:
            dict with document_id, chunk_count and the graph dispatch used
        """
        if not document.document_id or not document.document_id.strip():
            raise ValueError("document_id must not be empty")

        chunks = self.build_chunks(scope, document)
        if chunks:
            embeddings = await self.context.embedder.embed([c.text for c in chunks])
            await self.context.vector_index.delete_document(scope, document.document_id)
            await self.context.vector_index.upsert(
                scope,
                [
                    VectorRecord(
                        chunk_id=chunk.id,
                        document_id=chunk.document_id,
                        text=chunk.text,
                        embedding=embedding,
                        chunk_index=chunk.chunk_index,
                    )
                    for chunk, embedding in zip(chunks, embeddings)
                ],
            )

        logger.info(
            "Document indexed",
            workflow_id=scope.workflow_id,
            document_id=document.document_id,
            chunks=len(chunks),
        )

        graph_dispatch = self._dispatch_graph(scope, document, chunks, mode)
        return {
            "document_id": document.document_id,
            "chunk_count": len(chunks),
            "graph": graph_dispatch,
        }

    def _dispatch_graph(
        self,
        scope: WorkflowScope,
        document: IngestDocument,
        chunks: list[ChunkRecord],
        mode: IngestionMode,
    ) -> str:
        if mode == "queued" and _celery_available():
            try:
                from rfp_graphrag.workers.tasks import process_for_graph_task

                process_for_graph_task.delay(
                    workflow_id=scope.workflow_id,
                    document_id=document.document_id,
                    text=document.text,
                    filename=document.filename,
                )
                return "queued"
            except Exception as e:
                logger.warning("Failed to dispatch to Celery", error=str(e))

        task = asyncio.create_task(
            self._background_graph(scope, document, chunks),
            name=f"graph-ingest-{document.document_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return "background"

    async def _background_graph(
        self,
        scope: WorkflowScope,
        document: IngestDocument,
        chunks: list[ChunkRecord],
    ) -> None:
        try:
            await self.process_for_graph(
                scope,
                document.document_id,
                document.text,
                filename=document.filename,
                chunks=chunks,
            )
        except Exception:
            logger.exception(
                "Background graph ingestion failed",
                workflow_id=scope.workflow_id,
                document_id=document.document_id,
            )

    async def drain(self) -> None:
        """Wait for background graph ingestion tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Search, export, health, teardown
    # =========================================================================

    async def hybrid_search(
        self,
        scope: WorkflowScope,
        query_text: str,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        """Fused vector/graph search within one workflow."""
        return await self.coordinator.search(scope, query_text, options)

    async def get_workflow_graph(self, scope: WorkflowScope) -> WorkflowGraph:
        """Export the workflow's entities, documents and edges."""
        with self.controller.request() as graph:
            try:
                exported = await self.context.graph_store.get_workflow_graph(scope)
                graph.mark_success()
            except GraphStoreError as e:
                graph.mark_failure(str(e) or type(e).__name__)
                raise
        return exported

    def health(self) -> dict[str, Any]:
        """Graph status plus backlog details."""
        snapshot = self.controller.snapshot()
        snapshot["vector_backend"] = self.context.settings.vector_backend
        snapshot["graph_sync_backlog"] = len(self._backlog)
        snapshot["pending_graph_tasks"] = len(self._tasks)
        return snapshot

    async def probe(self, force: bool = True) -> dict[str, Any]:
        """Re-check the graph store now and report health."""
        await self.controller.probe(force=force)
        return self.health()

    async def delete_workflow_data(self, scope: WorkflowScope) -> dict[str, int]:
        """Remove a workflow from both stores and from the backlog."""
        for key in [k for k in self._backlog if k[0] == scope.workflow_id]:
            del self._backlog[key]

        vectors = await self.context.vector_index.delete_workflow(scope)
        deletion = await self.context.graph_store.delete_workflow_data(scope)

        result = deletion.to_dict()
        result["vectors"] = vectors
        logger.info("Workflow data deleted", workflow_id=scope.workflow_id, **result)
        return result
