"""
Hybrid search coordinator.

Fuses vector similarity with knowledge-graph traversal:
1. Embed the query and fetch the top_k most similar chunks
2. Seed traversal from entity names matching the query (weight 1.0) and
   from entities of the vector hits' documents (document_seed_weight)
3. Traverse the graph (when the health controller allows it) and resolve
   reached entities to chunks through chunk mentions
4. Min-max normalize both score columns, fuse with the configured weights
5. Rank deterministically and tag provenance

Every external call is bounded by a timeout. A stage that times out or
fails yields partial results instead of an error.
"""

import asyncio
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.logging import bound_context, get_logger
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.db.enums import GraphStatus, Provenance, SearchMode
from rfp_graphrag.services.embeddings import BaseEmbedder, EmbeddingError
from rfp_graphrag.services.fallback import GraphHealthController
from rfp_graphrag.services.graph_store import (
    ChunkRecord,
    GraphStoreError,
    SqlGraphStore,
    TraversalHit,
)
from rfp_graphrag.services.vector_index import BaseVectorIndex, VectorHit, VectorIndexError

logger = get_logger(__name__)

T = TypeVar("T")


class SearchTimeout(Exception):
    """A search stage exceeded its timeout."""

    def __init__(self, stage: str, timeout_s: float):
        super().__init__(f"{stage} stage timed out after {timeout_s}s")
        self.stage = stage
        self.timeout_s = timeout_s


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SearchOptions:
    """Per-query knobs; unset values fall back to the coordinator defaults."""

    limit: int | None = None
    vector_weight: float | None = None
    graph_weight: float | None = None
    top_k: int | None = None
    max_hops: int | None = None
    min_score: float | None = None


@dataclass
class SearchResult:
    """One ranked chunk."""

    chunk_id: str
    document_id: str
    text: str
    vector_score: float = 0.0
    graph_score: float = 0.0
    combined_score: float = 0.0
    provenance: Provenance = Provenance.VECTOR
    matched_entities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "text": self.text,
            "vector_score": self.vector_score,
            "graph_score": self.graph_score,
            "combined_score": self.combined_score,
            "provenance": self.provenance.value,
            "matched_entities": list(self.matched_entities),
        }


@dataclass
class SearchResponse:
    """Ranked results plus how they were produced."""

    query: str
    workflow_id: str
    results: list[SearchResult] = field(default_factory=list)
    mode: SearchMode = SearchMode.HYBRID
    graph_status: GraphStatus = GraphStatus.VECTOR_ONLY
    timed_out: list[str] = field(default_factory=list)
    failed_stages: list[str] = field(default_factory=list)
    partial: bool = False
    explanation: str = ""

    @property
    def provenance_summary(self) -> dict[str, int]:
        """Result counts per provenance."""
        summary = {p.value: 0 for p in Provenance}
        for result in self.results:
            summary[result.provenance.value] += 1
        return summary

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "query": self.query,
            "workflow_id": self.workflow_id,
            "results": [r.to_dict() for r in self.results],
            "provenance_summary": self.provenance_summary,
            "mode": self.mode.value,
            "graph_status": self.graph_status.value,
            "timed_out": list(self.timed_out),
            "failed_stages": list(self.failed_stages),
            "partial": self.partial,
            "explanation": self.explanation,
        }


@dataclass
class _Candidate:
    chunk_id: str
    document_id: str
    text: str
    vector_score: float = 0.0
    graph_score: float = 0.0
    has_vector_hit: bool = False
    matched_entities: dict[str, float] = field(default_factory=dict)


@dataclass
class _GraphScores:
    chunk_scores: dict[str, float] = field(default_factory=dict)
    chunk_entities: dict[str, dict[str, float]] = field(default_factory=dict)
    entity_names: dict[str, str] = field(default_factory=dict)
    chunks: dict[str, ChunkRecord] = field(default_factory=dict)
    keyword_seeds: int = 0
    document_seeds: int = 0
    entities_reached: int = 0


# =============================================================================
# Scoring helpers
# =============================================================================


def min_max_normalize(values: Sequence[float]) -> list[float]:
    """
    Scale values into [0, 1].

    An empty or constant column normalizes to all zeros, so it carries no
    ranking signal into the fused score.
    """
    if not values:
        return []
    low = min(values)
    high = max(values)
    if high - low <= 0.0:
        return [0.0] * len(values)
    span = high - low
    return [(v - low) / span for v in values]


def normalize_weights(vector_weight: float, graph_weight: float) -> tuple[float, float]:
    """Validate non-negative weights and rescale them to sum to 1."""
    if vector_weight < 0 or graph_weight < 0:
        raise ValueError("Search weights must be non-negative")
    total = vector_weight + graph_weight
    if total <= 0:
        raise ValueError("At least one search weight must be positive")
    return vector_weight / total, graph_weight / total


def _provenance(candidate: _Candidate) -> Provenance:
    if candidate.vector_score > 0 and candidate.graph_score > 0:
        return Provenance.HYBRID
    if candidate.graph_score > 0 or not candidate.has_vector_hit:
        return Provenance.GRAPH
    return Provenance.VECTOR


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


# =============================================================================
# Coordinator
# =============================================================================


class HybridSearchCoordinator:
    """
    Vector + graph search for one workflow at a time.

    Usage:
        coordinator = HybridSearchCoordinator(store, index, embedder, controller)
        response = await coordinator.search(scope, "Lambda storage access")
    """

    def __init__(
        self,
        graph_store: SqlGraphStore,
        vector_index: BaseVectorIndex,
        embedder: BaseEmbedder,
        controller: GraphHealthController,
        *,
        vector_weight: float = 0.6,
        graph_weight: float = 0.4,
        top_k: int = 20,
        limit: int = 10,
        max_hops: int = 2,
        hop_decay: float = 0.5,
        document_seed_weight: float = 0.5,
        min_score: float = 0.05,
        embedding_timeout_s: float = 10.0,
        vector_timeout_s: float = 5.0,
        graph_timeout_s: float = 5.0,
    ):
        normalize_weights(vector_weight, graph_weight)
        if not 0.0 <= document_seed_weight <= 1.0:
            raise ValueError("document_seed_weight must be within [0, 1]")
        self.graph_store = graph_store
        self.vector_index = vector_index
        self.embedder = embedder
        self.controller = controller
        self.vector_weight = vector_weight
        self.graph_weight = graph_weight
        self.top_k = top_k
        self.limit = limit
        self.max_hops = max_hops
        self.hop_decay = hop_decay
        self.document_seed_weight = document_seed_weight
        self.min_score = min_score
        self.embedding_timeout_s = embedding_timeout_s
        self.vector_timeout_s = vector_timeout_s
        self.graph_timeout_s = graph_timeout_s

    @classmethod
    def from_settings(
        cls,
        graph_store: SqlGraphStore,
        vector_index: BaseVectorIndex,
        embedder: BaseEmbedder,
        controller: GraphHealthController,
        app_settings: Settings,
    ) -> "HybridSearchCoordinator":
        """Build a coordinator from application settings."""
        return cls(
            graph_store,
            vector_index,
            embedder,
            controller,
            vector_weight=app_settings.search_vector_weight,
            graph_weight=app_settings.search_graph_weight,
            top_k=app_settings.search_top_k,
            limit=app_settings.search_default_limit,
            max_hops=app_settings.graph_max_hops,
            hop_decay=app_settings.graph_hop_decay,
            document_seed_weight=app_settings.document_seed_weight,
            min_score=app_settings.search_min_combined_score,
            embedding_timeout_s=app_settings.embedding_timeout_s,
            vector_timeout_s=app_settings.vector_search_timeout_s,
            graph_timeout_s=app_settings.graph_timeout_s,
        )

    @staticmethod
    async def _bounded(awaitable: Awaitable[T], timeout_s: float, stage: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise SearchTimeout(stage, timeout_s) from e

    def _resolve_options(self, options: SearchOptions | None) -> SearchOptions:
        opts = options or SearchOptions()
        resolved = replace(
            opts,
            limit=self.limit if opts.limit is None else opts.limit,
            vector_weight=self.vector_weight if opts.vector_weight is None else opts.vector_weight,
            graph_weight=self.graph_weight if opts.graph_weight is None else opts.graph_weight,
            top_k=self.top_k if opts.top_k is None else opts.top_k,
            max_hops=self.max_hops if opts.max_hops is None else opts.max_hops,
            min_score=self.min_score if opts.min_score is None else opts.min_score,
        )
        if resolved.limit < 1:
            raise ValueError("limit must be >= 1")
        if resolved.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if resolved.max_hops < 0:
            raise ValueError("max_hops must be >= 0")
        if not 0.0 <= resolved.min_score <= 1.0:
            raise ValueError("min_score must be within [0, 1]")
        return resolved

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self,
        scope: WorkflowScope,
        query_text: str,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        """
        Run a hybrid search within one workflow.

        Args:
            scope: Workflow to search
            query_text: Natural-language query
            options: Per-query overrides

        Returns:
            SearchResponse with ranked results and degradation metadata

        Raises:
            ValueError: Invalid options
            WorkflowIsolationViolation: A store returned foreign data
        """
        opts = self._resolve_options(options)
        w_vector, w_graph = normalize_weights(opts.vector_weight, opts.graph_weight)
        response = SearchResponse(query=query_text or "", workflow_id=scope.workflow_id)

        if not query_text or not query_text.strip():
            response.graph_status = self.controller.health()
            response.explanation = "Empty query: nothing to search."
            return response

        with bound_context(workflow_id=scope.workflow_id):
            vector_hits = await self._vector_stage(scope, query_text, opts.top_k, response)

            graph: _GraphScores | None = None
            with self.controller.request() as request:
                if not request.allowed:
                    response.mode = SearchMode.VECTOR_ONLY
                else:
                    try:
                        graph = await self._bounded(
                            self._graph_scores(scope, query_text, vector_hits, opts.max_hops),
                            self.graph_timeout_s,
                            "graph",
                        )
                        request.mark_success()
                    except SearchTimeout as e:
                        request.mark_failure(str(e))
                        logger.warning("Graph stage timed out", timeout_s=e.timeout_s)
                        response.timed_out.append(e.stage)
                        response.partial = True
                        response.mode = SearchMode.VECTOR_ONLY
                    except GraphStoreError as e:
                        request.mark_failure(str(e) or type(e).__name__)
                        logger.warning("Graph stage failed", error=str(e))
                        response.failed_stages.append("graph")
                        response.mode = SearchMode.VECTOR_ONLY

            response.graph_status = self.controller.health()
            response.results = self._fuse(vector_hits, graph, w_vector, w_graph, opts)
            response.explanation = self._explain(response, vector_hits, graph, opts, w_vector, w_graph)

            logger.info(
                "Hybrid search completed",
                query_length=len(query_text),
                results=len(response.results),
                mode=response.mode.value,
                partial=response.partial,
                **response.provenance_summary,
            )
        return response

    async def _vector_stage(
        self,
        scope: WorkflowScope,
        query_text: str,
        top_k: int,
        response: SearchResponse,
    ) -> list[VectorHit]:
        try:
            embedding = await self._bounded(
                self.embedder.embed_query(query_text), self.embedding_timeout_s, "embedding"
            )
            hits = await self._bounded(
                self.vector_index.search(scope, embedding, top_k), self.vector_timeout_s, "vector"
            )
        except SearchTimeout as e:
            logger.warning("Vector stage timed out", stage=e.stage, timeout_s=e.timeout_s)
            response.timed_out.append(e.stage)
            response.partial = True
            return []
        except (EmbeddingError, VectorIndexError) as e:
            stage = "embedding" if isinstance(e, EmbeddingError) else "vector"
            logger.warning("Vector stage failed", stage=stage, error=str(e))
            response.failed_stages.append(stage)
            response.partial = True
            return []

        for hit in hits:
            scope.ensure_same_workflow(hit.workflow_id, what=f"vector hit {hit.chunk_id}")
        return hits

    async def _graph_scores(
        self,
        scope: WorkflowScope,
        query_text: str,
        vector_hits: Sequence[VectorHit],
        max_hops: int,
    ) -> _GraphScores:
        """Score chunks by graph proximity to the query's seed entities."""
        scores = _GraphScores()

        keyword_seeds = [e.id for e in await self.graph_store.find_entities_for_query(scope, query_text)]
        document_ids = list(dict.fromkeys(hit.document_id for hit in vector_hits if hit.similarity > 0))
        by_document = await self.graph_store.get_document_entity_ids(scope, document_ids)
        document_seeds = list(dict.fromkeys(eid for ids in by_document.values() for eid in ids))
        scores.keyword_seeds = len(keyword_seeds)
        scores.document_seeds = len(document_seeds)

        # Each seed class is traversed on its own so its weight scales exactly
        # the paths that start from it.
        entity_scores: dict[str, float] = {}
        for seeds, weight in ((keyword_seeds, 1.0), (document_seeds, self.document_seed_weight)):
            if not seeds or weight <= 0:
                continue
            hits: list[TraversalHit] = await self.graph_store.traverse(
                scope, seeds, max_hops, decay=self.hop_decay
            )
            for hit in hits:
                score = weight * hit.aggregated_confidence
                if score > entity_scores.get(hit.entity_id, 0.0):
                    entity_scores[hit.entity_id] = score

        scores.entities_reached = len(entity_scores)
        if not entity_scores:
            return scores

        for link in await self.graph_store.get_entity_chunks(scope, list(entity_scores)):
            entity_score = entity_scores[link.entity_id]
            if entity_score > scores.chunk_scores.get(link.chunk_id, 0.0):
                scores.chunk_scores[link.chunk_id] = entity_score
            scores.chunk_entities.setdefault(link.chunk_id, {})[link.entity_id] = entity_score

        matched = {eid for entities in scores.chunk_entities.values() for eid in entities}
        records = await self.graph_store.get_entities(scope, list(matched))
        scores.entity_names = {eid: record.name for eid, record in records.items()}

        vector_chunk_ids = {hit.chunk_id for hit in vector_hits}
        graph_only = [cid for cid in scores.chunk_scores if cid not in vector_chunk_ids]
        if graph_only:
            scores.chunks = await self.graph_store.get_chunks(scope, graph_only)
        return scores

    def _fuse(
        self,
        vector_hits: Sequence[VectorHit],
        graph: _GraphScores | None,
        w_vector: float,
        w_graph: float,
        opts: SearchOptions,
    ) -> list[SearchResult]:
        candidates: dict[str, _Candidate] = {}

        for hit in vector_hits:
            existing = candidates.get(hit.chunk_id)
            if existing is None:
                candidates[hit.chunk_id] = _Candidate(
                    chunk_id=hit.chunk_id,
                    document_id=hit.document_id,
                    text=hit.text,
                    vector_score=hit.similarity,
                    has_vector_hit=True,
                )
            else:
                existing.vector_score = max(existing.vector_score, hit.similarity)

        if graph is not None:
            chunk_records = graph.chunks
            for chunk_id, score in graph.chunk_scores.items():
                candidate = candidates.get(chunk_id)
                if candidate is None:
                    record = chunk_records.get(chunk_id)
                    if record is None:
                        # chunk mention without a stored chunk row
                        continue
                    candidate = _Candidate(
                        chunk_id=chunk_id,
                        document_id=record.document_id,
                        text=record.text,
                    )
                    candidates[chunk_id] = candidate
                candidate.graph_score = max(candidate.graph_score, score)
                candidate.matched_entities = graph.chunk_entities.get(chunk_id, {})

        if not candidates:
            return []

        ordered = list(candidates.values())
        norm_vector = min_max_normalize([c.vector_score for c in ordered])
        norm_graph = min_max_normalize([c.graph_score for c in ordered])
        entity_names = graph.entity_names if graph is not None else {}

        results: list[SearchResult] = []
        for candidate, nv, ng in zip(ordered, norm_vector, norm_graph):
            combined = _clamp_unit(w_vector * nv + w_graph * ng)
            if not candidate.has_vector_hit and combined < opts.min_score:
                continue
            matched = sorted(
                candidate.matched_entities,
                key=lambda eid: (-candidate.matched_entities[eid], entity_names.get(eid, eid)),
            )
            results.append(
                SearchResult(
                    chunk_id=candidate.chunk_id,
                    document_id=candidate.document_id,
                    text=candidate.text,
                    vector_score=candidate.vector_score,
                    graph_score=candidate.graph_score,
                    combined_score=combined,
                    provenance=_provenance(candidate),
                    matched_entities=[entity_names.get(eid, eid) for eid in matched],
                )
            )

        results.sort(key=lambda r: (-r.combined_score, -r.vector_score, -r.graph_score, r.chunk_id))
        return results[: opts.limit]

    def _explain(
        self,
        response: SearchResponse,
        vector_hits: Sequence[VectorHit],
        graph: _GraphScores | None,
        opts: SearchOptions,
        w_vector: float,
        w_graph: float,
    ) -> str:
        summary = response.provenance_summary
        if response.mode == SearchMode.VECTOR_ONLY:
            lines = [
                f"Vector-only search ({response.graph_status.value}): "
                f"{len(vector_hits)} similar chunks considered."
            ]
        else:
            lines = [
                "Hybrid search combining vector similarity and graph relationships "
                f"(weights vector={w_vector:.2f}, graph={w_graph:.2f}, max hops={opts.max_hops}):",
                f"- Seeds: {graph.keyword_seeds if graph else 0} from query terms, "
                f"{graph.document_seeds if graph else 0} from matching documents",
                f"- Entities reached: {graph.entities_reached if graph else 0}",
            ]
        lines.extend(
            [
                f"- Vector matches: {summary[Provenance.VECTOR.value]}",
                f"- Graph matches: {summary[Provenance.GRAPH.value]}",
                f"- Hybrid matches: {summary[Provenance.HYBRID.value]}",
                f"- Total results: {len(response.results)}",
            ]
        )
        if response.timed_out:
            lines.append(f"- Timed out: {', '.join(response.timed_out)}")
        if response.failed_stages:
            lines.append(f"- Failed: {', '.join(response.failed_stages)}")
        return "\n".join(lines)
