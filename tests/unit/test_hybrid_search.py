"""Unit tests for hybrid vector + graph search."""

import asyncio
from dataclasses import dataclass

import pytest
import pytest_asyncio

from conftest import KeywordEmbedder
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.db.enums import EntityType, GraphStatus, Provenance, SearchMode
from rfp_graphrag.services.embeddings import EmbeddingError
from rfp_graphrag.services.fallback import GraphHealthController
from rfp_graphrag.services.graph_store import ChunkRecord, GraphConnectionError, SqlGraphStore
from rfp_graphrag.services.hybrid_search import (
    HybridSearchCoordinator,
    SearchOptions,
    min_max_normalize,
    normalize_weights,
)
from rfp_graphrag.services.vector_index import InMemoryVectorIndex, VectorRecord

pytestmark = pytest.mark.asyncio

VOCABULARY = ["lambda", "s3", "vendor", "reports", "storage"]

# chunk_id -> (document_id, text)
CORPUS = {
    "chunk-lambda": ("d-lambda", "AWS Lambda functions process the uploaded files."),
    "chunk-s3": ("d-s3", "Amazon S3 buckets store the proposal archives."),
    "chunk-a-vendor": ("d-vendor", "The vendor must provide weekly status reports."),
}


@dataclass
class SearchFixture:
    """Seeded graph store, index and coordinator for one workflow."""

    coordinator: HybridSearchCoordinator
    graph_store: SqlGraphStore
    vector_index: InMemoryVectorIndex
    embedder: KeywordEmbedder
    lambda_id: str
    s3_id: str


async def _index_corpus(
    scope: WorkflowScope,
    graph_store: SqlGraphStore,
    vector_index: InMemoryVectorIndex,
    embedder: KeywordEmbedder,
    corpus: dict[str, tuple[str, str]],
) -> None:
    for chunk_id, (document_id, text) in corpus.items():
        await graph_store.upsert_document(scope, document_id, text)
        await graph_store.upsert_chunks(
            scope, document_id, [ChunkRecord(id=chunk_id, document_id=document_id, chunk_index=0, text=text)]
        )
        [vector] = await embedder.embed([text])
        await vector_index.upsert(
            scope,
            [VectorRecord(chunk_id=chunk_id, document_id=document_id, text=text, embedding=vector)],
        )


@pytest_asyncio.fixture(scope="function")
async def seeded(
    graph_store: SqlGraphStore,
    controller: GraphHealthController,
    scope: WorkflowScope,
) -> SearchFixture:
    """Three chunks; AWS Lambda USES Amazon S3 links the first two through the graph."""
    embedder = KeywordEmbedder(VOCABULARY)
    vector_index = InMemoryVectorIndex(dimension=embedder.dimension)
    await _index_corpus(scope, graph_store, vector_index, embedder, CORPUS)

    lambda_id = await graph_store.upsert_entity(scope, "AWS Lambda", EntityType.TECHNOLOGY, 0.9)
    s3_id = await graph_store.upsert_entity(scope, "Amazon S3", EntityType.TECHNOLOGY, 0.9)
    await graph_store.upsert_relationship(scope, lambda_id, s3_id, "USES", 0.9)
    await graph_store.upsert_mention(scope, "d-lambda", lambda_id, 0.9, chunk_ids=["chunk-lambda"])
    await graph_store.upsert_mention(scope, "d-s3", s3_id, 0.9, chunk_ids=["chunk-s3"])

    coordinator = HybridSearchCoordinator(
        graph_store,
        vector_index,
        embedder,
        controller,
        vector_weight=0.6,
        graph_weight=0.4,
        graph_timeout_s=0.2,
    )
    return SearchFixture(coordinator, graph_store, vector_index, embedder, lambda_id, s3_id)


# =============================================================================
# Scoring helpers
# =============================================================================


class TestScoringHelpers:
    """Tests for normalization helpers."""

    async def test_min_max_normalize(self) -> None:
        """Test values are scaled onto [0, 1]."""
        assert min_max_normalize([2.0, 4.0, 3.0]) == [0.0, 1.0, 0.5]

    async def test_min_max_degenerate(self) -> None:
        """Test empty and constant columns normalize to zeros."""
        assert min_max_normalize([]) == []
        assert min_max_normalize([0.7, 0.7]) == [0.0, 0.0]

    async def test_normalize_weights(self) -> None:
        """Test weights are rescaled to sum to one."""
        assert normalize_weights(3.0, 1.0) == (0.75, 0.25)
        assert normalize_weights(0.0, 2.0) == (0.0, 1.0)

    async def test_invalid_weights(self) -> None:
        """Test negative or all-zero weights are rejected."""
        with pytest.raises(ValueError):
            normalize_weights(-0.1, 1.0)
        with pytest.raises(ValueError):
            normalize_weights(0.0, 0.0)


# =============================================================================
# Ranking
# =============================================================================


class TestHybridRanking:
    """Tests for fused ranking and provenance."""

    async def test_graph_boosts_related_chunk(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test a chunk linked through the graph outranks an unrelated one."""
        response = await seeded.coordinator.search(scope, "Lambda")

        assert response.mode == SearchMode.HYBRID
        assert response.graph_status == GraphStatus.GRAPH_ENABLED
        assert [r.chunk_id for r in response.results] == ["chunk-lambda", "chunk-s3", "chunk-a-vendor"]

        top, related, unrelated = response.results
        assert top.provenance == Provenance.HYBRID
        assert top.combined_score == pytest.approx(1.0)
        assert top.matched_entities == ["AWS Lambda"]

        assert related.provenance == Provenance.GRAPH
        assert related.vector_score == 0.0
        assert related.graph_score == pytest.approx(0.45)
        assert related.combined_score == pytest.approx(0.18)
        assert related.matched_entities == ["Amazon S3"]

        assert unrelated.provenance == Provenance.VECTOR
        assert unrelated.combined_score == 0.0

    async def test_graph_only_candidate(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test a chunk outside the vector top_k is added from the graph."""
        response = await seeded.coordinator.search(scope, "Lambda", SearchOptions(top_k=2))

        ids = [r.chunk_id for r in response.results]
        assert ids == ["chunk-lambda", "chunk-s3", "chunk-a-vendor"]
        graph_only = response.results[1]
        assert graph_only.provenance == Provenance.GRAPH
        assert graph_only.text == CORPUS["chunk-s3"][1]
        assert graph_only.document_id == "d-s3"

    async def test_graph_only_below_min_score_dropped(
        self, seeded: SearchFixture, scope: WorkflowScope
    ) -> None:
        """Test graph-only candidates under min_score are not returned."""
        response = await seeded.coordinator.search(scope, "Lambda", SearchOptions(top_k=2, min_score=0.5))

        assert "chunk-s3" not in [r.chunk_id for r in response.results]

    async def test_scores_bounded(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test every score lies within [0, 1]."""
        for query in ["Lambda", "S3 storage", "vendor reports", "Amazon S3 and AWS Lambda"]:
            response = await seeded.coordinator.search(scope, query)
            for result in response.results:
                assert 0.0 <= result.vector_score <= 1.0
                assert 0.0 <= result.graph_score <= 1.0
                assert 0.0 <= result.combined_score <= 1.0

    async def test_deterministic(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test repeated searches return identical rankings."""
        first = await seeded.coordinator.search(scope, "S3 storage")
        second = await seeded.coordinator.search(scope, "S3 storage")

        assert [r.to_dict() for r in first.results] == [r.to_dict() for r in second.results]

    async def test_weight_override(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test per-query weights change the fusion."""
        response = await seeded.coordinator.search(
            scope, "Lambda", SearchOptions(vector_weight=1.0, graph_weight=0.0)
        )

        scores = {r.chunk_id: r.combined_score for r in response.results}
        assert scores["chunk-lambda"] == pytest.approx(1.0)
        assert scores["chunk-s3"] == 0.0
        # graph score still breaks the tie with the unrelated chunk
        assert [r.chunk_id for r in response.results][1] == "chunk-s3"

    async def test_limit(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test results are truncated to the limit."""
        response = await seeded.coordinator.search(scope, "Lambda", SearchOptions(limit=1))

        assert [r.chunk_id for r in response.results] == ["chunk-lambda"]

    async def test_provenance_summary_and_explanation(
        self, seeded: SearchFixture, scope: WorkflowScope
    ) -> None:
        """Test the response summarizes where results came from."""
        response = await seeded.coordinator.search(scope, "Lambda")

        assert response.provenance_summary == {"vector": 1, "graph": 1, "hybrid": 1}
        assert "Hybrid search combining" in response.explanation
        assert "- Hybrid matches: 1" in response.explanation
        payload = response.to_dict()
        assert payload["mode"] == "hybrid"
        assert payload["results"][0]["provenance"] == "hybrid"

    async def test_empty_query(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test a blank query returns no results and an explanation."""
        response = await seeded.coordinator.search(scope, "   ")

        assert response.results == []
        assert response.explanation == "Empty query: nothing to search."

    async def test_invalid_options(self, seeded: SearchFixture, scope: WorkflowScope) -> None:
        """Test invalid per-query options raise ValueError."""
        for options in [
            SearchOptions(limit=0),
            SearchOptions(top_k=0),
            SearchOptions(max_hops=-1),
            SearchOptions(min_score=1.5),
            SearchOptions(vector_weight=-1.0),
            SearchOptions(vector_weight=0.0, graph_weight=0.0),
        ]:
            with pytest.raises(ValueError):
                await seeded.coordinator.search(scope, "Lambda", options)

    async def test_invalid_document_seed_weight(
        self, seeded: SearchFixture, controller: GraphHealthController
    ) -> None:
        """Test the document seed weight must lie within [0, 1]."""
        with pytest.raises(ValueError):
            HybridSearchCoordinator(
                seeded.graph_store,
                seeded.vector_index,
                seeded.embedder,
                controller,
                document_seed_weight=1.5,
            )


# =============================================================================
# Isolation
# =============================================================================


class TestWorkflowIsolation:
    """Tests that searches stay inside their workflow."""

    async def test_other_workflow_invisible(
        self,
        seeded: SearchFixture,
        scope: WorkflowScope,
        other_scope: WorkflowScope,
    ) -> None:
        """Test chunks and entities of another workflow never appear."""
        foreign = {"chunk-foreign": ("d-foreign", "Lambda storage for another customer.")}
        await _index_corpus(other_scope, seeded.graph_store, seeded.vector_index, seeded.embedder, foreign)
        foreign_id = await seeded.graph_store.upsert_entity(
            other_scope, "AWS Lambda", EntityType.TECHNOLOGY, 0.9
        )
        await seeded.graph_store.upsert_mention(
            other_scope, "d-foreign", foreign_id, 0.9, chunk_ids=["chunk-foreign"]
        )

        response = await seeded.coordinator.search(scope, "Lambda storage")
        foreign_response = await seeded.coordinator.search(other_scope, "Lambda storage")

        assert "chunk-foreign" not in [r.chunk_id for r in response.results]
        assert [r.chunk_id for r in foreign_response.results] == ["chunk-foreign"]
        assert all(r.document_id != "d-foreign" for r in response.results)


# =============================================================================
# Degradation
# =============================================================================


class TestDegradation:
    """Tests for partial results when a stage times out or fails."""

    async def test_graph_timeout(
        self,
        seeded: SearchFixture,
        scope: WorkflowScope,
        controller: GraphHealthController,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a slow graph stage yields vector-only partial results."""

        async def slow(*args, **kwargs):
            await asyncio.sleep(2.0)
            return []

        monkeypatch.setattr(seeded.graph_store, "find_entities_for_query", slow)
        seeded.coordinator.graph_timeout_s = 0.05

        response = await seeded.coordinator.search(scope, "Lambda")

        assert response.timed_out == ["graph"]
        assert response.partial is True
        assert response.mode == SearchMode.VECTOR_ONLY
        assert response.graph_status == GraphStatus.GRAPH_DEGRADED
        assert response.results[0].chunk_id == "chunk-lambda"
        assert all(r.provenance == Provenance.VECTOR for r in response.results)
        assert controller.consecutive_failures == 1

    async def test_graph_errors_trip_vector_only(
        self,
        seeded: SearchFixture,
        scope: WorkflowScope,
        controller: GraphHealthController,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test repeated graph errors switch the controller to VectorOnly."""
        calls = []

        async def broken(*args, **kwargs):
            calls.append(args)
            raise GraphConnectionError("connection refused")

        monkeypatch.setattr(seeded.graph_store, "traverse", broken)

        for _ in range(2):
            response = await seeded.coordinator.search(scope, "Lambda")
            assert response.failed_stages == ["graph"]
            assert response.mode == SearchMode.VECTOR_ONLY
            assert response.results

        assert controller.health() == GraphStatus.VECTOR_ONLY

        response = await seeded.coordinator.search(scope, "Lambda")
        assert response.failed_stages == []
        assert response.mode == SearchMode.VECTOR_ONLY
        assert response.graph_status == GraphStatus.VECTOR_ONLY
        assert len(calls) == 2
        assert response.explanation.startswith("Vector-only search (VectorOnly)")

    async def test_graph_success_resets_failures(
        self,
        seeded: SearchFixture,
        scope: WorkflowScope,
        controller: GraphHealthController,
    ) -> None:
        """Test a healthy search clears earlier failures."""
        controller.record_failure("earlier error")
        assert controller.health() == GraphStatus.GRAPH_DEGRADED

        response = await seeded.coordinator.search(scope, "Lambda")

        assert response.mode == SearchMode.HYBRID
        assert controller.consecutive_failures == 0

    async def test_embedding_failure_keeps_graph_results(
        self,
        seeded: SearchFixture,
        scope: WorkflowScope,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test the graph path still answers when embedding fails."""

        async def broken(text: str) -> list[float]:
            raise EmbeddingError("quota exceeded")

        monkeypatch.setattr(seeded.embedder, "embed_query", broken)

        response = await seeded.coordinator.search(scope, "Lambda")

        assert response.failed_stages == ["embedding"]
        assert response.partial is True
        assert response.mode == SearchMode.HYBRID
        assert [r.chunk_id for r in response.results] == ["chunk-lambda"]
        assert response.results[0].provenance == Provenance.GRAPH
        assert response.results[0].combined_score == pytest.approx(0.4)
