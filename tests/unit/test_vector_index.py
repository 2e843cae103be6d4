"""Unit tests for embedders and the in-memory vector index."""

import json
import math

import httpx
import pytest

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.services import embeddings
from rfp_graphrag.services.embeddings import (
    EmbeddingError,
    GeminiEmbedder,
    HashingEmbedder,
    get_embedder,
)
from rfp_graphrag.services.vector_index import (
    InMemoryVectorIndex,
    QdrantVectorIndex,
    VectorIndexError,
    VectorRecord,
    clamp_similarity,
    get_vector_index,
    point_id_for,
)

pytestmark = pytest.mark.asyncio


def _record(chunk_id: str, document_id: str, vector: list[float], text: str = "") -> VectorRecord:
    return VectorRecord(chunk_id=chunk_id, document_id=document_id, text=text or chunk_id, embedding=vector)


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for module helpers."""

    async def test_clamp_similarity(self) -> None:
        """Test cosine scores are mapped into [0, 1]."""
        assert clamp_similarity(-0.4) == 0.0
        assert clamp_similarity(0.25) == 0.25
        assert clamp_similarity(1.0000001) == 1.0
        assert clamp_similarity(math.nan) == 0.0

    async def test_point_id_deterministic(self) -> None:
        """Test Qdrant point ids are stable UUIDs per workflow and chunk."""
        assert point_id_for("wf-a", "c1") == point_id_for("wf-a", "c1")
        assert point_id_for("wf-a", "c1") != point_id_for("wf-a", "c2")
        assert point_id_for("wf-a", "c1") != point_id_for("wf-b", "c1")
        assert len(point_id_for("wf-a", "c1")) == 36

    async def test_factory(self) -> None:
        """Test the factory follows the configured backend."""
        memory = get_vector_index(Settings(_env_file=None, vector_backend="memory", embedding_dim=32))
        assert isinstance(memory, InMemoryVectorIndex)
        assert memory.dimension == 32

        qdrant = get_vector_index(Settings(_env_file=None, vector_backend="qdrant"))
        assert isinstance(qdrant, QdrantVectorIndex)

    async def test_qdrant_requires_connect(self) -> None:
        """Test using the Qdrant adapter before connect() fails clearly."""
        index = QdrantVectorIndex("http://localhost:6333", "chunks", dimension=4)
        with pytest.raises(VectorIndexError):
            await index.ping()


# =============================================================================
# In-Memory Index
# =============================================================================


class TestInMemoryVectorIndex:
    """Tests for the in-memory vector index."""

    async def test_search_orders_by_similarity(self, scope: WorkflowScope) -> None:
        """Test hits come back best first with clamped similarity."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(
            scope,
            [
                _record("c-far", "d1", [0.0, 1.0]),
                _record("c-near", "d1", [1.0, 0.1]),
                _record("c-opposite", "d2", [-1.0, 0.0]),
            ],
        )

        hits = await index.search(scope, [1.0, 0.0], top_k=10)

        assert [h.chunk_id for h in hits] == ["c-near", "c-far", "c-opposite"]
        assert 0.99 < hits[0].similarity <= 1.0
        assert hits[1].similarity == 0.0
        assert hits[2].similarity == 0.0
        assert all(h.workflow_id == scope.workflow_id for h in hits)

    async def test_ties_broken_by_chunk_id(self, scope: WorkflowScope) -> None:
        """Test equal similarities order by chunk id."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c-b", "d1", [1.0, 0.0]), _record("c-a", "d1", [2.0, 0.0])])

        hits = await index.search(scope, [1.0, 0.0], top_k=2)

        assert [h.chunk_id for h in hits] == ["c-a", "c-b"]

    async def test_top_k(self, scope: WorkflowScope) -> None:
        """Test top_k limits results and a non-positive top_k returns nothing."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record(f"c{i}", "d1", [1.0, float(i)]) for i in range(5)])

        assert len(await index.search(scope, [1.0, 0.0], top_k=3)) == 3
        assert await index.search(scope, [1.0, 0.0], top_k=0) == []

    async def test_upsert_replaces(self, scope: WorkflowScope) -> None:
        """Test re-upserting a chunk replaces its vector and text."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c1", "d1", [0.0, 1.0], text="old")])
        await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0], text="new")])

        hits = await index.search(scope, [1.0, 0.0], top_k=5)

        assert await index.count(scope) == 1
        assert hits[0].text == "new"
        assert hits[0].similarity == pytest.approx(1.0)

    async def test_workflow_isolation(self, scope: WorkflowScope, other_scope: WorkflowScope) -> None:
        """Test a workflow never sees another workflow's chunks."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0])])
        await index.upsert(other_scope, [_record("c2", "d1", [1.0, 0.0])])

        hits = await index.search(scope, [1.0, 0.0], top_k=10)

        assert [h.chunk_id for h in hits] == ["c1"]
        assert await index.search(WorkflowScope("wf-empty"), [1.0, 0.0], top_k=10) == []

    async def test_dimension_mismatch(self, scope: WorkflowScope) -> None:
        """Test vectors of the wrong length are rejected."""
        index = InMemoryVectorIndex(dimension=3)
        with pytest.raises(VectorIndexError):
            await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0])])
        with pytest.raises(VectorIndexError):
            await index.search(scope, [1.0], top_k=1)

    async def test_zero_vector(self, scope: WorkflowScope) -> None:
        """Test a zero query vector matches nothing."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0])])

        hits = await index.search(scope, [0.0, 0.0], top_k=1)

        assert hits[0].similarity == 0.0

    async def test_delete_document(self, scope: WorkflowScope, other_scope: WorkflowScope) -> None:
        """Test deleting a document keeps its siblings and other workflows."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0]), _record("c2", "d2", [1.0, 0.0])])
        await index.upsert(other_scope, [_record("c3", "d1", [1.0, 0.0])])

        await index.delete_document(scope, "d1")

        assert [h.chunk_id for h in await index.search(scope, [1.0, 0.0], top_k=5)] == ["c2"]
        assert await index.count(other_scope) == 1

    async def test_delete_workflow(self, scope: WorkflowScope, other_scope: WorkflowScope) -> None:
        """Test deleting a workflow returns the number of removed chunks."""
        index = InMemoryVectorIndex(dimension=2)
        await index.upsert(scope, [_record("c1", "d1", [1.0, 0.0]), _record("c2", "d1", [0.0, 1.0])])
        await index.upsert(other_scope, [_record("c3", "d1", [1.0, 0.0])])

        assert await index.delete_workflow(scope) == 2
        assert await index.count(scope) == 0
        assert await index.count(other_scope) == 1
        assert await index.delete_workflow(scope) == 0


# =============================================================================
# Embedders
# =============================================================================


class TestHashingEmbedder:
    """Tests for the deterministic hashing embedder."""

    async def test_deterministic_and_normalized(self) -> None:
        """Test identical text gives identical unit vectors."""
        embedder = HashingEmbedder(dimension=64)
        first, second = await embedder.embed(["Amazon S3 storage", "Amazon S3 storage"])

        assert first == second
        assert len(first) == 64
        assert sum(v * v for v in first) == pytest.approx(1.0)

    async def test_case_insensitive(self) -> None:
        """Test tokens are lowercased before hashing."""
        embedder = HashingEmbedder(dimension=64)
        assert await embedder.embed_query("AWS Lambda") == await embedder.embed_query("aws lambda")

    async def test_empty_text(self) -> None:
        """Test text without tokens embeds to the zero vector."""
        embedder = HashingEmbedder(dimension=16)
        assert await embedder.embed_query("  ... ") == [0.0] * 16

    async def test_factory(self) -> None:
        """Test the factory returns the hashing embedder when configured."""
        embedder = get_embedder(Settings(_env_file=None, embedding_provider="hashing", embedding_dim=32))
        assert isinstance(embedder, HashingEmbedder)
        assert embedder.dimension == 32


class TestGeminiEmbedder:
    """Tests for the Gemini embedder over a mocked transport."""

    @staticmethod
    def _embedder(handler) -> GeminiEmbedder:
        embedder = GeminiEmbedder(api_key="test-key", model="text-embedding-004", dimension=3)
        embedder._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return embedder

    async def test_requires_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing key is a configuration error."""
        monkeypatch.setattr(embeddings.settings, "google_api_key", None)
        with pytest.raises(ValueError):
            GeminiEmbedder(api_key="", dimension=3)

    async def test_requires_context_manager(self) -> None:
        """Test the HTTP client is only available inside the context."""
        embedder = GeminiEmbedder(api_key="test-key", dimension=3)
        with pytest.raises(RuntimeError):
            _ = embedder.client

    async def test_embed_query(self) -> None:
        """Test a query is sent as RETRIEVAL_QUERY with the configured dimension."""
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            assert request.headers["x-goog-api-key"] == "test-key"
            return httpx.Response(200, json={"embeddings": [{"values": [0.1, 0.2, 0.3]}]})

        embedder = self._embedder(handler)
        vector = await embedder.embed_query("cloud storage")
        await embedder.__aexit__(None, None, None)

        assert vector == [0.1, 0.2, 0.3]
        item = seen[0]["requests"][0]
        assert item["taskType"] == "RETRIEVAL_QUERY"
        assert item["outputDimensionality"] == 3

    async def test_embed_mismatched_count(self) -> None:
        """Test a response with the wrong number of vectors is an error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"embeddings": []})

        embedder = self._embedder(handler)
        with pytest.raises(EmbeddingError):
            await embedder.embed(["one", "two"])
        await embedder.__aexit__(None, None, None)

    async def test_client_error_not_retried(self) -> None:
        """Test a 400 response raises immediately."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"error": "bad request"})

        embedder = self._embedder(handler)
        with pytest.raises(EmbeddingError):
            await embedder.embed(["text"])
        await embedder.__aexit__(None, None, None)

        assert len(calls) == 1
