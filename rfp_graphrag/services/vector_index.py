"""
Vector index adapters over chunk embeddings.

Features:
- Qdrant adapter (one collection, workflow_id payload filter)
- In-memory adapter with per-workflow partitions (tests, local runs)
- Cosine similarity clamped into [0, 1]

Every hit is checked against the requesting workflow before it is returned.
"""

import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from rfp_graphrag.core.config import Settings, settings
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.core.scope import WorkflowScope

logger = get_logger(__name__)

POINT_NAMESPACE = uuid.UUID("2c9a7e44-51f0-5b8d-8f3e-6a1d0c4b9e27")


# =============================================================================
# Exceptions
# =============================================================================


class VectorIndexError(Exception):
    """Raised when the vector index fails or is unreachable."""

    pass


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class VectorRecord:
    """A chunk embedding to index."""

    chunk_id: str
    document_id: str
    text: str
    embedding: Sequence[float]
    chunk_index: int = 0


@dataclass(frozen=True)
class VectorHit:
    """A chunk returned by similarity search."""

    chunk_id: str
    document_id: str
    text: str
    similarity: float
    workflow_id: str


def point_id_for(workflow_id: str, chunk_id: str) -> str:
    """Qdrant point id (UUID) for a chunk of a workflow."""
    return str(uuid.uuid5(POINT_NAMESPACE, f"{workflow_id}/{chunk_id}"))


def clamp_similarity(score: float) -> float:
    """Map a cosine score onto [0, 1] (negative similarity counts as none)."""
    if math.isnan(score):
        return 0.0
    return min(1.0, max(0.0, float(score)))


def _normalize(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return [0.0 for _ in vector]
    return [v / norm for v in vector]


# =============================================================================
# Base Vector Index
# =============================================================================


class BaseVectorIndex(ABC):
    """Abstract base class for vector index adapters."""

    def __init__(self, dimension: int):
        self.dimension = dimension

    async def connect(self) -> None:
        """Open connections / create collections."""
        return None

    async def disconnect(self) -> None:
        """Release connections."""
        return None

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise VectorIndexError(
                f"Embedding dimension {len(vector)} does not match index dimension {self.dimension}"
            )

    @abstractmethod
    async def upsert(self, scope: WorkflowScope, records: Sequence[VectorRecord]) -> int:
        """Insert or replace chunk embeddings; returns the number written."""
        pass

    @abstractmethod
    async def search(
        self,
        scope: WorkflowScope,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[VectorHit]:
        """Most similar chunks of the workflow, best first."""
        pass

    @abstractmethod
    async def delete_document(self, scope: WorkflowScope, document_id: str) -> None:
        """Remove every chunk of a document."""
        pass

    @abstractmethod
    async def delete_workflow(self, scope: WorkflowScope) -> int:
        """Remove every chunk of the workflow; returns the number removed."""
        pass

    @abstractmethod
    async def count(self, scope: WorkflowScope) -> int:
        """Number of chunks indexed for the workflow."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Raise VectorIndexError if the index is unreachable."""
        pass


# =============================================================================
# In-Memory Index
# =============================================================================


class InMemoryVectorIndex(BaseVectorIndex):
    """
    Brute-force cosine index partitioned by workflow.

    Writes never await, so each operation is atomic within the event loop.
    """

    def __init__(self, dimension: int = 768):
        super().__init__(dimension)
        # workflow_id -> chunk_id -> (record, normalized vector)
        self._partitions: dict[str, dict[str, tuple[VectorRecord, list[float]]]] = {}

    async def upsert(self, scope: WorkflowScope, records: Sequence[VectorRecord]) -> int:
        """Insert or replace chunk embeddings."""
        partition = self._partitions.setdefault(scope.workflow_id, {})
        for record in records:
            self._check_dimension(record.embedding)
            partition[record.chunk_id] = (record, _normalize(record.embedding))
        return len(records)

    async def search(
        self,
        scope: WorkflowScope,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[VectorHit]:
        """Cosine similarity over the workflow's partition."""
        self._check_dimension(query_embedding)
        if top_k <= 0:
            return []
        query = _normalize(query_embedding)
        partition = self._partitions.get(scope.workflow_id, {})

        scored = []
        for chunk_id, (record, vector) in partition.items():
            similarity = clamp_similarity(sum(q * v for q, v in zip(query, vector)))
            scored.append((similarity, chunk_id, record))
        scored.sort(key=lambda item: (-item[0], item[1]))

        return [
            VectorHit(
                chunk_id=record.chunk_id,
                document_id=record.document_id,
                text=record.text,
                similarity=similarity,
                workflow_id=scope.workflow_id,
            )
            for similarity, _, record in scored[:top_k]
        ]

    async def delete_document(self, scope: WorkflowScope, document_id: str) -> None:
        """Remove every chunk of a document."""
        partition = self._partitions.get(scope.workflow_id, {})
        for chunk_id in [cid for cid, (rec, _) in partition.items() if rec.document_id == document_id]:
            del partition[chunk_id]

    async def delete_workflow(self, scope: WorkflowScope) -> int:
        """Drop the workflow's partition."""
        return len(self._partitions.pop(scope.workflow_id, {}))

    async def count(self, scope: WorkflowScope) -> int:
        """Number of chunks in the workflow's partition."""
        return len(self._partitions.get(scope.workflow_id, {}))

    async def ping(self) -> None:
        """Always reachable."""
        return None


# =============================================================================
# Qdrant Index
# =============================================================================


class QdrantVectorIndex(BaseVectorIndex):
    """
    Qdrant-backed index: one collection, workflows separated by payload filter.

    Payload per point: workflow_id, document_id, chunk_id, chunk_index, text.
    """

    def __init__(
        self,
        url: str,
        collection: str,
        dimension: int,
        api_key: str | None = None,
        timeout: int = 10,
    ):
        super().__init__(dimension)
        self.url = url
        self.collection = collection
        self.api_key = api_key
        self.timeout = timeout
        self._client: AsyncQdrantClient | None = None

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client."""
        if self._client is None:
            raise VectorIndexError("Vector index is not connected")
        return self._client

    async def connect(self) -> None:
        """Create the client and ensure the collection and payload indexes exist."""
        if self._client is not None:
            return
        self._client = AsyncQdrantClient(
            url=self.url,
            api_key=self.api_key,
            timeout=self.timeout,
            check_compatibility=False,
        )
        try:
            if not await self._client.collection_exists(self.collection):
                await self._client.create_collection(
                    collection_name=self.collection,
                    vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE),
                )
                for field_name in ("workflow_id", "document_id"):
                    await self._client.create_payload_index(
                        collection_name=self.collection,
                        field_name=field_name,
                        field_schema=PayloadSchemaType.KEYWORD,
                    )
                logger.info("Created Qdrant collection", collection=self.collection, dim=self.dimension)
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant unavailable: {e}") from e

    async def disconnect(self) -> None:
        """Close the client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    @staticmethod
    def _workflow_filter(scope: WorkflowScope, **extra: Any) -> Filter:
        conditions = [FieldCondition(key="workflow_id", match=MatchValue(value=scope.workflow_id))]
        for key, value in extra.items():
            conditions.append(FieldCondition(key=key, match=MatchValue(value=value)))
        return Filter(must=conditions)

    async def upsert(self, scope: WorkflowScope, records: Sequence[VectorRecord]) -> int:
        """Upsert one point per chunk."""
        if not records:
            return 0
        points = []
        for record in records:
            self._check_dimension(record.embedding)
            points.append(
                PointStruct(
                    id=point_id_for(scope.workflow_id, record.chunk_id),
                    vector=list(record.embedding),
                    payload={
                        "workflow_id": scope.workflow_id,
                        "document_id": record.document_id,
                        "chunk_id": record.chunk_id,
                        "chunk_index": record.chunk_index,
                        "text": record.text,
                    },
                )
            )
        try:
            await self.client.upsert(collection_name=self.collection, points=points, wait=True)
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant upsert failed: {e}") from e
        return len(points)

    async def search(
        self,
        scope: WorkflowScope,
        query_embedding: Sequence[float],
        top_k: int,
    ) -> list[VectorHit]:
        """Filtered similarity search."""
        self._check_dimension(query_embedding)
        if top_k <= 0:
            return []
        try:
            response = await self.client.query_points(
                collection_name=self.collection,
                query=list(query_embedding),
                query_filter=self._workflow_filter(scope),
                limit=top_k,
                with_payload=True,
            )
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant search failed: {e}") from e

        hits = []
        for point in response.points:
            payload = point.payload or {}
            scope.ensure_same_workflow(payload.get("workflow_id"), what="vector point")
            hits.append(
                VectorHit(
                    chunk_id=payload.get("chunk_id", str(point.id)),
                    document_id=payload.get("document_id", ""),
                    text=payload.get("text", ""),
                    similarity=clamp_similarity(point.score),
                    workflow_id=payload["workflow_id"],
                )
            )
        return hits

    async def delete_document(self, scope: WorkflowScope, document_id: str) -> None:
        """Remove a document's points."""
        try:
            await self.client.delete(
                collection_name=self.collection,
                points_selector=FilterSelector(
                    filter=self._workflow_filter(scope, document_id=document_id)
                ),
                wait=True,
            )
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant delete failed: {e}") from e

    async def delete_workflow(self, scope: WorkflowScope) -> int:
        """Remove the workflow's points."""
        removed = await self.count(scope)
        try:
            await self.client.delete(
                collection_name=self.collection,
                points_selector=FilterSelector(filter=self._workflow_filter(scope)),
                wait=True,
            )
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant delete failed: {e}") from e
        return removed

    async def count(self, scope: WorkflowScope) -> int:
        """Exact point count for the workflow."""
        try:
            result = await self.client.count(
                collection_name=self.collection,
                count_filter=self._workflow_filter(scope),
                exact=True,
            )
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant count failed: {e}") from e
        return result.count

    async def ping(self) -> None:
        """List collections as a liveness check."""
        try:
            await self.client.get_collections()
        except (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError) as e:
            raise VectorIndexError(f"Qdrant unavailable: {e}") from e


# =============================================================================
# Factory Function
# =============================================================================


def get_vector_index(app_settings: Settings | None = None) -> BaseVectorIndex:
    """Factory function to get the configured vector index."""
    cfg = app_settings or settings
    if cfg.vector_backend == "qdrant":
        return QdrantVectorIndex(
            url=cfg.qdrant_url,
            collection=cfg.qdrant_collection,
            dimension=cfg.embedding_dim,
            api_key=cfg.qdrant_api_key,
        )
    elif cfg.vector_backend == "memory":
        return InMemoryVectorIndex(dimension=cfg.embedding_dim)
    else:
        raise ValueError(f"Unsupported vector backend: {cfg.vector_backend}")
