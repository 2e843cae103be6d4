"""
Workflow-scoped knowledge graph store.

This module persists the extracted knowledge graph in SQL tables (PostgreSQL
in production, SQLite for tests and local runs) and answers the graph side
of hybrid search.

Features:
- Idempotent upserts via INSERT ... ON CONFLICT DO UPDATE on unique keys
- Deterministic entity ids, so concurrent writers agree on identity
- Breadth-first traversal with multiplicative confidence and hop decay
- Workflow graph export (entities, documents, mentions, relationships)
- Workflow teardown

Every public method takes a `WorkflowScope`; every row read back is checked
against it.
"""

import hashlib
import re
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, case, delete, func, literal, or_, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.db.base import (
    create_engine_for_url,
    create_session_factory,
    init_db,
    is_sqlite_url,
)
from rfp_graphrag.db.enums import EntityType, RelationshipLabel, normalize_relationship_label
from rfp_graphrag.db.models import (
    Chunk,
    ChunkMention,
    Document,
    Entity,
    Mention,
    Relationship,
    entity_id_for,
    normalize_entity_name,
)
from rfp_graphrag.db.session import session_scope, transaction

logger = get_logger(__name__)

# Bound on IN (...) list sizes per statement
_IN_BATCH = 500

_QUERY_TOKEN = re.compile(r"[a-z0-9][a-z0-9.+#/-]*")
_QUERY_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "are", "was", "what",
    "which", "who", "how", "does", "use", "uses", "using", "our", "their",
    "about", "into", "than", "then", "there", "where", "when", "will", "shall",
    "must", "should", "can", "any", "all", "not", "has", "have", "had",
})


# =============================================================================
# Exceptions
# =============================================================================


class GraphStoreError(Exception):
    """Base exception for graph store errors."""

    pass


class GraphConnectionError(GraphStoreError):
    """Raised when the graph database is unreachable or the driver fails."""

    pass


class GraphWriteConflict(GraphStoreError):
    """Raised when a concurrent write collides on a unique key."""

    pass


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class EntityRecord:
    """An entity node as read from the store."""

    id: str
    workflow_id: str
    name: str
    normalized_name: str
    type: EntityType
    frequency: int
    confidence: float = 0.0


@dataclass(frozen=True)
class ChunkRecord:
    """A chunk of a document (written at ingestion, read by search)."""

    id: str
    document_id: str
    chunk_index: int
    text: str
    start_offset: int = 0
    end_offset: int = 0
    token_count: int | None = None
    workflow_id: str | None = None


@dataclass(frozen=True)
class ChunkEntityLink:
    """A chunk-mention edge: `entity_id` was extracted from `chunk_id`."""

    chunk_id: str
    document_id: str
    entity_id: str
    confidence: float


@dataclass(frozen=True)
class TraversalHit:
    """An entity reached by traversal, with its best-scoring path."""

    entity_id: str
    path: tuple[str, ...]
    hop_count: int
    aggregated_confidence: float


@dataclass
class WorkflowGraph:
    """Exported workflow graph (visualization payload)."""

    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"nodes": self.nodes, "edges": self.edges, "stats": self.stats}


@dataclass
class WorkflowDeletion:
    """Row counts removed by a workflow teardown."""

    documents: int = 0
    chunks: int = 0
    entities: int = 0
    mentions: int = 0
    chunk_mentions: int = 0
    relationships: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "documents": self.documents,
            "chunks": self.chunks,
            "entities": self.entities,
            "mentions": self.mentions,
            "chunk_mentions": self.chunk_mentions,
            "relationships": self.relationships,
        }


# =============================================================================
# Helpers
# =============================================================================


def _validate_confidence(confidence: float, what: str = "confidence") -> float:
    value = float(confidence)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{what} must be within [0, 1], got {value}")
    return value


def _batched(values: Sequence[str], size: int = _IN_BATCH) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


def content_hash(content: str) -> str:
    """SHA-256 hex digest of document content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def query_terms(query_text: str) -> list[str]:
    """Keyword terms of a query used to seed traversal from entity names."""
    normalized = normalize_entity_name(query_text)
    return _unique(
        token for token in _QUERY_TOKEN.findall(normalized)
        if len(token) >= 3 and token not in _QUERY_STOPWORDS
    )


# Retry policy for writes that lose a unique-key race
_retry_on_conflict = retry(
    retry=retry_if_exception_type(GraphWriteConflict),
    stop=stop_after_attempt(3),
    wait=wait_random_exponential(multiplier=0.05, max=0.5),
    reraise=True,
)


# =============================================================================
# Graph Store
# =============================================================================


class SqlGraphStore:
    """
    Knowledge graph store backed by SQLAlchemy async.

    Usage:
        store = SqlGraphStore("postgresql+asyncpg://...")
        await store.connect()
        entity_id = await store.upsert_entity(scope, "Amazon S3", EntityType.TECHNOLOGY, 0.9)
        hits = await store.traverse(scope, [entity_id], max_hops=2)
        await store.disconnect()
    """

    def __init__(
        self,
        database_url: str,
        *,
        hop_decay: float = 0.5,
        echo: bool = False,
        create_schema: bool | None = None,
    ):
        """
        Initialize graph store.

        Args:
            database_url: Async SQLAlchemy URL
            hop_decay: Default per-hop decay for traversal, in (0, 1)
            echo: Log SQL statements
            create_schema: Create tables on connect (default: only for SQLite)
        """
        if not 0.0 < hop_decay < 1.0:
            raise ValueError(f"hop_decay must be within (0, 1), got {hop_decay}")
        self.database_url = database_url
        self.hop_decay = hop_decay
        self.echo = echo
        self.create_schema = is_sqlite_url(database_url) if create_schema is None else create_schema
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "SqlGraphStore":
        """Build a store from application settings."""
        return cls(
            app_settings.db_url,
            hop_decay=app_settings.graph_hop_decay,
            echo=app_settings.api_debug,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        """Whether connect() has been called."""
        return self._engine is not None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory of the connected store."""
        if self._session_factory is None:
            raise GraphConnectionError("Graph store is not connected")
        return self._session_factory

    @property
    def dialect(self) -> str:
        """SQL dialect name ("postgresql" or "sqlite")."""
        return "sqlite" if is_sqlite_url(self.database_url) else "postgresql"

    async def connect(self) -> None:
        """Create the engine and session factory."""
        if self._engine is not None:
            return
        self._engine = create_engine_for_url(self.database_url, echo=self.echo)
        self._session_factory = create_session_factory(self._engine)
        if self.create_schema:
            try:
                await self.ensure_schema()
            except GraphStoreError:
                await self.disconnect()
                raise
        logger.info("Graph store connected", dialect=self.dialect)

    async def disconnect(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    async def ensure_schema(self) -> None:
        """Create graph tables if missing (Alembic owns production schemas)."""
        if self._engine is None:
            raise GraphConnectionError("Graph store is not connected")
        try:
            await init_db(self._engine)
        except (OperationalError, InterfaceError, OSError) as e:
            raise GraphConnectionError(f"Schema creation failed: {e}") from e

    async def ping(self) -> None:
        """Round-trip a trivial query; raises GraphConnectionError on failure."""
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    async def health_check(self) -> None:
        """Connect if a previous attempt failed, then ping."""
        if not self.is_connected:
            await self.connect()
        await self.ping()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session with driver errors translated into graph store errors."""
        factory = self.session_factory
        try:
            async with session_scope(factory) as session:
                yield session
        except IntegrityError as e:
            raise GraphWriteConflict(str(e.orig or e)) from e
        except OperationalError as e:
            if "locked" in str(e).lower():
                raise GraphWriteConflict(str(e.orig or e)) from e
            raise GraphConnectionError(str(e.orig or e)) from e
        except (InterfaceError, OSError, ConnectionError) as e:
            raise GraphConnectionError(str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise GraphConnectionError(str(e.orig or e)) from e
            raise

    def _insert(self, model):
        if self.dialect == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)

    def _position(self, needle, haystack):
        """1-based position of needle in haystack, 0 when absent (no LIKE wildcards)."""
        if self.dialect == "sqlite":
            return func.instr(haystack, needle)
        return func.strpos(haystack, needle)

    # =========================================================================
    # Documents and chunks
    # =========================================================================

    @_retry_on_conflict
    async def upsert_document(
        self,
        scope: WorkflowScope,
        document_id: str,
        content: str,
        filename: str | None = None,
    ) -> str:
        """
        Create or refresh a document row.

        Returns:
            The content hash stored for the document
        """
        if not document_id:
            raise ValueError("document_id is required")
        digest = content_hash(content)

        stmt = self._insert(Document).values(
            id=document_id,
            workflow_id=scope.workflow_id,
            filename=filename,
            content=content,
            content_hash=digest,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Document.workflow_id, Document.id],
            set_={
                "filename": func.coalesce(stmt.excluded.filename, Document.filename),
                "content": stmt.excluded.content,
                "content_hash": stmt.excluded.content_hash,
            },
        )

        async with self._session() as session:
            async with transaction(session):
                await session.execute(stmt)
        return digest

    @staticmethod
    async def _require_document(session: AsyncSession, scope: WorkflowScope, document_id: str) -> None:
        found = await session.scalar(
            select(Document.id).where(
                Document.workflow_id == scope.workflow_id,
                Document.id == document_id,
            )
        )
        if found is None:
            raise GraphStoreError(f"Unknown document: {document_id}")

    @staticmethod
    async def _check_chunk_ids(
        session: AsyncSession,
        scope: WorkflowScope,
        document_id: str,
        ids: Sequence[str],
    ) -> None:
        """Reject chunk ids already stored for another document or workflow."""
        for batch in _batched(ids):
            taken = await session.scalar(
                select(Chunk.id)
                .where(
                    Chunk.id.in_(batch),
                    or_(Chunk.workflow_id != scope.workflow_id, Chunk.document_id != document_id),
                )
                .limit(1)
            )
            if taken is not None:
                raise ValueError(f"chunk id {taken} already belongs to another document")

    @_retry_on_conflict
    async def upsert_chunks(
        self,
        scope: WorkflowScope,
        document_id: str,
        chunks: Sequence[ChunkRecord],
    ) -> list[str]:
        """
        Replace the chunk set of a document.

        Chunks whose id is absent from `chunks` are removed together with
        their chunk mentions; the rest are upserted.

        Returns:
            The chunk ids, in index order
        """
        ids = [c.id for c in chunks]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate chunk ids")

        async with self._session() as session:
            async with transaction(session):
                await self._require_document(session, scope, document_id)
                await self._check_chunk_ids(session, scope, document_id, ids)

                stale = delete(Chunk).where(
                    Chunk.workflow_id == scope.workflow_id,
                    Chunk.document_id == document_id,
                )
                if ids:
                    stale = stale.where(Chunk.id.not_in(ids))
                await session.execute(stale)

                for chunk in chunks:
                    stmt = self._insert(Chunk).values(
                        id=chunk.id,
                        document_id=document_id,
                        workflow_id=scope.workflow_id,
                        chunk_index=chunk.chunk_index,
                        text=chunk.text,
                        start_offset=chunk.start_offset,
                        end_offset=chunk.end_offset,
                        token_count=chunk.token_count,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[Chunk.id],
                        set_={
                            "chunk_index": stmt.excluded.chunk_index,
                            "text": stmt.excluded.text,
                            "start_offset": stmt.excluded.start_offset,
                            "end_offset": stmt.excluded.end_offset,
                            "token_count": stmt.excluded.token_count,
                        },
                        where=Chunk.workflow_id == scope.workflow_id,
                    )
                    await session.execute(stmt)

        return [c.id for c in sorted(chunks, key=lambda c: c.chunk_index)]

    async def get_chunks(self, scope: WorkflowScope, chunk_ids: Sequence[str]) -> dict[str, ChunkRecord]:
        """Load chunks by id (ids from other workflows are not returned)."""
        found: dict[str, ChunkRecord] = {}
        ids = _unique(chunk_ids)
        if not ids:
            return found

        async with self._session() as session:
            for batch in _batched(ids):
                rows = await session.execute(
                    select(Chunk).where(
                        Chunk.workflow_id == scope.workflow_id,
                        Chunk.id.in_(batch),
                    )
                )
                for chunk in rows.scalars():
                    scope.ensure_same_workflow(chunk.workflow_id, what=f"chunk {chunk.id}")
                    found[chunk.id] = ChunkRecord(
                        id=chunk.id,
                        document_id=chunk.document_id,
                        chunk_index=chunk.chunk_index,
                        text=chunk.text,
                        start_offset=chunk.start_offset,
                        end_offset=chunk.end_offset,
                        token_count=chunk.token_count,
                        workflow_id=chunk.workflow_id,
                    )
        return found

    # =========================================================================
    # Entities and edges
    # =========================================================================

    @_retry_on_conflict
    async def upsert_entity(
        self,
        scope: WorkflowScope,
        name: str,
        entity_type: EntityType | str,
        confidence: float,
        occurrences: int = 1,
    ) -> str:
        """
        Create an entity or merge into the existing one.

        Identity is (workflow, normalized name, type). A merge increments
        frequency by `occurrences` and keeps the highest confidence.

        Returns:
            The deterministic entity id
        """
        confidence = _validate_confidence(confidence)
        if occurrences < 1:
            raise ValueError(f"occurrences must be >= 1, got {occurrences}")
        normalized = normalize_entity_name(name or "")
        if not normalized:
            raise ValueError("entity name is empty after normalization")
        normalized = normalized[:500]
        if not isinstance(entity_type, EntityType):
            entity_type = EntityType.coerce(entity_type)

        entity_id = entity_id_for(scope.workflow_id, normalized, entity_type)
        stmt = self._insert(Entity).values(
            id=entity_id,
            workflow_id=scope.workflow_id,
            name=name.strip()[:500],
            normalized_name=normalized,
            type=entity_type,
            frequency=occurrences,
            confidence=confidence,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Entity.workflow_id, Entity.normalized_name, Entity.type],
            set_={
                "frequency": Entity.frequency + stmt.excluded.frequency,
                "confidence": case(
                    (stmt.excluded.confidence > Entity.confidence, stmt.excluded.confidence),
                    else_=Entity.confidence,
                ),
                "updated_at": func.now(),
            },
        )

        async with self._session() as session:
            async with transaction(session):
                await session.execute(stmt)
        return entity_id

    async def _entity_owners(self, session: AsyncSession, entity_ids: Sequence[str]) -> dict[str, str]:
        rows = await session.execute(
            select(Entity.id, Entity.workflow_id).where(Entity.id.in_(list(entity_ids)))
        )
        return {row.id: row.workflow_id for row in rows}

    async def _check_entities(
        self,
        session: AsyncSession,
        scope: WorkflowScope,
        entity_ids: Sequence[str],
    ) -> None:
        owners = await self._entity_owners(session, entity_ids)
        for entity_id in entity_ids:
            if entity_id not in owners:
                raise GraphStoreError(f"Unknown entity: {entity_id}")
            scope.ensure_same_workflow(owners[entity_id], what=f"entity {entity_id}")

    @_retry_on_conflict
    async def upsert_mention(
        self,
        scope: WorkflowScope,
        document_id: str,
        entity_id: str,
        confidence: float,
        chunk_ids: Sequence[str] = (),
    ) -> None:
        """
        Link a document (and optionally some of its chunks) to an entity.

        Repeated calls keep the highest confidence.
        """
        confidence = _validate_confidence(confidence)
        chunk_ids = _unique(chunk_ids)

        async with self._session() as session:
            async with transaction(session):
                await self._check_entities(session, scope, [entity_id])
                await self._require_document(session, scope, document_id)

                stmt = self._insert(Mention).values(
                    workflow_id=scope.workflow_id,
                    document_id=document_id,
                    entity_id=entity_id,
                    confidence=confidence,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Mention.workflow_id, Mention.document_id, Mention.entity_id],
                    set_={
                        "confidence": case(
                            (stmt.excluded.confidence > Mention.confidence, stmt.excluded.confidence),
                            else_=Mention.confidence,
                        ),
                        "updated_at": func.now(),
                    },
                )
                await session.execute(stmt)

                if not chunk_ids:
                    return

                rows = await session.execute(
                    select(Chunk.id, Chunk.document_id).where(
                        Chunk.workflow_id == scope.workflow_id,
                        Chunk.id.in_(chunk_ids),
                    )
                )
                known = {row.id: row.document_id for row in rows}
                for chunk_id in chunk_ids:
                    if known.get(chunk_id) != document_id:
                        raise GraphStoreError(f"Chunk {chunk_id} does not belong to document {document_id}")

                    stmt = self._insert(ChunkMention).values(
                        workflow_id=scope.workflow_id,
                        document_id=document_id,
                        chunk_id=chunk_id,
                        entity_id=entity_id,
                        confidence=confidence,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[ChunkMention.chunk_id, ChunkMention.entity_id],
                        set_={
                            "confidence": case(
                                (
                                    stmt.excluded.confidence > ChunkMention.confidence,
                                    stmt.excluded.confidence,
                                ),
                                else_=ChunkMention.confidence,
                            ),
                            "updated_at": func.now(),
                        },
                    )
                    await session.execute(stmt)

    @_retry_on_conflict
    async def upsert_relationship(
        self,
        scope: WorkflowScope,
        source_entity_id: str,
        target_entity_id: str,
        relationship_type: str,
        confidence: float,
    ) -> str:
        """
        Create an edge or merge into the existing one (confidence = max).

        CO_OCCURS_WITH is undirected and stored with the smaller id as source.

        Returns:
            The relationship id
        """
        confidence = _validate_confidence(confidence)
        if source_entity_id == target_entity_id:
            raise ValueError("relationship endpoints must differ")
        label = normalize_relationship_label(relationship_type)
        if label == RelationshipLabel.CO_OCCURS_WITH.value:
            source_entity_id, target_entity_id = sorted((source_entity_id, target_entity_id))

        stmt = self._insert(Relationship).values(
            workflow_id=scope.workflow_id,
            source_id=source_entity_id,
            target_id=target_entity_id,
            type=label,
            confidence=confidence,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                Relationship.workflow_id,
                Relationship.source_id,
                Relationship.target_id,
                Relationship.type,
            ],
            set_={
                "confidence": case(
                    (stmt.excluded.confidence > Relationship.confidence, stmt.excluded.confidence),
                    else_=Relationship.confidence,
                ),
                "updated_at": func.now(),
            },
        ).returning(Relationship.id)

        async with self._session() as session:
            async with transaction(session):
                await self._check_entities(session, scope, [source_entity_id, target_entity_id])
                relationship_id = (await session.execute(stmt)).scalar_one()
        return relationship_id

    # =========================================================================
    # Reads
    # =========================================================================

    def _entity_record(self, scope: WorkflowScope, entity: Entity) -> EntityRecord:
        scope.ensure_same_workflow(entity.workflow_id, what=f"entity {entity.id}")
        return EntityRecord(
            id=entity.id,
            workflow_id=entity.workflow_id,
            name=entity.name,
            normalized_name=entity.normalized_name,
            type=entity.type,
            frequency=entity.frequency,
            confidence=entity.confidence,
        )

    async def get_entity(self, scope: WorkflowScope, entity_id: str) -> EntityRecord | None:
        """Fetch one entity of the workflow."""
        entities = await self.get_entities(scope, [entity_id])
        return entities.get(entity_id)

    async def get_entities(self, scope: WorkflowScope, entity_ids: Sequence[str]) -> dict[str, EntityRecord]:
        """Fetch entities of the workflow by id."""
        found: dict[str, EntityRecord] = {}
        ids = _unique(entity_ids)
        if not ids:
            return found
        async with self._session() as session:
            for batch in _batched(ids):
                rows = await session.execute(
                    select(Entity).where(
                        Entity.workflow_id == scope.workflow_id,
                        Entity.id.in_(batch),
                    )
                )
                for entity in rows.scalars():
                    found[entity.id] = self._entity_record(scope, entity)
        return found

    async def list_entities(self, scope: WorkflowScope, limit: int = 1000) -> list[EntityRecord]:
        """Entities of the workflow, most frequent first."""
        async with self._session() as session:
            rows = await session.execute(
                select(Entity)
                .where(Entity.workflow_id == scope.workflow_id)
                .order_by(Entity.frequency.desc(), Entity.normalized_name, Entity.id)
                .limit(limit)
            )
            return [self._entity_record(scope, e) for e in rows.scalars()]

    async def find_entities_for_query(
        self,
        scope: WorkflowScope,
        query_text: str,
        limit: int = 50,
    ) -> list[EntityRecord]:
        """
        Keyword seeds for traversal.

        An entity matches when one of the query's terms occurs in its
        normalized name, or when its whole normalized name occurs in the
        query ("amazon s3" in "where is amazon s3 used").
        """
        normalized_query = normalize_entity_name(query_text or "")
        terms = query_terms(query_text or "")
        if not normalized_query:
            return []

        conditions = [Entity.normalized_name.contains(term, autoescape=True) for term in terms]
        conditions.append(
            and_(
                func.length(Entity.normalized_name) >= 2,
                self._position(Entity.normalized_name, literal(normalized_query)) > 0,
            )
        )

        async with self._session() as session:
            rows = await session.execute(
                select(Entity)
                .where(Entity.workflow_id == scope.workflow_id, or_(*conditions))
                .order_by(Entity.frequency.desc(), Entity.id)
                .limit(limit)
            )
            return [self._entity_record(scope, e) for e in rows.scalars()]

    async def get_document_entity_ids(
        self,
        scope: WorkflowScope,
        document_ids: Sequence[str],
    ) -> dict[str, list[str]]:
        """Entities mentioned by each document, keyed by document id."""
        found: dict[str, list[str]] = {}
        ids = _unique(document_ids)
        if not ids:
            return found
        async with self._session() as session:
            for batch in _batched(ids):
                rows = await session.execute(
                    select(Mention.document_id, Mention.entity_id, Mention.workflow_id)
                    .where(Mention.workflow_id == scope.workflow_id, Mention.document_id.in_(batch))
                    .order_by(Mention.document_id, Mention.entity_id)
                )
                for row in rows:
                    scope.ensure_same_workflow(row.workflow_id, what="mention")
                    found.setdefault(row.document_id, []).append(row.entity_id)
        return found

    async def get_entity_chunks(
        self,
        scope: WorkflowScope,
        entity_ids: Sequence[str],
    ) -> list[ChunkEntityLink]:
        """Chunk-mention edges of the given entities."""
        links: list[ChunkEntityLink] = []
        ids = _unique(entity_ids)
        if not ids:
            return links
        async with self._session() as session:
            for batch in _batched(ids):
                rows = await session.execute(
                    select(
                        ChunkMention.chunk_id,
                        ChunkMention.document_id,
                        ChunkMention.entity_id,
                        ChunkMention.confidence,
                        ChunkMention.workflow_id,
                    ).where(
                        ChunkMention.workflow_id == scope.workflow_id,
                        ChunkMention.entity_id.in_(batch),
                    )
                )
                for row in rows:
                    scope.ensure_same_workflow(row.workflow_id, what="chunk mention")
                    links.append(
                        ChunkEntityLink(
                            chunk_id=row.chunk_id,
                            document_id=row.document_id,
                            entity_id=row.entity_id,
                            confidence=row.confidence,
                        )
                    )
        return links

    # =========================================================================
    # Traversal
    # =========================================================================

    async def traverse(
        self,
        scope: WorkflowScope,
        seed_entity_ids: Sequence[str],
        max_hops: int,
        decay: float | None = None,
    ) -> list[TraversalHit]:
        """
        Breadth-first traversal from seed entities.

        Edges are treated as undirected and restricted to the workflow.
        A path's score is the product of its edge confidences times
        decay ** hop_count; each entity keeps its best-scoring path.
        Seeds are returned at hop 0 with confidence 1.0; seeds unknown to
        the workflow are ignored.

        Args:
            scope: Workflow to traverse
            seed_entity_ids: Starting entities
            max_hops: Maximum path length (0 returns the seeds only)
            decay: Per-hop decay in (0, 1); defaults to the store's hop_decay

        Returns:
            Hits ordered by aggregated confidence (desc), hop count, entity id
        """
        decay = self.hop_decay if decay is None else decay
        if not 0.0 < decay < 1.0:
            raise ValueError(f"decay must be within (0, 1), got {decay}")
        if max_hops < 0:
            raise ValueError(f"max_hops must be >= 0, got {max_hops}")

        seeds = _unique(seed_entity_ids)
        if not seeds:
            return []

        best: dict[str, TraversalHit] = {}

        async with self._session() as session:
            for batch in _batched(seeds):
                rows = await session.execute(
                    select(Entity.id, Entity.workflow_id).where(
                        Entity.workflow_id == scope.workflow_id,
                        Entity.id.in_(batch),
                    )
                )
                for row in rows:
                    scope.ensure_same_workflow(row.workflow_id, what=f"entity {row.id}")
                    best[row.id] = TraversalHit(row.id, (row.id,), 0, 1.0)

            # frontier: entity -> (product of edge confidences, path)
            frontier: dict[str, tuple[float, tuple[str, ...]]] = {
                entity_id: (1.0, hit.path) for entity_id, hit in best.items()
            }

            for hop in range(1, max_hops + 1):
                if not frontier:
                    break
                next_frontier: dict[str, tuple[float, tuple[str, ...]]] = {}
                level_decay = decay ** hop
                nodes = list(frontier)

                for batch in _batched(nodes):
                    rows = await session.execute(
                        select(
                            Relationship.source_id,
                            Relationship.target_id,
                            Relationship.confidence,
                            Relationship.workflow_id,
                        ).where(
                            Relationship.workflow_id == scope.workflow_id,
                            or_(
                                Relationship.source_id.in_(batch),
                                Relationship.target_id.in_(batch),
                            ),
                        )
                    )
                    for row in rows:
                        scope.ensure_same_workflow(row.workflow_id, what="relationship")
                        for here, there in ((row.source_id, row.target_id), (row.target_id, row.source_id)):
                            if here not in frontier:
                                continue
                            product, path = frontier[here]
                            if there in path:
                                continue
                            new_product = product * row.confidence
                            score = new_product * level_decay
                            current = best.get(there)
                            if current is not None and current.aggregated_confidence >= score:
                                continue
                            new_path = (*path, there)
                            best[there] = TraversalHit(there, new_path, hop, score)
                            pending = next_frontier.get(there)
                            if pending is None or pending[0] < new_product:
                                next_frontier[there] = (new_product, new_path)

                frontier = next_frontier

        return sorted(
            best.values(),
            key=lambda h: (-h.aggregated_confidence, h.hop_count, h.entity_id),
        )

    # =========================================================================
    # Export and teardown
    # =========================================================================

    async def get_workflow_graph(self, scope: WorkflowScope) -> WorkflowGraph:
        """
        Export the workflow graph for visualization.

        Nodes are entities and documents; edges are relationships and
        document MENTIONS edges.
        """
        graph = WorkflowGraph()
        type_counts: dict[str, int] = {}

        async with self._session() as session:
            entities = await session.execute(
                select(Entity)
                .where(Entity.workflow_id == scope.workflow_id)
                .order_by(Entity.frequency.desc(), Entity.id)
            )
            for entity in entities.scalars():
                record = self._entity_record(scope, entity)
                type_counts[record.type.value] = type_counts.get(record.type.value, 0) + 1
                graph.nodes.append({
                    "id": record.id,
                    "label": record.name,
                    "type": record.type.value,
                    "frequency": record.frequency,
                })

            documents = await session.execute(
                select(Document.id, Document.filename, Document.workflow_id)
                .where(Document.workflow_id == scope.workflow_id)
                .order_by(Document.id)
            )
            document_count = 0
            for row in documents:
                scope.ensure_same_workflow(row.workflow_id, what=f"document {row.id}")
                document_count += 1
                graph.nodes.append({
                    "id": row.id,
                    "label": row.filename or row.id,
                    "type": "DOCUMENT",
                    "frequency": 1,
                })

            relationships = await session.execute(
                select(Relationship)
                .where(Relationship.workflow_id == scope.workflow_id)
                .order_by(Relationship.source_id, Relationship.target_id, Relationship.type)
            )
            relationship_count = 0
            for rel in relationships.scalars():
                scope.ensure_same_workflow(rel.workflow_id, what="relationship")
                relationship_count += 1
                graph.edges.append({
                    "source": rel.source_id,
                    "target": rel.target_id,
                    "type": rel.type,
                    "confidence": rel.confidence,
                })

            mentions = await session.execute(
                select(Mention)
                .where(Mention.workflow_id == scope.workflow_id)
                .order_by(Mention.document_id, Mention.entity_id)
            )
            mention_count = 0
            for mention in mentions.scalars():
                scope.ensure_same_workflow(mention.workflow_id, what="mention")
                mention_count += 1
                graph.edges.append({
                    "source": mention.document_id,
                    "target": mention.entity_id,
                    "type": "MENTIONS",
                    "confidence": mention.confidence,
                })

        graph.stats = {
            "entity_count": sum(type_counts.values()),
            "document_count": document_count,
            "relationship_count": relationship_count,
            "mention_count": mention_count,
            "entity_types": type_counts,
        }
        return graph

    async def delete_workflow_data(self, scope: WorkflowScope) -> WorkflowDeletion:
        """Remove every document, chunk, entity and edge of the workflow."""
        deleted = WorkflowDeletion()
        wf = scope.workflow_id

        async with self._session() as session:
            async with transaction(session):
                deleted.chunk_mentions = (
                    await session.execute(delete(ChunkMention).where(ChunkMention.workflow_id == wf))
                ).rowcount or 0
                deleted.mentions = (
                    await session.execute(delete(Mention).where(Mention.workflow_id == wf))
                ).rowcount or 0
                deleted.relationships = (
                    await session.execute(delete(Relationship).where(Relationship.workflow_id == wf))
                ).rowcount or 0
                deleted.chunks = (
                    await session.execute(delete(Chunk).where(Chunk.workflow_id == wf))
                ).rowcount or 0
                deleted.entities = (
                    await session.execute(delete(Entity).where(Entity.workflow_id == wf))
                ).rowcount or 0
                deleted.documents = (
                    await session.execute(delete(Document).where(Document.workflow_id == wf))
                ).rowcount or 0

        logger.info("Deleted workflow graph data", workflow_id=wf, **deleted.to_dict())
        return deleted
