"""
Database package - SQLAlchemy models, session management, and utilities.

Exports:
- Base classes and mixins for model definition
- Engine/session factory construction
- Database lifecycle utilities
- Controlled vocabulary enums
- All database models

Usage:
    from rfp_graphrag.db import Base, create_engine_for_url, session_scope
    from rfp_graphrag.db import Document, Entity, Relationship
    from rfp_graphrag.db import EntityType, GraphStatus
"""

from rfp_graphrag.db.base import (
    Base,
    CreatedAtMixin,
    TimestampMixin,
    UUIDMixin,
    create_engine_for_url,
    create_session_factory,
    init_db,
    is_sqlite_url,
    metadata,
)
from rfp_graphrag.db.enums import (
    EntityType,
    GraphStatus,
    Provenance,
    RelationshipLabel,
    SearchMode,
    normalize_relationship_label,
)
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

__all__ = [
    # Base classes
    "Base",
    # Mixins
    "UUIDMixin",
    "TimestampMixin",
    "CreatedAtMixin",
    # Enums
    "EntityType",
    "RelationshipLabel",
    "Provenance",
    "SearchMode",
    "GraphStatus",
    # Helpers
    "normalize_relationship_label",
    "entity_id_for",
    "normalize_entity_name",
    # Models
    "Document",
    "Chunk",
    "Entity",
    "Mention",
    "ChunkMention",
    "Relationship",
    # Engine and factory
    "create_engine_for_url",
    "create_session_factory",
    "is_sqlite_url",
    "metadata",
    # Session utilities
    "session_scope",
    "transaction",
    # Lifecycle
    "init_db",
]
