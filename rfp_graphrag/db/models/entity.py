"""
Entity model for Knowledge Graph nodes.

Entities represent named concepts extracted from RFP documents:
- People and roles (e.g., Contracting Officer)
- Organizations (e.g., Department of Energy)
- Technologies (e.g., Amazon S3, AWS Lambda)
- Concepts (e.g., FedRAMP Moderate)
- Locations

Key features:
- Normalized names for deduplication and matching
- Deterministic ids, so concurrent writers agree on identity
- Unique constraint on (workflow_id, normalized_name, type) for idempotent upserts
- Frequency counter incremented on every repeat mention
"""

import re
import uuid

from sqlalchemy import CheckConstraint, Enum, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rfp_graphrag.db.base import Base, TimestampMixin
from rfp_graphrag.db.enums import EntityType

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = " \t\n\r.,;:!?\"'()[]{}"

ENTITY_NAMESPACE = uuid.UUID("6f1c5a0e-3b7d-5c2a-9e41-0d8b7f2a4c13")


def normalize_entity_name(name: str) -> str:
    """
    Canonical form used for entity identity.

    1. Lowercase conversion
    2. Whitespace normalization (collapse multiple spaces)
    3. Leading/trailing punctuation and whitespace removal
    """
    collapsed = _WHITESPACE.sub(" ", name.lower())
    return collapsed.strip(_EDGE_PUNCTUATION)


def entity_id_for(workflow_id: str, normalized_name: str, entity_type: EntityType) -> str:
    """Deterministic entity id for a (workflow, name, type) identity."""
    return str(uuid.uuid5(ENTITY_NAMESPACE, f"{workflow_id}:{entity_type.value}:{normalized_name}"))


class Entity(TimestampMixin, Base):
    """
    A node in the Knowledge Graph.

    Attributes:
        id: Deterministic id (uuid5 of workflow, type and normalized name)
        workflow_id: Owning workflow
        name: Display name (first form seen by extraction)
        normalized_name: Canonical form for matching (lowercase, trimmed)
        type: Entity type from controlled vocabulary (EntityType enum)
        frequency: Number of extraction windows that mentioned the entity
        confidence: Highest extraction confidence seen
        created_at: When first extracted
        updated_at: Last merge

    Constraints:
        - (workflow_id, normalized_name, type) must be unique
        - frequency >= 1
    """

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        comment="Deterministic entity id",
    )

    workflow_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Owning workflow",
    )

    name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Display name (original form)",
    )

    normalized_name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Canonical form for matching (lowercased, trimmed)",
    )

    type: Mapped[EntityType] = mapped_column(
        Enum(
            EntityType,
            name="entitytype",
            native_enum=False,
            length=32,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        comment="Entity type from controlled vocabulary",
    )

    frequency: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Mention count across extraction runs",
    )

    confidence: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Highest extraction confidence seen",
    )

    __table_args__ = (
        # Same workflow + normalized name + type = same entity
        Index(
            "uq_entities_workflow_id_normalized_name_type",
            "workflow_id",
            "normalized_name",
            "type",
            unique=True,
        ),
        CheckConstraint("frequency >= 1", name="frequency_positive"),
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="confidence_range"),
    )

    def __repr__(self) -> str:
        return f"<Entity(name={self.name!r}, type={self.type.value}, workflow_id={self.workflow_id!r})>"


Index("ix_entities_workflow_id_type", Entity.workflow_id, Entity.type)
