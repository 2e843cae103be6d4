"""
Relationship model for Knowledge Graph edges.

Relationships connect two entities of the same workflow:
- "Data Pipeline USES Amazon S3"
- "AWS Lambda CO_OCCURS_WITH Amazon S3"

Key features:
- Free-form, upper-snake-cased labels
- Confidence scores from extraction, merged as max(old, new)
- Unique constraint on (workflow_id, source_id, target_id, type) prevents duplicates
- CO_OCCURS_WITH edges are stored once per pair (smaller entity id as source)
"""

from sqlalchemy import CheckConstraint, Float, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rfp_graphrag.db.base import Base, TimestampMixin, UUIDMixin


class Relationship(UUIDMixin, TimestampMixin, Base):
    """
    An edge in the Knowledge Graph connecting two entities.

    Attributes:
        id: UUID7 primary key
        workflow_id: Owning workflow
        source_id: Source entity
        target_id: Target entity
        type: Relationship label (e.g. USES, PART_OF, CO_OCCURS_WITH)
        confidence: Highest confidence seen for this edge (0.0 to 1.0)

    Semantics:
        Stored direction is SOURCE [TYPE] TARGET; traversal treats every
        edge as undirected.
    """

    workflow_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Owning workflow",
    )

    source_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Source entity",
    )

    target_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Target entity",
    )

    type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Relationship label",
    )

    confidence: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.5,
        comment="Highest confidence seen for this edge",
    )

    __table_args__ = (
        UniqueConstraint(
            "workflow_id",
            "source_id",
            "target_id",
            "type",
            name="uq_relationships_workflow_id_source_id_target_id_type",
        ),
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="confidence_range"),
        CheckConstraint("source_id != target_id", name="no_self_loop"),
    )

    def __repr__(self) -> str:
        return f"<Relationship({self.source_id} -[{self.type}]-> {self.target_id}, confidence={self.confidence:.2f})>"


Index("ix_relationships_workflow_id_type", Relationship.workflow_id, Relationship.type)
