"""
Mention edges linking documents and chunks to the entities they contain.

- Mention: Document -> Entity (one row per pair, confidence = max seen)
- ChunkMention: Chunk -> Entity (lets graph scores resolve to chunks)

Both are merged with INSERT ... ON CONFLICT so concurrent ingestion of
the same document never duplicates an edge.
"""

from sqlalchemy import (
    CheckConstraint,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from rfp_graphrag.db.base import Base, TimestampMixin, UUIDMixin


class Mention(UUIDMixin, TimestampMixin, Base):
    """
    Edge from a document to an entity it mentions.

    Constraints:
        - (workflow_id, document_id, entity_id) must be unique
        - confidence must be between 0.0 and 1.0
    """

    workflow_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
        comment="Owning workflow",
    )

    document_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Mentioning document",
    )

    entity_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Mentioned entity",
    )

    confidence: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=1.0,
        comment="Highest extraction confidence for this mention",
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            ondelete="CASCADE",
            name="fk_mentions_document",
        ),
        UniqueConstraint(
            "workflow_id",
            "document_id",
            "entity_id",
            name="uq_mentions_workflow_id_document_id_entity_id",
        ),
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="confidence_range"),
    )

    def __repr__(self) -> str:
        return f"<Mention(document_id={self.document_id!r}, entity_id={self.entity_id!r}, confidence={self.confidence:.2f})>"


class ChunkMention(UUIDMixin, TimestampMixin, Base):
    """
    Edge from a chunk to an entity extracted from it.

    Constraints:
        - (chunk_id, entity_id) must be unique
        - confidence must be between 0.0 and 1.0
    """

    workflow_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Owning workflow",
    )

    document_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Document of the chunk",
    )

    chunk_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("chunks.id", ondelete="CASCADE"),
        nullable=False,
        comment="Chunk containing the mention",
    )

    entity_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Mentioned entity",
    )

    confidence: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=1.0,
        comment="Highest extraction confidence within this chunk",
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            ondelete="CASCADE",
            name="fk_chunk_mentions_document",
        ),
        UniqueConstraint("chunk_id", "entity_id", name="uq_chunk_mentions_chunk_id_entity_id"),
        CheckConstraint("confidence >= 0.0 AND confidence <= 1.0", name="confidence_range"),
    )

    def __repr__(self) -> str:
        return f"<ChunkMention(chunk_id={self.chunk_id!r}, entity_id={self.entity_id!r})>"


Index("ix_chunk_mentions_workflow_id_entity_id", ChunkMention.workflow_id, ChunkMention.entity_id)
Index("ix_chunk_mentions_workflow_id_document_id", ChunkMention.workflow_id, ChunkMention.document_id)
