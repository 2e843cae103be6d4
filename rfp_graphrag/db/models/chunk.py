"""
Chunk model for storing text segments of a document.

Chunks are the unit shared by both retrieval paths:
1. The vector index stores one embedding per chunk (keyed by the same id)
2. Chunk mentions link graph entities back to the chunks they appear in

Chunk ids are deterministic (uuid5 of workflow id, document id and index) so
the vector index and the graph store agree on them without coordination.
"""

from typing import TYPE_CHECKING

from sqlalchemy import ForeignKeyConstraint, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rfp_graphrag.db.base import Base, CreatedAtMixin

if TYPE_CHECKING:
    from rfp_graphrag.db.models.document import Document


class Chunk(CreatedAtMixin, Base):
    """
    A text segment from a document.

    Attributes:
        id: Deterministic chunk id (uuid5 of "workflow_id/document_id:chunk_index")
        workflow_id: Owning workflow (part of the document foreign key)
        document_id: Parent document within the workflow
        chunk_index: Position in document (0, 1, 2, ...)
        text: The chunk content
        start_offset: Character start position in original document
        end_offset: Character end position in original document
        token_count: Approximate token count
        created_at: When the chunk was created

    Constraints:
        - (workflow_id, document_id, chunk_index) must be unique
    """

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        comment="Deterministic chunk id",
    )

    # === Foreign Key (workflow_id, document_id) ===
    workflow_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Owning workflow",
    )

    document_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Parent document",
    )

    # === Core Fields ===
    chunk_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Position in document sequence (0-indexed)",
    )

    text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Chunk content",
    )

    start_offset: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Character start position in original document",
    )

    end_offset: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Character end position in original document",
    )

    token_count: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Approximate token count",
    )

    # === Relationships ===
    document: Mapped["Document"] = relationship(
        "Document",
        back_populates="chunks",
        lazy="noload",
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            ondelete="CASCADE",
            name="fk_chunks_document",
        ),
        UniqueConstraint(
            "workflow_id",
            "document_id",
            "chunk_index",
            name="uq_chunks_workflow_id_document_id_chunk_index",
        ),
    )

    def __repr__(self) -> str:
        return f"<Chunk(document_id={self.document_id!r}, index={self.chunk_index}, len={len(self.text)})>"


Index("ix_chunks_workflow_id_document_id", Chunk.workflow_id, Chunk.document_id)
