"""
Document model for storing ingested RFP files.

Documents are the source material from which entities and relationships
are extracted. Each document belongs to exactly one workflow.

Key features:
- Caller-supplied id, unique per workflow (re-ingestion upserts the same row)
- content_hash to detect whether re-ingested text changed
- Relationship to chunks for text segmentation
"""

from typing import TYPE_CHECKING

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rfp_graphrag.db.base import Base, CreatedAtMixin

if TYPE_CHECKING:
    from rfp_graphrag.db.models.chunk import Chunk


class Document(CreatedAtMixin, Base):
    """
    A source document within a workflow.

    Attributes:
        workflow_id: Owning workflow
        id: Document identifier (assigned by the ingesting caller)
        filename: Original filename, if known
        content: Full extracted text
        content_hash: SHA-256 of content
        created_at: When the document was first ingested

    Relationships:
        chunks: Text segments created from this document

    Example:
        document = Document(
            id="doc-rfp-001",
            workflow_id="wf-acme-2024",
            filename="rfp_cloud_migration.pdf",
            content="The contractor shall migrate storage to Amazon S3...",
            content_hash="9f2c...",
        )
    """

    # Two workflows may both ingest a document called "rfp-001"
    workflow_id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="Owning workflow",
    )

    id: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
        comment="Document identifier (caller-assigned, unique per workflow)",
    )

    filename: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
        comment="Original filename",
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="Full document text",
    )

    content_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 of content",
    )

    # === Relationships ===
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id!r}, workflow_id={self.workflow_id!r})>"


Index("ix_documents_workflow_id_created_at", Document.workflow_id, Document.created_at)
