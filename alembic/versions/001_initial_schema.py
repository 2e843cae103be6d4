"""Initial schema - create all knowledge graph tables.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

This migration creates the complete workflow Knowledge Graph schema:
- documents: Ingested RFP files
- chunks: Text segments shared with the vector index
- entities: KG nodes (people, organizations, technologies, concepts, ...)
- mentions: Document -> entity edges
- chunk_mentions: Chunk -> entity edges
- relationships: Entity -> entity edges

It also creates:
- All indexes for workflow-scoped reads and traversal
- The unique keys that upserts conflict on
- Check constraints for confidences and frequencies

Entity types are stored as VARCHAR (non-native enum) so new types do not
need a migration.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
            comment="When the row was created",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
            comment="Last merge into the row",
        ),
    ]


def upgrade() -> None:
    """Create all tables, indexes, and constraints."""

    # --------------------------------------------------------------------------
    # documents table
    # --------------------------------------------------------------------------
    op.create_table(
        "documents",
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column(
            "id",
            sa.String(length=128),
            nullable=False,
            comment="Document identifier (caller-assigned, unique per workflow)",
        ),
        sa.Column("filename", sa.String(length=500), nullable=True, comment="Original filename"),
        sa.Column("content", sa.Text(), nullable=False, comment="Full document text"),
        sa.Column("content_hash", sa.String(length=64), nullable=True, comment="SHA-256 of content"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
            comment="When the document was first ingested",
        ),
        sa.PrimaryKeyConstraint("workflow_id", "id", name="pk_documents"),
    )
    op.create_index(
        "ix_documents_workflow_id_created_at",
        "documents",
        ["workflow_id", "created_at"],
        unique=False,
    )

    # --------------------------------------------------------------------------
    # chunks table
    # --------------------------------------------------------------------------
    op.create_table(
        "chunks",
        sa.Column("id", sa.String(length=36), nullable=False, comment="Deterministic chunk id"),
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column("document_id", sa.String(length=128), nullable=False, comment="Parent document"),
        sa.Column(
            "chunk_index",
            sa.Integer(),
            nullable=False,
            comment="Position in document sequence (0-indexed)",
        ),
        sa.Column("text", sa.Text(), nullable=False, comment="Chunk content"),
        sa.Column(
            "start_offset",
            sa.Integer(),
            nullable=False,
            comment="Character start position in original document",
        ),
        sa.Column(
            "end_offset",
            sa.Integer(),
            nullable=False,
            comment="Character end position in original document",
        ),
        sa.Column("token_count", sa.Integer(), nullable=True, comment="Approximate token count"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
            comment="When the chunk was created",
        ),
        sa.ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            name="fk_chunks_document",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_chunks"),
        sa.UniqueConstraint(
            "workflow_id",
            "document_id",
            "chunk_index",
            name="uq_chunks_workflow_id_document_id_chunk_index",
        ),
    )
    op.create_index(
        "ix_chunks_workflow_id_document_id",
        "chunks",
        ["workflow_id", "document_id"],
        unique=False,
    )

    # --------------------------------------------------------------------------
    # entities table
    # --------------------------------------------------------------------------
    op.create_table(
        "entities",
        sa.Column("id", sa.String(length=36), nullable=False, comment="Deterministic entity id"),
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column("name", sa.String(length=500), nullable=False, comment="Display name (original form)"),
        sa.Column(
            "normalized_name",
            sa.String(length=500),
            nullable=False,
            comment="Canonical form for matching (lowercased, trimmed)",
        ),
        sa.Column(
            "type",
            sa.String(length=32),
            nullable=False,
            comment="Entity type from controlled vocabulary",
        ),
        sa.Column(
            "frequency",
            sa.Integer(),
            nullable=False,
            comment="Mention count across extraction runs",
        ),
        sa.Column(
            "confidence",
            sa.Float(),
            nullable=False,
            comment="Highest extraction confidence seen",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_entities"),
        sa.CheckConstraint("frequency >= 1", name="ck_entities_frequency_positive"),
        sa.CheckConstraint(
            "confidence >= 0.0 AND confidence <= 1.0",
            name="ck_entities_confidence_range",
        ),
        sa.CheckConstraint(
            "type IN ('PERSON', 'ORGANIZATION', 'TECHNOLOGY', 'CONCEPT', 'LOCATION', 'OTHER')",
            name="ck_entities_entitytype",
        ),
    )
    op.create_index(
        "uq_entities_workflow_id_normalized_name_type",
        "entities",
        ["workflow_id", "normalized_name", "type"],
        unique=True,
    )
    op.create_index("ix_entities_workflow_id_type", "entities", ["workflow_id", "type"], unique=False)

    # --------------------------------------------------------------------------
    # mentions table
    # --------------------------------------------------------------------------
    op.create_table(
        "mentions",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID7 primary key"),
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column("document_id", sa.String(length=128), nullable=False, comment="Mentioning document"),
        sa.Column("entity_id", sa.String(length=36), nullable=False, comment="Mentioned entity"),
        sa.Column(
            "confidence",
            sa.Float(),
            nullable=False,
            comment="Highest extraction confidence for this mention",
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            name="fk_mentions_document",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entities.id"],
            name="fk_mentions_entity_id_entities",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_mentions"),
        sa.UniqueConstraint(
            "workflow_id",
            "document_id",
            "entity_id",
            name="uq_mentions_workflow_id_document_id_entity_id",
        ),
        sa.CheckConstraint(
            "confidence >= 0.0 AND confidence <= 1.0",
            name="ck_mentions_confidence_range",
        ),
    )
    op.create_index("ix_mentions_workflow_id", "mentions", ["workflow_id"], unique=False)
    op.create_index("ix_mentions_entity_id", "mentions", ["entity_id"], unique=False)

    # --------------------------------------------------------------------------
    # chunk_mentions table
    # --------------------------------------------------------------------------
    op.create_table(
        "chunk_mentions",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID7 primary key"),
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column("document_id", sa.String(length=128), nullable=False, comment="Document of the chunk"),
        sa.Column("chunk_id", sa.String(length=36), nullable=False, comment="Chunk containing the mention"),
        sa.Column("entity_id", sa.String(length=36), nullable=False, comment="Mentioned entity"),
        sa.Column(
            "confidence",
            sa.Float(),
            nullable=False,
            comment="Highest extraction confidence within this chunk",
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["workflow_id", "document_id"],
            ["documents.workflow_id", "documents.id"],
            name="fk_chunk_mentions_document",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["chunk_id"],
            ["chunks.id"],
            name="fk_chunk_mentions_chunk_id_chunks",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entities.id"],
            name="fk_chunk_mentions_entity_id_entities",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_chunk_mentions"),
        sa.UniqueConstraint("chunk_id", "entity_id", name="uq_chunk_mentions_chunk_id_entity_id"),
        sa.CheckConstraint(
            "confidence >= 0.0 AND confidence <= 1.0",
            name="ck_chunk_mentions_confidence_range",
        ),
    )
    op.create_index(
        "ix_chunk_mentions_workflow_id_document_id",
        "chunk_mentions",
        ["workflow_id", "document_id"],
        unique=False,
    )
    op.create_index("ix_chunk_mentions_entity_id", "chunk_mentions", ["entity_id"], unique=False)
    op.create_index(
        "ix_chunk_mentions_workflow_id_entity_id",
        "chunk_mentions",
        ["workflow_id", "entity_id"],
        unique=False,
    )

    # --------------------------------------------------------------------------
    # relationships table
    # --------------------------------------------------------------------------
    op.create_table(
        "relationships",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID7 primary key"),
        sa.Column("workflow_id", sa.String(length=128), nullable=False, comment="Owning workflow"),
        sa.Column("source_id", sa.String(length=36), nullable=False, comment="Source entity"),
        sa.Column("target_id", sa.String(length=36), nullable=False, comment="Target entity"),
        sa.Column("type", sa.String(length=64), nullable=False, comment="Relationship label"),
        sa.Column(
            "confidence",
            sa.Float(),
            nullable=False,
            comment="Highest confidence seen for this edge",
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["source_id"],
            ["entities.id"],
            name="fk_relationships_source_id_entities",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["target_id"],
            ["entities.id"],
            name="fk_relationships_target_id_entities",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_relationships"),
        sa.UniqueConstraint(
            "workflow_id",
            "source_id",
            "target_id",
            "type",
            name="uq_relationships_workflow_id_source_id_target_id_type",
        ),
        sa.CheckConstraint(
            "confidence >= 0.0 AND confidence <= 1.0",
            name="ck_relationships_confidence_range",
        ),
        sa.CheckConstraint("source_id != target_id", name="ck_relationships_no_self_loop"),
    )
    op.create_index("ix_relationships_source_id", "relationships", ["source_id"], unique=False)
    op.create_index("ix_relationships_target_id", "relationships", ["target_id"], unique=False)
    op.create_index(
        "ix_relationships_workflow_id_type",
        "relationships",
        ["workflow_id", "type"],
        unique=False,
    )


def downgrade() -> None:
    """Drop all tables in reverse order."""

    # Drop tables in reverse dependency order
    op.drop_table("relationships")
    op.drop_table("chunk_mentions")
    op.drop_table("mentions")
    op.drop_table("entities")
    op.drop_table("chunks")
    op.drop_table("documents")
