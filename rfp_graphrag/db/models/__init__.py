"""
Database models for the workflow Knowledge Graph.

This package contains SQLAlchemy models for:
- Document: Ingested RFP files, one workflow each
- Chunk: Text segments shared with the vector index
- Entity: KG nodes (people, organizations, technologies, concepts, ...)
- Mention / ChunkMention: Document and chunk edges to entities
- Relationship: KG edges between entities

All rows carry workflow_id; nothing is shared between workflows.
"""

from rfp_graphrag.db.models.chunk import Chunk
from rfp_graphrag.db.models.document import Document
from rfp_graphrag.db.models.entity import Entity, entity_id_for, normalize_entity_name
from rfp_graphrag.db.models.mention import ChunkMention, Mention
from rfp_graphrag.db.models.relationship import Relationship

__all__ = [
    "Document",
    "Chunk",
    "Entity",
    "Mention",
    "ChunkMention",
    "Relationship",
    "entity_id_for",
    "normalize_entity_name",
]
