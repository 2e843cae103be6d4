"""
Controlled vocabulary enums for the workflow knowledge graph.

This module defines:
- Entity types (nodes in the KG)
- Well-known relationship labels (edges in the KG; labels stay free-form)
- Search provenance tags
- Graph store health states

Entity types are a closed set; anything the extraction model returns that
does not map onto it is stored as OTHER rather than rejected.
"""

import re
from enum import Enum

_LABEL_CLEANUP = re.compile(r"[^A-Z0-9]+")


class EntityType(str, Enum):
    """
    Controlled vocabulary for entity types in the knowledge graph.

    These are the categories the extraction prompt asks for when reading
    RFP documents:
    - PERSON: people, roles and positions ("Contracting Officer")
    - ORGANIZATION: agencies, companies, departments ("Department of Energy")
    - TECHNOLOGY: systems, platforms, tools ("Amazon S3", "Kubernetes")
    - CONCEPT: requirements, standards, methodologies ("FedRAMP", "Agile")
    - LOCATION: places ("Washington DC")
    - OTHER: anything else worth tracking

    The string values match the extraction schema for direct mapping
    from LLM outputs.
    """

    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    TECHNOLOGY = "TECHNOLOGY"
    CONCEPT = "CONCEPT"
    LOCATION = "LOCATION"
    OTHER = "OTHER"

    @classmethod
    def from_string(cls, value: str | None) -> "EntityType | None":
        """
        Convert a string to EntityType, with fuzzy matching.

        Handles common variations in LLM outputs:
        - Case insensitivity: "technology" -> TECHNOLOGY
        - Plurals and separators: "Organizations", "org" -> ORGANIZATION

        Returns None if no match found.

        Examples:
            EntityType.from_string("Person")        -> EntityType.PERSON
            EntityType.from_string("organisation")  -> EntityType.ORGANIZATION
            EntityType.from_string("widget")        -> None
        """
        if not value or not isinstance(value, str):
            return None

        normalized = value.strip().upper()

        for member in cls:
            if member.value == normalized:
                return member

        normalized_alt = re.sub(r"[^A-Z]", "", normalized)
        if normalized_alt.endswith("S"):
            normalized_alt = normalized_alt[:-1]
        return _ENTITY_TYPE_ALIASES.get(normalized_alt)

    @classmethod
    def coerce(cls, value: str | None) -> "EntityType":
        """Map any model-provided type onto the vocabulary, defaulting to OTHER."""
        return cls.from_string(value) or cls.OTHER


_ENTITY_TYPE_ALIASES: dict[str, EntityType] = {
    "PERSON": EntityType.PERSON,
    "PEOPLE": EntityType.PERSON,
    "ROLE": EntityType.PERSON,
    "ORGANIZATION": EntityType.ORGANIZATION,
    "ORGANISATION": EntityType.ORGANIZATION,
    "ORG": EntityType.ORGANIZATION,
    "COMPANY": EntityType.ORGANIZATION,
    "AGENCY": EntityType.ORGANIZATION,
    "TECHNOLOGY": EntityType.TECHNOLOGY,
    "TECH": EntityType.TECHNOLOGY,
    "SYSTEM": EntityType.TECHNOLOGY,
    "PRODUCT": EntityType.TECHNOLOGY,
    "TOOL": EntityType.TECHNOLOGY,
    "CONCEPT": EntityType.CONCEPT,
    "STANDARD": EntityType.CONCEPT,
    "REQUIREMENT": EntityType.CONCEPT,
    "METHODOLOGY": EntityType.CONCEPT,
    "LOCATION": EntityType.LOCATION,
    "PLACE": EntityType.LOCATION,
    "GPE": EntityType.LOCATION,
    "OTHER": EntityType.OTHER,
    "MISC": EntityType.OTHER,
}


class RelationshipLabel(str, Enum):
    """
    Well-known relationship labels.

    Relationship types in the graph are free-form (whatever the extraction
    model names them, upper-snake-cased); these are the labels the pipeline
    itself produces or prompts for.
    """

    CO_OCCURS_WITH = "CO_OCCURS_WITH"
    RELATED_TO = "RELATED_TO"
    USES = "USES"
    PART_OF = "PART_OF"
    WORKS_WITH = "WORKS_WITH"
    REQUIRES = "REQUIRES"


def normalize_relationship_label(value: str | None) -> str:
    """
    Normalize a free-form relationship label.

    "uses" -> "USES", "part of" -> "PART_OF", "" -> "RELATED_TO".
    Labels are capped at 64 characters.
    """
    if not value or not isinstance(value, str):
        return RelationshipLabel.RELATED_TO.value
    label = _LABEL_CLEANUP.sub("_", value.strip().upper()).strip("_")
    return label[:64] or RelationshipLabel.RELATED_TO.value


class Provenance(str, Enum):
    """Which retrieval path contributed to a search result."""

    VECTOR = "vector"
    GRAPH = "graph"
    HYBRID = "hybrid"


class SearchMode(str, Enum):
    """Whether a search used the graph path at all."""

    HYBRID = "hybrid"
    VECTOR_ONLY = "vector_only"


class GraphStatus(str, Enum):
    """
    Health states of the graph store as seen by the fallback controller.

    Lifecycle::

        Uninitialized -> GraphEnabled <-> VectorOnly
                              |
                        GraphDegraded (reported while failures accumulate)
    """

    UNINITIALIZED = "Uninitialized"
    GRAPH_ENABLED = "GraphEnabled"
    GRAPH_DEGRADED = "GraphDegraded"
    VECTOR_ONLY = "VectorOnly"

