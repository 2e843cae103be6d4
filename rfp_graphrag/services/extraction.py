"""
Entity and relationship extraction service.

This module provides LLM-based extraction of entities and relationships from
RFP documents and merges the results into the workflow knowledge graph.

Features:
- One structured prompt per extraction window
- Defensive response parsing into `Parsed | ParseFailed`
- Bounded concurrent window extraction with a join barrier
- Per-document entity deduplication and co-occurrence edges
- Idempotent graph writes (re-running a document merges, never duplicates)
"""

import asyncio
import json
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from itertools import combinations

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.logging import bound_context, get_logger
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.db.enums import EntityType, RelationshipLabel, normalize_relationship_label
from rfp_graphrag.db.models import normalize_entity_name
from rfp_graphrag.services.chunking import chunk_text, window_id_for
from rfp_graphrag.services.graph_store import ChunkRecord, SqlGraphStore
from rfp_graphrag.services.llm_client import BaseLLMClient, LLMMessage, LLMParseError

logger = get_logger(__name__)

DEFAULT_ENTITY_CONFIDENCE = 0.5


# =============================================================================
# Prompts
# =============================================================================

EXTRACTION_SYSTEM_PROMPT = """You are an expert at extracting named entities and their relationships from RFP (Request for Proposal) documents.

For each entity, provide:
1. name: The entity as written in the text
2. type: One of the following types ONLY:
   - PERSON: People, roles and positions (e.g., "Contracting Officer", "Project Manager")
   - ORGANIZATION: Companies, agencies, departments (e.g., "Department of Energy", "AWS")
   - TECHNOLOGY: Systems, platforms, tools, products (e.g., "Amazon S3", "Kubernetes")
   - CONCEPT: Requirements, standards, regulations, methodologies (e.g., "FedRAMP", "Agile")
   - LOCATION: Cities, sites and places (e.g., "Washington DC")
   - OTHER: Anything else worth tracking (project names, initiatives)
3. confidence: Your confidence score from 0.0 to 1.0

For each relationship between extracted entities, provide:
1. source: The source entity name (exactly as in the entities list)
2. target: The target entity name (exactly as in the entities list)
3. type: One of WORKS_WITH, PART_OF, USES, REQUIRES, RELATED_TO
4. confidence: Your confidence score from 0.0 to 1.0

Rules:
- Extract ALL important entities: organizations, technologies, requirements, standards, people, places
- Only extract relationships that are stated or strongly implied in the text
- Source and target must be entities from your entities list
- Be conservative with confidence - use 0.9+ only for very explicit statements

Respond with ONLY a valid JSON object in this exact format:
{
  "entities": [
    {"name": "Entity Name", "type": "TECHNOLOGY", "confidence": 0.95},
    ...
  ],
  "relationships": [
    {"source": "Entity Name", "target": "Other Entity", "type": "USES", "confidence": 0.8},
    ...
  ]
}"""

EXTRACTION_USER_PROMPT = """Extract entities and relationships from this RFP text:

<document>
{text}
</document>"""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ExtractedEntity:
    """An entity extracted from one window."""

    name: str
    type: EntityType
    confidence: float

    @property
    def normalized_name(self) -> str:
        """Canonical form used for identity."""
        return normalize_entity_name(self.name)


@dataclass(frozen=True)
class ExtractedRelationship:
    """A relationship extracted from one window."""

    source: str
    target: str
    type: str
    confidence: float


@dataclass(frozen=True)
class Parsed:
    """Successfully parsed extraction response."""

    entities: tuple[ExtractedEntity, ...] = ()
    relationships: tuple[ExtractedRelationship, ...] = ()


@dataclass(frozen=True)
class ParseFailed:
    """Unparseable extraction response; the window contributes nothing."""

    reason: str


ParseResult = Parsed | ParseFailed


@dataclass(frozen=True)
class ExtractionWindow:
    """A slice of text sent to the LLM, tied to the chunk it came from."""

    chunk_id: str
    text: str


@dataclass
class MergedEntity:
    """An entity deduplicated across the windows of one document."""

    name: str
    type: EntityType
    confidence: float
    occurrences: int = 0
    chunk_ids: set[str] = field(default_factory=set)
    entity_id: str | None = None


@dataclass
class ExtractionSummary:
    """Result of extracting one document."""

    document_id: str
    entities: int = 0
    relationships: int = 0
    cooccurrence_edges: int = 0
    windows: int = 0
    failed_windows: int = 0
    dropped_relationships: int = 0
    entity_ids: list[str] = field(default_factory=list)

    @property
    def entities_extracted(self) -> int:
        """Number of distinct entities merged into the graph."""
        return self.entities

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "document_id": self.document_id,
            "entities_extracted": self.entities,
            "relationships": self.relationships,
            "cooccurrence_edges": self.cooccurrence_edges,
            "windows": self.windows,
            "failed_windows": self.failed_windows,
            "dropped_relationships": self.dropped_relationships,
        }


# =============================================================================
# Exceptions
# =============================================================================


class ExtractionParseError(LLMParseError):
    """Raised when an extraction response cannot be parsed."""

    pass


# =============================================================================
# Response Parsing
# =============================================================================


def _extract_json(text: str) -> str:
    """Extract JSON from text, handling markdown code blocks."""
    fenced = re.search(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", text, re.DOTALL)
    if fenced:
        return fenced.group(1)

    stripped = text.strip()
    opener = "[" if stripped.startswith("[") else "{"
    block = _first_balanced_block(stripped, opener)
    if block is not None:
        return block

    # Unbalanced (usually truncated) output: keep everything from the opener on
    start = stripped.find(opener)
    return stripped[start:] if start != -1 else stripped


def _first_balanced_block(text: str, opener: str = "{") -> str | None:
    """
    Return the first balanced {...} (or [...]) block of `text`.

    Braces inside JSON strings, including escaped quotes, are ignored.
    """
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _repair_json(json_str: str) -> str:
    """
    Attempt to repair common JSON issues from LLM responses.

    Fixes:
    - Trailing commas before ] or }
    - Missing commas between objects
    - Output truncated after the last complete object
    """
    # Remove trailing commas before ] or }
    json_str = re.sub(r",\s*([}\]])", r"\1", json_str)

    # Fix missing commas between objects (} followed by { without comma)
    json_str = re.sub(r"}\s*{", r"},{", json_str)

    # Fix missing commas after string values followed by "
    json_str = re.sub(r'"\s*\n\s*"', '",\n"', json_str)

    # Fix missing commas after numbers followed by "
    json_str = re.sub(r'(\d)\s*\n\s*"', r'\1,\n"', json_str)

    # Fix missing commas after } followed by "
    json_str = re.sub(r'}\s*\n\s*"', r'},\n"', json_str)

    try:
        json.loads(json_str)
        return json_str
    except json.JSONDecodeError:
        # Keep up to the last complete object and close the array and outer object
        last_complete = json_str.rfind("},")
        if last_complete > 0:
            closing = "]" if json_str.lstrip().startswith("[") else "]}"
            return json_str[: last_complete + 1] + closing

    return json_str


def _clamp_confidence(value, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(confidence):
        return default
    return min(1.0, max(0.0, confidence))


def _parse_entity(item) -> ExtractedEntity | None:
    if isinstance(item, str):
        name, raw_type, raw_confidence = item, None, None
    elif isinstance(item, dict):
        name = item.get("name") or item.get("entity")
        raw_type = item.get("type")
        raw_confidence = item.get("confidence")
    else:
        return None

    if not isinstance(name, str) or not normalize_entity_name(name):
        return None

    return ExtractedEntity(
        name=" ".join(name.split()),
        type=EntityType.coerce(raw_type if isinstance(raw_type, str) else None),
        confidence=_clamp_confidence(raw_confidence, DEFAULT_ENTITY_CONFIDENCE),
    )


def _parse_relationship(item, default_confidence: float) -> ExtractedRelationship | None:
    if not isinstance(item, dict):
        return None
    source = item.get("source") or item.get("head")
    target = item.get("target") or item.get("tail")
    if not isinstance(source, str) or not isinstance(target, str):
        return None
    if not source.strip() or not target.strip():
        return None

    raw_type = item.get("type") or item.get("label")
    return ExtractedRelationship(
        source=source.strip(),
        target=target.strip(),
        type=normalize_relationship_label(raw_type if isinstance(raw_type, str) else None),
        confidence=_clamp_confidence(item.get("confidence"), default_confidence),
    )


def _build_parsed(data, default_relationship_confidence: float) -> ParseResult:
    if isinstance(data, list):
        # A bare array is an entity list
        data = {"entities": data}
    if not isinstance(data, dict):
        return ParseFailed(f"unexpected top-level JSON type: {type(data).__name__}")

    raw_entities = data.get("entities") or []
    raw_relationships = data.get("relationships") or data.get("relations") or []
    if not isinstance(raw_entities, list):
        return ParseFailed("'entities' is not a list")
    if not isinstance(raw_relationships, list):
        raw_relationships = []

    entities = tuple(e for e in (_parse_entity(i) for i in raw_entities) if e is not None)
    relationships = tuple(
        r for r in (_parse_relationship(i, default_relationship_confidence) for i in raw_relationships)
        if r is not None
    )
    return Parsed(entities=entities, relationships=relationships)


def parse_extraction_response(
    content: str,
    default_relationship_confidence: float = 0.8,
) -> ParseResult:
    """
    Parse an LLM extraction response.

    1. Strict JSON parse of the whole response
    2. Recovery: first balanced JSON block, common repairs, parse again
    3. Otherwise ParseFailed

    Args:
        content: Raw model output
        default_relationship_confidence: Used when a relationship has none

    Returns:
        Parsed(entities, relationships) or ParseFailed(reason)
    """
    if not content or not content.strip():
        return ParseFailed("empty response")

    try:
        return _build_parsed(json.loads(content), default_relationship_confidence)
    except json.JSONDecodeError:
        pass

    candidate = _repair_json(_extract_json(content))
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return ParseFailed(f"invalid JSON after recovery: {e.msg} at position {e.pos}")
    return _build_parsed(data, default_relationship_confidence)


# =============================================================================
# Extraction Service
# =============================================================================


class KnowledgeExtractor:
    """
    Extracts entities and relationships from documents into the graph store.

    Handles:
    - Window building (caller chunks or sentence-aware windows)
    - Concurrent LLM extraction, each window bounded by a timeout
    - Entity dedup, mention and co-occurrence edges, explicit relationships

    Usage:
        extractor = KnowledgeExtractor(graph_store, llm_client)
        summary = await extractor.extract("doc-1", text, scope)
    """

    def __init__(
        self,
        graph_store: SqlGraphStore,
        llm_client: BaseLLMClient,
        *,
        window_chars: int = 8000,
        window_overlap: int = 200,
        concurrency: int = 4,
        window_timeout_s: float = 90.0,
        max_entities_per_window: int = 30,
        max_relationships_per_window: int = 30,
        min_entity_confidence: float = 0.0,
        cooccurrence_confidence: float = 0.3,
        explicit_relationship_confidence: float = 0.8,
    ):
        """
        Initialize extractor.

        Args:
            graph_store: Destination graph store
            llm_client: LLM client for extraction
            window_chars: Maximum characters per extraction window
            window_overlap: Overlap between consecutive windows
            concurrency: Maximum windows extracted at once
            window_timeout_s: Timeout for a single window's LLM call
            max_entities_per_window: Entities kept per window (highest confidence first)
            max_relationships_per_window: Relationships kept per window
            min_entity_confidence: Entities below this are ignored
            cooccurrence_confidence: Confidence of CO_OCCURS_WITH edges
            explicit_relationship_confidence: Used when the model gives none
        """
        if window_overlap >= window_chars:
            raise ValueError("window_overlap must be smaller than window_chars")
        self.graph_store = graph_store
        self.llm = llm_client
        self.window_chars = window_chars
        self.window_overlap = window_overlap
        self.concurrency = concurrency
        self.window_timeout_s = window_timeout_s
        self.max_entities = max_entities_per_window
        self.max_relationships = max_relationships_per_window
        self.min_entity_confidence = min_entity_confidence
        self.cooccurrence_confidence = cooccurrence_confidence
        self.explicit_relationship_confidence = explicit_relationship_confidence

    @classmethod
    def from_settings(
        cls,
        graph_store: SqlGraphStore,
        llm_client: BaseLLMClient,
        app_settings: Settings,
    ) -> "KnowledgeExtractor":
        """Build an extractor from application settings."""
        return cls(
            graph_store,
            llm_client,
            window_chars=app_settings.extraction_window_chars,
            window_overlap=app_settings.extraction_window_overlap,
            concurrency=app_settings.extraction_concurrency,
            window_timeout_s=app_settings.extraction_window_timeout_s,
            max_entities_per_window=app_settings.max_entities_per_window,
            max_relationships_per_window=app_settings.max_relationships_per_window,
            min_entity_confidence=app_settings.min_entity_confidence,
            cooccurrence_confidence=app_settings.cooccurrence_confidence,
            explicit_relationship_confidence=app_settings.explicit_relationship_confidence,
        )

    # =========================================================================
    # Windows
    # =========================================================================

    def build_windows(
        self,
        scope: WorkflowScope,
        document_id: str,
        text: str,
        chunks: Sequence[ChunkRecord] | None = None,
    ) -> tuple[list[ChunkRecord], list[ExtractionWindow]]:
        """
        Build the chunks to store and the windows to extract.

        Caller chunks become one window each (split further when longer than
        a window, keeping the chunk id). Without chunks, the text is split
        into windows that are also stored as the document's chunks, with ids
        from `window_id_for` so they never share an id with a vector-indexed chunk.
        """
        windows: list[ExtractionWindow] = []

        if chunks:
            records = list(chunks)
            for chunk in records:
                for piece in chunk_text(chunk.text, self.window_chars, self.window_overlap):
                    windows.append(ExtractionWindow(chunk_id=chunk.id, text=piece.text))
            return records, windows

        records = []
        for piece in chunk_text(text, self.window_chars, self.window_overlap):
            chunk_id = window_id_for(scope.workflow_id, document_id, piece.chunk_index)
            records.append(
                ChunkRecord(
                    id=chunk_id,
                    document_id=document_id,
                    chunk_index=piece.chunk_index,
                    text=piece.text,
                    start_offset=piece.start_offset,
                    end_offset=piece.end_offset,
                    token_count=piece.token_count,
                )
            )
            windows.append(ExtractionWindow(chunk_id=chunk_id, text=piece.text))
        return records, windows

    # =========================================================================
    # Window Extraction
    # =========================================================================

    async def extract_window(self, window: ExtractionWindow) -> ParseResult:
        """
        Run the LLM over one window.

        A timeout, an LLM error or an unparseable response yields
        ParseFailed; nothing is raised.
        """
        messages = [
            LLMMessage(role="system", content=EXTRACTION_SYSTEM_PROMPT),
            LLMMessage(role="user", content=EXTRACTION_USER_PROMPT.format(text=window.text)),
        ]

        try:
            response = await asyncio.wait_for(
                self.llm.complete(messages, temperature=0.0),
                timeout=self.window_timeout_s,
            )
            parsed = parse_extraction_response(
                response.content,
                default_relationship_confidence=self.explicit_relationship_confidence,
            )
            if isinstance(parsed, ParseFailed):
                raise ExtractionParseError(parsed.reason)
        except ExtractionParseError as e:
            logger.warning("Extraction response unparseable", chunk_id=window.chunk_id, reason=str(e))
            return ParseFailed(str(e))
        except asyncio.TimeoutError:
            logger.warning(
                "Extraction window timed out",
                chunk_id=window.chunk_id,
                timeout_s=self.window_timeout_s,
            )
            return ParseFailed("timeout")
        except Exception as e:
            logger.error("Extraction window failed", chunk_id=window.chunk_id, error=str(e))
            return ParseFailed(f"llm error: {e}")

        entities = [e for e in parsed.entities if e.confidence >= self.min_entity_confidence]
        if len(entities) > self.max_entities:
            logger.warning("Truncating entities", extracted=len(entities), max=self.max_entities)
            entities = sorted(entities, key=lambda e: e.confidence, reverse=True)[: self.max_entities]

        relationships = list(parsed.relationships)
        if len(relationships) > self.max_relationships:
            logger.warning(
                "Truncating relationships",
                extracted=len(relationships),
                max=self.max_relationships,
            )
            relationships = sorted(relationships, key=lambda r: r.confidence, reverse=True)
            relationships = relationships[: self.max_relationships]

        return Parsed(entities=tuple(entities), relationships=tuple(relationships))

    # =========================================================================
    # Document Extraction
    # =========================================================================

    async def extract(
        self,
        document_id: str,
        text: str,
        scope: WorkflowScope,
        chunks: Sequence[ChunkRecord] | None = None,
        filename: str | None = None,
    ) -> ExtractionSummary:
        """
        Extract a document and merge the result into the graph.

        Args:
            document_id: Document identifier
            text: Full document text
            scope: Owning workflow
            chunks: Pre-computed chunks (one window each); optional
            filename: Original filename, stored on the document

        Returns:
            ExtractionSummary with counts
        """
        summary = ExtractionSummary(document_id=document_id)

        with bound_context(workflow_id=scope.workflow_id, document_id=document_id):
            records, windows = self.build_windows(scope, document_id, text, chunks)
            summary.windows = len(windows)

            await self.graph_store.upsert_document(scope, document_id, text, filename=filename)
            await self.graph_store.upsert_chunks(scope, document_id, records)

            if not windows:
                logger.info("Document has no text to extract")
                return summary

            semaphore = asyncio.Semaphore(self.concurrency)

            async def run(window: ExtractionWindow) -> ParseResult:
                async with semaphore:
                    return await self.extract_window(window)

            # Join barrier: relationships are only written once every window is done
            results = await asyncio.gather(*(run(w) for w in windows))
            summary.failed_windows = sum(1 for r in results if isinstance(r, ParseFailed))

            merged = self._merge_entities(windows, results)
            await self._write_entities(scope, document_id, merged, summary)
            await self._write_cooccurrences(scope, merged, summary)
            await self._write_relationships(scope, merged, results, summary)

            logger.info(
                "Document extracted",
                entities=summary.entities,
                relationships=summary.relationships,
                cooccurrence_edges=summary.cooccurrence_edges,
                windows=summary.windows,
                failed_windows=summary.failed_windows,
            )
        return summary

    def _merge_entities(
        self,
        windows: Sequence[ExtractionWindow],
        results: Sequence[ParseResult],
    ) -> dict[str, MergedEntity]:
        """Deduplicate by normalized name; the most confident type wins."""
        merged: dict[str, MergedEntity] = {}

        for window, result in zip(windows, results):
            if not isinstance(result, Parsed):
                continue
            seen_in_window: set[str] = set()
            for entity in result.entities:
                key = entity.normalized_name
                existing = merged.get(key)
                if existing is None:
                    existing = merged[key] = MergedEntity(
                        name=entity.name,
                        type=entity.type,
                        confidence=entity.confidence,
                    )
                elif entity.confidence > existing.confidence:
                    existing.type = entity.type
                    existing.confidence = entity.confidence
                existing.chunk_ids.add(window.chunk_id)
                if key not in seen_in_window:
                    existing.occurrences += 1
                    seen_in_window.add(key)

        return merged

    async def _write_entities(
        self,
        scope: WorkflowScope,
        document_id: str,
        merged: dict[str, MergedEntity],
        summary: ExtractionSummary,
    ) -> None:
        for key in sorted(merged):
            entity = merged[key]
            entity.entity_id = await self.graph_store.upsert_entity(
                scope,
                entity.name,
                entity.type,
                entity.confidence,
                occurrences=entity.occurrences,
            )
            await self.graph_store.upsert_mention(
                scope,
                document_id,
                entity.entity_id,
                entity.confidence,
                chunk_ids=sorted(entity.chunk_ids),
            )
            summary.entity_ids.append(entity.entity_id)
        summary.entities = len(merged)

    async def _write_cooccurrences(
        self,
        scope: WorkflowScope,
        merged: dict[str, MergedEntity],
        summary: ExtractionSummary,
    ) -> None:
        by_chunk: dict[str, set[str]] = {}
        for entity in merged.values():
            for chunk_id in entity.chunk_ids:
                by_chunk.setdefault(chunk_id, set()).add(entity.entity_id)

        pairs: set[tuple[str, str]] = set()
        for entity_ids in by_chunk.values():
            pairs.update(combinations(sorted(entity_ids), 2))

        for source_id, target_id in sorted(pairs):
            await self.graph_store.upsert_relationship(
                scope,
                source_id,
                target_id,
                RelationshipLabel.CO_OCCURS_WITH.value,
                self.cooccurrence_confidence,
            )
        summary.cooccurrence_edges = len(pairs)

    async def _write_relationships(
        self,
        scope: WorkflowScope,
        merged: dict[str, MergedEntity],
        results: Sequence[ParseResult],
        summary: ExtractionSummary,
    ) -> None:
        written: set[tuple[str, str, str]] = set()

        for result in results:
            if not isinstance(result, Parsed):
                continue
            for rel in result.relationships:
                source = merged.get(normalize_entity_name(rel.source))
                target = merged.get(normalize_entity_name(rel.target))
                if source is None or target is None or source.entity_id == target.entity_id:
                    logger.debug(
                        "Dropping relationship with unresolved endpoint",
                        source=rel.source,
                        target=rel.target,
                    )
                    summary.dropped_relationships += 1
                    continue

                await self.graph_store.upsert_relationship(
                    scope,
                    source.entity_id,
                    target.entity_id,
                    rel.type,
                    rel.confidence,
                )
                written.add((source.entity_id, target.entity_id, rel.type))

        summary.relationships = len(written)
