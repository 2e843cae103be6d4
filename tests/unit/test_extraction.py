"""Unit tests for extraction parsing, vocabulary and graph merging."""

import asyncio
import json

import pytest

from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.db.enums import (
    EntityType,
    RelationshipLabel,
    normalize_relationship_label,
)
from rfp_graphrag.db.models.entity import entity_id_for, normalize_entity_name
from rfp_graphrag.services.chunking import chunk_id_for, window_id_for
from rfp_graphrag.services.extraction import (
    ExtractionWindow,
    KnowledgeExtractor,
    Parsed,
    ParseFailed,
    parse_extraction_response,
)
from rfp_graphrag.services.graph_store import ChunkRecord, SqlGraphStore
from rfp_graphrag.services.llm_client import MockLLMClient

# =============================================================================
# Entity Type Validation Tests
# =============================================================================


class TestEntityTypeValidation:
    """Tests for entity type validation."""

    def test_valid_entity_types(self) -> None:
        """Test valid entity type strings."""
        valid_types = [
            "PERSON",
            "Organization",
            "organisation",
            "technology",
            "Concept",
            "LOCATION",
            "Other",
            "Organizations",
            "org",
        ]

        for type_str in valid_types:
            assert EntityType.from_string(type_str) is not None, f"{type_str} should be valid"

    def test_invalid_entity_types(self) -> None:
        """Test invalid entity type strings."""
        for type_str in ["", "Widget", "Disease"]:
            assert EntityType.from_string(type_str) is None, f"{type_str} should be invalid"

    def test_coerce_defaults_to_other(self) -> None:
        """Test unknown types are stored as OTHER instead of rejected."""
        assert EntityType.coerce("Widget") == EntityType.OTHER
        assert EntityType.coerce(None) == EntityType.OTHER
        assert EntityType.coerce("tech") == EntityType.TECHNOLOGY

    def test_entity_type_values(self) -> None:
        """Test EntityType enum has the six vocabulary values."""
        assert [t.value for t in EntityType] == [
            "PERSON",
            "ORGANIZATION",
            "TECHNOLOGY",
            "CONCEPT",
            "LOCATION",
            "OTHER",
        ]


# =============================================================================
# Relationship Label Tests
# =============================================================================


class TestRelationshipLabels:
    """Tests for relationship label normalization."""

    def test_normalize_free_form_labels(self) -> None:
        """Test labels are upper-snake-cased."""
        assert normalize_relationship_label("uses") == "USES"
        assert normalize_relationship_label("part of") == "PART_OF"
        assert normalize_relationship_label(" works-with ") == "WORKS_WITH"

    def test_empty_label_defaults(self) -> None:
        """Test missing labels become RELATED_TO."""
        assert normalize_relationship_label(None) == "RELATED_TO"
        assert normalize_relationship_label("") == "RELATED_TO"
        assert normalize_relationship_label("---") == "RELATED_TO"

    def test_label_capped(self) -> None:
        """Test labels are capped at 64 characters."""
        assert len(normalize_relationship_label("x" * 100)) == 64

    def test_well_known_labels(self) -> None:
        """Test the pipeline's own labels."""
        assert RelationshipLabel.CO_OCCURS_WITH.value == "CO_OCCURS_WITH"
        assert "USES" in {label.value for label in RelationshipLabel}


# =============================================================================
# Entity Normalization Tests
# =============================================================================


class TestEntityNormalization:
    """Tests for entity name normalization and identity."""

    def test_normalize_simple_name(self) -> None:
        """Test case, whitespace and edge punctuation are normalized."""
        assert normalize_entity_name("  Amazon   S3 ") == "amazon s3"
        assert normalize_entity_name('"FedRAMP",') == "fedramp"

    def test_normalize_preserves_inner_punctuation(self) -> None:
        """Test punctuation inside the name is kept."""
        assert normalize_entity_name("C++") == "c++"
        assert normalize_entity_name("ISO/IEC 27001") == "iso/iec 27001"

    def test_entity_id_deterministic(self) -> None:
        """Test entity ids depend on workflow, type and normalized name."""
        a = entity_id_for("wf-a", "amazon s3", EntityType.TECHNOLOGY)
        assert a == entity_id_for("wf-a", "amazon s3", EntityType.TECHNOLOGY)
        assert a != entity_id_for("wf-b", "amazon s3", EntityType.TECHNOLOGY)
        assert a != entity_id_for("wf-a", "amazon s3", EntityType.CONCEPT)


# =============================================================================
# JSON Parsing Tests
# =============================================================================


class TestJSONParsing:
    """Tests for extraction response parsing."""

    def test_parse_valid_json(self) -> None:
        """Test strict JSON is parsed into entities and relationships."""
        content = json.dumps({
            "entities": [
                {"name": "Amazon S3", "type": "TECHNOLOGY", "confidence": 0.9},
                {"name": "AWS Lambda", "type": "technology", "confidence": 0.8},
            ],
            "relationships": [
                {"source": "AWS Lambda", "target": "Amazon S3", "type": "uses", "confidence": 0.7},
            ],
        })
        result = parse_extraction_response(content)

        assert isinstance(result, Parsed)
        assert [e.name for e in result.entities] == ["Amazon S3", "AWS Lambda"]
        assert result.entities[1].type == EntityType.TECHNOLOGY
        assert result.relationships[0].type == "USES"
        assert result.relationships[0].confidence == 0.7

    def test_bare_array_is_entity_list(self) -> None:
        """Test a top-level array is read as entities."""
        result = parse_extraction_response('[{"name": "FedRAMP", "type": "CONCEPT"}, "Kubernetes"]')

        assert isinstance(result, Parsed)
        assert [e.name for e in result.entities] == ["FedRAMP", "Kubernetes"]
        assert result.entities[1].type == EntityType.OTHER
        assert result.relationships == ()

    def test_detect_markdown_wrapper(self) -> None:
        """Test JSON inside a markdown code fence."""
        content = 'Here you go:\n```json\n{"entities": [{"name": "Kubernetes", "type": "TECHNOLOGY"}]}\n```'
        result = parse_extraction_response(content)

        assert isinstance(result, Parsed)
        assert result.entities[0].name == "Kubernetes"

    def test_balanced_block_in_prose(self) -> None:
        """Test the first balanced object is recovered from surrounding prose."""
        content = (
            'Sure. {"entities": [{"name": "Vault {v2}", "type": "TECHNOLOGY"}], '
            '"relationships": []} Let me know if you need more.'
        )
        result = parse_extraction_response(content)

        assert isinstance(result, Parsed)
        assert result.entities[0].name == "Vault {v2}"

    def test_repair_trailing_commas(self) -> None:
        """Test trailing commas are repaired."""
        content = '{"entities": [{"name": "Agile", "type": "CONCEPT", "confidence": 0.6},],}'
        result = parse_extraction_response(content)

        assert isinstance(result, Parsed)
        assert result.entities[0].name == "Agile"

    def test_handle_truncated_response(self) -> None:
        """Test output cut off mid-object keeps the complete objects."""
        content = (
            '{"entities": [{"name": "Amazon S3", "type": "TECHNOLOGY", "confidence": 0.9},'
            '{"name": "AWS Lam'
        )
        result = parse_extraction_response(content)

        assert isinstance(result, Parsed)
        assert [e.name for e in result.entities] == ["Amazon S3"]

    def test_unparseable_response(self) -> None:
        """Test garbage yields ParseFailed rather than raising."""
        assert isinstance(parse_extraction_response(""), ParseFailed)
        assert isinstance(parse_extraction_response("no json here"), ParseFailed)
        assert isinstance(parse_extraction_response('"just a string"'), ParseFailed)
        assert isinstance(parse_extraction_response('{"entities": "nope"}'), ParseFailed)

    def test_confidence_clamped_and_defaulted(self) -> None:
        """Test confidences are clamped into [0, 1] with defaults for junk."""
        content = json.dumps({
            "entities": [
                {"name": "A1", "confidence": 7},
                {"name": "B2", "confidence": "high"},
                {"name": "   "},
            ],
            "relationships": [{"source": "A1", "target": "B2"}],
        })
        result = parse_extraction_response(content, default_relationship_confidence=0.8)

        assert isinstance(result, Parsed)
        assert [e.confidence for e in result.entities][0] == 1.0
        assert len(result.entities) == 2
        assert result.relationships[0].confidence == 0.8
        assert result.relationships[0].type == "RELATED_TO"


# =============================================================================
# Extractor Tests
# =============================================================================

EXTRACTION_RESPONSE = json.dumps({
    "entities": [
        {"name": "Amazon S3", "type": "TECHNOLOGY", "confidence": 0.9},
        {"name": "AWS Lambda", "type": "TECHNOLOGY", "confidence": 0.85},
        {"name": "Department of Energy", "type": "ORGANIZATION", "confidence": 0.95},
    ],
    "relationships": [
        {"source": "AWS Lambda", "target": "Amazon S3", "type": "USES", "confidence": 0.9},
        {"source": "AWS Lambda", "target": "Azure Blob", "type": "USES", "confidence": 0.9},
    ],
})


@pytest.mark.asyncio
class TestKnowledgeExtractor:
    """Tests for extraction into the graph store."""

    async def test_extract_document(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
        sample_rfp_text: str,
    ) -> None:
        """Test entities, co-occurrence and explicit edges are written."""
        mock_llm.set_responses([EXTRACTION_RESPONSE])
        extractor = KnowledgeExtractor(graph_store, mock_llm, window_chars=1000, window_overlap=100)

        summary = await extractor.extract("doc-1", sample_rfp_text, scope)

        assert summary.windows == 1
        assert summary.failed_windows == 0
        assert summary.entities == 3
        assert summary.relationships == 1
        assert summary.dropped_relationships == 1
        assert summary.cooccurrence_edges == 3

        graph = await graph_store.get_workflow_graph(scope)
        relationship_types = sorted(e["type"] for e in graph.edges if e["type"] != "MENTIONS")
        assert relationship_types == ["CO_OCCURS_WITH"] * 3 + ["USES"]
        assert graph.stats["mention_count"] == 3
        assert graph.stats["entity_types"] == {"TECHNOLOGY": 2, "ORGANIZATION": 1}

    async def test_windows_without_chunks_use_window_ids(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
    ) -> None:
        """Test windows built from raw text are stored under window ids, not chunk ids."""
        extractor = KnowledgeExtractor(graph_store, mock_llm, window_chars=120, window_overlap=20)
        text = " ".join(f"Clause {i} names Amazon S3 as the archive." for i in range(8))

        records, windows = extractor.build_windows(scope, "doc-1", text)
        await extractor.extract("doc-1", text, scope)

        assert len(records) > 1
        assert [r.id for r in records] == [window_id_for("wf-a", "doc-1", i) for i in range(len(records))]
        assert {w.chunk_id for w in windows} == {r.id for r in records}
        stored = await graph_store.get_chunks(scope, [r.id for r in records])
        assert len(stored) == len(records)
        vector_ids = [chunk_id_for("wf-a", "doc-1", i) for i in range(len(records))]
        assert await graph_store.get_chunks(scope, vector_ids) == {}

    async def test_reprocessing_is_idempotent(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
        sample_rfp_text: str,
    ) -> None:
        """Test a second run keeps the entity set and edges, bumping frequency once."""
        mock_llm.set_responses([EXTRACTION_RESPONSE])
        extractor = KnowledgeExtractor(graph_store, mock_llm, window_chars=1000, window_overlap=100)

        await extractor.extract("doc-1", sample_rfp_text, scope)
        first = await graph_store.get_workflow_graph(scope)
        await extractor.extract("doc-1", sample_rfp_text, scope)
        second = await graph_store.get_workflow_graph(scope)

        assert {n["id"] for n in first.nodes} == {n["id"] for n in second.nodes}
        assert len(first.edges) == len(second.edges)
        frequencies = {e.name: e.frequency for e in await graph_store.list_entities(scope)}
        assert frequencies == {"Amazon S3": 2, "AWS Lambda": 2, "Department of Energy": 2}

    async def test_two_chunk_frequencies(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
    ) -> None:
        """Test frequency counts the windows mentioning an entity."""
        text = "Amazon S3 stores objects. AWS Lambda reads from Amazon S3."
        chunks = [
            ChunkRecord(id=chunk_id_for("wf-a", "doc-1", 0), document_id="doc-1", chunk_index=0,
                        text="Amazon S3 stores objects.", start_offset=0, end_offset=25),
            ChunkRecord(id=chunk_id_for("wf-a", "doc-1", 1), document_id="doc-1", chunk_index=1,
                        text="AWS Lambda reads from Amazon S3.", start_offset=26, end_offset=58),
        ]
        extractor = KnowledgeExtractor(graph_store, mock_llm)

        summary = await extractor.extract("doc-1", text, scope, chunks=chunks)

        assert summary.windows == 2
        frequencies = {e.name: e.frequency for e in await graph_store.list_entities(scope)}
        assert frequencies == {"Amazon S3": 2, "AWS Lambda": 1}
        graph = await graph_store.get_workflow_graph(scope)
        cooccurrence = [e for e in graph.edges if e["type"] == "CO_OCCURS_WITH"]
        assert len(cooccurrence) == 1
        assert cooccurrence[0]["confidence"] > 0

    async def test_relationship_across_windows(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
    ) -> None:
        """Test a relationship whose endpoints come from different windows is kept."""

        def responder(prompt: str) -> str:
            if "Kubernetes" in prompt:
                return json.dumps({
                    "entities": [{"name": "Kubernetes", "type": "TECHNOLOGY", "confidence": 0.9}],
                    "relationships": [
                        {"source": "Kubernetes", "target": "Vault", "type": "WORKS_WITH", "confidence": 0.7}
                    ],
                })
            return json.dumps({"entities": [{"name": "Vault", "type": "TECHNOLOGY", "confidence": 0.8}]})

        mock_llm.set_responder(responder)
        chunks = [
            ChunkRecord(id=chunk_id_for("wf-a", "doc-9", 0), document_id="doc-9", chunk_index=0,
                        text="Workloads run on Kubernetes."),
            ChunkRecord(id=chunk_id_for("wf-a", "doc-9", 1), document_id="doc-9", chunk_index=1,
                        text="Secrets are kept in Vault."),
        ]
        extractor = KnowledgeExtractor(graph_store, mock_llm)

        summary = await extractor.extract("doc-9", "unused", scope, chunks=chunks)

        assert summary.relationships == 1
        assert summary.cooccurrence_edges == 0

    async def test_failed_window_contributes_nothing(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
    ) -> None:
        """Test an unparseable window is counted and skipped."""
        mock_llm.set_responses(["I cannot help with that."])
        extractor = KnowledgeExtractor(graph_store, mock_llm)

        summary = await extractor.extract("doc-1", "The Contracting Officer approves changes.", scope)

        assert summary.failed_windows == 1
        assert summary.entities == 0
        assert (await graph_store.get_workflow_graph(scope)).stats["document_count"] == 1

    async def test_window_timeout(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
    ) -> None:
        """Test a slow LLM call yields ParseFailed("timeout")."""

        async def slow(prompt: str) -> str:
            await asyncio.sleep(1.0)
            return "{}"

        mock_llm.set_responder(slow)
        extractor = KnowledgeExtractor(graph_store, mock_llm, window_timeout_s=0.05)

        result = await extractor.extract_window(ExtractionWindow(chunk_id="c1", text="Some text."))

        assert result == ParseFailed("timeout")

    async def test_entities_truncated_by_confidence(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
    ) -> None:
        """Test the per-window entity cap keeps the most confident entities."""
        mock_llm.set_responses([json.dumps({
            "entities": [
                {"name": f"Entity {i}", "type": "CONCEPT", "confidence": i / 10} for i in range(10)
            ]
        })])
        extractor = KnowledgeExtractor(graph_store, mock_llm, max_entities_per_window=3)

        result = await extractor.extract_window(ExtractionWindow(chunk_id="c1", text="x"))

        assert isinstance(result, Parsed)
        assert [e.name for e in result.entities] == ["Entity 9", "Entity 8", "Entity 7"]

    async def test_empty_text(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
        scope: WorkflowScope,
    ) -> None:
        """Test empty text stores the document and extracts nothing."""
        extractor = KnowledgeExtractor(graph_store, mock_llm)

        summary = await extractor.extract("doc-empty", "", scope)

        assert summary.windows == 0
        assert mock_llm.call_count == 0

    async def test_overlap_must_be_smaller_than_window(
        self,
        graph_store: SqlGraphStore,
        mock_llm: MockLLMClient,
    ) -> None:
        """Test invalid window settings are rejected."""
        with pytest.raises(ValueError):
            KnowledgeExtractor(graph_store, mock_llm, window_chars=200, window_overlap=200)
