"""
Services package - Retrieval engine and external API clients.

This package contains:
- Document chunking shared by the vector index and the graph
- LLM client abstraction for multiple providers
- Embedding providers and vector index adapters
- Entity and relationship extraction into the knowledge graph store
- Graph health controller and hybrid search coordinator
- Retrieval context and service facade
"""

from rfp_graphrag.services.chunking import (
    ChunkData,
    chunk_id_for,
    chunk_text,
    estimate_tokens,
    window_id_for,
)
from rfp_graphrag.services.context import (
    ConfigurationError,
    RetrievalContext,
    build_context,
)
from rfp_graphrag.services.embeddings import (
    BaseEmbedder,
    EmbeddingError,
    GeminiEmbedder,
    HashingEmbedder,
    get_embedder,
)
from rfp_graphrag.services.extraction import (
    ExtractedEntity,
    ExtractedRelationship,
    ExtractionParseError,
    ExtractionSummary,
    KnowledgeExtractor,
    Parsed,
    ParseFailed,
    parse_extraction_response,
)
from rfp_graphrag.services.fallback import GraphHealthController, GraphRequest
from rfp_graphrag.services.graph_store import (
    ChunkRecord,
    EntityRecord,
    GraphConnectionError,
    GraphStoreError,
    GraphWriteConflict,
    SqlGraphStore,
    TraversalHit,
    WorkflowGraph,
)
from rfp_graphrag.services.hybrid_search import (
    HybridSearchCoordinator,
    SearchOptions,
    SearchResponse,
    SearchResult,
    SearchTimeout,
)
from rfp_graphrag.services.llm_client import (
    BaseLLMClient,
    GeminiClient,
    LLMError,
    LLMMessage,
    LLMProvider,
    LLMResponse,
    MockLLMClient,
    get_llm_client,
)
from rfp_graphrag.services.retrieval import IngestDocument, KnowledgeRetrievalService
from rfp_graphrag.services.vector_index import (
    BaseVectorIndex,
    InMemoryVectorIndex,
    QdrantVectorIndex,
    VectorHit,
    VectorIndexError,
    VectorRecord,
    get_vector_index,
)

__all__ = [
    # Chunking
    "ChunkData",
    "chunk_id_for",
    "chunk_text",
    "estimate_tokens",
    "window_id_for",
    # LLM Client
    "BaseLLMClient",
    "GeminiClient",
    "MockLLMClient",
    "LLMProvider",
    "LLMMessage",
    "LLMResponse",
    "LLMError",
    "get_llm_client",
    # Embeddings
    "BaseEmbedder",
    "GeminiEmbedder",
    "HashingEmbedder",
    "EmbeddingError",
    "get_embedder",
    # Vector Index
    "BaseVectorIndex",
    "InMemoryVectorIndex",
    "QdrantVectorIndex",
    "VectorHit",
    "VectorRecord",
    "VectorIndexError",
    "get_vector_index",
    # Graph Store
    "SqlGraphStore",
    "ChunkRecord",
    "EntityRecord",
    "TraversalHit",
    "WorkflowGraph",
    "GraphStoreError",
    "GraphConnectionError",
    "GraphWriteConflict",
    # Extraction
    "KnowledgeExtractor",
    "ExtractedEntity",
    "ExtractedRelationship",
    "ExtractionSummary",
    "ExtractionParseError",
    "Parsed",
    "ParseFailed",
    "parse_extraction_response",
    # Fallback and Search
    "GraphHealthController",
    "GraphRequest",
    "HybridSearchCoordinator",
    "SearchOptions",
    "SearchResponse",
    "SearchResult",
    "SearchTimeout",
    # Context and Facade
    "ConfigurationError",
    "RetrievalContext",
    "build_context",
    "IngestDocument",
    "KnowledgeRetrievalService",
]
