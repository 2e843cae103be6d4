"""Pytest configuration and shared fixtures."""

import re
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from rfp_graphrag.core.config import Settings
from rfp_graphrag.core.scope import WorkflowScope
from rfp_graphrag.main import create_app
from rfp_graphrag.services.context import RetrievalContext, build_context
from rfp_graphrag.services.embeddings import BaseEmbedder, HashingEmbedder
from rfp_graphrag.services.fallback import GraphHealthController
from rfp_graphrag.services.graph_store import SqlGraphStore
from rfp_graphrag.services.llm_client import MockLLMClient
from rfp_graphrag.services.retrieval import KnowledgeRetrievalService
from rfp_graphrag.services.vector_index import InMemoryVectorIndex

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)

EMBEDDING_DIM = 64


class KeywordEmbedder(BaseEmbedder):
    """One axis per vocabulary word; text outside the vocabulary embeds to zero."""

    _TOKEN = re.compile(r"[a-z0-9]+")

    def __init__(self, vocabulary: Sequence[str]):
        super().__init__(len(vocabulary))
        self.vocabulary = [w.lower() for w in vocabulary]

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            tokens = self._TOKEN.findall(text.lower())
            vectors.append([float(tokens.count(word)) for word in self.vocabulary])
        return vectors


# =============================================================================
# Graph store
# =============================================================================


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file private to the test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'graph.db'}"


@pytest_asyncio.fixture(scope="function")
async def graph_store(database_url: str) -> AsyncGenerator[SqlGraphStore, None]:
    """Connected graph store with a fresh schema."""
    store = SqlGraphStore(database_url)
    await store.connect()
    yield store
    await store.disconnect()


@pytest.fixture
def scope() -> WorkflowScope:
    """Primary workflow of a test."""
    return WorkflowScope("wf-a")


@pytest.fixture
def other_scope() -> WorkflowScope:
    """Second workflow, for isolation checks."""
    return WorkflowScope("wf-b")


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def mock_llm() -> MockLLMClient:
    """LLM client answering from canned responses."""
    return MockLLMClient()


@pytest.fixture
def embedder() -> HashingEmbedder:
    """Local embedder matching the test vector index."""
    return HashingEmbedder(dimension=EMBEDDING_DIM)


@pytest.fixture
def vector_index() -> InMemoryVectorIndex:
    """Empty in-memory vector index."""
    return InMemoryVectorIndex(dimension=EMBEDDING_DIM)


@pytest_asyncio.fixture(scope="function")
async def controller(graph_store: SqlGraphStore) -> GraphHealthController:
    """Health controller over the test store, already initialized."""
    health = GraphHealthController(graph_store.health_check, failure_threshold=2, cooldown_seconds=60.0)
    await health.initialize()
    return health


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Settings for an offline context (SQLite, mock LLM, hashing embeddings)."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        llm_extractor="mock",
        embedding_provider="hashing",
        embedding_dim=EMBEDDING_DIM,
        vector_backend="memory",
        chunk_size=200,
        chunk_overlap=40,
        extraction_window_chars=400,
        extraction_window_overlap=50,
        graph_failure_threshold=2,
        graph_sync_backlog_size=3,
        celery_task_always_eager=True,
        log_level="WARNING",
    )


@pytest_asyncio.fixture(scope="function")
async def context(
    test_settings: Settings,
    mock_llm: MockLLMClient,
    embedder: HashingEmbedder,
    vector_index: InMemoryVectorIndex,
) -> AsyncGenerator[RetrievalContext, None]:
    """Connected retrieval context without the background probe loop."""
    ctx = build_context(test_settings, vector_index=vector_index, embedder=embedder, llm=mock_llm)
    await ctx.connect(start_probe=False)
    yield ctx
    await ctx.disconnect()


@pytest_asyncio.fixture(scope="function")
async def service(context: RetrievalContext) -> AsyncGenerator[KnowledgeRetrievalService, None]:
    """Retrieval service over the test context."""
    svc = KnowledgeRetrievalService(context)
    yield svc
    await svc.drain()


# =============================================================================
# API
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def async_client(
    test_settings: Settings,
    context: RetrievalContext,
    service: KnowledgeRetrievalService,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client over an app wired to the test service."""
    app = create_app(test_settings, context)
    # ASGITransport does not run the lifespan; hand the service over directly
    app.state.service = service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def sample_rfp_text() -> str:
    """Short RFP excerpt naming a few technologies and an agency."""
    return (
        "The Department of Energy requires a cloud archive for proposal records. "
        "The solution must use Amazon S3 for durable storage. "
        "AWS Lambda functions will process uploaded files and write results to Amazon S3. "
        "All components must be FedRAMP authorized."
    )
