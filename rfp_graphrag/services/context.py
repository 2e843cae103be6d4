"""
Retrieval context.

Bundles the collaborators of the retrieval engine (graph store, vector
index, embedder, LLM client, graph health controller) into one object that
is built once from settings and connected/disconnected by its owner: the
FastAPI lifespan, a Celery task or a test.
"""

import contextlib
from dataclasses import dataclass, field

from rfp_graphrag.core.config import Settings, get_settings
from rfp_graphrag.core.logging import get_logger
from rfp_graphrag.db.enums import GraphStatus
from rfp_graphrag.services.embeddings import BaseEmbedder, get_embedder
from rfp_graphrag.services.fallback import GraphHealthController
from rfp_graphrag.services.graph_store import GraphStoreError, SqlGraphStore
from rfp_graphrag.services.llm_client import BaseLLMClient, LLMProvider, get_llm_client
from rfp_graphrag.services.vector_index import BaseVectorIndex, get_vector_index

logger = get_logger(__name__)


class ConfigurationError(Exception):
    """Settings cannot produce a working context."""

    pass


@dataclass
class RetrievalContext:
    """
    Connected collaborators of one process.

    Usage:
        ctx = build_context(settings)
        await ctx.connect()
        try:
            ...
        finally:
            await ctx.disconnect()
    """

    settings: Settings
    graph_store: SqlGraphStore
    vector_index: BaseVectorIndex
    embedder: BaseEmbedder
    llm: BaseLLMClient
    controller: GraphHealthController
    _stack: contextlib.AsyncExitStack | None = field(default=None, repr=False)

    @property
    def is_connected(self) -> bool:
        """Whether connect() has completed."""
        return self._stack is not None

    async def connect(self, start_probe: bool = True) -> GraphStatus:
        """
        Open every collaborator and initialize graph health.

        A graph store that cannot be reached does not fail startup: the
        controller starts in VectorOnly and the probe loop retries.

        Args:
            start_probe: Start the background health probe task

        Returns:
            Initial graph status
        """
        if self._stack is not None:
            return self.controller.health()

        stack = contextlib.AsyncExitStack()
        try:
            await stack.enter_async_context(self.llm)
            await stack.enter_async_context(self.embedder)
            await self.vector_index.connect()
            stack.push_async_callback(self.vector_index.disconnect)
            stack.push_async_callback(self.graph_store.disconnect)
            try:
                await self.graph_store.connect()
            except GraphStoreError as e:
                logger.warning("Graph store unavailable at startup", error=str(e))
        except BaseException:
            await stack.aclose()
            raise

        self._stack = stack
        status = await self.controller.initialize()
        if start_probe:
            self.controller.start()
            stack.push_async_callback(self.controller.stop)

        logger.info(
            "Retrieval context connected",
            graph_status=status.value,
            vector_backend=self.settings.vector_backend,
            embedding_provider=self.settings.embedding_provider,
            llm_extractor=self.settings.llm_extractor,
        )
        return status

    async def disconnect(self) -> None:
        """Close every collaborator (reverse order of connect)."""
        if self._stack is None:
            return
        stack, self._stack = self._stack, None
        await stack.aclose()
        logger.info("Retrieval context disconnected")


def _validate(app_settings: Settings, *, llm: bool, embedder: bool) -> None:
    if llm and app_settings.llm_extractor == LLMProvider.GEMINI.value and not app_settings.google_api_key:
        raise ConfigurationError("LLM_EXTRACTOR=gemini requires GOOGLE_API_KEY")
    if embedder and app_settings.embedding_provider == "gemini" and not app_settings.google_api_key:
        raise ConfigurationError("EMBEDDING_PROVIDER=gemini requires GOOGLE_API_KEY")


def build_context(
    app_settings: Settings | None = None,
    *,
    graph_store: SqlGraphStore | None = None,
    vector_index: BaseVectorIndex | None = None,
    embedder: BaseEmbedder | None = None,
    llm: BaseLLMClient | None = None,
) -> RetrievalContext:
    """
    Build an unconnected context from settings.

    Any collaborator may be injected (tests pass a mock LLM client or a
    pre-built store); the rest are created by their factories.

    Raises:
        ConfigurationError: A selected provider lacks its credentials
    """
    cfg = app_settings or get_settings()
    _validate(cfg, llm=llm is None, embedder=embedder is None)

    try:
        store = graph_store or SqlGraphStore.from_settings(cfg)
        index = vector_index or get_vector_index(cfg)
        emb = embedder or get_embedder(cfg)
        client = llm or get_llm_client(app_settings=cfg)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if emb.dimension != index.dimension:
        raise ConfigurationError(
            f"Embedding dimension {emb.dimension} does not match vector index dimension {index.dimension}"
        )

    controller = GraphHealthController.from_settings(store.health_check, cfg)
    return RetrievalContext(
        settings=cfg,
        graph_store=store,
        vector_index=index,
        embedder=emb,
        llm=client,
        controller=controller,
    )
