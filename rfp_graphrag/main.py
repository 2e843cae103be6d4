"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rfp_graphrag import __version__
from rfp_graphrag.api import graph_router, workflows_router
from rfp_graphrag.core.config import Settings, get_settings
from rfp_graphrag.core.logging import get_logger, setup_logging
from rfp_graphrag.services.context import RetrievalContext, build_context
from rfp_graphrag.services.retrieval import KnowledgeRetrievalService

logger = get_logger(__name__)


def create_app(
    app_settings: Settings | None = None,
    context: RetrievalContext | None = None,
) -> FastAPI:
    """
    Application factory for creating the FastAPI instance.

    Args:
        app_settings: Settings (defaults to environment settings)
        context: Pre-built retrieval context (tests inject one); built from
            settings at startup otherwise
    """
    cfg = app_settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build and connect the retrieval context; drain and close on shutdown."""
        setup_logging(cfg)
        ctx = context or build_context(cfg)
        await ctx.connect()
        service = KnowledgeRetrievalService(ctx)
        app.state.context = ctx
        app.state.service = service
        logger.info("API started", graph_status=ctx.controller.health().value)
        try:
            yield
        finally:
            await service.drain()
            await ctx.disconnect()
            app.state.service = None
            logger.info("API stopped")

    app = FastAPI(
        title="RFP GraphRAG Retrieval API",
        description=(
            "Hybrid knowledge retrieval for RFP response drafting: entity and "
            "relationship extraction into a per-workflow knowledge graph, fused "
            "with vector similarity search.\n\n"
            "## Features\n"
            "- **Ingestion**: Index documents and extract them into the graph\n"
            "- **Search**: Hybrid vector + graph search with provenance\n"
            "- **Graph**: Export workflow graphs and monitor graph health\n"
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(
        workflows_router,
        prefix="/api/v1/workflows",
        tags=["Workflows"],
    )
    app.include_router(
        graph_router,
        prefix="/api/v1/graph",
        tags=["Graph"],
    )

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        service: KnowledgeRetrievalService | None = getattr(app.state, "service", None)
        graph_status = service.controller.health().value if service else "VectorOnly"
        return {
            "status": "healthy",
            "version": __version__,
            "graph_store_status": graph_status,
        }

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "service": "RFP GraphRAG Retrieval API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create the app instance
app = create_app()
