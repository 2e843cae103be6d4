"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============== Environment ==============
    environment: Literal["development", "staging", "production"] = "development"

    # ============== Graph Database ==============
    postgres_user: str = "rfp"
    postgres_password: str = "rfp_dev_password"
    postgres_db: str = "rfp_graphrag"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    # Any async SQLAlchemy URL; sqlite+aiosqlite is accepted for local runs and tests
    database_url: str | None = None

    @property
    def db_url(self) -> str:
        """Construct database URL from components or use explicit URL."""
        if self.database_url:
            return str(self.database_url)
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def db_url_sync(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.db_url.replace("postgresql+asyncpg://", "postgresql://")

    # ============== Redis ==============
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_url: RedisDsn | None = None

    @property
    def redis_dsn(self) -> str:
        """Construct Redis URL from components or use explicit URL."""
        if self.redis_url:
            return str(self.redis_url)
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    # ============== API ==============
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False
    api_reload: bool = False
    cors_origins_str: str = Field(default="http://localhost:3000,http://localhost:8000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # ============== LLM Configuration ==============
    google_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    llm_extractor: Literal["gemini", "mock"] = "gemini"
    llm_timeout_s: float = Field(default=60.0, gt=0)

    # ============== Embeddings ==============
    embedding_provider: Literal["gemini", "hashing"] = "hashing"
    gemini_embedding_model: str = "text-embedding-004"
    embedding_dim: int = Field(default=768, ge=8, le=8192)

    # ============== Vector Index ==============
    vector_backend: Literal["memory", "qdrant"] = "memory"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_collection: str = "rfp_chunks"

    # ============== Knowledge Graph ==============
    graph_enabled: bool = True
    graph_max_hops: int = Field(default=2, ge=1, le=4)
    graph_hop_decay: float = Field(default=0.5, gt=0.0, lt=1.0)
    document_seed_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    cooccurrence_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    explicit_relationship_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    # ============== Extraction ==============
    extraction_window_chars: int = Field(default=8000, ge=200, le=100000)
    extraction_window_overlap: int = Field(default=200, ge=0, le=2000)
    extraction_concurrency: int = Field(default=4, ge=1, le=32)
    max_entities_per_window: int = Field(default=30, ge=1, le=200)
    max_relationships_per_window: int = Field(default=30, ge=0, le=200)
    min_entity_confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # ============== Chunking ==============
    chunk_size: int = Field(default=1000, ge=100, le=10000)
    chunk_overlap: int = Field(default=200, ge=0, le=500)

    # ============== Search ==============
    search_vector_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    search_graph_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    search_top_k: int = Field(default=20, ge=1, le=200)
    search_default_limit: int = Field(default=10, ge=1, le=100)
    search_min_combined_score: float = Field(default=0.05, ge=0.0, le=1.0)

    # ============== Timeouts (seconds) ==============
    embedding_timeout_s: float = Field(default=10.0, gt=0)
    vector_search_timeout_s: float = Field(default=5.0, gt=0)
    graph_timeout_s: float = Field(default=5.0, gt=0)
    extraction_window_timeout_s: float = Field(default=90.0, gt=0)

    # ============== Graph Fallback ==============
    graph_failure_threshold: int = Field(default=3, ge=1, le=100)
    graph_cooldown_seconds: float = Field(default=60.0, gt=0)
    graph_probe_interval_seconds: float = Field(default=30.0, gt=0)
    graph_sync_backlog_size: int = Field(default=100, ge=0, le=10000)

    # ============== Celery ==============
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_task_always_eager: bool = False  # Synchronous execution for testing

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL."""
        return self.celery_broker_url or self.redis_dsn

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL."""
        return self.celery_result_backend or self.redis_dsn

    # ============== Logging ==============
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    # ============== Computed Properties ==============
    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
