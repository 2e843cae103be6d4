"""
SQLAlchemy Base Configuration and Mixins.

This module provides:
- Engine and session factory construction (per retrieval context, never at import)
- Base declarative class for all graph models
- Reusable mixins (UUID7 primary key, timestamps)

Column types are kept dialect-neutral so the same models run on PostgreSQL
(asyncpg) in production and on SQLite (aiosqlite) in tests and local runs.
"""

from datetime import datetime

from sqlalchemy import DateTime, MetaData, String, event, func
from sqlalchemy.ext.asyncio import (
    AsyncAttrs,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from uuid6 import uuid7

# =============================================================================
# NAMING CONVENTION
# =============================================================================

# Consistent, predictable names for indexes, foreign keys, etc.
# Critical for Alembic migrations to work correctly across environments
NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",                    # Index
    "uq": "uq_%(table_name)s_%(column_0_name)s",      # Unique constraint
    "ck": "ck_%(table_name)s_%(constraint_name)s",    # Check constraint
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",  # Foreign key
    "pk": "pk_%(table_name)s",                        # Primary key
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def is_sqlite_url(url: str) -> bool:
    """Check whether a database URL targets SQLite."""
    return url.startswith("sqlite")


def create_engine_for_url(url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the graph store.

    PostgreSQL:
    - pool_pre_ping: Validates connections before use (handles stale connections)
    - pool_size / max_overflow: bounded pool shared by ingestion and search

    SQLite:
    - foreign keys are switched on per connection so cascades behave like PostgreSQL
    - a busy timeout lets concurrent writers queue instead of failing
    """
    if is_sqlite_url(url):
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": 15},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to an engine.

    - expire_on_commit=False: rows stay readable after the write transaction ends
    - autoflush=False: explicit control over when writes happen
    """
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
    )


# =============================================================================
# BASE CLASS
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Features:
    - AsyncAttrs: Enables `await` on lazy-loaded relationships
    - Custom metadata with naming conventions
    - Automatic __tablename__ generation from class name
    """

    metadata = metadata

    __name__: str

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """
        Automatically generate table name from class name.

        Converts CamelCase to snake_case and pluralizes:
        - Entity -> entities
        - ChunkMention -> chunk_mentions
        - Relationship -> relationships
        """
        name = cls.__name__
        snake_case = "".join(
            f"_{char.lower()}" if char.isupper() and i > 0 else char.lower()
            for i, char in enumerate(name)
        )
        if snake_case.endswith("y"):
            return snake_case[:-1] + "ies"
        elif snake_case.endswith("s"):
            return snake_case + "es"
        else:
            return snake_case + "s"

# =============================================================================
# MIXINS
# =============================================================================

def new_uuid7() -> str:
    """Time-sortable identifier rendered as a string column value."""
    return str(uuid7())


class UUIDMixin:
    """
    Mixin that provides a UUID7 primary key stored as a 36-char string.

    Used for edge rows whose identity is not meaningful to callers.
    """

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_uuid7,
        sort_order=-100,
    )


class TimestampMixin:
    """
    Mixin that provides created_at and updated_at timestamps.

    - created_at: Set once when row is inserted (server-side default)
    - updated_at: Touched by every upsert that merges into the row
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        sort_order=100,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        sort_order=101,
    )


class CreatedAtMixin:
    """
    Mixin that provides only created_at timestamp.

    Use this for immutable records (documents, chunks).
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        sort_order=100,
    )


# =============================================================================
# DATABASE LIFECYCLE UTILITIES
# =============================================================================

async def init_db(engine: AsyncEngine) -> None:
    """
    Create all graph tables.

    In production, use Alembic migrations instead; this is used by tests,
    SQLite development databases and `SqlGraphStore.ensure_schema()`.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
