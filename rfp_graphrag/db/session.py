"""
Database session management for the graph store, API and workers.

This module provides:
- Context manager for scripts and background workers
- Transaction helpers

Sessions always come from a session factory owned by a retrieval context;
there is no module-level engine.

Usage in scripts/workers:
    async with session_scope(ctx.graph_store.session_factory) as db:
        result = await db.execute(select(Entity))
        entities = result.scalars().all()
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    The session is NOT auto-committed; wrap writes in `transaction()`.
    The session is closed when exiting the context, even if an exception occurs.
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for explicit transaction control.

    Wraps operations in a transaction that:
    - Commits on successful completion
    - Rolls back on any exception

    Usage:
        async with session_scope(factory) as db:
            async with transaction(db):
                await db.execute(stmt1)
                await db.execute(stmt2)
                # Both are committed or neither is committed
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
