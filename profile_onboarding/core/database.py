"""Async database engines and session management.

Two engines are configured: the primary engine used for every request, and
an optional privileged engine that the completion coordinator may use once
when the primary role is refused by row-level security.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from profile_onboarding.core.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.environment == "development",
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

privileged_engine: AsyncEngine | None = None
privileged_session_factory: async_sessionmaker[AsyncSession] | None = None
if settings.privileged_database_url is not None:
    privileged_engine = create_async_engine(
        settings.privileged_database_url,
        pool_pre_ping=True,
        pool_size=2,
    )
    privileged_session_factory = async_sessionmaker(
        privileged_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engines() -> None:
    """Close pooled connections for both engines (application shutdown)."""
    await engine.dispose()
    if privileged_engine is not None:
        await privileged_engine.dispose()
