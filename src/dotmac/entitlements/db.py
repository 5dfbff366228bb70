"""
SQLAlchemy 2.0 Database Configuration

Async engine and session factory for the entitlement tables.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from dotmac.entitlements.exceptions import ConfigurationError
from dotmac.entitlements.settings import settings

# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None


def create_engine_for_url(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection.

    Raises ConfigurationError when the URL cannot be parsed or names a
    dialect or driver that is not installed.
    """
    try:
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:"):
            return create_async_engine(url, echo=echo, poolclass=StaticPool)
        return create_async_engine(url, echo=echo, pool_pre_ping=settings.database.pool_pre_ping)
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid database URL '{url}': {e}") from e


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_engine_for_url(settings.database.url, echo=settings.database.echo)
    return _async_engine


def create_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine`` (default engine when omitted)."""
    return async_sessionmaker(
        bind=engine or get_async_engine(),
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    # Register mapped classes with the metadata before create_all.
    import dotmac.entitlements.audit.models  # noqa: F401
    import dotmac.entitlements.storage.orm  # noqa: F401

    async with (engine or get_async_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    async with (engine or get_async_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine() -> None:
    """Dispose the default engine (used on shutdown and in tests)."""
    global _async_engine
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None


__all__ = [
    "Base",
    "TimestampMixin",
    "create_engine_for_url",
    "get_async_engine",
    "create_session_factory",
    "create_all_tables_async",
    "drop_all_tables_async",
    "dispose_engine",
]
