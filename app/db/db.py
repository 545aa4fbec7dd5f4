"""Database connection management using SQLModel with asyncpg / aiosqlite."""

import ssl
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse, urlunparse

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.config.settings import settings
from app.config.logger import app_logger

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def get_db_url() -> str:
    """Get database URL for SQLAlchemy with an async driver."""
    db_url = settings.effective_database_url
    if not db_url:
        raise ValueError("DATABASE_URL not configured")
    if db_url.startswith("sqlite"):
        if db_url.startswith("sqlite://"):
            db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return db_url

    # For Postgres URLs, normalize and strip sslmode (asyncpg handles SSL via connect_args)
    parsed = urlparse(db_url)
    query_parts = [p for p in parsed.query.split("&") if not p.startswith("sslmode=") and p]
    query = "&".join(query_parts)
    clean_url = urlunparse(
        (
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            query,
            parsed.fragment,
        )
    )

    if clean_url.startswith("postgresql://"):
        clean_url = clean_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif clean_url.startswith("postgres://"):
        clean_url = clean_url.replace("postgres://", "postgresql+asyncpg://", 1)

    return clean_url


def _import_models() -> None:
    # Import all models to register them with SQLModel
    from app.models import (  # noqa: F401
        user,
        drive_credential,
        document,
        chunk,
        sync_state,
        file_job,
    )


def build_engine(db_url: str) -> AsyncEngine:
    """Create an async engine suited to the URL's backend."""
    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(db_url, echo=False, **kwargs)

    connect_args = {}
    # SSL context for hosted Postgres (no certificate verification)
    if db_url.startswith("postgresql+asyncpg://"):
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args = {"ssl": ssl_context}

    return create_async_engine(
        db_url,
        echo=False,
        pool_size=20,
        max_overflow=0,
        connect_args=connect_args,
    )


async def configure_engine(db_url: str) -> async_sessionmaker:
    """Point the module at db_url, create tables, and return the session maker."""
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()

    _engine = build_engine(db_url)
    _session_maker = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    _import_models()
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    return _session_maker


async def init_db() -> None:
    """Initialize the database engine and create tables."""
    try:
        db_url = get_db_url()
        app_logger.info("Initializing database connection")
        await configure_engine(db_url)
        app_logger.info("Database initialized successfully")

    except ValueError:
        app_logger.warning("DATABASE_URL not set; database will not be initialized")
    except Exception as e:
        app_logger.error(f"Failed to initialize database: {e}")
        app_logger.error(f"Error type: {type(e).__name__}")
        app_logger.warning("DATABASE CONNECTION FAILED - sync and search endpoints will return 503")
        # Don't raise - allow app to start without database


async def close_db() -> None:
    """Close the database engine."""
    global _engine, _session_maker

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_maker = None
        app_logger.info("Database connection closed")


def get_session_maker() -> async_sessionmaker:
    """Return the configured session maker for background services."""
    if not _session_maker:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session."""
    if not _session_maker:
        from fastapi import HTTPException
        raise HTTPException(
            status_code=503,
            detail="Database unavailable. The server is running in limited mode.",
        )

    async with _session_maker() as session:
        yield session


@asynccontextmanager
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for internal background tasks."""
    async with get_session_maker()() as session:
        yield session


async def ping_database() -> tuple[bool, str]:
    """Run a lightweight health query against the database."""
    if not _engine or not _session_maker:
        return False, "Database not initialized"

    try:
        from sqlalchemy import text
        async with _session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            row = result.scalar()
            if row == 1:
                return True, "Database connection healthy"
            return False, f"Unexpected response: {row}"
    except Exception as e:
        return False, f"Database query failed: {str(e)}"
