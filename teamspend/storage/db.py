# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for TeamSpend.

This module owns the async SQLAlchemy engine and session factory. Every
service operation opens its own session through get_session() so that a
ledger transaction can be retried as a whole on a write conflict.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base

from teamspend.settings import settings
from teamspend.observability.metrics import db_connections_active


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


# ==== DATABASE INITIALIZATION ==== #

def init_database(database_url: str | None = None) -> None:
    """
    Initialize database engine and session factory.

    PostgreSQL URLs are normalized to the asyncpg driver. SQLite connections
    get foreign key enforcement and a busy timeout so concurrent writers wait
    instead of failing.

    Args:
        database_url: Override for settings.DATABASE_URL
    """
    global engine, SessionLocal

    if engine is not None:
        return

    # --► DATABASE URL VALIDATION AND DRIVER SETUP
    db_url = database_url or settings.DATABASE_URL
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("sqlite://"):
        db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    is_sqlite = db_url.startswith("sqlite")
    connect_args = {"timeout": 30} if is_sqlite else {
        "server_settings": {
            "application_name": settings.SERVICE_NAME,
            "timezone": "UTC"
        }
    }

    engine = create_async_engine(
        db_url,
        echo=settings.DATABASE_ECHO,
        connect_args=connect_args,
    )

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema() -> None:
    """Create all tables that do not exist yet."""
    # Models must be registered on Base.metadata before create_all
    from teamspend.storage import models  # noqa: F401

    if engine is None:
        init_database()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session that commits on success and rolls back on error.

    Yields:
        AsyncSession: Database session

    Raises:
        Exception: Whatever the wrapped block raised, after rollback
    """
    if SessionLocal is None:
        init_database()

    async with SessionLocal() as session:
        try:
            db_connections_active.inc()
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            db_connections_active.dec()


async def check_database() -> bool:
    """Run a trivial query to confirm the database answers."""
    async with get_session() as session:
        result = await session.execute(text("SELECT 1"))
        return result.scalar() == 1


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
