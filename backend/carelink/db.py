"""Database configuration and session management for FastAPI.

SQLAlchemy's asyncio support with asyncpg backs the document store for
call records, location samples and user safety profiles.  The
connection URL is assembled from environment variables; on Cloud Run
with Cloud SQL the connector uses a Unix socket, in local development
it falls back to TCP.
"""

import os
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


def _make_database_url() -> str:
    """Construct a database URL based on environment variables.

    The following environment variables are used:

    - CLOUDSQL_INSTANCE_CONNECTION_NAME: If set, connect through the
      Cloud SQL Unix domain socket for that instance.
    - DB_USER, DB_PASSWORD, DB_NAME: Credentials and database name.
    - DB_HOST, DB_PORT: TCP address when no Cloud SQL instance is set.
    """
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    db_name = os.getenv("DB_NAME", "carelink")
    instance_connection_name = os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME")
    if instance_connection_name:
        return (
            f"postgresql+asyncpg://{user}:{password}@/{db_name}?host=/cloudsql/{instance_connection_name}"
        )
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"


DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """Create the CareLink tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Provide a session scope for request handlers."""
    async with AsyncSessionLocal() as session:
        yield session
