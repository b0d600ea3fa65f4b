"""
ORM base and async engine/session factory helpers.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from authserver.config import settings

Base = declarative_base()

# Scope/URI lists: native arrays on postgres, JSON elsewhere (sqlite in tests).
StringList = ARRAY(String).with_variant(JSON(), "sqlite")


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    url = database_url or settings.database_url
    kwargs = {"echo": settings.db_echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    import authserver.idp.schemas  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
