import json
import logging
from decimal import Decimal
from datetime import datetime, date
from typing import Any, AsyncGenerator, Dict
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from psycopg.types.json import set_json_dumps

from itc_recon.config import settings

logger = logging.getLogger(__name__)


class ReconJSONEncoder(json.JSONEncoder):
    """Encodes amounts, dates and ids found in statement records and match details."""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, UUID):
            return str(obj)
        return super().default(obj)


def custom_json_dumps(obj) -> str:
    """json.dumps used for every JSON column, on psycopg and SQLite alike."""
    return json.dumps(obj, cls=ReconJSONEncoder)


set_json_dumps(custom_json_dumps)


is_sqlite = settings.DATABASE_URL.startswith("sqlite")


def _async_url(url: str) -> str:
    """Point plain or asyncpg PostgreSQL URLs at the psycopg async driver."""
    for prefix in ("postgresql+asyncpg://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def _engine_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "echo": settings.DEBUG,
        "json_serializer": custom_json_dumps,
    }
    if is_sqlite:
        # Reconciliation workers write from several connections at once
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        return options

    options.update(
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={
            "prepare_threshold": None,  # Disable prepared statements for poolers
            "connect_timeout": 30,
        },
    )
    return options


engine = create_async_engine(_async_url(settings.DATABASE_URL), **_engine_options())

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Declarative base for the reconciliation tables."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _register_models() -> None:
    from itc_recon.models import gstr2b, vendor_invoice  # noqa: F401


async def init_db() -> None:
    """Create missing tables."""
    _register_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables)")


async def drop_db() -> None:
    """Drop all tables. Used by tests and local resets."""
    _register_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
