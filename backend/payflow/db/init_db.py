"""
Database Initialization

Builds the async engine and session factory and creates tables on startup.
SQLite databases get WAL mode for better concurrency between request
handlers and webhook deliveries.
"""
import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine(database_url: str) -> AsyncEngine:
    """
    Create the async engine for ``database_url``.

    For file-backed SQLite the parent directory is created and WAL pragmas
    are applied on every new connection.
    """
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    connect_args = {}

    if is_sqlite:
        connect_args = {
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        }
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_recycle=3600  # Recycle connections after 1 hour
    )

    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create all tables if they do not exist.

    Called during FastAPI startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database initialized at {engine.url.render_as_string(hide_password=True)}")
