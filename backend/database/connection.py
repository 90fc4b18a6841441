import os
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_database_url() -> str:
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    return database_url


def get_engine() -> AsyncEngine:
    """Create the async engine on first use."""
    global _engine
    if _engine is None:
        database_url = get_database_url()
        options = {"echo": False, "pool_pre_ping": True}
        if database_url.startswith("postgresql"):
            options.update(
                pool_size=5,
                max_overflow=10,
                connect_args={"ssl": "require"},
            )
        _engine = create_async_engine(database_url, **options)
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _session_factory


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(create_tables: bool = False):
    """Initialize database connection and optionally create reconciliation tables"""
    try:
        async with get_engine().begin() as conn:
            # Test connection
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

            if create_tables:
                from database import reconciliation_models  # noqa: F401  registers tables
                await conn.run_sync(Base.metadata.create_all)
                logger.info(f"Ensured tables: {sorted(Base.metadata.tables)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
