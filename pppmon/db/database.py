from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from pppmon.config import settings

# Required for defining models
Base = declarative_base()


def normalize_database_url(url: str) -> str:
    """Swap sync driver URLs for their async equivalents"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def enable_sqlite_foreign_keys(engine: AsyncEngine):
    """SQLite ignores ON DELETE rules unless the pragma is set per connection"""
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    url = normalize_database_url(url)
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_async_engine(url, echo=False, **kwargs)
    if is_sqlite:
        enable_sqlite_foreign_keys(engine)
    return engine


DATABASE_URL = normalize_database_url(settings.DATABASE_URL)
async_engine = build_engine(DATABASE_URL)

# Sessions keep loaded attributes after commit
AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)

# Dependency for using DB session in route handlers
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
