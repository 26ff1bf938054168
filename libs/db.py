# backend/libs/db.py
import logging
import os

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# Construct DATABASE_URL from individual environment variables if DATABASE_URL is not set
if "DATABASE_URL" in os.environ:
    DATABASE_URL = os.getenv("DATABASE_URL")
    # Heroku-style URLs come without the async driver
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = "postgresql+asyncpg://" + DATABASE_URL[len("postgres://"):]
    elif DATABASE_URL.startswith("postgresql://"):
        DATABASE_URL = "postgresql+asyncpg://" + DATABASE_URL[len("postgresql://"):]
else:
    # Build from individual components
    db_host = os.getenv("DATABASE_HOST", "127.0.0.1")
    db_port = os.getenv("DATABASE_PORT", "5432")
    db_user = os.getenv("DATABASE_USER", "feedback")
    db_password = os.getenv("DATABASE_PASSWORD", "")
    db_name = os.getenv("DATABASE_NAME", "feedback_suite")

    # URL encode password if it contains special characters
    from urllib.parse import quote_plus

    db_password_encoded = quote_plus(db_password) if db_password else ""

    DATABASE_URL = f"postgresql+asyncpg://{db_user}:{db_password_encoded}@{db_host}:{db_port}/{db_name}"

engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)

AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """Async session for FastAPI dependency injection."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_models(bind: AsyncEngine) -> None:
    """Create missing tables (development / tests only, no migrations)."""
    from models.feedback import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database(session_factory=None) -> None:
    """Run a trivial query; raises when the database is unreachable."""
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        await session.execute(text("SELECT 1"))
