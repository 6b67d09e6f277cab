"""
Database engine and session management.
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url
from typing import AsyncGenerator

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """Make sure the URL names an async driver."""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "mysql": "mysql+aiomysql",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"Unsupported database driver: {drivername}. Use an async driver in the database URL")

    return str(url.set(drivername=driver_map[drivername]))


engine = create_async_engine(
    _build_async_url(settings.database.url),
    echo=settings.database.echo,
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Session without auto-commit; the caller owns the transaction."""
    async with AsyncSessionLocal() as session:
        yield session


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables():
    """Test environments only: drops every table."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
