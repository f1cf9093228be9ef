from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# All the registry models are "stored" in the Base class and created by the Engine
class Base(DeclarativeBase):
    pass


def ensure_database_dir(database_url: str) -> None:
    """Create the parent directory of a file-backed sqlite database."""
    url = make_url(database_url)
    if not url.get_backend_name().startswith("sqlite"):
        return
    if not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo)


# Sessions keep loaded rows usable after commit to avoid refreshes in async code
def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
