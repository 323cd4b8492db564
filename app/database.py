"""
Database connection and session (SQLAlchemy asyncio).

Schema source of truth: app.models. On startup, Base.metadata.create_all creates
all tables from the current models; no migration scripts are needed for a new
(empty) database.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def make_engine(database_url: str) -> AsyncEngine:
    kwargs = {}
    if not database_url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # Entries are handed back to the service after the session closes.
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_all(engine: AsyncEngine) -> None:
    # Import models so Base.metadata has all tables before create_all
    from app.models import WaitlistEntry  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
