from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from diagram_pipeline.config import Settings


class Base(DeclarativeBase):
  pass


def _database_url(pg_dsn: str | None) -> str | None:
  """Normalize the DSN to the asyncpg driver SQLAlchemy expects."""
  if pg_dsn and pg_dsn.startswith("postgresql://"):
    return pg_dsn.replace("postgresql://", "postgresql+asyncpg://", 1)
  return pg_dsn


def create_db_engine(settings: Settings) -> AsyncEngine | None:
  """Build an async engine when Postgres is configured."""
  database_url = _database_url(settings.pg_dsn)
  if not database_url:
    return None
  return create_async_engine(database_url, echo=settings.debug, future=True, connect_args={"timeout": settings.pg_connect_timeout})


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine) -> None:
  """Create pipeline tables if they are missing."""
  # Import models so they register on Base.metadata before create_all runs.
  from diagram_pipeline.schema import jobs, webhooks  # noqa: F401

  async with engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
