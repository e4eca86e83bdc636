from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from bugflow.config import DATABASE_URL, DB_ECHO

Base = declarative_base()

# ─────────────────────────────── engine & sessions ────────────────────────────────

def create_engine_for(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    if url.startswith("sqlite") and ":memory:" in url:
        # one shared connection, otherwise every session sees its own empty database
        return create_async_engine(
            url, echo=echo, future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo, future=True, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async_engine = create_engine_for()
AsyncSessionLocal = create_session_factory(async_engine)


async def create_all(engine: AsyncEngine = async_engine) -> None:
    # models register themselves on Base at import
    import bugflow.persistence.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSessionLocal()
    try:
        yield session
    finally:
        await session.close()
