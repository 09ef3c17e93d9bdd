from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from nexusmod.config import settings

engine = create_async_engine(settings.database_url, echo=settings.debug, pool_pre_ping=True)

async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


async def get_db():
    """FastAPI dependency: yields AsyncSession per request."""
    async with async_session_factory() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency: the factory services use to open their own sessions."""
    return async_session_factory


async def init_models() -> None:
    """Create all tables that do not exist yet."""
    from nexusmod.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
