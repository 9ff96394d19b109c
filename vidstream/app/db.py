from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from vidstream.app.models import Base


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    engine = create_async_engine(database_url, **engine_kwargs)
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(session_factory: sessionmaker) -> None:
    """Create any missing tables."""
    async with session_factory.kw["bind"].begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
