from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from discipline.core.config import settings

# Tables live in the auth, school and detention schemas on PostgreSQL.
SCHEMAS = ("auth", "school", "detention")


def engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # SQLite has no schemas; map them all onto the main database.
        return {"execution_options": {"schema_translate_map": {name: None for name in SCHEMAS}}}
    # pool_pre_ping: detect connections closed by the server before handing them out.
    # pool_recycle: discard pooled connections after this many seconds.
    return {"pool_pre_ping": True, "pool_recycle": 300}


engine = create_async_engine(settings.database_url, echo=False, **engine_options(settings.database_url))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
