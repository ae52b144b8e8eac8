from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from order_placement.core.config import settings
import order_placement.db.base  # noqa: F401

engine = create_async_engine(settings.DATABASE_URL, future=True, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
