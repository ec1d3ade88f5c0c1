from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from mfg_erp_core import config

engine = create_async_engine(
    config.DATABASE_URL,
    future=True,
    echo=config.SQL_ECHO,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
