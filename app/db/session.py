from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from app.core.config import get_settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


settings = get_settings()
engine = create_async_engine(settings.database_url, future=True, echo=settings.debug, **_engine_options(settings.database_url))
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
