import logging
from typing import AsyncIterator

from sqlalchemy import String, TypeDecorator
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

logger = logging.getLogger(__name__)


Base = declarative_base()

_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None


class BaseUnitAmount(TypeDecorator):
    """以十进制字符串保存的整数金额（最小单位），避免 SQLite 64 位整数溢出"""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.database_url, future=True, echo=False)
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _SessionLocal


async def get_session() -> AsyncIterator[AsyncSession]:
    session_maker = get_sessionmaker()
    async with session_maker() as session:
        yield session


def import_models() -> None:
    import app.models.recurring_order  # noqa: F401
    import app.models.execution_record  # noqa: F401
    import app.models.delegated_credential  # noqa: F401
    import app.models.order_lease  # noqa: F401
    import app.models.saga_marker  # noqa: F401


async def init_models(engine: AsyncEngine | None = None) -> None:
    import_models()

    engine = engine or get_engine()
    async with engine.begin() as conn:
        # 创建所有表
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"数据表已就绪: {', '.join(sorted(Base.metadata.tables))}")
