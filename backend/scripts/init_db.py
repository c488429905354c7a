"""创建数据表并列出数据库中现有的表

用法: python scripts/init_db.py
重复执行是安全的，已存在的表不会被修改。
"""

import asyncio
import logging
import sys
from pathlib import Path

from sqlalchemy import inspect

# 添加项目根目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from app.core.config import settings
from app.core.db import Base, get_engine, init_models

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main():
    engine = get_engine()
    try:
        await init_models(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    except Exception as e:
        logger.error(f"初始化 {settings.database_url} 失败: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await engine.dispose()

    logger.info(f"{settings.database_url} 中共有 {len(tables)} 张表:")
    for name in tables:
        logger.info(f"  {name}")

    missing = set(Base.metadata.tables) - set(tables)
    if missing:
        logger.error(f"以下表未能创建: {', '.join(sorted(missing))}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
