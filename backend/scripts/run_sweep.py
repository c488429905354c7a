"""手动执行一次到期订单扫描

不启动 API 服务，直接扫描并执行所有到期订单，适合由系统 cron 调用。
用法: python scripts/run_sweep.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from app.core.db import init_models
from app.services.order_sweeper import order_sweeper

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main():
    try:
        await init_models()
        summary = await order_sweeper.tick()
    except Exception as e:
        logger.error(f"扫描到期订单失败: {e}", exc_info=True)
        sys.exit(1)

    for result in summary.results:
        logger.info(f"  {result['order_id']}: {result['status']} {result['error'] or ''}")
    logger.info(
        f"共检查 {summary.checked} 个订单: 成功 {summary.executed}，失败 {summary.failures}，跳过 {summary.skipped}"
    )
    if summary.failures:
        sys.exit(2)


if __name__ == "__main__":
    asyncio.run(main())
