"""定时任务"""

import logging

from app.services.order_sweeper import order_sweeper

logger = logging.getLogger(__name__)


async def execute_due_orders_job() -> None:
    """扫描并执行到期定投订单的定时任务"""
    logger.info("开始执行到期订单扫描任务...")
    try:
        summary = await order_sweeper.tick()
        logger.info(f"到期订单扫描任务完成: 成功 {summary.executed}，失败 {summary.failures}")
    except Exception as e:
        logger.error(f"扫描到期订单时出错: {e}", exc_info=True)
