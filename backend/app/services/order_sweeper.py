"""定时扫描到期订单并逐个执行"""

import asyncio
import logging
from dataclasses import dataclass, field

from app.core.config import Settings, get_settings
from app.core.timeutils import utcnow
from app.models.execution_record import ExecutionStatus
from app.services.execution_pipeline import ExecutionPipeline, execution_pipeline
from app.services.repositories.order_repository import OrderRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    checked: int = 0
    executed: int = 0
    failures: int = 0
    skipped: int = 0
    results: list[dict] = field(default_factory=list)


class OrderSweeper:
    """
    扫描到期订单

    每个订单独立执行，单个订单出错不会影响其他订单；
    同时执行的订单数量受 settings.sweep_max_concurrency 限制。
    """

    def __init__(self, pipeline: ExecutionPipeline, settings: Settings | None = None) -> None:
        self._pipeline = pipeline
        self._settings = settings or get_settings()

    async def tick(self, now=None) -> SweepSummary:
        now = now or utcnow()

        async with self._pipeline.session_maker() as session:
            due = await OrderRepository(session).list_due(now)
            order_ids = [order.id for order in due]

        summary = SweepSummary(checked=len(order_ids))
        if not order_ids:
            logger.debug("没有到期的订单")
            return summary

        logger.info(f"发现 {len(order_ids)} 个到期订单，开始执行...")
        semaphore = asyncio.Semaphore(max(1, self._settings.sweep_max_concurrency))

        async def _run(order_id: str) -> dict:
            async with semaphore:
                try:
                    record = await self._pipeline.execute_cycle(order_id, now=now)
                except Exception as e:
                    logger.error(f"执行订单 {order_id} 时出错: {e}", exc_info=True)
                    return {"order_id": order_id, "status": "error", "execution_id": None, "error": str(e)}

            if record is None:
                return {"order_id": order_id, "status": "skipped", "execution_id": None, "error": None}
            return {
                "order_id": order_id,
                "status": record.status,
                "execution_id": record.id,
                "error": record.error_message,
            }

        summary.results = list(await asyncio.gather(*(_run(order_id) for order_id in order_ids)))
        for result in summary.results:
            if result["status"] == ExecutionStatus.SUCCESS.value:
                summary.executed += 1
            elif result["status"] == "skipped":
                summary.skipped += 1
            else:
                summary.failures += 1

        logger.info(
            f"到期订单扫描完成: 检查 {summary.checked}，成功 {summary.executed}，"
            f"失败 {summary.failures}，跳过 {summary.skipped}"
        )
        return summary


order_sweeper = OrderSweeper(execution_pipeline)
