"""外部定时触发接口"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from app.core.config import Settings, get_settings
from app.schemas.order import CronExecuteResponse, CronResult
from app.services.order_sweeper import OrderSweeper, order_sweeper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


def get_sweeper() -> OrderSweeper:
    return order_sweeper


@router.post("/execute-due", response_model=CronExecuteResponse)
async def execute_due_orders(
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
    sweeper: OrderSweeper = Depends(get_sweeper),
) -> CronExecuteResponse:
    """扫描并执行所有到期订单（需要 Bearer CRON_SECRET_KEY）"""
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="未配置 CRON_SECRET_KEY")
    if authorization != f"Bearer {settings.cron_secret}":
        logger.warning("定时触发接口鉴权失败")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        summary = await sweeper.tick()
    except Exception as e:
        logger.error(f"扫描到期订单失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"扫描到期订单失败: {str(e)}")

    return CronExecuteResponse(
        checked_count=summary.checked,
        executed_count=summary.executed,
        failed_count=summary.failures,
        skipped_count=summary.skipped,
        results=[CronResult(**result) for result in summary.results],
    )
