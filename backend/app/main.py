import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.db import init_models
from app.tasks.scheduler import scheduler
from .routers import cron, orders

logger = logging.getLogger(__name__)


def create_app(*, start_scheduler: bool | None = None) -> FastAPI:
    app = FastAPI(title="DCA Automation API")

    # CORS 中间件必须在所有路由之前添加
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="/api")
    app.include_router(cron.router, prefix="/api")

    run_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler

    @app.get("/")
    async def read_root():
        return {"message": "DCA Automation API", "docs": "/docs"}

    @app.on_event("startup")
    async def startup_event() -> None:
        try:
            logger.info("正在初始化数据库...")
            await init_models()
            logger.info("数据库初始化完成")

            if run_scheduler:
                logger.info("正在启动到期订单扫描任务...")
                await scheduler.start()
                logger.info(f"到期订单扫描任务已启动，间隔 {settings.sweep_interval_seconds} 秒")
            else:
                logger.info("定时扫描已关闭，仅响应 /api/cron/execute-due 触发")

            logger.info("应用启动完成！")
        except Exception as e:
            logger.error(f"应用启动失败: {e}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        try:
            logger.info("正在停止到期订单扫描任务...")
            await scheduler.stop()
            logger.info("到期订单扫描任务已停止")
        except Exception as e:
            logger.error(f"停止到期订单扫描任务时出错: {e}", exc_info=True)

    return app


app = create_app()
