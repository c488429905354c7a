from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import settings
from app.tasks import jobs


class SchedulerWrapper:
    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._job_id = "execute_due_orders"
        self._is_configured = False

    def _configure_jobs(self) -> None:
        if self._is_configured:
            return

        # 到期订单扫描（固定间隔，上一次未结束时跳过本次）
        self._scheduler.add_job(
            jobs.execute_due_orders_job,
            "interval",
            seconds=settings.sweep_interval_seconds,
            id=self._job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._is_configured = True

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        if not self._scheduler.running:
            self._configure_jobs()
            self._scheduler.start()

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)


scheduler = SchedulerWrapper()
