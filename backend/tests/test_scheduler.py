import asyncio

from app.services.order_sweeper import SweepSummary
from app.tasks import jobs
from app.tasks.scheduler import SchedulerWrapper


class RecordingSweeper:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.ticks = 0

    async def tick(self, now=None) -> SweepSummary:
        self.ticks += 1
        if self.error is not None:
            raise self.error
        return SweepSummary(checked=1, executed=1)


async def test_scheduler_registers_sweep_job():
    wrapper = SchedulerWrapper()
    await wrapper.start()
    try:
        assert wrapper.running
        job = wrapper._scheduler.get_job("execute_due_orders")
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce
    finally:
        await wrapper.stop()

    # shutdown(wait=False) 在事件循环的下一轮才真正停止
    await asyncio.sleep(0.01)
    assert not wrapper.running


async def test_job_runs_sweeper(monkeypatch):
    sweeper = RecordingSweeper()
    monkeypatch.setattr(jobs, "order_sweeper", sweeper)

    await jobs.execute_due_orders_job()

    assert sweeper.ticks == 1


async def test_job_logs_and_swallows_errors(monkeypatch, caplog):
    sweeper = RecordingSweeper(error=RuntimeError("database unavailable"))
    monkeypatch.setattr(jobs, "order_sweeper", sweeper)

    await jobs.execute_due_orders_job()

    assert sweeper.ticks == 1
    assert "database unavailable" in caplog.text
