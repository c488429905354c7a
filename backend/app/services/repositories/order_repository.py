from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConflictError, OrderNotFoundError
from app.models.execution_record import ExecutionRecord, ExecutionStatus
from app.models.recurring_order import EXECUTABLE_STATUSES, OrderStatus, RecurringOrder


class OrderRepository:
    """
    订单存储

    所有对订单的修改都必须通过 compare_and_update 完成：
    版本号不一致时抛出 ConflictError，由调用方基于最新状态重试或放弃。
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: RecurringOrder) -> RecurringOrder:
        self._session.add(order)
        await self._session.commit()
        return order

    async def get(self, order_id: str) -> RecurringOrder:
        result = await self._session.execute(
            select(RecurringOrder)
            .where(RecurringOrder.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(f"订单不存在: {order_id}")
        return order

    async def list_due(self, now: datetime) -> Sequence[RecurringOrder]:
        result = await self._session.execute(
            select(RecurringOrder)
            .where(RecurringOrder.status.in_(EXECUTABLE_STATUSES))
            .where(RecurringOrder.next_execution_at <= now)
            .order_by(RecurringOrder.next_execution_at.asc())
        )
        return result.scalars().all()

    async def compare_and_update(
        self,
        order_id: str,
        expected_version: int,
        mutator: Callable[[RecurringOrder], None],
        *,
        execution: ExecutionRecord | None = None,
    ) -> RecurringOrder:
        """
        条件更新：只有当前版本号等于 expected_version 时才应用 mutator

        execution 不为空时，执行记录与订单修改在同一事务中提交。
        会话中其他未提交的修改（例如凭证额度扣减）也一并提交。
        """
        order = await self.get(order_id)
        actual_version = order.version
        if actual_version != expected_version:
            # rollback 之后 order 已过期，不能再读取属性
            await self._session.rollback()
            raise ConflictError(f"订单 {order_id} 版本已变化: 期望 {expected_version}，实际 {actual_version}")

        try:
            mutator(order)
        except Exception:
            await self._session.rollback()
            raise

        if execution is not None:
            execution.order_id = order_id
            self._session.add(execution)

        try:
            await self._session.commit()
        except StaleDataError:
            await self._session.rollback()
            raise ConflictError(f"订单 {order_id} 在提交时已被其他操作修改") from None
        return order

    async def append_execution(self, order_id: str, record: ExecutionRecord) -> ExecutionRecord:
        record.order_id = order_id
        self._session.add(record)
        await self._session.commit()
        return record

    async def has_successful_cycle(self, order_id: str, cycle_index: int) -> bool:
        result = await self._session.execute(
            select(ExecutionRecord.id)
            .where(ExecutionRecord.order_id == order_id)
            .where(ExecutionRecord.cycle_index == cycle_index)
            .where(ExecutionRecord.status == ExecutionStatus.SUCCESS.value)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list_for_owner(self, owner_identity: str) -> Sequence[RecurringOrder]:
        result = await self._session.execute(
            select(RecurringOrder)
            .where(func.lower(RecurringOrder.owner_identity) == owner_identity.lower())
            .order_by(RecurringOrder.created_at.desc())
        )
        return result.scalars().all()

    async def list_executions(self, order_id: str) -> Sequence[ExecutionRecord]:
        result = await self._session.execute(
            select(ExecutionRecord)
            .where(ExecutionRecord.order_id == order_id)
            .order_by(ExecutionRecord.executed_at.desc(), ExecutionRecord.id.desc())
        )
        return result.scalars().all()

    async def stats_for_owner(self, owner_identity: str) -> dict:
        orders = await self.list_for_owner(owner_identity)
        return {
            "total_orders": len(orders),
            "active_orders": sum(1 for o in orders if o.status == OrderStatus.ACTIVE.value),
            "paused_orders": sum(1 for o in orders if o.status == OrderStatus.PAUSED.value),
            "insufficient_funds_orders": sum(
                1 for o in orders if o.status == OrderStatus.INSUFFICIENT_FUNDS.value
            ),
            "completed_orders": sum(1 for o in orders if o.status == OrderStatus.COMPLETED.value),
            "cancelled_orders": sum(1 for o in orders if o.status == OrderStatus.CANCELLED.value),
            "total_invested": sum(o.executed_amount for o in orders),
            "total_fees": sum(o.total_fees for o in orders),
            "total_executions": sum(o.cycles_completed for o in orders),
        }
