"""
订单所有者操作

创建订单（同时签发委托凭证）、暂停 / 恢复 / 取消、资金归集、重新签发凭证、
手动执行以及查询。所有对订单的修改都通过 OrderRepository.compare_and_update 完成。
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.errors import (
    ConflictError,
    DcaError,
    InvalidTransitionError,
    OwnershipError,
    ValidationError,
)
from app.core.timeutils import utcnow
from app.models.delegated_credential import DelegatedCredential
from app.models.recurring_order import EXECUTABLE_STATUSES, Frequency, OrderStatus, RecurringOrder
from app.services.actions import PURPOSES, short_identity
from app.services.credential_issuer import Capability, CredentialIssuer
from app.services.cycle_math import BASIS_POINTS_DENOMINATOR, total_cycles
from app.services.execution_pipeline import CyclePreview, ExecutionPipeline
from app.services.repositories.credential_repository import CredentialRepository
from app.services.repositories.order_repository import OrderRepository
from app.services.state_machine import transition

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(
        self,
        session: AsyncSession,
        pipeline: ExecutionPipeline,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session = session
        self._pipeline = pipeline
        self._orders = OrderRepository(session)
        self._credentials = CredentialRepository(session)
        self._issuer = CredentialIssuer(session, self._settings)

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------

    async def create_order(
        self,
        *,
        owner_identity: str,
        execution_identity: str,
        sell_asset: str,
        buy_asset: str,
        total_amount: int,
        frequency: Frequency | str,
        duration_days: int,
        fee_basis_points: int | None = None,
        now: datetime | None = None,
    ) -> tuple[RecurringOrder, DelegatedCredential, dict]:
        """创建订单并签发委托凭证，返回订单、凭证和给所有者确认的授权说明"""
        now = now or utcnow()
        if fee_basis_points is None:
            fee_basis_points = self._settings.default_fee_basis_points

        if sell_asset.lower() == buy_asset.lower():
            raise ValidationError("卖出资产和买入资产不能相同")
        if total_amount <= 0:
            raise ValidationError(f"定投总额必须大于 0: {total_amount}")
        if not 0 <= fee_basis_points <= BASIS_POINTS_DENOMINATOR:
            raise ValidationError(f"手续费基点必须在 0 到 {BASIS_POINTS_DENOMINATOR} 之间: {fee_basis_points}")

        cycles = total_cycles(frequency, duration_days)
        if total_amount < cycles:
            raise ValidationError(f"定投总额 {total_amount} 不足以分成 {cycles} 期")

        order = RecurringOrder(
            id=uuid.uuid4().hex,
            owner_identity=owner_identity,
            execution_identity=execution_identity,
            sell_asset=sell_asset,
            buy_asset=buy_asset,
            total_amount=total_amount,
            executed_amount=0,
            remaining_amount=total_amount,
            total_fees=0,
            frequency=Frequency(frequency).value,
            duration_days=duration_days,
            total_cycles=cycles,
            cycles_completed=0,
            fee_basis_points=fee_basis_points,
            status=OrderStatus.ACTIVE.value,
            next_execution_at=now + timedelta(seconds=self._settings.first_execution_delay_seconds),
            expires_at=now + timedelta(days=duration_days),
            created_at=now,
            updated_at=now,
        )

        credential = await self._issuer.issue(
            owner_identity,
            self._issuer.default_capabilities(order),
            (now, order.expires_at),
            order=order,
            commit=False,
        )
        order.credential_id = credential.credential_id
        await self._orders.create(order)

        logger.info(
            f"已创建定投订单 {order.id}: {owner_identity} 每 {order.frequency} 用 {sell_asset} 买入 {buy_asset}，"
            f"总额 {total_amount}，共 {cycles} 期"
        )
        return order, credential, self.describe_credential(order, credential)

    def describe_credential(self, order: RecurringOrder, credential: DelegatedCredential) -> dict:
        """把凭证的授权范围转成所有者签名前看到的明文说明"""
        capabilities = self._issuer.load_capabilities(credential)
        actions = []
        for capability in capabilities:
            for operation in capability.allowed_operations:
                actions.append(
                    {
                        "target": capability.target,
                        "operation": operation,
                        "asset": order.sell_asset,
                        "amount": str(capability.value_limit),
                        "counterparty": None,
                        "purpose": PURPOSES.get(operation, operation),
                        "description": _describe_capability(capability, operation),
                    }
                )
        summary = (
            f"授权自动化身份 {short_identity(credential.automation_identity)} 在 "
            f"{order.expires_at:%Y-%m-%d %H:%M} UTC 之前，分 {order.total_cycles} 期用 "
            f"{order.total_amount} 个最小单位的 {short_identity(order.sell_asset)} 买入 "
            f"{short_identity(order.buy_asset)}"
        )
        return {"summary": summary, "actions": actions}

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> RecurringOrder:
        return await self._orders.get(order_id)

    async def list_orders(self, owner_identity: str) -> tuple[list[RecurringOrder], dict]:
        orders = list(await self._orders.list_for_owner(owner_identity))
        return orders, await self._orders.stats_for_owner(owner_identity)

    async def stats(self, owner_identity: str) -> dict:
        return await self._orders.stats_for_owner(owner_identity)

    async def list_executions(self, order_id: str):
        await self._orders.get(order_id)
        return await self._orders.list_executions(order_id)

    # ------------------------------------------------------------------
    # 所有者操作
    # ------------------------------------------------------------------

    async def pause(self, order_id: str, owner_identity: str) -> RecurringOrder:
        await self._get_owned(order_id, owner_identity)

        def mutate(o: RecurringOrder) -> None:
            transition(o, OrderStatus.PAUSED)

        order = await self._update(order_id, mutate)
        logger.info(f"订单 {order_id} 已暂停")
        return order

    async def resume(self, order_id: str, owner_identity: str) -> RecurringOrder:
        await self._get_owned(order_id, owner_identity)

        def mutate(o: RecurringOrder) -> None:
            if o.status != OrderStatus.PAUSED.value:
                raise InvalidTransitionError(f"只有暂停中的订单可以恢复，当前状态: {o.status}")
            transition(o, OrderStatus.ACTIVE)

        order = await self._update(order_id, mutate)
        logger.info(f"订单 {order_id} 已恢复，下次执行时间 {order.next_execution_at}")
        return order

    async def cancel(self, order_id: str, owner_identity: str) -> tuple[RecurringOrder, dict]:
        """取消订单：作废凭证，并尽力把执行账户中的资产转回所有者"""
        await self._get_owned(order_id, owner_identity)
        now = utcnow()

        for attempt in range(1, self._settings.commit_conflict_retries + 1):
            order = await self._orders.get(order_id)
            credential = await self._credentials.get(order.credential_id) if order.credential_id else None

            def mutate(o: RecurringOrder) -> None:
                transition(o, OrderStatus.CANCELLED)
                if credential is not None:
                    self._issuer.void(credential, now)

            try:
                order = await self._orders.compare_and_update(order_id, order.version, mutate)
                break
            except ConflictError as e:
                logger.warning(f"取消订单 {order_id} 时发生冲突（第 {attempt} 次）: {e}")
        else:
            raise ConflictError(f"订单 {order_id} 正在被频繁修改，请稍后重试")

        logger.info(f"订单 {order_id} 已取消，剩余 {order.remaining_amount} 未执行")
        sweep = await self._pipeline.sweep_funds(order)
        return order, sweep

    async def sweep(self, order_id: str, owner_identity: str) -> dict:
        order = await self._get_owned(order_id, owner_identity)
        return await self._pipeline.sweep_funds(order)

    async def reissue_credential(
        self,
        order_id: str,
        owner_identity: str,
        *,
        now: datetime | None = None,
    ) -> tuple[RecurringOrder, DelegatedCredential, dict]:
        """撤销当前凭证并重新签发（额度从头计算）"""
        order = await self._get_owned(order_id, owner_identity)
        if order.is_terminal:
            raise InvalidTransitionError(f"订单已结束（{order.status}），不能重新签发凭证")

        credential = await self._issuer.reissue(order, now)

        def mutate(o: RecurringOrder) -> None:
            o.credential_id = credential.credential_id

        order = await self._update(order_id, mutate)
        return order, credential, self.describe_credential(order, credential)

    async def execute_manually(
        self,
        order_id: str,
        caller_identity: str,
        *,
        now: datetime | None = None,
    ) -> dict:
        """
        所有者手动执行一期

        凭证不能覆盖本期计划操作时（已撤销、过期或额度用完）不提交任何交易，
        返回 pending_authorization 以及计划操作的明文说明。
        """
        order = await self._get_owned(order_id, caller_identity)
        if order.status not in EXECUTABLE_STATUSES:
            raise InvalidTransitionError(f"订单状态为 {order.status}，不能手动执行")

        try:
            preview = await self._pipeline.preview(order_id, now=now)
        except DcaError as e:
            # 报价或余额查询失败时仍然走执行流程，由流水线写入失败记录
            logger.warning(f"订单 {order_id} 预览本期操作失败: {e}")
            preview = None

        if preview is not None and preview.uncovered:
            logger.info(f"订单 {order_id} 有 {len(preview.uncovered)} 项操作未被凭证覆盖，等待所有者授权")
            return {
                "status": "pending_authorization",
                "execution": None,
                "authorization": self._pending_authorization(order, preview),
            }

        record = await self._pipeline.execute_cycle(order_id, now=now, force=True)
        return {
            "status": "executed" if record is not None else "skipped",
            "execution": record,
            "authorization": None,
        }

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    async def _get_owned(self, order_id: str, owner_identity: str) -> RecurringOrder:
        order = await self._orders.get(order_id)
        if order.owner_identity.lower() != owner_identity.lower():
            raise OwnershipError(f"{owner_identity} 不是订单 {order_id} 的所有者")
        return order

    async def _update(self, order_id: str, mutator: Callable[[RecurringOrder], None]) -> RecurringOrder:
        last_error = None
        for attempt in range(1, self._settings.commit_conflict_retries + 1):
            order = await self._orders.get(order_id)
            try:
                return await self._orders.compare_and_update(order_id, order.version, mutator)
            except ConflictError as e:
                logger.warning(f"更新订单 {order_id} 时发生冲突（第 {attempt} 次）: {e}")
                last_error = e
        raise last_error

    def _pending_authorization(self, order: RecurringOrder, preview: CyclePreview) -> dict:
        uncovered = {id(action) for action in preview.uncovered}
        actions = [action.to_authorization() for action in preview.plan.actions]
        missing = "；".join(action.describe() for action in preview.plan.actions if id(action) in uncovered)
        summary = (
            f"订单 {order.id} 第 {preview.plan.cycle_index + 1}/{order.total_cycles} 期需要重新授权，"
            f"当前委托凭证未覆盖: {missing}"
        )
        return {"summary": summary, "actions": actions}


def _describe_capability(capability: Capability, operation: str) -> str:
    return (
        f"允许对 {short_identity(capability.target)} 执行 {operation}（{PURPOSES.get(operation, operation)}），"
        f"累计不超过 {capability.value_limit} 个最小单位，"
        f"有效期 {capability.valid_from:%Y-%m-%d %H:%M} 至 {capability.valid_until:%Y-%m-%d %H:%M} UTC"
    )
