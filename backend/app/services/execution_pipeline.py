"""
定投执行流水线

把一个到期的订单周期变成一笔已结算的兑换：

1. 获取订单租约，重新读取订单并检查状态（已取消 / 暂停的订单直接跳过）
2. 计算本期金额和手续费
3. 检查执行账户余额
4. 获取报价，并确认报价返回的结算目标在可信列表中
5. 用委托凭证校验计划执行的每个操作（与报价内容无关）
6. 授权额度不足时先提交授权，确认后落库兑换意图，再提交兑换
7. 等待结算确认
8. 成功：一次条件更新写入计数、时间和执行记录
9. 失败：写入失败记录，下次执行时间顺延一个周期，不会立即重试
"""

import json
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.core.db import get_sessionmaker
from app.core.errors import (
    ConflictError,
    DcaError,
    InsufficientBalanceError,
    OrderExpiredError,
    PermissionDeniedError,
    ProviderError,
    SettlementRejectedError,
    SettlementTimeoutError,
    SettlementUnresolvedError,
    UnexpectedExecutionError,
    UntrustedTargetError,
)
from app.core.timeutils import utcnow
from app.models.delegated_credential import DelegatedCredential
from app.models.execution_record import ExecutionRecord, ExecutionStatus
from app.models.recurring_order import EXECUTABLE_STATUSES, OrderStatus, RecurringOrder
from app.models.saga_marker import SagaMarker, SagaPhase
from app.services.actions import (
    OPERATION_APPROVE,
    OPERATION_TRANSFER,
    PlannedAction,
)
from app.services.credential_issuer import AutomationSigner, CredentialIssuer
from app.services.cycle_math import CycleAmounts, cycle_amounts, period
from app.services.quote_client import Quote, QuoteClient
from app.services.repositories.credential_repository import CredentialRepository
from app.services.repositories.order_lease_repository import OrderLeaseRepository
from app.services.repositories.order_repository import OrderRepository
from app.services.repositories.saga_repository import SagaRepository
from app.services.settlement_client import Receipt, SettlementClient
from app.services.state_machine import transition

logger = logging.getLogger(__name__)

# 出错后仍然保留执行标记的错误：结果未知，需要下次对账或用同一幂等键续做
AMBIGUOUS_ERRORS = (ProviderError, SettlementTimeoutError, ConflictError)


@dataclass
class CyclePlan:
    """本期计划执行的操作"""

    cycle_index: int
    amounts: CycleAmounts
    swap: PlannedAction
    provider: str | None = None
    expected_amount_out: int = 0
    price_impact: float | None = None
    approve: PlannedAction | None = None
    fee: PlannedAction | None = None

    @property
    def actions(self) -> list[PlannedAction]:
        return [a for a in (self.approve, self.swap, self.fee) if a is not None]

    def to_intent(self, idempotency_key: str) -> dict:
        return {
            "cycle_index": self.cycle_index,
            "cycle_amount": str(self.amounts.cycle_amount),
            "fee": str(self.amounts.fee),
            "net_amount": str(self.amounts.net_amount),
            "swap": self.swap.to_payload(),
            "approve": self.approve.to_payload() if self.approve else None,
            "fee_transfer": self.fee.to_payload() if self.fee else None,
            "provider": self.provider,
            "expected_amount_out": str(self.expected_amount_out),
            "price_impact": self.price_impact,
            "idempotency_key": idempotency_key,
        }

    @classmethod
    def from_intent(cls, intent: dict) -> "CyclePlan":
        return cls(
            cycle_index=intent["cycle_index"],
            amounts=CycleAmounts(
                cycle_amount=int(intent["cycle_amount"]),
                fee=int(intent["fee"]),
                net_amount=int(intent["net_amount"]),
            ),
            swap=_action_from_payload(intent["swap"]),
            approve=_action_from_payload(intent["approve"]) if intent.get("approve") else None,
            fee=_action_from_payload(intent["fee_transfer"]) if intent.get("fee_transfer") else None,
            provider=intent.get("provider"),
            expected_amount_out=int(intent.get("expected_amount_out") or 0),
            price_impact=intent.get("price_impact"),
        )


@dataclass
class SettledCycle:
    plan: CyclePlan
    receipt: Receipt
    approval_reference: str | None = None
    fee_reference: str | None = None
    charged: list[PlannedAction] = field(default_factory=list)


@dataclass
class CyclePreview:
    """手动执行前的预览：计划操作以及凭证未覆盖的操作"""

    plan: CyclePlan
    uncovered: list[PlannedAction]


def _action_from_payload(payload: dict) -> PlannedAction:
    return PlannedAction(
        target=payload["target"],
        operation=payload["operation"],
        value=int(payload["value"]),
        asset=payload["asset"],
        counterparty=payload.get("counterparty"),
        purpose=payload.get("purpose"),
        calldata=payload.get("calldata"),
        extra=payload.get("extra") or {},
    )


class ExecutionPipeline:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        quote_client: QuoteClient | None = None,
        settlement_client: SettlementClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_maker = session_maker
        self._quote_client = quote_client or QuoteClient(self._settings)
        self._settlement_client = settlement_client or SettlementClient(self._settings)

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_sessionmaker()

    @property
    def settlement_client(self) -> SettlementClient:
        return self._settlement_client

    async def execute_cycle(
        self,
        order_id: str,
        *,
        now=None,
        force: bool = False,
    ) -> ExecutionRecord | None:
        """
        执行订单的一个周期

        返回本次写入的执行记录；订单不需要执行（状态不符、未到期、
        本周期已成功、租约被占用）时返回 None。
        force=True 用于手动执行，跳过“是否到期”的检查，其余检查不变。
        """
        now = now or utcnow()
        holder = uuid.uuid4().hex

        async with self.session_maker() as session:
            leases = OrderLeaseRepository(session)
            # 租约使用真实时钟，与调用方传入的业务时间无关
            if not await leases.acquire(order_id, holder, utcnow(), self._settings.lease_ttl_seconds):
                logger.info(f"订单 {order_id} 正在被其他进程执行，跳过")
                return None

            try:
                return await self._run(session, order_id, now, force)
            finally:
                if session.in_transaction():
                    await session.rollback()
                await leases.release(order_id, holder)

    async def preview(self, order_id: str, *, now=None) -> CyclePreview:
        """只获取报价和计划操作，不提交任何交易"""
        now = now or utcnow()
        async with self.session_maker() as session:
            order = await OrderRepository(session).get(order_id)
            credential = await self._load_credential(session, order)
            amounts = self._amounts(order)
            plan = await self._plan(order, amounts)
            issuer = CredentialIssuer(session, self._settings)
            return CyclePreview(plan=plan, uncovered=issuer.find_uncovered(credential, plan.actions, now))

    async def sweep_funds(self, order: RecurringOrder) -> dict:
        """尽力把执行账户中的卖出和买入资产转回所有者，失败不影响调用方"""
        try:
            result = await self._settlement_client.sweep_to_owner(
                account=order.execution_identity,
                owner=order.owner_identity,
                assets=[order.sell_asset, order.buy_asset],
            )
        except DcaError as e:
            logger.warning(f"订单 {order.id} 资金归集失败: {e}")
            return {"success": False, "reference": None, "swept": {}, "error": str(e)}

        logger.info(f"订单 {order.id} 资金已归集到 {order.owner_identity}: {result.reference}")
        return {
            "success": True,
            "reference": result.reference,
            "swept": {asset: str(amount) for asset, amount in result.swept.items()},
            "error": None,
        }

    # ------------------------------------------------------------------
    # 主流程
    # ------------------------------------------------------------------

    async def _run(self, session: AsyncSession, order_id: str, now, force: bool) -> ExecutionRecord | None:
        orders = OrderRepository(session)
        sagas = SagaRepository(session)

        order = await orders.get(order_id)
        marker = await sagas.get(order_id)

        # 上一周期兑换结果未知，先对账
        if marker is not None and marker.phase == SagaPhase.AWAITING_SETTLEMENT.value:
            record = await self._reconcile(session, order, marker, now)
            if record is not None:
                return record
            order = await orders.get(order_id)
            marker = None

        # 1. 状态检查
        if order.status not in EXECUTABLE_STATUSES:
            logger.info(f"订单 {order_id} 状态为 {order.status}，跳过执行")
            return None
        if order.cycles_completed >= order.total_cycles:
            await self._complete_exhausted(session, order)
            return None
        if not force and order.next_execution_at > now:
            logger.debug(f"订单 {order_id} 尚未到执行时间: {order.next_execution_at}")
            return None
        if await orders.has_successful_cycle(order_id, order.cycles_completed):
            logger.warning(f"订单 {order_id} 第 {order.cycles_completed} 期已有成功记录，跳过")
            return None

        cycle_index = order.cycles_completed
        amounts = self._amounts(order)

        try:
            if now > order.expires_at:
                raise OrderExpiredError(f"订单已于 {order.expires_at} 到期，剩余 {order.remaining_amount} 未执行")

            credential = await self._load_credential(session, order)
            issuer = CredentialIssuer(session, self._settings)

            if marker is not None and marker.cycle_index == cycle_index:
                # 授权已完成，从落库的兑换意图继续
                logger.info(f"订单 {order_id} 从执行标记恢复第 {cycle_index} 期")
                plan = CyclePlan.from_intent(json.loads(marker.swap_intent))
                approval_reference = marker.approval_reference
            else:
                if marker is not None:
                    await sagas.delete(order_id)
                    marker = None

                # 3. 余额检查
                balance = await self._settlement_client.get_balance(order.execution_identity, order.sell_asset)
                if balance < amounts.cycle_amount:
                    raise InsufficientBalanceError(amounts.cycle_amount, balance, order.sell_asset)

                # 4. 报价
                plan = await self._plan(order, amounts)
                approval_reference = None

            # 5. 凭证校验
            issuer.authorize(credential, plan.actions, now)

            # 6-7. 授权、兑换、手续费
            settled = await self._settle(session, order, credential, issuer, plan, approval_reference)
        except InsufficientBalanceError as e:
            logger.info(f"订单 {order_id} {e}")
            return await self._record_failure(
                session, order_id, cycle_index, e, now, amounts,
                target_status=OrderStatus.INSUFFICIENT_FUNDS,
            )
        except DcaError as e:
            if isinstance(e, (UntrustedTargetError, PermissionDeniedError)):
                logger.warning(f"订单 {order_id} 安全校验未通过，本期中止: {e}")
            else:
                logger.error(f"订单 {order_id} 第 {cycle_index} 期执行失败: {e}")
            if not isinstance(e, AMBIGUOUS_ERRORS) or e.permanent:
                await sagas.delete(order_id)
            return await self._record_failure(session, order_id, cycle_index, e, now, amounts)
        except Exception as e:
            # 结果未知，保留执行标记，下次执行时对账或续做
            logger.error(f"订单 {order_id} 第 {cycle_index} 期执行时出现未预期的错误: {e}", exc_info=True)
            await session.rollback()
            error = UnexpectedExecutionError(f"{type(e).__name__}: {e}")
            return await self._record_failure(session, order_id, cycle_index, error, now, amounts)

        # 8. 成功
        return await self._commit_success(session, order.id, order.credential_id, settled, now)

    def _amounts(self, order: RecurringOrder) -> CycleAmounts:
        return cycle_amounts(
            total_amount=order.total_amount,
            total_cycles=order.total_cycles,
            cycles_completed=order.cycles_completed,
            remaining_amount=order.remaining_amount,
            fee_basis_points=order.fee_basis_points,
        )

    async def _load_credential(self, session: AsyncSession, order: RecurringOrder) -> DelegatedCredential | None:
        if not order.credential_id:
            return None
        return await CredentialRepository(session).get(order.credential_id)

    async def _plan(self, order: RecurringOrder, amounts: CycleAmounts) -> CyclePlan:
        quote = await self._quote_client.get_quote(
            sell_asset=order.sell_asset,
            buy_asset=order.buy_asset,
            amount=amounts.net_amount,
            taker=order.execution_identity,
        )
        self._ensure_trusted(quote)

        allowance = await self._settlement_client.get_allowance(
            order.execution_identity, order.sell_asset, quote.target
        )

        approve = None
        if allowance < amounts.net_amount:
            approve = PlannedAction(
                target=order.sell_asset,
                operation=OPERATION_APPROVE,
                value=amounts.net_amount,
                asset=order.sell_asset,
                counterparty=quote.target,
            )

        fee = None
        if amounts.fee > 0 and self._settings.fee_recipient:
            fee = PlannedAction(
                target=order.sell_asset,
                operation=OPERATION_TRANSFER,
                value=amounts.fee,
                asset=order.sell_asset,
                counterparty=self._settings.fee_recipient,
                purpose="平台手续费",
            )

        swap = PlannedAction(
            target=quote.target,
            operation=quote.operation,
            value=amounts.net_amount,
            asset=order.sell_asset,
            counterparty=quote.target,
            calldata=quote.calldata,
            extra={"buy_asset": order.buy_asset, "min_amount_out": str(quote.amount_out)},
        )
        return CyclePlan(
            cycle_index=order.cycles_completed,
            amounts=amounts,
            swap=swap,
            provider=quote.provider,
            expected_amount_out=quote.amount_out,
            price_impact=quote.price_impact,
            approve=approve,
            fee=fee,
        )

    def _ensure_trusted(self, quote: Quote) -> None:
        trusted = {target.lower() for target in self._settings.trusted_targets}
        if quote.target.lower() not in trusted:
            raise UntrustedTargetError(f"报价方 {quote.provider} 返回了不在可信列表中的目标: {quote.target}")

    async def _settle(
        self,
        session: AsyncSession,
        order: RecurringOrder,
        credential: DelegatedCredential,
        issuer: CredentialIssuer,
        plan: CyclePlan,
        approval_reference: str | None,
    ) -> SettledCycle:
        sagas = SagaRepository(session)
        signer = await issuer.load_signer(credential)
        charged = []

        # 第一阶段：授权
        if plan.approve is not None and approval_reference is None:
            approval_reference = await self._settlement_client.submit(
                account=order.execution_identity,
                action=plan.approve,
                signer=signer,
                credential_token=credential.token,
            )
            await self._settlement_client.wait_for_receipt(
                approval_reference, self._settings.settlement_approval_timeout_seconds
            )
        if plan.approve is not None:
            charged.append(plan.approve)

        # 兑换提交前先落库意图，进程重启后可以从这里继续
        idempotency_key = f"{order.id}:{plan.cycle_index}"
        intent = plan.to_intent(idempotency_key)
        await sagas.save(
            order_id=order.id,
            cycle_index=plan.cycle_index,
            phase=SagaPhase.PENDING_SWAP,
            swap_intent=intent,
            approval_reference=approval_reference,
        )

        # 第二阶段：兑换
        reference = await self._settlement_client.submit(
            account=order.execution_identity,
            action=plan.swap,
            signer=signer,
            credential_token=credential.token,
            idempotency_key=idempotency_key,
        )
        await sagas.save(
            order_id=order.id,
            cycle_index=plan.cycle_index,
            phase=SagaPhase.AWAITING_SETTLEMENT,
            swap_intent=intent,
            approval_reference=approval_reference,
            settlement_reference=reference,
        )
        receipt = await self._settlement_client.wait_for_receipt(
            reference, self._settings.settlement_swap_timeout_seconds
        )
        charged.append(plan.swap)

        fee_reference = await self._collect_fee(order, credential, signer, plan)
        if fee_reference is not None:
            charged.append(plan.fee)

        return SettledCycle(
            plan=plan,
            receipt=receipt,
            approval_reference=approval_reference,
            fee_reference=fee_reference,
            charged=charged,
        )

    async def _collect_fee(
        self,
        order: RecurringOrder,
        credential: DelegatedCredential,
        signer: AutomationSigner,
        plan: CyclePlan,
    ) -> str | None:
        """兑换完成后把手续费转给平台；失败时本期仍然计为成功，手续费留在执行账户"""
        if plan.fee is None:
            return None
        try:
            reference = await self._settlement_client.submit(
                account=order.execution_identity,
                action=plan.fee,
                signer=signer,
                credential_token=credential.token,
                idempotency_key=f"{order.id}:{plan.cycle_index}:fee",
            )
            await self._settlement_client.wait_for_receipt(
                reference, self._settings.settlement_transfer_timeout_seconds
            )
        except DcaError as e:
            logger.warning(f"订单 {order.id} 第 {plan.cycle_index} 期手续费转账失败，兑换已完成: {e}")
            return None
        return reference

    # ------------------------------------------------------------------
    # 对账
    # ------------------------------------------------------------------

    async def _reconcile(
        self,
        session: AsyncSession,
        order: RecurringOrder,
        marker: SagaMarker,
        now,
    ) -> ExecutionRecord | None:
        """
        处理上次超时的兑换

        已确认：按该期成功记账并返回记录；已失败：清除标记，返回 None 继续本期；
        仍未确定：写入失败记录并顺延，不执行新的周期。
        """
        sagas = SagaRepository(session)
        plan = CyclePlan.from_intent(json.loads(marker.swap_intent))

        if marker.cycle_index != order.cycles_completed:
            logger.warning(
                f"订单 {order.id} 的执行标记属于第 {marker.cycle_index} 期，当前为第 {order.cycles_completed} 期，丢弃"
            )
            await sagas.delete(order.id)
            return None

        try:
            receipt = await self._settlement_client.get_receipt(marker.settlement_reference)
        except ProviderError as e:
            error = SettlementUnresolvedError(f"无法查询上期兑换 {marker.settlement_reference} 的结果: {e}")
            return await self._record_failure(session, order.id, marker.cycle_index, error, now, plan.amounts)

        if receipt.is_pending:
            error = SettlementUnresolvedError(f"上期兑换 {marker.settlement_reference} 仍未确认")
            logger.info(f"订单 {order.id} {error}")
            return await self._record_failure(session, order.id, marker.cycle_index, error, now, plan.amounts)

        if not receipt.is_confirmed:
            logger.info(f"订单 {order.id} 上期兑换 {marker.settlement_reference} 已失败，清除执行标记")
            await sagas.delete(order.id)
            return None

        logger.info(f"订单 {order.id} 上期兑换 {marker.settlement_reference} 对账确认成功")
        credential = await self._load_credential(session, order)
        issuer = CredentialIssuer(session, self._settings)
        charged = [a for a in (plan.approve if marker.approval_reference else None, plan.swap) if a is not None]
        fee_reference = None
        if credential is not None and plan.fee is not None:
            try:
                signer = await issuer.load_signer(credential)
            except PermissionDeniedError as e:
                logger.warning(f"订单 {order.id} 无法加载自动化身份，跳过手续费转账: {e}")
            else:
                fee_reference = await self._collect_fee(order, credential, signer, plan)
            if fee_reference is not None:
                charged.append(plan.fee)

        settled = SettledCycle(
            plan=plan,
            receipt=receipt,
            approval_reference=marker.approval_reference,
            fee_reference=fee_reference,
            charged=charged,
        )
        return await self._commit_success(session, order.id, order.credential_id, settled, now)

    # ------------------------------------------------------------------
    # 写入结果
    # ------------------------------------------------------------------

    async def _commit_success(
        self,
        session: AsyncSession,
        order_id: str,
        credential_id: str | None,
        settled: SettledCycle,
        now,
    ) -> ExecutionRecord:
        """计数、时间、状态、凭证额度和执行记录在同一次条件更新中提交"""
        orders = OrderRepository(session)
        sagas = SagaRepository(session)
        credentials = CredentialRepository(session)
        issuer = CredentialIssuer(session, self._settings)
        amounts = settled.plan.amounts

        for attempt in range(1, self._settings.commit_conflict_retries + 1):
            order = await orders.get(order_id)
            credential = await credentials.get(credential_id) if credential_id else None
            if credential is not None:
                issuer.charge(credential, settled.charged)

            record = ExecutionRecord(
                cycle_index=settled.plan.cycle_index,
                executed_at=now,
                amount_in=amounts.cycle_amount,
                amount_out=settled.receipt.amount_out
                if settled.receipt.amount_out is not None
                else settled.plan.expected_amount_out,
                fee_amount=amounts.fee,
                settlement_reference=settled.receipt.reference,
                approval_reference=settled.approval_reference,
                fee_reference=settled.fee_reference,
                status=ExecutionStatus.SUCCESS.value,
                provider_used=settled.plan.provider,
                price_impact=settled.plan.price_impact,
            )

            def mutate(o: RecurringOrder) -> None:
                o.cycles_completed += 1
                o.executed_amount += amounts.cycle_amount
                o.remaining_amount -= amounts.cycle_amount
                o.total_fees += amounts.fee
                o.last_executed_at = now
                o.next_execution_at = now + period(o.frequency)
                # 执行过程中被取消的订单保持取消；被暂停的订单只在最后一期完成时进入完成状态
                if o.cycles_completed >= o.total_cycles and o.status != OrderStatus.CANCELLED.value:
                    transition(o, OrderStatus.COMPLETED)
                    if credential is not None:
                        issuer.void(credential, now)
                elif o.status == OrderStatus.INSUFFICIENT_FUNDS.value:
                    transition(o, OrderStatus.ACTIVE)

            await sagas.delete(order_id, commit=False)
            try:
                order = await orders.compare_and_update(order_id, order.version, mutate, execution=record)
            except ConflictError as e:
                logger.warning(f"订单 {order_id} 写入成功结果时发生冲突（第 {attempt} 次）: {e}")
                continue

            logger.info(
                f"订单 {order_id} 第 {record.cycle_index + 1}/{order.total_cycles} 期执行成功: "
                f"卖出 {record.amount_in}，获得 {record.amount_out}，结算 {record.settlement_reference}"
            )
            return record

        # 兑换已完成但记账失败，执行标记仍在，下次执行时对账补记
        raise ConflictError(f"订单 {order_id} 多次冲突，成功结果未能写入")

    async def _record_failure(
        self,
        session: AsyncSession,
        order_id: str,
        cycle_index: int,
        error: DcaError,
        now,
        amounts: CycleAmounts | None,
        *,
        target_status: OrderStatus | None = None,
    ) -> ExecutionRecord:
        """写入失败记录，并把下次执行时间顺延一个周期"""
        orders = OrderRepository(session)
        credentials = CredentialRepository(session)
        issuer = CredentialIssuer(session, self._settings)

        for attempt in range(1, self._settings.commit_conflict_retries + 1):
            order = await orders.get(order_id)
            credential = None
            if error.permanent and order.credential_id:
                credential = await credentials.get(order.credential_id)

            record = ExecutionRecord(
                cycle_index=cycle_index,
                executed_at=now,
                amount_in=amounts.cycle_amount if amounts else 0,
                amount_out=0,
                fee_amount=0,
                status=ExecutionStatus.FAILED.value,
                error_code=error.code,
                error_message=str(error),
                settlement_reference=getattr(error, "reference", None),
            )

            def mutate(o: RecurringOrder) -> None:
                o.next_execution_at = now + period(o.frequency)
                if o.is_terminal:
                    return
                if error.permanent:
                    transition(o, OrderStatus.CANCELLED)
                    if credential is not None:
                        issuer.void(credential, now)
                elif target_status is not None and o.status in EXECUTABLE_STATUSES:
                    transition(o, target_status)

            try:
                order = await orders.compare_and_update(order_id, order.version, mutate, execution=record)
            except ConflictError as e:
                logger.warning(f"订单 {order_id} 写入失败记录时发生冲突（第 {attempt} 次）: {e}")
                continue

            if error.permanent:
                logger.warning(f"订单 {order_id} 遇到不可恢复的错误，已终止: {error}")
                await self.sweep_funds(order)
            return record

        raise ConflictError(f"订单 {order_id} 多次冲突，失败记录未能写入")

    async def _complete_exhausted(self, session: AsyncSession, order: RecurringOrder) -> None:
        """执行次数已满但状态仍可执行的订单直接完成"""
        credential = await self._load_credential(session, order)
        issuer = CredentialIssuer(session, self._settings)

        def mutate(o: RecurringOrder) -> None:
            if o.status in EXECUTABLE_STATUSES:
                transition(o, OrderStatus.COMPLETED)
                if credential is not None:
                    issuer.void(credential)

        await OrderRepository(session).compare_and_update(order.id, order.version, mutate)


execution_pipeline = ExecutionPipeline()
