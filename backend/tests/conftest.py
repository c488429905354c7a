"""
测试公共配置

每个测试使用独立的临时 SQLite 数据库；报价和结算服务用内存中的假实现代替，
假结算服务会模拟余额、授权额度和交易回执。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import Settings
from app.core.db import init_models
from app.core.errors import ProviderError, SettlementRejectedError, SettlementTimeoutError
from app.services.actions import OPERATION_APPROVE, OPERATION_SWAP, OPERATION_TRANSFER, PlannedAction
from app.services.execution_pipeline import ExecutionPipeline
from app.services.order_service import OrderService
from app.services.quote_client import Quote
from app.services.repositories.order_repository import OrderRepository
from app.services.settlement_client import (
    RECEIPT_CONFIRMED,
    RECEIPT_FAILED,
    RECEIPT_PENDING,
    Receipt,
    SweepResult,
)

OWNER = "0xOwner000000000000000000000000000000000001"
ACCOUNT = "0xSmartWallet0000000000000000000000000000a1"
SELL_ASSET = "0xUSDC00000000000000000000000000000000000c1"
BUY_ASSET = "0xWETH00000000000000000000000000000000000e1"
ROUTER = "0xRouter0000000000000000000000000000000000r1"
FEE_RECIPIENT = "0xFeeRecipient00000000000000000000000000f1"

T0 = datetime(2026, 1, 1, 0, 0, 0)


def make_settings(**overrides) -> Settings:
    values = dict(
        trusted_targets=[ROUTER],
        fee_recipient=FEE_RECIPIENT,
        default_fee_basis_points=10,
        first_execution_delay_seconds=60,
        settlement_poll_interval_seconds=0.01,
        credential_kdf_iterations=1000,
        credential_signing_secret="test-signing-secret",
        credential_encryption_secret="test-encryption-secret",
        cron_secret="test-cron-secret",
        scheduler_enabled=False,
        sweep_max_concurrency=4,
    )
    values.update(overrides)
    return Settings(**values)


@dataclass
class Submission:
    account: str
    action: PlannedAction
    reference: str
    signer: str
    signature: str
    credential_token: str
    idempotency_key: str | None


class FakeQuoteClient:
    def __init__(self, target: str = ROUTER, rate: int = 2) -> None:
        self.target = target
        self.rate = rate
        self.error: Exception | None = None
        self.calls: list[dict] = []

    async def get_quote(self, *, sell_asset: str, buy_asset: str, amount: int, taker: str) -> Quote:
        self.calls.append({"sell_asset": sell_asset, "buy_asset": buy_asset, "amount": amount, "taker": taker})
        if self.error is not None:
            raise self.error
        return Quote(
            provider="fake",
            target=self.target,
            operation=OPERATION_SWAP,
            calldata="0xdeadbeef",
            amount_in=amount,
            amount_out=amount * self.rate,
            price_impact=0.1,
        )


class FakeSettlementClient:
    """内存中的结算网络：提交即出块，兑换按固定汇率成交"""

    def __init__(self, rate: int = 2) -> None:
        self.rate = rate
        self.balances: dict[tuple[str, str], int] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}
        self.receipts: dict[str, Receipt] = {}
        self.submissions: list[Submission] = []
        self.sweeps: list[dict] = []
        self.swap_status = RECEIPT_CONFIRMED
        self.fail_transfer = False
        self.fail_sweep = False
        self.on_swap = None
        self._counter = 0

    def fund(self, identity: str, asset: str, amount: int) -> None:
        self.balances[(identity, asset)] = self.balances.get((identity, asset), 0) + amount

    def submitted(self, operation: str) -> list[Submission]:
        return [s for s in self.submissions if s.action.operation == operation]

    async def get_balance(self, identity: str, asset: str) -> int:
        return self.balances.get((identity, asset), 0)

    async def get_allowance(self, identity: str, asset: str, spender: str) -> int:
        return self.allowances.get((identity, asset, spender), 0)

    async def submit(self, *, account, action, signer, credential_token, idempotency_key=None) -> str:
        if action.operation == OPERATION_TRANSFER and self.fail_transfer:
            raise ProviderError("转账服务不可用")

        self._counter += 1
        reference = f"tx-{self._counter}"
        self.submissions.append(
            Submission(
                account=account,
                action=action,
                reference=reference,
                signer=signer.automation_identity,
                signature=signer.sign({"account": account, "action": action.to_payload()}),
                credential_token=credential_token,
                idempotency_key=idempotency_key,
            )
        )

        status = RECEIPT_CONFIRMED
        amount_out = None
        if action.operation == OPERATION_APPROVE:
            self.allowances[(account, action.asset, action.counterparty)] = action.value
        elif action.operation == OPERATION_SWAP:
            if self.on_swap is not None:
                await self.on_swap(action)
            status = self.swap_status
            if status == RECEIPT_CONFIRMED:
                self._settle_swap(account, action)
                amount_out = action.value * self.rate
        elif action.operation == OPERATION_TRANSFER:
            self.fund(account, action.asset, -action.value)
            self.fund(action.counterparty, action.asset, action.value)

        self.receipts[reference] = Receipt(reference=reference, status=status, amount_out=amount_out)
        return reference

    def confirm(self, reference: str, action: PlannedAction, account: str = ACCOUNT) -> None:
        """把挂起的兑换标记为已成交（模拟超时后链上最终确认）"""
        self._settle_swap(account, action)
        self.receipts[reference] = Receipt(reference, RECEIPT_CONFIRMED, action.value * self.rate)

    def revert(self, reference: str) -> None:
        self.receipts[reference] = Receipt(reference, RECEIPT_FAILED, error="reverted")

    def _settle_swap(self, account: str, action: PlannedAction) -> None:
        key = (account, action.asset, action.target)
        self.allowances[key] = self.allowances.get(key, 0) - action.value
        self.fund(account, action.asset, -action.value)
        self.fund(account, action.extra["buy_asset"], action.value * self.rate)

    async def get_receipt(self, reference: str) -> Receipt:
        return self.receipts[reference]

    async def wait_for_receipt(self, reference: str, timeout: float) -> Receipt:
        receipt = self.receipts[reference]
        if receipt.status == RECEIPT_PENDING:
            raise SettlementTimeoutError(reference, timeout)
        if not receipt.is_confirmed:
            raise SettlementRejectedError(f"交易 {reference} 执行失败")
        return receipt

    async def sweep_to_owner(self, *, account: str, owner: str, assets: list[str]) -> SweepResult:
        if self.fail_sweep:
            raise ProviderError("归集服务不可用")
        swept = {}
        for asset in assets:
            amount = self.balances.pop((account, asset), 0)
            if amount:
                self.fund(owner, asset, amount)
                swept[asset] = amount
        self.sweeps.append({"account": account, "owner": owner, "assets": assets})
        return SweepResult(reference=f"sweep-{len(self.sweeps)}", swept=swept)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dca.db'}", poolclass=NullPool)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def quote_client() -> FakeQuoteClient:
    return FakeQuoteClient()


@pytest.fixture
def settlement() -> FakeSettlementClient:
    return FakeSettlementClient()


@pytest.fixture
def pipeline(session_maker, quote_client, settlement, settings) -> ExecutionPipeline:
    return ExecutionPipeline(session_maker, quote_client, settlement, settings)


@pytest.fixture
def make_order(session_maker, pipeline, settings):
    """创建订单，默认 5000 个单位、每日一期、持续 5 天、手续费 10 个基点"""

    async def _make(now: datetime = T0, **overrides):
        params = dict(
            owner_identity=OWNER,
            execution_identity=ACCOUNT,
            sell_asset=SELL_ASSET,
            buy_asset=BUY_ASSET,
            total_amount=5000,
            frequency="daily",
            duration_days=5,
            fee_basis_points=10,
        )
        params.update(overrides)
        async with session_maker() as session:
            order, _, _ = await OrderService(session, pipeline, settings).create_order(now=now, **params)
        return order

    return _make


@pytest.fixture
def load_order(session_maker):
    async def _load(order_id: str):
        async with session_maker() as session:
            return await OrderRepository(session).get(order_id)

    return _load


@pytest.fixture
def load_executions(session_maker):
    async def _load(order_id: str):
        async with session_maker() as session:
            records = await OrderRepository(session).list_executions(order_id)
        return sorted(records, key=lambda r: r.id)

    return _load


def cycle_time(order, index: int) -> datetime:
    """第 index 期（从 0 开始）的计划执行时间"""
    return order.next_execution_at + timedelta(days=index)
