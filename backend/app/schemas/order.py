"""定投订单 Schema"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field, field_validator

from app.models.recurring_order import Frequency
from app.schemas.credential import AuthorizationRequest, CredentialResponse


def _amount_to_str(value):
    # 金额可能超过 JSON 数字精度，统一以十进制字符串输出
    if isinstance(value, int):
        return str(value)
    return value


Amount = Annotated[str, BeforeValidator(_amount_to_str)]


class OrderCreateRequest(BaseModel):
    """创建订单请求"""

    owner_identity: str = Field(..., min_length=1, description="订单所有者身份")
    execution_identity: str = Field(..., min_length=1, description="资金账户（持有卖出资产）")
    sell_asset: str = Field(..., min_length=1, description="卖出资产")
    buy_asset: str = Field(..., min_length=1, description="买入资产")
    total_amount: Amount = Field(..., description="定投总额（最小单位，十进制字符串）")
    frequency: Frequency
    duration_days: int = Field(..., gt=0, description="持续天数")
    fee_basis_points: int | None = Field(None, ge=0, le=10000, description="手续费（基点），默认使用配置值")

    @field_validator("total_amount")
    @classmethod
    def _check_amount(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("total_amount 必须是非负整数")
        return value


class OwnerActionRequest(BaseModel):
    owner_identity: str = Field(..., min_length=1)


class ExecuteRequest(BaseModel):
    caller_identity: str = Field(..., min_length=1)


class OrderResponse(BaseModel):
    """订单响应模型"""

    id: str
    owner_identity: str
    execution_identity: str
    sell_asset: str
    buy_asset: str
    total_amount: Amount
    executed_amount: Amount
    remaining_amount: Amount
    total_fees: Amount
    frequency: str
    duration_days: int
    total_cycles: int
    cycles_completed: int
    fee_basis_points: int
    status: str
    credential_id: str | None = None
    next_execution_at: datetime
    last_executed_at: datetime | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        from_attributes = True


class ExecutionRecordResponse(BaseModel):
    """执行记录响应模型"""

    id: int
    order_id: str
    cycle_index: int
    executed_at: datetime
    amount_in: Amount
    amount_out: Amount
    fee_amount: Amount
    settlement_reference: str | None = None
    approval_reference: str | None = None
    fee_reference: str | None = None
    status: str
    error_code: str | None = None
    error_message: str | None = None
    provider_used: str | None = None
    price_impact: float | None = None

    class Config:
        from_attributes = True


class OrderStatsResponse(BaseModel):
    total_orders: int = 0
    active_orders: int = 0
    paused_orders: int = 0
    insufficient_funds_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    total_invested: Amount = "0"
    total_fees: Amount = "0"
    total_executions: int = 0


class OrderListResponse(BaseModel):
    orders: list[OrderResponse] = Field(default_factory=list)
    stats: OrderStatsResponse


class OrderCreateResponse(BaseModel):
    """创建订单响应：订单、委托凭证以及授权说明"""

    order: OrderResponse
    credential: CredentialResponse
    authorization: AuthorizationRequest


class SweepResponse(BaseModel):
    success: bool
    reference: str | None = None
    swept: dict[str, str] = Field(default_factory=dict)
    error: str | None = None


class CancelResponse(BaseModel):
    order: OrderResponse
    sweep: SweepResponse


class ExecuteResponse(BaseModel):
    """手动执行结果：executed / skipped / pending_authorization"""

    status: str
    execution: ExecutionRecordResponse | None = None
    authorization: AuthorizationRequest | None = None


class CronResult(BaseModel):
    order_id: str
    status: str = Field(..., description="success, failed, skipped, error")
    execution_id: int | None = None
    error: str | None = None


class CronExecuteResponse(BaseModel):
    checked_count: int
    executed_count: int
    failed_count: int
    skipped_count: int
    results: list[CronResult] = Field(default_factory=list)
