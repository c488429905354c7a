"""委托凭证 Schema"""

from datetime import datetime

from pydantic import BaseModel, Field


class CapabilityResponse(BaseModel):
    """一条授权范围"""

    target: str = Field(..., description="允许调用的目标（合约 / 资产）")
    allowed_operations: list[str] = Field(..., description="允许的操作：approve, swap, transfer")
    value_limit: str = Field(..., description="额度上限（最小单位）")
    spent: str = Field("0", description="已使用额度（最小单位）")
    valid_from: datetime
    valid_until: datetime


class CredentialResponse(BaseModel):
    """委托凭证摘要（不包含私钥）"""

    credential_id: str
    owner_identity: str
    automation_identity: str = Field(..., description="自动化身份公钥（hex）")
    order_id: str | None = None
    status: str = Field(..., description="active, voided, revoked")
    capabilities: list[CapabilityResponse] = Field(default_factory=list)
    created_at: datetime
    voided_at: datetime | None = None

    class Config:
        from_attributes = True


class AuthorizationAction(BaseModel):
    """需要所有者确认的单个操作（明文描述）"""

    target: str
    operation: str
    asset: str
    amount: str
    counterparty: str | None = None
    purpose: str
    description: str


class AuthorizationRequest(BaseModel):
    """展示给所有者签名前的授权说明"""

    summary: str
    actions: list[AuthorizationAction] = Field(default_factory=list)
