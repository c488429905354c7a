"""委托凭证模型"""

import json
from enum import Enum

from sqlalchemy import Column, DateTime, String, Text

from app.core.db import Base
from app.core.timeutils import utcnow


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    VOIDED = "voided"  # 订单进入终态后作废
    REVOKED = "revoked"  # 所有者主动撤销


class DelegatedCredential(Base):
    """自动化身份的授权凭证表"""

    __tablename__ = "delegated_credentials"

    credential_id = Column(String(64), primary_key=True)
    owner_identity = Column(String(255), nullable=False, index=True)

    # 为本订单新生成的密钥对公钥（hex），所有者私钥从不进入系统
    automation_identity = Column(String(255), unique=True, nullable=False, index=True)
    order_id = Column(String(64), nullable=True, index=True)

    # 授权范围（JSON 列表），见 app.services.credential_issuer.Capability
    capabilities_json = Column(Text, nullable=False)

    # 签名的授权令牌（JWT）
    token = Column(Text, nullable=False)

    # Fernet 加密后的自动化私钥
    encrypted_private_key = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default=CredentialStatus.ACTIVE.value, index=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def capabilities(self) -> list[dict]:
        return json.loads(self.capabilities_json)

    @capabilities.setter
    def capabilities(self, value: list[dict]) -> None:
        self.capabilities_json = json.dumps(value, ensure_ascii=False)
