"""执行记录模型"""

from enum import Enum

from sqlalchemy import Column, DateTime, Float, Integer, String, Text

from app.core.db import Base, BaseUnitAmount
from app.core.timeutils import utcnow


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionRecord(Base):
    """执行记录表，每次尝试执行一个周期追加一条（包括失败）"""

    __tablename__ = "execution_records"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), nullable=False, index=True)

    # 尝试执行时订单的 cycles_completed
    cycle_index = Column(Integer, nullable=False)

    executed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    amount_in = Column(BaseUnitAmount, nullable=False, default=0)
    amount_out = Column(BaseUnitAmount, nullable=False, default=0)
    fee_amount = Column(BaseUnitAmount, nullable=False, default=0)

    # 结算回执（交易哈希等）
    settlement_reference = Column(String(255), nullable=True)
    approval_reference = Column(String(255), nullable=True)
    fee_reference = Column(String(255), nullable=True)

    # 状态：success, failed
    status = Column(String(20), nullable=False, index=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    provider_used = Column(String(64), nullable=True)
    price_impact = Column(Float, nullable=True)
