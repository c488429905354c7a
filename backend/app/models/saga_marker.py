"""授权-兑换两阶段执行的持久化标记"""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from app.core.db import Base
from app.core.timeutils import utcnow


class SagaPhase(str, Enum):
    # 授权已确认（或无需授权），兑换意图已落库，兑换尚未确认提交
    PENDING_SWAP = "pending_swap"
    # 兑换已提交，等待结算确认
    AWAITING_SETTLEMENT = "awaiting_settlement"


class SagaMarker(Base):
    """每个订单最多一条，周期完成或失败后删除"""

    __tablename__ = "saga_markers"

    order_id = Column(String(64), primary_key=True)
    cycle_index = Column(Integer, nullable=False)
    phase = Column(String(32), nullable=False)

    # 兑换意图（JSON）：目标、操作、调用数据、金额、报价方、幂等键
    swap_intent = Column(Text, nullable=False)

    approval_reference = Column(String(255), nullable=True)
    settlement_reference = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
