"""定投订单模型"""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String

from app.core.db import Base, BaseUnitAmount
from app.core.timeutils import utcnow


class OrderStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# 可以被执行流水线处理的状态
EXECUTABLE_STATUSES = (OrderStatus.ACTIVE.value, OrderStatus.INSUFFICIENT_FUNDS.value)
TERMINAL_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value)


class RecurringOrder(Base):
    """定投订单表"""

    __tablename__ = "recurring_orders"

    id = Column(String(64), primary_key=True)

    # 订单所有者的主身份（地址）
    owner_identity = Column(String(255), nullable=False, index=True)

    # 资金账户（自动化身份代为操作的账户，持有卖出资产）
    execution_identity = Column(String(255), nullable=False, index=True)

    # 卖出 / 买入资产
    sell_asset = Column(String(255), nullable=False)
    buy_asset = Column(String(255), nullable=False)

    # 金额（最小单位整数）
    total_amount = Column(BaseUnitAmount, nullable=False)
    executed_amount = Column(BaseUnitAmount, nullable=False, default=0)
    remaining_amount = Column(BaseUnitAmount, nullable=False)
    total_fees = Column(BaseUnitAmount, nullable=False, default=0)

    # 周期：hourly, daily, weekly, monthly
    frequency = Column(String(20), nullable=False)
    duration_days = Column(Integer, nullable=False)
    total_cycles = Column(Integer, nullable=False)
    cycles_completed = Column(Integer, nullable=False, default=0)

    # 手续费（基点，10 = 0.10%）
    fee_basis_points = Column(Integer, nullable=False, default=0)

    # 状态：active, paused, insufficient_funds, completed, cancelled
    status = Column(String(32), nullable=False, default=OrderStatus.ACTIVE.value, index=True)

    # 关联的委托凭证
    credential_id = Column(String(64), nullable=True, index=True)

    # 时间戳
    next_execution_at = Column(DateTime, nullable=False, index=True)
    last_executed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # 乐观锁版本号，每次更新自动加一
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
