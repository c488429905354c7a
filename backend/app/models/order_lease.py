"""订单执行租约模型"""

from sqlalchemy import Column, DateTime, String

from app.core.db import Base


class OrderLease(Base):
    """同一订单同一时间只允许一个执行持有租约"""

    __tablename__ = "order_leases"

    order_id = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)
