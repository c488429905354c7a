from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order_lease import OrderLease


class OrderLeaseRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(self, order_id: str, holder: str, now: datetime, ttl_seconds: int) -> bool:
        """获取订单租约；已被他人持有且未过期时返回 False"""
        expires_at = now + timedelta(seconds=ttl_seconds)

        result = await self._session.execute(
            update(OrderLease)
            .where(OrderLease.order_id == order_id)
            .where(or_(OrderLease.expires_at < now, OrderLease.holder == holder))
            .values(holder=holder, expires_at=expires_at)
        )
        if result.rowcount == 1:
            await self._session.commit()
            return True

        self._session.add(OrderLease(order_id=order_id, holder=holder, expires_at=expires_at))
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return False
        return True

    async def release(self, order_id: str, holder: str) -> None:
        await self._session.execute(
            delete(OrderLease)
            .where(OrderLease.order_id == order_id)
            .where(OrderLease.holder == holder)
        )
        await self._session.commit()
