import json

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.saga_marker import SagaMarker, SagaPhase


class SagaRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, order_id: str) -> SagaMarker | None:
        result = await self._session.execute(
            select(SagaMarker)
            .where(SagaMarker.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        *,
        order_id: str,
        cycle_index: int,
        phase: SagaPhase,
        swap_intent: dict,
        approval_reference: str | None = None,
        settlement_reference: str | None = None,
    ) -> SagaMarker:
        """写入（或覆盖）订单的执行标记并立即提交"""
        marker = await self.get(order_id)
        if marker is None:
            marker = SagaMarker(order_id=order_id)
            self._session.add(marker)
        marker.cycle_index = cycle_index
        marker.phase = phase.value
        marker.swap_intent = json.dumps(swap_intent, ensure_ascii=False)
        marker.approval_reference = approval_reference
        marker.settlement_reference = settlement_reference
        await self._session.commit()
        return marker

    async def delete(self, order_id: str, *, commit: bool = True) -> None:
        await self._session.execute(delete(SagaMarker).where(SagaMarker.order_id == order_id))
        if commit:
            await self._session.commit()
