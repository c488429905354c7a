"""订单状态机"""

import logging

from app.core.errors import InvalidTransitionError
from app.models.recurring_order import OrderStatus, RecurringOrder

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderStatus.ACTIVE.value: frozenset(
        {
            OrderStatus.PAUSED.value,
            OrderStatus.INSUFFICIENT_FUNDS.value,
            OrderStatus.COMPLETED.value,
            OrderStatus.CANCELLED.value,
        }
    ),
    # 暂停期间结算完成的最后一期会让订单直接完成
    OrderStatus.PAUSED.value: frozenset(
        {OrderStatus.ACTIVE.value, OrderStatus.CANCELLED.value, OrderStatus.COMPLETED.value}
    ),
    # 对账确认了最后一期的结算时，余额不足状态可以直接完成
    OrderStatus.INSUFFICIENT_FUNDS.value: frozenset(
        {
            OrderStatus.ACTIVE.value,
            OrderStatus.PAUSED.value,
            OrderStatus.CANCELLED.value,
            OrderStatus.COMPLETED.value,
        }
    ),
    OrderStatus.COMPLETED.value: frozenset(),
    OrderStatus.CANCELLED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(order: RecurringOrder, target: OrderStatus | str) -> None:
    """修改订单状态，非法的状态变化抛出 InvalidTransitionError；相同状态不做处理"""
    target_value = OrderStatus(target).value
    if order.status == target_value:
        return
    if not can_transition(order.status, target_value):
        raise InvalidTransitionError(f"订单 {order.id} 不能从 {order.status} 变为 {target_value}")
    logger.info(f"订单 {order.id} 状态变化: {order.status} -> {target_value}")
    order.status = target_value
