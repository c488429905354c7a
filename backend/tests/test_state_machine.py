from types import SimpleNamespace

import pytest

from app.core.errors import InvalidTransitionError, ValidationError
from app.models.recurring_order import OrderStatus
from app.services.state_machine import can_transition, transition


def _order(status: OrderStatus):
    return SimpleNamespace(id="order-1", status=status.value)


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (OrderStatus.ACTIVE, OrderStatus.PAUSED),
            (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_FUNDS),
            (OrderStatus.ACTIVE, OrderStatus.COMPLETED),
            (OrderStatus.ACTIVE, OrderStatus.CANCELLED),
            (OrderStatus.PAUSED, OrderStatus.ACTIVE),
            (OrderStatus.PAUSED, OrderStatus.CANCELLED),
            (OrderStatus.PAUSED, OrderStatus.COMPLETED),
            (OrderStatus.INSUFFICIENT_FUNDS, OrderStatus.ACTIVE),
            (OrderStatus.INSUFFICIENT_FUNDS, OrderStatus.PAUSED),
            (OrderStatus.INSUFFICIENT_FUNDS, OrderStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current, target):
        order = _order(current)
        transition(order, target)
        assert order.status == target.value

    @pytest.mark.parametrize(
        "current, target",
        [
            (OrderStatus.COMPLETED, OrderStatus.ACTIVE),
            (OrderStatus.CANCELLED, OrderStatus.ACTIVE),
            (OrderStatus.CANCELLED, OrderStatus.PAUSED),
            (OrderStatus.PAUSED, OrderStatus.INSUFFICIENT_FUNDS),
        ],
    )
    def test_rejected(self, current, target):
        order = _order(current)
        with pytest.raises(InvalidTransitionError):
            transition(order, target)
        assert order.status == current.value

    def test_same_status_is_noop(self):
        order = _order(OrderStatus.PAUSED)
        transition(order, OrderStatus.PAUSED)
        assert order.status == OrderStatus.PAUSED.value

    def test_invalid_transition_is_validation_error(self):
        assert issubclass(InvalidTransitionError, ValidationError)

    def test_terminal_states_have_no_exits(self):
        for terminal in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            assert not any(can_transition(terminal.value, target.value) for target in OrderStatus)
