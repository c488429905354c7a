"""定投周期与手续费计算"""

import math
from dataclasses import dataclass
from datetime import timedelta

from app.core.errors import ValidationError
from app.models.recurring_order import Frequency

BASIS_POINTS_DENOMINATOR = 10_000

# 每个周期的时间间隔（月按 30 天计算）
FREQUENCY_PERIODS = {
    Frequency.HOURLY.value: timedelta(hours=1),
    Frequency.DAILY.value: timedelta(days=1),
    Frequency.WEEKLY.value: timedelta(days=7),
    Frequency.MONTHLY.value: timedelta(days=30),
}


@dataclass(frozen=True)
class CycleAmounts:
    cycle_amount: int
    fee: int
    net_amount: int


def period(frequency: str) -> timedelta:
    try:
        return FREQUENCY_PERIODS[frequency]
    except KeyError:
        raise ValidationError(f"不支持的执行频率: {frequency}") from None


def total_cycles(frequency: str, duration_days: int) -> int:
    """
    根据频率和持续天数计算总执行次数

    hourly: 天数 * 24；daily: 天数；weekly: ceil(天数 / 7)；monthly: ceil(天数 / 30)
    """
    if duration_days <= 0:
        raise ValidationError(f"持续天数必须大于 0: {duration_days}")

    if frequency == Frequency.HOURLY.value:
        return duration_days * 24
    if frequency == Frequency.DAILY.value:
        return duration_days
    if frequency == Frequency.WEEKLY.value:
        return math.ceil(duration_days / 7)
    if frequency == Frequency.MONTHLY.value:
        return math.ceil(duration_days / 30)
    raise ValidationError(f"不支持的执行频率: {frequency}")


def fee_for(amount: int, fee_basis_points: int) -> int:
    """手续费向下取整，例如 500 * 10 / 10000 = 0.5 -> 0"""
    return amount * fee_basis_points // BASIS_POINTS_DENOMINATOR


def cycle_amounts(
    total_amount: int,
    total_cycles: int,
    cycles_completed: int,
    remaining_amount: int,
    fee_basis_points: int,
) -> CycleAmounts:
    """
    计算当前周期的金额

    每期金额为 total_amount // total_cycles，整除余数计入最后一期，
    因此最后一期直接使用剩余金额。
    """
    if total_cycles <= 0:
        raise ValidationError("总执行次数必须大于 0")

    if cycles_completed >= total_cycles - 1:
        amount = remaining_amount
    else:
        amount = min(total_amount // total_cycles, remaining_amount)

    fee = fee_for(amount, fee_basis_points)
    return CycleAmounts(cycle_amount=amount, fee=fee, net_amount=amount - fee)
