"""自动化身份计划执行的链上操作，以及给用户看的明文描述"""

from dataclasses import asdict, dataclass, field
from typing import Any

OPERATION_APPROVE = "approve"
OPERATION_SWAP = "swap"
OPERATION_TRANSFER = "transfer"

KNOWN_OPERATIONS = frozenset({OPERATION_APPROVE, OPERATION_SWAP, OPERATION_TRANSFER})

PURPOSES = {
    OPERATION_APPROVE: "授权兑换路由使用卖出资产",
    OPERATION_SWAP: "执行本期定投兑换",
    OPERATION_TRANSFER: "转账",
}


@dataclass(frozen=True)
class PlannedAction:
    """
    一次链上操作

    target: 被调用的合约 / 对手方（approve 和 transfer 为资产合约，swap 为路由合约）
    operation: approve, swap, transfer
    value: 本次操作动用的卖出资产数量（最小单位）
    counterparty: 资金流向的一方（授权的 spender、转账的收款方）
    """

    target: str
    operation: str
    value: int
    asset: str
    counterparty: str | None = None
    purpose: str | None = None
    calldata: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        purpose = self.purpose or PURPOSES.get(self.operation, self.operation)
        if self.operation == OPERATION_APPROVE:
            return f"授权 {short_identity(self.counterparty)} 使用 {self.value} 个最小单位的 {short_identity(self.asset)}（{purpose}）"
        if self.operation == OPERATION_SWAP:
            return f"通过 {short_identity(self.target)} 卖出 {self.value} 个最小单位的 {short_identity(self.asset)}（{purpose}）"
        if self.operation == OPERATION_TRANSFER:
            return f"向 {short_identity(self.counterparty)} 转账 {self.value} 个最小单位的 {short_identity(self.asset)}（{purpose}）"
        return f"{self.operation} {self.value} @ {short_identity(self.target)}"

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["value"] = str(self.value)
        return payload

    def to_authorization(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "operation": self.operation,
            "asset": self.asset,
            "amount": str(self.value),
            "counterparty": self.counterparty,
            "purpose": self.purpose or PURPOSES.get(self.operation, self.operation),
            "description": self.describe(),
        }


def short_identity(value: str | None) -> str:
    if not value:
        return "未知"
    if len(value) <= 12:
        return value
    return f"{value[:6]}...{value[-4:]}"
