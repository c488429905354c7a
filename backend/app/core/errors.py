"""订单自动执行的错误分类

每个异常带有机器可读的 ``code``（写入执行记录的 error_code），
``permanent`` 表示该错误会让订单进入终态，而不是等待下一个周期。
"""


class DcaError(Exception):
    """所有领域错误的基类"""

    code = "error"
    permanent = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(DcaError):
    """输入参数不合法"""

    code = "validation_error"


class InvalidCapabilityError(ValidationError):
    """授权范围定义不合法"""

    code = "invalid_capability"


class InvalidTransitionError(ValidationError):
    """订单状态不允许此操作"""

    code = "invalid_transition"


class OwnershipError(DcaError):
    """调用方不是订单所有者"""

    code = "not_owner"


class OrderNotFoundError(DcaError):
    """订单不存在"""

    code = "order_not_found"


class ConflictError(DcaError):
    """订单已被并发修改，需要基于最新状态重试"""

    code = "conflict"


class InsufficientBalanceError(DcaError):
    """执行账户余额不足"""

    code = "insufficient_balance"

    def __init__(self, required: int, available: int, asset: str) -> None:
        self.required = required
        self.available = available
        self.asset = asset
        super().__init__(f"余额不足: 需要 {required}，可用 {available}（资产 {asset}）")


class UntrustedTargetError(DcaError):
    """报价返回的结算目标不在可信列表中"""

    code = "untrusted_target"


class PermissionDeniedError(DcaError):
    """计划执行的操作未被委托凭证覆盖"""

    code = "permission_denied"


class ProviderError(DcaError):
    """报价或结算服务不可用"""

    code = "provider_error"


class SettlementRejectedError(DcaError):
    """结算网络拒绝或回滚了交易"""

    code = "settlement_rejected"


class SettlementTimeoutError(DcaError):
    """等待结算确认超时，结果未知，需要对账"""

    code = "settlement_timeout"

    def __init__(self, reference: str | None, timeout: float) -> None:
        self.reference = reference
        self.timeout = timeout
        super().__init__(f"等待结算确认超时（{timeout} 秒）: {reference}")


class SettlementUnresolvedError(DcaError):
    """上一周期的结算结果仍未确定"""

    code = "settlement_unresolved"


class OrderExpiredError(DcaError):
    """订单已过期"""

    code = "order_expired"
    permanent = True


class UnexpectedExecutionError(DcaError):
    """执行过程中出现未分类的异常"""

    code = "internal_error"
