"""结算网络 API 客户端"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import ProviderError, SettlementRejectedError, SettlementTimeoutError
from app.services.actions import PlannedAction
from app.services.credential_issuer import AutomationSigner

logger = logging.getLogger(__name__)

RECEIPT_PENDING = "pending"
RECEIPT_CONFIRMED = "confirmed"
RECEIPT_FAILED = "failed"


@dataclass(frozen=True)
class Receipt:
    reference: str
    status: str
    amount_out: int | None = None
    error: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == RECEIPT_PENDING

    @property
    def is_confirmed(self) -> bool:
        return self.status == RECEIPT_CONFIRMED


@dataclass(frozen=True)
class SweepResult:
    reference: str | None
    swept: dict[str, int] = field(default_factory=dict)


class SettlementClient:
    """
    结算网络客户端

    提交由自动化身份签名的操作，查询回执、余额和授权额度。
    网络错误和 5xx 视为 ProviderError（下个周期再试），
    4xx 视为结算网络拒绝（SettlementRejectedError）。
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.settlement_api_base_url.rstrip("/")
        self._timeout = self._settings.http_timeout_seconds
        self._poll_interval = self._settings.settlement_poll_interval_seconds
        self._transport = transport

    async def get_balance(self, identity: str, asset: str) -> int:
        data = await self._request("GET", f"/accounts/{identity}/balances/{asset}")
        return _parse_amount(data, "balance")

    async def get_allowance(self, identity: str, asset: str, spender: str) -> int:
        data = await self._request("GET", f"/accounts/{identity}/allowances/{asset}/{spender}")
        return _parse_amount(data, "allowance")

    async def submit(
        self,
        *,
        account: str,
        action: PlannedAction,
        signer: AutomationSigner,
        credential_token: str,
        idempotency_key: str | None = None,
    ) -> str:
        """提交操作，返回结算引用（交易哈希等）"""
        payload = {"account": account, "action": action.to_payload()}
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        body = {
            **payload,
            "signer": signer.automation_identity,
            "signature": signer.sign(payload),
            "credential": credential_token,
        }
        data = await self._request("POST", "/transactions", json=body)
        reference = data.get("reference") if isinstance(data, dict) else None
        if not reference:
            raise ProviderError("结算网络未返回交易引用")
        logger.info(f"已提交 {action.operation} 操作: {reference}")
        return reference

    async def get_receipt(self, reference: str) -> Receipt:
        data = await self._request("GET", f"/transactions/{reference}")
        try:
            amount_out = data.get("amountOut")
            return Receipt(
                reference=reference,
                status=data.get("status") or RECEIPT_PENDING,
                amount_out=int(amount_out) if amount_out is not None else None,
                error=data.get("error"),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise ProviderError(f"交易 {reference} 回执格式不正确: {e}") from None

    async def wait_for_receipt(self, reference: str, timeout: float) -> Receipt:
        """
        轮询直到交易确认或失败

        超时抛出 SettlementTimeoutError（结果未知，不能视为成功）；
        交易失败抛出 SettlementRejectedError。
        """

        async def _poll() -> Receipt:
            while True:
                receipt = await self.get_receipt(reference)
                if not receipt.is_pending:
                    return receipt
                await asyncio.sleep(self._poll_interval)

        try:
            receipt = await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            raise SettlementTimeoutError(reference, timeout) from None

        if not receipt.is_confirmed:
            raise SettlementRejectedError(f"交易 {reference} 执行失败: {receipt.error or receipt.status}")
        return receipt

    async def sweep_to_owner(self, *, account: str, owner: str, assets: list[str]) -> SweepResult:
        """把执行账户中的资产全部转回所有者（收款方只能是账户所有者）"""
        data = await self._request(
            "POST",
            f"/accounts/{account}/sweep",
            json={"recipient": owner, "assets": assets},
        )
        try:
            swept = {asset: int(amount) for asset, amount in (data.get("swept") or {}).items()}
        except (ValueError, TypeError, AttributeError) as e:
            raise ProviderError(f"归集响应格式不正确: {e}") from None
        return SweepResult(reference=data.get("reference"), swept=swept)

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self._settings.settlement_api_key:
            headers["Authorization"] = f"Bearer {self._settings.settlement_api_key}"

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException:
            raise ProviderError(f"请求超时（超过 {self._timeout} 秒）: {method} {path}") from None
        except httpx.RequestError as e:
            raise ProviderError(f"请求出错: {method} {path}: {e}") from None

        if 400 <= response.status_code < 500:
            raise SettlementRejectedError(
                f"结算网络拒绝请求 {method} {path}，状态码 {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 500:
            raise ProviderError(f"结算网络不可用，状态码 {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"JSON 解析失败: {e}, 原始响应: {response.text[:200]}") from None


def _parse_amount(data: dict[str, Any], key: str) -> int:
    try:
        return int(data[key])
    except (ValueError, KeyError, TypeError) as e:
        raise ProviderError(f"结算网络响应格式不正确，缺少或无法解析 {key}: {e}") from None
