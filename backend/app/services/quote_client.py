"""兑换报价 API 客户端"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    """报价结果：需要提交的交易以及预期产出"""

    provider: str
    target: str
    operation: str
    calldata: str
    amount_in: int
    amount_out: int
    price_impact: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


class QuoteClient:
    """兑换报价客户端，按配置顺序依次尝试各个报价方"""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.quote_api_base_url.rstrip("/")
        self._timeout = self._settings.http_timeout_seconds
        self._transport = transport

    async def get_quote(
        self,
        *,
        sell_asset: str,
        buy_asset: str,
        amount: int,
        taker: str,
    ) -> Quote:
        """
        获取兑换报价

        依次尝试 settings.quote_providers 中的报价方，返回第一个有效报价；
        全部失败时抛出 ProviderError。
        """
        errors = []
        for provider in self._settings.quote_providers:
            try:
                quote = await self._fetch_quote(
                    provider=provider,
                    sell_asset=sell_asset,
                    buy_asset=buy_asset,
                    amount=amount,
                    taker=taker,
                )
                logger.info(f"报价成功: {provider}，卖出 {amount}，预计获得 {quote.amount_out}")
                return quote
            except ProviderError as e:
                logger.warning(f"报价方 {provider} 不可用: {e}")
                errors.append(f"{provider}: {e}")

        raise ProviderError(f"所有报价方均不可用: {'; '.join(errors) or '未配置报价方'}")

    async def _fetch_quote(
        self,
        *,
        provider: str,
        sell_asset: str,
        buy_asset: str,
        amount: int,
        taker: str,
    ) -> Quote:
        params = {
            "provider": provider,
            "sellAsset": sell_asset,
            "buyAsset": buy_asset,
            "amount": str(amount),
            "taker": taker,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get("/quote", params=params)
        except httpx.TimeoutException:
            raise ProviderError(f"请求超时（超过 {self._timeout} 秒）") from None
        except httpx.RequestError as e:
            raise ProviderError(f"请求出错: {e}") from None

        if response.status_code != 200:
            raise ProviderError(f"状态码 {response.status_code}，响应: {response.text[:200]}")

        try:
            data = response.json()
            return Quote(
                provider=data.get("provider") or provider,
                target=data["target"],
                operation=data.get("operation") or "swap",
                calldata=data.get("calldata") or "",
                amount_in=int(data.get("amountIn") or amount),
                amount_out=int(data["amountOut"]),
                price_impact=float(data["priceImpact"]) if data.get("priceImpact") is not None else None,
                raw=data,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"报价响应格式不正确: {e}") from None
