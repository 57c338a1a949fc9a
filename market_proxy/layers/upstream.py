"""
Layer 5 – 上游层
发起网络调用（带超时），并把原始响应分类为：
  成功 / 限流 / 上游错误 / 非 JSON / 网络失败
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from market_proxy.errors import (
    ProxyError,
    UpstreamMalformed,
    UpstreamRejected,
    UpstreamThrottled,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from market_proxy.layers.validation import Operation, ProxyRequest

logger = logging.getLogger(__name__)

# 上游用这两个字段提示限流 / 配额耗尽
THROTTLE_MARKERS = ("Note", "Information")
ERROR_MARKER = "Error Message"


class UpstreamOutcome(str, Enum):
    SUCCESS = "success"
    THROTTLED = "throttled"
    UPSTREAM_ERROR = "upstream_error"
    MALFORMED = "malformed"
    TRANSPORT = "transport"


class UpstreamResult(BaseModel):
    """分类后的上游响应（带标签的联合体）"""

    outcome: UpstreamOutcome
    payload: Any = None
    message: str = ""
    status_code: Optional[int] = None
    retry_after: Optional[int] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is UpstreamOutcome.SUCCESS

    @property
    def warning(self) -> str:
        """降级响应中向调用方说明为何未使用上游数据"""
        if self.outcome is UpstreamOutcome.MALFORMED:
            return "Upstream returned non-JSON; served fallback data."
        if self.outcome is UpstreamOutcome.THROTTLED:
            return self.message
        if self.outcome is UpstreamOutcome.UPSTREAM_ERROR:
            if self.message:
                return f"Alpha Vantage error: {self.message}"
            return f"Upstream HTTP {self.status_code}"
        if self.outcome is UpstreamOutcome.TRANSPORT:
            return "Upstream timed out." if self.timed_out else "Upstream fetch failed."
        return ""

    def to_error(self) -> ProxyError:
        """无可用降级数据时对外抛出的错误"""
        if self.outcome is UpstreamOutcome.THROTTLED:
            return UpstreamThrottled(self.message, retry_after=self.retry_after or 1)
        if self.outcome is UpstreamOutcome.MALFORMED:
            return UpstreamMalformed("Upstream returned non-JSON response and no fallback is available.")
        if self.outcome is UpstreamOutcome.UPSTREAM_ERROR:
            return UpstreamRejected(self.warning)
        if self.timed_out:
            return UpstreamTimeout("Upstream request timed out.")
        return UpstreamUnavailable("Failed to fetch from Alpha Vantage and no fallback is available.")


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def classify_response(
    status_code: int,
    text: str,
    retry_after_header: Optional[str] = None,
    default_retry_after: int = 1,
) -> UpstreamResult:
    """
    按固定优先级分类上游响应：
      非 JSON → MALFORMED；限流标记 → THROTTLED；错误标记 → UPSTREAM_ERROR；
      HTTP 非 2xx → UPSTREAM_ERROR；其余 → SUCCESS
    """
    try:
        data = json.loads(text)
    except ValueError:
        return UpstreamResult(outcome=UpstreamOutcome.MALFORMED, status_code=status_code)

    if isinstance(data, dict):
        throttle = next((data[m] for m in THROTTLE_MARKERS if data.get(m)), None)
        if throttle:
            retry_after = _parse_retry_after(retry_after_header)
            return UpstreamResult(
                outcome=UpstreamOutcome.THROTTLED,
                message=str(throttle),
                status_code=status_code,
                retry_after=default_retry_after if retry_after is None else retry_after,
            )
        if data.get(ERROR_MARKER):
            return UpstreamResult(
                outcome=UpstreamOutcome.UPSTREAM_ERROR,
                message=str(data[ERROR_MARKER]),
                status_code=status_code,
            )

    if not 200 <= status_code < 300:
        return UpstreamResult(outcome=UpstreamOutcome.UPSTREAM_ERROR, status_code=status_code)

    return UpstreamResult(outcome=UpstreamOutcome.SUCCESS, payload=data, status_code=status_code)


class UpstreamClient:
    """上游行情 API 客户端，只负责调用与分类，不写缓存"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        daily_output_size: str = "compact",
        default_retry_after: int = 1,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._daily_output_size = daily_output_size
        self._default_retry_after = default_retry_after
        self._http = http_client
        self._owned = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owned:
            await self._http.aclose()
            self._http = None

    def build_params(self, request: ProxyRequest) -> Dict[str, str]:
        params = {
            "function": request.operation.value,
            "symbol": request.symbol,
            "apikey": self._api_key,
        }
        if request.operation is Operation.TIME_SERIES_DAILY:
            params["outputsize"] = self._daily_output_size
        return params

    async def fetch(self, request: ProxyRequest) -> UpstreamResult:
        """
        调用上游并分类结果

        超时只取消本次网络调用；asyncio.wait_for 在任何退出路径上都会释放计时器。
        """
        params = self.build_params(request)
        logger.debug(f"上游调用: {request.operation.value} {request.symbol}")
        try:
            response = await asyncio.wait_for(
                self._client().get(self._base_url, params=params),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"上游调用超时（{self._timeout}s）: {request.operation.value} {request.symbol}")
            return UpstreamResult(outcome=UpstreamOutcome.TRANSPORT, timed_out=True)
        except httpx.HTTPError as exc:
            logger.warning(f"上游调用失败: {request.operation.value} {request.symbol}: {exc!r}")
            return UpstreamResult(outcome=UpstreamOutcome.TRANSPORT, message=str(exc))

        result = classify_response(
            response.status_code,
            response.text,
            retry_after_header=response.headers.get("Retry-After"),
            default_retry_after=self._default_retry_after,
        )
        logger.info(
            f"上游响应: {request.operation.value} {request.symbol} "
            f"HTTP {response.status_code} → {result.outcome.value}"
        )
        return result
