"""统一代理响应信封与传输层提示头"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from market_proxy.errors import ProxyError


class DataSource(str, Enum):
    """响应数据的实际来源"""

    UPSTREAM = "upstream"
    MEMORY = "memory"
    DISK = "disk"
    DISK_STALE = "disk-stale"
    FIXTURE = "fixture"


class ProxyEnvelope(BaseModel):
    """
    代理响应信封
    ok=false 时只有 error 有意义；stale=true 时 source 必为非实时来源
    """
    ok: bool = True
    data: Optional[Any] = None
    error: Optional[str] = None
    cached: Optional[bool] = None
    stale: Optional[bool] = None
    source: Optional[DataSource] = None
    warning: Optional[str] = None

    @classmethod
    def success(
        cls,
        data: Any,
        source: DataSource,
        cached: bool,
        stale: bool = False,
        warning: Optional[str] = None,
    ) -> "ProxyEnvelope":
        fields = dict(ok=True, data=data, cached=cached, stale=stale, source=source)
        if warning:
            fields["warning"] = warning
        return cls(**fields)

    @classmethod
    def fail(cls, error: str) -> "ProxyEnvelope":
        return cls(ok=False, error=error)


class ProxyResponse(BaseModel):
    """信封 + HTTP 状态码 + 响应头"""

    envelope: ProxyEnvelope
    status_code: int = 200
    headers: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def success(
        cls,
        data: Any,
        source: DataSource,
        cached: bool,
        stale: bool = False,
        warning: Optional[str] = None,
        ttl: Optional[int] = None,
        retry_after: Optional[int] = None,
    ) -> "ProxyResponse":
        """
        组装成功响应

        Args:
            ttl: 实时 / 新鲜数据才传入，生成 Cache-Control s-maxage
            retry_after: 因限流而降级时传入，生成 Retry-After
        """
        headers = {"X-Data-Source": source.value}
        if ttl is not None:
            headers["Cache-Control"] = f"public, max-age=0, s-maxage={ttl}"
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        envelope = ProxyEnvelope.success(data, source, cached, stale=stale, warning=warning)
        return cls(envelope=envelope, headers=headers)

    @classmethod
    def from_error(cls, exc: ProxyError) -> "ProxyResponse":
        return cls(
            envelope=ProxyEnvelope.fail(exc.message),
            status_code=exc.status_code,
            headers=dict(exc.headers),
        )

    def to_json_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content=self.envelope.model_dump(mode="json", exclude_unset=True),
            headers=self.headers,
        )
