"""
Layer 1 – 校验层
在构造缓存键 / 文件路径之前拒绝非法操作与股票代码
"""

import logging
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from market_proxy.errors import ClientInputError

logger = logging.getLogger(__name__)

# 大写字母、数字、点、连字符，长度 1–10（AAPL, BRK.B, RDS-A）
SYMBOL_PATTERN = re.compile(r"[A-Z0-9.\-]{1,10}")


class Operation(str, Enum):
    """支持的上游操作"""

    OVERVIEW = "OVERVIEW"
    TIME_SERIES_DAILY = "TIME_SERIES_DAILY"


class CacheKey(BaseModel):
    """{operation, symbol} 组合键，两级缓存共用"""

    model_config = ConfigDict(frozen=True)

    operation: Operation
    symbol: str

    def __str__(self) -> str:
        return f"{self.operation.value}:{self.symbol}"

    @property
    def file_stem(self) -> str:
        """文件系统安全的记录名：{operation}__{symbol}"""
        return f"{self.operation.value}__{self.symbol}"


class ProxyRequest(BaseModel):
    """经过校验与规范化的请求参数"""

    model_config = ConfigDict(frozen=True)

    operation: Operation
    symbol: str

    @property
    def key(self) -> CacheKey:
        return CacheKey(operation=self.operation, symbol=self.symbol)


def validate_request(operation: Optional[str], symbol: Optional[str]) -> ProxyRequest:
    """
    校验原始参数并返回规范化结果

    操作名大小写不敏感；股票代码必须已是大写，不做任何修正。

    Raises:
        ClientInputError: 操作不在白名单内或股票代码格式不合法
    """
    op_raw = (operation or "").strip().upper()
    try:
        op = Operation(op_raw)
    except ValueError:
        logger.debug(f"拒绝非法操作: {operation!r}")
        raise ClientInputError("Invalid 'operation'. Use OVERVIEW or TIME_SERIES_DAILY.")

    sym = symbol or ""
    if not SYMBOL_PATTERN.fullmatch(sym):
        logger.debug(f"拒绝非法股票代码: {symbol!r}")
        raise ClientInputError("Invalid 'symbol'. Example: MSFT, AAPL, BRK.B")

    return ProxyRequest(operation=op, symbol=sym)
