"""
行情代理路由
GET /proxy?operation={OVERVIEW|TIME_SERIES_DAILY}&symbol={TICKER}
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_proxy.services.proxy_service import ProxyService, get_proxy_service

router = APIRouter(tags=["行情代理"])


@router.get("/proxy")
async def proxy(
    operation: Optional[str] = Query(default=None, description="OVERVIEW / TIME_SERIES_DAILY"),
    function: Optional[str] = Query(default=None, description="operation 的别名"),
    symbol: Optional[str] = Query(default=None, description="股票代码，如 AAPL、BRK.B"),
    svc: ProxyService = Depends(get_proxy_service),
):
    """读穿透代理：内存 → 磁盘 → 上游 → 降级"""
    op = operation if operation is not None else function
    result = await svc.handle(op, symbol)
    return result.to_json_response()
