"""
缓存管理路由
GET    /api/cache/stats                  - 缓存统计
DELETE /api/cache/{operation}/{symbol}   - 清理单个键
"""

from fastapi import APIRouter, Depends

from market_proxy.services.proxy_service import ProxyService, get_proxy_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats")
async def cache_stats(svc: ProxyService = Depends(get_proxy_service)):
    """获取各缓存层统计信息"""
    return {"ok": True, "data": await svc.stats()}


@router.delete("/{operation}/{symbol}")
async def evict_cache(operation: str, symbol: str, svc: ProxyService = Depends(get_proxy_service)):
    """从内存与磁盘缓存中移除指定键"""
    return {"ok": True, "data": await svc.evict(operation, symbol)}
