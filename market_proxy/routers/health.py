"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from market_proxy import __version__
from market_proxy.services.proxy_service import ProxyService, get_proxy_service

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(svc: ProxyService = Depends(get_proxy_service)):
    """服务健康检查"""
    return {
        "ok": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Market-Data Proxy",
            "upstream": {
                "configured": svc.cfg.API_KEY_CONFIGURED,
                "min_interval": svc.cfg.UPSTREAM_MIN_INTERVAL,
                "timeout": svc.cfg.UPSTREAM_TIMEOUT,
            },
            "cache": await svc.stats(),
        },
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
