"""
Market-Data Proxy 行情缓存代理
独立 FastAPI 应用程序入口

启动方式:
    uvicorn market_proxy.main:app --host 0.0.0.0 --port 8002
    python -m market_proxy.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_proxy import __version__
from market_proxy.config import settings
from market_proxy.errors import ProxyError
from market_proxy.models.response import ProxyResponse
from market_proxy.routers import cache, health, proxy
from market_proxy.services.proxy_service import get_proxy_service

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    svc = get_proxy_service()
    logger.info("=" * 60)
    logger.info(f"🚀 Market-Data Proxy v{__version__} 启动中")
    logger.info(f"   Upstream  : {svc.cfg.UPSTREAM_BASE_URL}")
    logger.info(f"   Interval  : {svc.cfg.UPSTREAM_MIN_INTERVAL}s / timeout {svc.cfg.UPSTREAM_TIMEOUT}s")
    logger.info(f"   Disk cache: {svc.cfg.CACHE_DIR}")
    logger.info(f"   Fixtures  : {svc.cfg.FIXTURE_DIR}")
    logger.info("=" * 60)

    await svc.start()
    yield

    logger.info("🔄 行情代理服务正在关闭...")
    await svc.stop()
    logger.info("✅ 行情代理服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Market-Data Proxy",
    description=(
        "限流上游行情 API 的读穿透缓存代理：\n"
        "- 🔒 上游调用全局串行 + 最小间隔\n"
        "- 🗄️ 两级缓存（内存 → 磁盘）\n"
        "- 🛟 降级链（过期磁盘缓存 → 夹具 → 过期内存）\n\n"
        "**请求状态机**\n"
        "```\n"
        "校验 → 查内存 → 查磁盘 → 调上游 → 成功 / 降级\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    if exc.status_code >= 500:
        logger.warning(f"代理请求失败 [{exc.status_code}]: {exc.message}")
    return ProxyResponse.from_error(exc).to_json_response()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Internal proxy error"},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(proxy.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Market-Data Proxy",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_proxy.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
