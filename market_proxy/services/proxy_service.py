"""
代理服务
持有进程级共享对象（两级缓存、夹具、调度通道、上游客户端），
并为每个请求执行状态机：

  校验 → 查内存 → 查磁盘 → 调上游 → 成功（双写缓存） / 降级
"""

import logging
import time
from typing import Callable, Optional

from market_proxy.config import ProxySettings, settings as default_settings
from market_proxy.errors import ConfigurationError
from market_proxy.layers.cache import DiskCache, EntrySource, MemoryCache, ttl_seconds
from market_proxy.layers.fixtures import FixtureStore
from market_proxy.layers.scheduler import UpstreamScheduler
from market_proxy.layers.upstream import UpstreamClient
from market_proxy.layers.validation import validate_request
from market_proxy.models.response import DataSource, ProxyResponse
from market_proxy.services.fallback import FallbackOrchestrator

logger = logging.getLogger(__name__)


class ProxyService:
    """行情代理业务服务"""

    def __init__(
        self,
        cfg: Optional[ProxySettings] = None,
        *,
        memory: Optional[MemoryCache] = None,
        disk: Optional[DiskCache] = None,
        fixtures: Optional[FixtureStore] = None,
        scheduler: Optional[UpstreamScheduler] = None,
        upstream: Optional[UpstreamClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or default_settings
        self._clock = clock
        self.memory = memory or MemoryCache(clock=clock)
        self.disk = disk or DiskCache(self.cfg.CACHE_DIR, clock=clock)
        self.fixtures = fixtures or FixtureStore(self.cfg.FIXTURE_DIR)
        self.scheduler = scheduler or UpstreamScheduler(self.cfg.UPSTREAM_MIN_INTERVAL)
        self.upstream = upstream or UpstreamClient(
            api_key=self.cfg.ALPHAVANTAGE_API_KEY,
            base_url=self.cfg.UPSTREAM_BASE_URL,
            timeout=self.cfg.UPSTREAM_TIMEOUT,
            daily_output_size=self.cfg.DAILY_OUTPUT_SIZE,
            default_retry_after=self.cfg.THROTTLE_RETRY_AFTER,
        )
        self.fallback = FallbackOrchestrator(self.memory, self.disk, self.fixtures)

    # ── 生命周期 ──────────────────────────────────────────

    async def start(self) -> None:
        if not self.cfg.API_KEY_CONFIGURED:
            logger.warning("⚠️ 未配置 ALPHAVANTAGE_API_KEY，所有代理请求将返回 500")
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.upstream.aclose()

    # ── 请求状态机 ────────────────────────────────────────

    async def handle(self, operation: Optional[str], symbol: Optional[str]) -> ProxyResponse:
        """
        处理一次代理请求

        Raises:
            ProxyError: 参数非法、配置缺失，或上游失败且无任何降级数据
        """
        if not self.cfg.API_KEY_CONFIGURED:
            raise ConfigurationError("Server misconfigured: missing ALPHAVANTAGE_API_KEY")

        request = validate_request(operation, symbol)
        key = request.key
        ttl = ttl_seconds(request.operation, self.cfg)
        now = self._clock()

        # 内存：新鲜命中直接返回
        mem_entry = self.memory.get(key)
        if mem_entry is not None and mem_entry.is_fresh(ttl, now):
            return ProxyResponse.success(mem_entry.payload, DataSource.MEMORY, cached=True, ttl=ttl)

        # 磁盘：新鲜命中回填内存；过期条目留作本次请求的降级候选
        disk_entry = await self.disk.read(key)
        if disk_entry is not None and disk_entry.is_fresh(ttl, now):
            self.memory.set(key, disk_entry.payload, EntrySource.DISK, saved_at=disk_entry.saved_at)
            return ProxyResponse.success(disk_entry.payload, DataSource.DISK, cached=True, ttl=ttl)

        # 上游：经调度通道串行调用
        result = await self.scheduler.submit(lambda: self.upstream.fetch(request))
        if result.ok:
            self.memory.set(key, result.payload, EntrySource.UPSTREAM)
            await self.disk.write(key, result.payload)
            return ProxyResponse.success(result.payload, DataSource.UPSTREAM, cached=False, ttl=ttl)

        logger.warning(f"上游不可用（{result.outcome.value}）: {key}，进入降级流程")
        return await self.fallback.resolve(request, result, stale_candidate=disk_entry)

    # ── 运维接口 ──────────────────────────────────────────

    async def evict(self, operation: Optional[str], symbol: Optional[str]) -> dict:
        """从两级缓存中移除一个键（夹具只读，不受影响）"""
        request = validate_request(operation, symbol)
        key = request.key
        removed_memory = self.memory.delete(key)
        removed_disk = await self.disk.delete(key)
        logger.info(f"缓存已清理: {key}")
        return {"key": str(key), "memory": removed_memory, "disk": removed_disk}

    async def stats(self) -> dict:
        return {
            "memory": self.memory.stats(),
            "disk": await self.disk.stats(),
            "fixtures": self.fixtures.stats(),
            "scheduler": self.scheduler.stats(),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_proxy_service: Optional[ProxyService] = None


def get_proxy_service() -> ProxyService:
    global _proxy_service
    if _proxy_service is None:
        _proxy_service = ProxyService()
    return _proxy_service


def set_proxy_service(service: Optional[ProxyService]) -> None:
    """替换进程级实例（测试用于注入隔离的服务对象）"""
    global _proxy_service
    _proxy_service = service
