"""
降级编排
上游失败时按固定优先级寻找最佳可用数据：
  过期磁盘缓存 → 夹具 → 内存（即使已过期） → 对外报错
"""

import logging
from typing import Any, Optional

from market_proxy.layers.cache import CacheEntry, DiskCache, EntrySource, MemoryCache
from market_proxy.layers.fixtures import FixtureStore
from market_proxy.layers.upstream import UpstreamOutcome, UpstreamResult
from market_proxy.layers.validation import ProxyRequest
from market_proxy.models.response import DataSource, ProxyResponse

logger = logging.getLogger(__name__)


def _usable(payload: Any) -> bool:
    # null / {} / [] 不算可用的降级数据
    return bool(payload)


class FallbackOrchestrator:
    """只读两级缓存与夹具；命中后回填更快的缓存层"""

    def __init__(self, memory: MemoryCache, disk: DiskCache, fixtures: FixtureStore):
        self._memory = memory
        self._disk = disk
        self._fixtures = fixtures

    async def resolve(
        self,
        request: ProxyRequest,
        failure: UpstreamResult,
        stale_candidate: Optional[CacheEntry] = None,
    ) -> ProxyResponse:
        """
        返回降级响应；没有任何可用数据时抛出与失败类型对应的 ProxyError

        Args:
            request: 已校验的请求
            failure: 上游失败分类
            stale_candidate: 本次请求在磁盘检查阶段读到的过期条目
        """
        key = request.key
        warning = failure.warning
        retry_after = failure.retry_after if failure.outcome is UpstreamOutcome.THROTTLED else None

        # 1) 磁盘缓存（允许过期）
        disk_entry = stale_candidate
        if disk_entry is None:
            disk_entry = await self._disk.read(key)
        if disk_entry is not None and _usable(disk_entry.payload):
            self._memory.set(key, disk_entry.payload, EntrySource.DISK, saved_at=disk_entry.saved_at)
            logger.warning(f"⚠️ 降级为过期磁盘缓存: {key} ({warning})")
            return ProxyResponse.success(
                disk_entry.payload,
                DataSource.DISK_STALE,
                cached=True,
                stale=True,
                warning=warning,
                retry_after=retry_after,
            )

        # 2) 夹具
        fixture = await self._fixtures.read(key)
        if _usable(fixture):
            self._memory.set(key, fixture, EntrySource.FIXTURE)
            await self._disk.write(key, fixture)
            logger.warning(f"⚠️ 降级为夹具数据: {key} ({warning})")
            return ProxyResponse.success(
                fixture,
                DataSource.FIXTURE,
                cached=True,
                stale=False,
                warning=warning,
                retry_after=retry_after,
            )

        # 3) 内存（最后手段）
        mem_entry = self._memory.get(key)
        if mem_entry is not None and _usable(mem_entry.payload):
            logger.warning(f"⚠️ 降级为过期内存缓存: {key} ({warning})")
            return ProxyResponse.success(
                mem_entry.payload,
                DataSource.MEMORY,
                cached=True,
                stale=True,
                warning=warning,
                retry_after=retry_after,
            )

        logger.error(f"❌ 无可用降级数据: {key} ({failure.outcome.value})")
        raise failure.to_error()
