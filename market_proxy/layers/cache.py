"""
Layer 2 – 缓存层
优先级：内存（进程内） → 磁盘（跨重启持久化）

两级缓存只负责存取带时间戳的条目，新鲜度由调用方按操作 TTL 判断。
"""

import asyncio
import json
import logging
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from market_proxy.config import ProxySettings, settings as default_settings
from market_proxy.errors import LocalIOFailure
from market_proxy.layers.validation import CacheKey, Operation

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class EntrySource(str, Enum):
    """缓存条目中负载的来源"""

    UPSTREAM = "upstream"
    MEMORY = "memory"
    DISK = "disk"
    FIXTURE = "fixture"


class CacheEntry(BaseModel):
    """带写入时间戳的缓存条目，新鲜度只能推导，不存储"""

    model_config = ConfigDict(frozen=True)

    key: CacheKey
    payload: Any
    saved_at: float
    source: EntrySource

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.saved_at

    def is_fresh(self, ttl: float, now: Optional[float] = None) -> bool:
        return self.age(now) <= ttl


def ttl_seconds(operation: Operation, cfg: Optional[ProxySettings] = None) -> int:
    """TTL 只取决于操作类型，与股票代码无关"""
    cfg = cfg or default_settings
    if operation is Operation.OVERVIEW:
        return cfg.OVERVIEW_TTL
    return cfg.TIME_SERIES_DAILY_TTL


# ── 内存缓存 ──────────────────────────────────────────────

class MemoryCache:
    """进程内缓存，无淘汰策略（键空间 = 股票 × 操作，规模很小）"""

    def __init__(self, clock: Clock = time.time):
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(str(key))
        if entry is not None:
            logger.debug(f"缓存命中（内存）: {key}")
        return entry

    def set(
        self,
        key: CacheKey,
        payload: Any,
        source: EntrySource,
        saved_at: Optional[float] = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            payload=payload,
            saved_at=self._clock() if saved_at is None else saved_at,
            source=source,
        )
        self._entries[str(key)] = entry
        logger.debug(f"缓存写入（内存）: {key} ← {source.value}")
        return entry

    def delete(self, key: CacheKey) -> bool:
        return self._entries.pop(str(key), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {"entries": len(self._entries), "status": "healthy"}


# ── 磁盘缓存 ──────────────────────────────────────────────

class DiskCache:
    """
    磁盘缓存：每个键一个 JSON 文件 {operation}__{symbol}.json

    读写均为尽力而为：写失败只记录日志，读到损坏 / 半写入的文件视为不存在。
    同步文件操作放到工作线程执行，不阻塞事件循环。
    """

    def __init__(self, directory: str, clock: Clock = time.time):
        self._dir = directory
        self._clock = clock

    @property
    def directory(self) -> str:
        return self._dir

    def _path(self, key: CacheKey) -> str:
        return os.path.join(self._dir, f"{key.file_stem}.json")

    # ── 同步实现（在线程中执行） ───────────────────────────

    def _read_sync(self, key: CacheKey) -> Optional[CacheEntry]:
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
        except FileNotFoundError:
            return None
        except ValueError as exc:
            logger.debug(f"磁盘缓存记录损坏，忽略: {path} ({exc})")
            return None
        except OSError as exc:
            raise LocalIOFailure(f"读取 {path} 失败: {exc}") from exc

        saved_at = doc.get("savedAt") if isinstance(doc, dict) else None
        if isinstance(saved_at, bool) or not isinstance(saved_at, (int, float)) or "payload" not in doc:
            logger.debug(f"磁盘缓存记录结构不完整，忽略: {path}")
            return None

        return CacheEntry(key=key, payload=doc["payload"], saved_at=float(saved_at), source=EntrySource.DISK)

    def _write_sync(self, key: CacheKey, payload: Any, saved_at: float) -> None:
        path = self._path(key)
        record = {
            "savedAt": saved_at,
            "operation": key.operation.value,
            "symbol": key.symbol,
            "payload": payload,
        }
        tmp = f"{path}.{os.getpid()}.{time.monotonic_ns()}.tmp"
        try:
            os.makedirs(self._dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(record, fh, ensure_ascii=False)
            # 先写临时文件再原子替换，读方不会看到半写入的记录
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise LocalIOFailure(f"写入 {path} 失败: {exc}") from exc

    def _delete_sync(self, key: CacheKey) -> bool:
        try:
            os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise LocalIOFailure(f"删除 {self._path(key)} 失败: {exc}") from exc

    def _count_sync(self) -> int:
        if not os.path.isdir(self._dir):
            return 0
        return len([f for f in os.listdir(self._dir) if f.endswith(".json")])

    # ── 异步接口 ──────────────────────────────────────────

    async def read(self, key: CacheKey) -> Optional[CacheEntry]:
        """读取条目（不论新旧），失败一律视为不存在"""
        try:
            entry = await asyncio.to_thread(self._read_sync, key)
        except LocalIOFailure as exc:
            logger.warning(f"磁盘缓存读取失败: {exc}")
            return None
        if entry is not None:
            logger.debug(f"缓存命中（磁盘）: {key}")
        return entry

    async def write(self, key: CacheKey, payload: Any) -> bool:
        """写入条目，savedAt 取写入时刻；失败不影响请求，仅返回 False"""
        try:
            await asyncio.to_thread(self._write_sync, key, payload, self._clock())
        except LocalIOFailure as exc:
            logger.warning(f"磁盘缓存写入失败: {exc}")
            return False
        logger.debug(f"缓存写入（磁盘）: {key}")
        return True

    async def delete(self, key: CacheKey) -> bool:
        try:
            return await asyncio.to_thread(self._delete_sync, key)
        except LocalIOFailure as exc:
            logger.warning(f"磁盘缓存删除失败: {exc}")
            return False

    async def stats(self) -> dict:
        try:
            count = await asyncio.to_thread(self._count_sync)
        except OSError as exc:
            return {"status": "error", "error": str(exc), "dir": self._dir}
        return {"records": count, "dir": self._dir, "status": "healthy"}
