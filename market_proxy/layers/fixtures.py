"""
Layer 3 – 夹具层
只读预置数据（可随仓库提交），仅在两级缓存与上游都不可用时兜底
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional

from market_proxy.layers.validation import CacheKey

logger = logging.getLogger(__name__)

_PAYLOAD_FIELD = "payload"


class FixtureStore:
    """
    夹具文件：{FIXTURE_DIR}/{operation}__{symbol}.json

    支持两种格式：直接存放负载，或磁盘缓存同款包装 {"payload": ...}
    """

    def __init__(self, directory: str):
        self._dir = directory

    @property
    def directory(self) -> str:
        return self._dir

    def _read_sync(self, key: CacheKey) -> Optional[Any]:
        path = os.path.join(self._dir, f"{key.file_stem}.json")
        try:
            with open(path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning(f"夹具文件不可用: {path} ({exc})")
            return None

        if isinstance(doc, dict) and _PAYLOAD_FIELD in doc:
            return doc[_PAYLOAD_FIELD]
        return doc

    async def read(self, key: CacheKey) -> Optional[Any]:
        payload = await asyncio.to_thread(self._read_sync, key)
        if payload is not None:
            logger.debug(f"夹具命中: {key}")
        return payload

    def stats(self) -> dict:
        return {"dir": self._dir, "available": os.path.isdir(self._dir)}
