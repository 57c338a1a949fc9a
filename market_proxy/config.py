"""
代理服务配置模块
支持从环境变量 / .env 读取配置
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProxySettings(BaseSettings):
    """行情代理服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 上游配置 ──────────────────────────────────────────
    ALPHAVANTAGE_API_KEY: str = Field(default="")
    UPSTREAM_BASE_URL: str = Field(default="https://www.alphavantage.co/query")
    UPSTREAM_TIMEOUT: float = Field(default=10.0)       # 单次调用超时（秒）
    UPSTREAM_MIN_INTERVAL: float = Field(default=1.1)   # 上游调用最小间隔（秒）
    DAILY_OUTPUT_SIZE: str = Field(default="compact")
    THROTTLE_RETRY_AFTER: int = Field(default=1)        # 限流时默认 Retry-After（秒）

    @property
    def API_KEY_CONFIGURED(self) -> bool:
        return bool(self.ALPHAVANTAGE_API_KEY.strip())

    # ── 缓存配置 ──────────────────────────────────────────
    OVERVIEW_TTL: int = Field(default=24 * 60 * 60)     # 公司概况变化慢
    TIME_SERIES_DAILY_TTL: int = Field(default=60 * 60) # 日线按天变化
    CACHE_DIR: str = Field(default="./.av-cache")
    FIXTURE_DIR: str = Field(default="./fixtures/alpha-vantage")

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> ProxySettings:
    """获取全局配置（单例）"""
    return ProxySettings()


settings = get_settings()
