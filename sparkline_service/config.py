"""
行情迷你走势图（Sparkline）服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class SparklineSettings(BaseSettings):
    """Sparkline 缓存与后台拉取服务配置"""

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

    # ── 内存缓存（短 TTL，LRU 淘汰） ───────────────────────
    MEMORY_TTL_MS: int = Field(default=30 * _MINUTE_MS, gt=0)
    MAX_MEMORY_ENTRIES: int = Field(default=150, gt=0)

    # ── 持久化缓存（长 TTL，仅用于冷启动预热） ─────────────
    PERSISTENT_TTL_MS: int = Field(default=24 * _HOUR_MS, gt=0)
    MAX_PERSISTENT_ENTRIES: int = Field(default=200, gt=0)
    STORE_BACKEND: str = Field(default="auto")     # auto / mongodb / redis / file / none
    SPARKLINE_TABLE: str = Field(default="sparkline_cache")
    CACHE_DIR: str = Field(default="./cache")      # 文件存储目录

    # ── 批量拉取队列 ──────────────────────────────────────
    BATCH_SIZE: int = Field(default=12, gt=0)
    MAX_PARALLEL_BATCHES: int = Field(default=2, gt=0)
    BATCH_DELAY_MS: int = Field(default=250, ge=0)
    DRAIN_TICK_MS: int = Field(default=50, ge=0)

    # ── 限流重试 ──────────────────────────────────────────
    MAX_RETRIES: int = Field(default=3, ge=0)
    INITIAL_RETRY_DELAY_MS: int = Field(default=1000, ge=0)

    # ── 过期巡检 ──────────────────────────────────────────
    REFRESH_INTERVAL_MS: int = Field(default=15 * _MINUTE_MS, gt=0)

    # ── 上游 K 线接口 ─────────────────────────────────────
    CANDLE_API_URL: str = Field(default="https://api.hyperliquid.xyz/info")
    CANDLE_INTERVAL: str = Field(default="15m")
    SPARKLINE_WINDOW_MS: int = Field(default=24 * _HOUR_MS, gt=0)
    HTTP_TIMEOUT_S: float = Field(default=10.0, gt=0)

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="sparklines")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=3000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")

    @model_validator(mode="after")
    def _check_ttl_order(self) -> "SparklineSettings":
        # 持久化层只做冷启动预热，其 TTL 不得短于内存层
        if self.PERSISTENT_TTL_MS < self.MEMORY_TTL_MS:
            raise ValueError("PERSISTENT_TTL_MS 不能小于 MEMORY_TTL_MS")
        backend = self.STORE_BACKEND.lower()
        if backend not in ("auto", "mongodb", "redis", "file", "none"):
            raise ValueError(f"未知的 STORE_BACKEND: {self.STORE_BACKEND}")
        self.STORE_BACKEND = backend
        return self


@lru_cache
def get_settings() -> SparklineSettings:
    """获取全局配置（单例）"""
    return SparklineSettings()


settings = get_settings()
