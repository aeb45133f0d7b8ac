# collectsync/core/config.py
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    全局应用配置（环境变量 / .env）
    """

    # 运行环境
    ENV: str = Field(default="dev")
    DEBUG: bool = Field(default=True)

    # 日志
    LOG_LEVEL: str = Field(default="INFO")
    JSON_LOG: bool = Field(default=False)

    # 数量比较容差：所有 “≤ 上限” 判断统一用 qty <= limit + QTY_EPSILON
    QTY_EPSILON: float = Field(default=1e-9, ge=0)

    # 上游 WMS 接口（库存快照 / 单据行 / 收集人目录）
    WMS_API_BASE_URL: Optional[str] = Field(
        default=None,
        description="上游 WMS REST 根地址，例如：http://127.0.0.1:3000/api",
    )

    # 同步通道（collect / uncollect / applyMove / removeDetail 的请求-应答）
    SYNC_BASE_URL: Optional[str] = Field(
        default=None,
        description="同步通道根地址；缺省时沿用 WMS_API_BASE_URL",
    )

    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def sync_base_url(self) -> Optional[str]:
        return self.SYNC_BASE_URL or self.WMS_API_BASE_URL


@lru_cache
def get_settings() -> AppSettings:
    """全局单例设置入口。"""
    return AppSettings()
