"""
chatroom.core.settings
~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（chatroom/core/settings.py 向上三级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Chatroom Coordinator", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 房间 ──────────────────────────────────────────────────────────
    ROOM_CAPACITY: int = Field(default=5, ge=1, description="单个房间最大成员数")
    MAX_FIELD_LENGTH: int = Field(
        default=20,
        description="昵称 / 所在地 / 房间名 / 房间 ID 的最大字符数",
    )
    MAX_MESSAGE_LENGTH: int = Field(default=500, description="单条聊天消息最大字符数")
    ROOM_DELETION_DELAY_SECONDS: float = Field(
        default=10.0,
        description="房间变空后延迟删除的宽限期（秒）",
    )

    # ── 封禁 / 内容过滤 ───────────────────────────────────────────────
    BAN_DURATION_SECONDS: float = Field(default=30 * 60, description="违规自动封禁时长（秒）")
    BAN_DISCONNECT_DELAY_SECONDS: float = Field(
        default=0.1,
        description="下发封禁通知后延迟断开连接的时间（秒），给客户端处理事件留出时间",
    )
    OFFENSIVE_WORDS_FILE: str = Field(
        default="data/offensive_words.txt",
        description="敏感词表文件的相对路径（相对项目根目录）",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    HTTP_RATE_LIMIT: str = Field(default="100/15minutes", description="HTTP 接口按 IP 限流规则")
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.5,
        description="同一连接两条聊天消息之间的最小间隔（秒）",
    )
    WS_QUEUE_SIZE: int = Field(default=20, description="单连接待处理事件队列上限")
    WS_SEND_QUEUE_SIZE: int = Field(
        default=100,
        description="单连接待发送事件队列上限，积压超过此值视为过慢的连接并断开",
    )
    WS_SEND_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="单条事件发送的超时时间（秒），超时的连接会被移除",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def offensive_words_path(self) -> Path:
        """敏感词表文件的绝对路径。"""
        return PROJECT_ROOT / self.OFFENSIVE_WORDS_FILE


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
