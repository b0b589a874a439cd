"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 chatgate 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── batching      - 消息批处理配置（模式、防抖延迟、批大小、最长等待）
├── session       - 会话配置（私聊作用域、重置策略、重置指令、清理策略、历史保留）
│   ├── reset     - 自动重置策略（daily / idle / both / manual）
│   └── cleanup   - 过期会话清理策略
└── storage       - 会话持久化目录

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BatchMode = Literal["immediate", "debounce", "collect"]
DmScope = Literal["main", "per-peer", "per-channel-peer"]
ResetMode = Literal["daily", "idle", "both", "manual"]


# ==============================================================================
# 消息批处理配置
# ==============================================================================


class BatchingConfig(BaseModel):
    """
    消息批处理配置。

    - immediate: 不排队，每条消息立即交给处理器
    - debounce: 每条新消息重置防抖定时器，用户停止输入 debounce_ms 后才处理
    - collect: 首条消息同时启动防抖定时器和最长等待定时器，先到者触发
    """
    mode: BatchMode = "immediate"
    debounce_ms: int = Field(default=1500, ge=0)  # 防抖延迟（毫秒）
    max_batch_size: int = Field(default=5, ge=1)  # 单批最多消息数，达到即刻处理
    max_wait_ms: int = Field(default=10_000, ge=0)  # collect 模式下的最长等待（毫秒）
    stale_timeout_s: float = Field(default=300.0, gt=0)  # 队列无活动多久视为过期（5 分钟）
    sweep_interval_s: float = Field(default=60.0, gt=0)  # 过期队列巡检间隔


# ==============================================================================
# 会话配置
# ==============================================================================


class ResetConfig(BaseModel):
    """会话自动重置策略。manual 模式下只响应用户的重置指令。"""
    mode: ResetMode = "manual"
    at_hour: int = Field(default=4, ge=0, le=23)  # daily 模式的重置整点（本地时间）
    idle_minutes: int = Field(default=60, ge=1)  # idle 模式的空闲阈值（分钟）


class CleanupConfig(BaseModel):
    """
    过期会话清理策略。

    与 ResetConfig 的空闲重置相互独立：重置保留会话身份，清理则从内存和存储中彻底删除。
    """
    enabled: bool = True
    max_age_days: float = Field(default=30, gt=0)  # 会话最长存活天数
    idle_days: float = Field(default=14, gt=0)  # 无活动多少天后删除


class SessionConfig(BaseModel):
    """会话管理配置。"""
    dm_scope: DmScope = "per-channel-peer"  # 会话作用域，决定会话键的推导方式
    reset: ResetConfig = Field(default_factory=ResetConfig)
    reset_triggers: list[str] = Field(default_factory=lambda: ["/new", "/reset"])  # 手动重置指令
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    max_history: int = Field(default=20, ge=1)  # 历史保留上限，超过即触发压缩
    keep_recent: int = Field(default=10, ge=1)  # 压缩后保留的最近轮次数
    reset_check_interval_s: float = Field(default=60.0, gt=0)  # 重置巡检间隔（1 分钟）
    cleanup_interval_s: float = Field(default=3600.0, gt=0)  # 清理巡检间隔（1 小时）
    agent_id: str = "agent"  # 会话键前缀，区分同一进程内的多个 Agent

    @model_validator(mode="after")
    def _check_retention(self) -> "SessionConfig":
        if self.keep_recent > self.max_history:
            raise ValueError("keep_recent must not exceed max_history")
        return self


class StorageConfig(BaseModel):
    """会话持久化配置。"""
    sessions_dir: str = "~/.chatgate/sessions"  # JSONL 会话文件目录


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    chatgate 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: CHATGATE_
    - 嵌套分隔符: __ (双下划线)
    - 示例: CHATGATE_BATCHING__MODE=collect 可覆盖 batching.mode
    """
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def sessions_path(self) -> Path:
        """获取展开后的会话目录绝对路径（将 ~ 展开为用户主目录）。"""
        return Path(self.storage.sessions_dir).expanduser()

    model_config = SettingsConfigDict(
        env_prefix="CHATGATE_",
        env_nested_delimiter="__",
    )
