"""
会话数据模型 - 会话、对话轮次、检查点及其持久化载荷格式。

本模块只描述数据和序列化，不涉及任何调度或存储逻辑：
- ConversationTurn：一轮对话（user / assistant）
- Checkpoint：调用方显式保存的历史快照
- Session：一个持续中的对话，含历史、摘要、检查点和时间戳

【持久化载荷格式（版本化）】
Session.to_record() 输出一个 camelCase 键名的字典，包含 "version" 字段：

    {
      "version": 1,
      "id": "session_...", "key": "agent:channel:telegram:dm:42:7",
      "userId": "7", "channel": "telegram", "chatId": "42", "chatType": "dm",
      "history": [{"role": "user", "content": "hi", "timestamp": "2026-..."}],
      "contextSummary": null,
      "checkpoint": {"history": [...], "summary": null, "savedAt": "2026-..."},
      "checkpointRestoredAt": null,
      "messageCount": 1, "preferences": {},
      "lastActivity": "...", "createdAt": "...", "updatedAt": "..."
    }

时间字段统一保存为 ISO 8601 字符串，Session.from_record() 负责还原为 datetime。
缺失的可选字段（旧记录）使用默认值；未知字段（新版本写入）直接忽略。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from loguru import logger

from chatgate.utils.helpers import new_session_id, parse_timestamp

# 当前载荷格式版本号，新增字段时保持向后兼容，破坏性变更时递增
SCHEMA_VERSION = 1

Role = Literal["user", "assistant"]


@dataclass
class ConversationTurn:
    """一轮对话：角色、内容和时间戳。"""
    role: Role
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationTurn":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            timestamp=parse_timestamp(data.get("timestamp")) or datetime.now(),
        )


@dataclass
class Checkpoint:
    """
    对话历史检查点。

    属性:
        history: 保存时的历史副本
        saved_at: 保存时间
        summary: 调用方提供的可选摘要，恢复时替换当前 context_summary
    """
    history: list[ConversationTurn]
    saved_at: datetime
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": [t.to_dict() for t in self.history],
            "summary": self.summary,
            "savedAt": self.saved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            history=[ConversationTurn.from_dict(t) for t in data.get("history", [])],
            saved_at=parse_timestamp(data.get("savedAt")) or datetime.now(),
            summary=data.get("summary"),
        )


@dataclass
class Session:
    """
    单个对话会话。

    每个 Session 通过 key 唯一标识（由作用域规则推导，见 chatgate.session.keys），
    id 在创建时分配，重置后保持不变；重置只替换历史和上下文。

    属性:
        key: 会话查找键
        id: 全局唯一 ID
        user_id / channel / chat_id / chat_type: 首条消息的来源信息
        history: 按时间顺序的对话轮次，长度受保留上限约束
        context_summary: 被压缩移出的历史的抽取式摘要
        checkpoint: 显式保存的历史快照
        checkpoint_restored_at: 最近一次恢复检查点的时间
        message_count: 已追加的轮次数（清空/重置时归零）
        preferences: 会话级偏好设置，随会话持久化
        last_activity / created_at / updated_at: 驱动重置与清理策略的时间戳
    """

    key: str
    id: str = field(default_factory=new_session_id)
    user_id: str = ""
    channel: str = ""
    chat_id: str = ""
    chat_type: str = "dm"
    history: list[ConversationTurn] = field(default_factory=list)
    context_summary: str | None = None
    checkpoint: Checkpoint | None = None
    checkpoint_restored_at: datetime | None = None
    message_count: int = 0
    preferences: dict[str, Any] = field(default_factory=dict)
    last_activity: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def touch(self, now: datetime) -> None:
        """记录一次活动。"""
        self.last_activity = now
        self.updated_at = now

    def reset_context(self) -> None:
        """把历史、摘要、检查点、计数和偏好替换为全新状态，保留身份字段。"""
        self.history = []
        self.context_summary = None
        self.checkpoint = None
        self.checkpoint_restored_at = None
        self.message_count = 0
        self.preferences = {}

    @property
    def is_fresh(self) -> bool:
        """重置不会改变任何状态：历史、摘要、检查点、恢复时间、计数和偏好均为空。"""
        return (
            not self.history
            and not self.context_summary
            and self.checkpoint is None
            and self.checkpoint_restored_at is None
            and self.message_count == 0
            and not self.preferences
        )

    def get_history(self, max_messages: int = 50) -> list[dict[str, Any]]:
        """
        获取供下游处理器使用的精简历史。

        有压缩摘要时，以一条 system 消息的形式放在最前面；
        之后是最近 max_messages 轮，只保留 role 和 content 字段。
        """
        recent = self.history[-max_messages:]
        messages: list[dict[str, Any]] = []
        if self.context_summary:
            messages.append({
                "role": "system",
                "content": f"Summary of earlier conversation:\n{self.context_summary}",
            })
        messages.extend({"role": t.role, "content": t.content} for t in recent)
        return messages

    # ========== 持久化载荷 ==========

    def to_record(self) -> dict[str, Any]:
        """序列化为版本化的持久化载荷。"""
        return {
            "version": SCHEMA_VERSION,
            "id": self.id,
            "key": self.key,
            "userId": self.user_id,
            "channel": self.channel,
            "chatId": self.chat_id,
            "chatType": self.chat_type,
            "history": [t.to_dict() for t in self.history],
            "contextSummary": self.context_summary,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "checkpointRestoredAt": (
                self.checkpoint_restored_at.isoformat() if self.checkpoint_restored_at else None
            ),
            "messageCount": self.message_count,
            "preferences": self.preferences,
            "lastActivity": self.last_activity.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Session":
        """
        从持久化载荷还原会话，并把所有时间字段还原为 datetime。

        异常:
            KeyError: 缺少必需字段 key
        """
        version = data.get("version", 1)
        if version > SCHEMA_VERSION:
            logger.warning(
                f"Session record {data.get('key')} has schema version {version} "
                f"(supported: {SCHEMA_VERSION}), loading known fields only"
            )

        now = datetime.now()
        checkpoint = data.get("checkpoint")
        return cls(
            key=data["key"],
            id=data.get("id") or new_session_id(),
            user_id=data.get("userId", ""),
            channel=data.get("channel", ""),
            chat_id=data.get("chatId", ""),
            chat_type=data.get("chatType", "dm"),
            history=[ConversationTurn.from_dict(t) for t in data.get("history", [])],
            context_summary=data.get("contextSummary"),
            checkpoint=Checkpoint.from_dict(checkpoint) if checkpoint else None,
            checkpoint_restored_at=parse_timestamp(data.get("checkpointRestoredAt")),
            message_count=data.get("messageCount", 0),
            preferences=data.get("preferences") or {},
            last_activity=parse_timestamp(data.get("lastActivity")) or now,
            created_at=parse_timestamp(data.get("createdAt")) or now,
            updated_at=parse_timestamp(data.get("updatedAt")) or now,
        )
