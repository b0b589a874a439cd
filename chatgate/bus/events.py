"""
消息事件类型定义模块 - 定义消息总线中传输的数据结构。

本模块定义了两个核心数据类：
- InboundMessage：入站消息（从渠道到网关核心）
- OutboundMessage：出站消息（从网关核心到渠道）

所有渠道适配器都把平台原生消息归一化为 InboundMessage，
批处理器、会话管理器和下游处理器只认识这一种结构。

【Java 开发者类比】
- InboundMessage / OutboundMessage 相当于 Java 的 record，由 @dataclass 生成构造器和 equals
- chat_key 是只读的派生属性，相当于一个 getter

【设计要点】
- chat_key 把 channel 和 chat_id 组合为批处理器的队列键，同一聊天窗口的消息进入同一队列
- 会话键由会话管理器按作用域（scope）另行推导，见 chatgate.session.keys
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ChatType = Literal["dm", "group"]


@dataclass
class InboundMessage:
    """
    入站消息 - 从聊天渠道接收到的用户消息。

    属性:
        channel: 平台标识，参与会话键和队列键的推导
        sender_id: 发送者唯一标识（渠道内的用户 ID）
        chat_id: 聊天/频道唯一标识（区分不同的对话窗口）
        content: 消息文本内容
        chat_type: 聊天类型，'dm' 私聊或 'group' 群聊
        timestamp: 消息到达时间，默认为当前时间
        message_id: 渠道内的消息 ID（可选）
        media: 附带的媒体文件 URL 列表
        metadata: 渠道特有的附加数据（如用户名、reply_to 等）
    """

    channel: str            # 来源渠道：telegram, discord, slack, webchat 等
    sender_id: str          # 发送者 ID：渠道内的用户唯一标识
    chat_id: str            # 聊天 ID：区分不同的对话窗口/群组
    content: str            # 消息正文：用户发送的文本内容
    chat_type: ChatType = "dm"  # 聊天类型：私聊 / 群聊
    timestamp: datetime = field(default_factory=datetime.now)  # 到达时间戳
    message_id: str | None = None                              # 渠道消息 ID
    media: list[str] = field(default_factory=list)             # 媒体附件 URL 列表
    metadata: dict[str, Any] = field(default_factory=dict)     # 渠道特有的元数据

    @property
    def chat_key(self) -> str:
        """
        批处理队列键，格式为 "channel:chat_id"，例如 "telegram:123456"。

        同一个聊天窗口内的连续消息共享一个队列，按到达顺序合并。
        """
        return f"{self.channel}:{self.chat_id}"


@dataclass
class OutboundMessage:
    """
    出站消息 - 网关要发送到聊天渠道的回复消息。

    属性:
        channel: 目标渠道标识（决定消息发往哪个渠道）
        chat_id: 目标聊天/频道标识（决定消息发给哪个对话窗口）
        content: 回复文本内容
        reply_to: 被回复的入站消息 ID；批处理合并后为最后一条消息的 ID
        media: 附带的媒体文件 URL 列表
        metadata: 附加数据，管线会写入 session_id
    """

    channel: str                                                # 目标渠道标识
    chat_id: str                                                # 目标聊天 ID
    content: str                                                # 回复文本内容
    reply_to: str | None = None                                 # 引用的原始消息 ID（可选）
    media: list[str] = field(default_factory=list)              # 媒体附件 URL 列表
    metadata: dict[str, Any] = field(default_factory=dict)      # 渠道特有的元数据
