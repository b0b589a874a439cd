"""
会话键推导 - 按作用域（scope）把一条入站消息映射到确定性的会话键。

作用域决定同一用户/渠道组合会有多少个独立会话：
- main：每个 Agent 在每个平台、每种聊天类型下只有一个会话（所有私聊共享）
- per-peer：每个用户一个会话（同一用户在不同聊天窗口共享）
- per-channel-peer：每个"聊天窗口 + 用户"组合一个会话（默认）

键的格式（agent 默认为 "agent"）：
    main               agent:main:{platform}:{chat_type}
    per-peer           agent:peer:{platform}:{chat_type}:{user_id}
    per-channel-peer   agent:channel:{platform}:{chat_type}:{chat_id}:{user_id}
"""

from chatgate.bus.events import InboundMessage
from chatgate.config.schema import DmScope


def build_session_key(message: InboundMessage, scope: DmScope, agent_id: str = "agent") -> str:
    """
    根据作用域生成会话键。

    参数:
        message: 入站消息（可以是批处理合并后的逻辑消息）
        scope: 会话作用域
        agent_id: Agent 标识，作为键前缀

    返回:
        会话键字符串
    """
    platform = message.channel
    chat_type = message.chat_type

    if scope == "main":
        return f"{agent_id}:main:{platform}:{chat_type}"
    if scope == "per-peer":
        return f"{agent_id}:peer:{platform}:{chat_type}:{message.sender_id}"
    return f"{agent_id}:channel:{platform}:{chat_type}:{message.chat_id}:{message.sender_id}"
